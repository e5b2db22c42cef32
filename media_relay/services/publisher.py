"""Publisher service uploading compressed media to TeraBox."""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field

from media_relay.models.job import JobProgress, ProgressSink
from media_relay.utils.errors import PublishError, TeraBoxAPIError

logger = logging.getLogger(__name__)

TERABOX_API_URL = "https://www.terabox.com"
TERABOX_UPLOAD_URL = "https://c-jp.terabox.com"
MOCK_SCHEME = "mock://"
REFERENCE_SCHEME = "terabox://"


def read_artifact(file_path: Path) -> tuple[bytes, str]:
    """Read a file whole and return it with its hex MD5."""
    content = file_path.read_bytes()
    return content, hashlib.md5(content).hexdigest()


class TeraBoxCredentials(BaseModel):
    """Session credential bundle taken from a logged-in TeraBox browser session."""

    ndus: str = Field(min_length=1)
    app_id: str = Field(min_length=1)
    upload_id: str = Field(min_length=1)
    js_token: str = Field(min_length=1)
    browser_id: str = Field(min_length=1)


def credentials_from_settings(settings: Any) -> Optional[TeraBoxCredentials]:
    """Build the credential bundle, or None unless every field is configured."""
    values = {
        "ndus": settings.terabox_ndus,
        "app_id": settings.terabox_app_id,
        "upload_id": settings.terabox_upload_id,
        "js_token": settings.terabox_js_token,
        "browser_id": settings.terabox_browser_id,
    }
    if not all(values.values()):
        return None
    return TeraBoxCredentials(**values)


class TeraBoxClient:
    """Minimal TeraBox web API client: precreate, upload, create, download link."""

    def __init__(
        self,
        credentials: TeraBoxCredentials,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 300.0,
    ) -> None:
        self.credentials = credentials
        self._transport = transport
        self.timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.timeout,
            cookies={"ndus": self.credentials.ndus},
        )

    def _params(self, **extra: Any) -> dict[str, Any]:
        params = {
            "app_id": self.credentials.app_id,
            "jsToken": self.credentials.js_token,
            "browserid": self.credentials.browser_id,
            "web": 1,
            "channel": "dubox",
            "clienttype": 0,
        }
        params.update(extra)
        return params

    @staticmethod
    def _check(response: httpx.Response) -> dict[str, Any]:
        if response.status_code != 200:
            raise TeraBoxAPIError(response.status_code, response.text)
        try:
            data = response.json()
        except ValueError:
            raise TeraBoxAPIError(response.status_code, "Response was not JSON")
        errno = data.get("errno", data.get("error_code", 0))
        if errno:
            raise TeraBoxAPIError(response.status_code, f"errno {errno}: {data}")
        return data

    async def upload_file(
        self,
        file_path: Path,
        remote_dir: str,
        on_progress: Optional[ProgressSink] = None,
    ) -> dict[str, Any]:
        """
        Upload ``file_path`` as a single block into ``remote_dir``.

        Returns:
            The ``create`` response describing the stored file (``fs_id``, ...)
        """
        content, block_md5 = await asyncio.to_thread(read_artifact, file_path)
        remote_path = f"{remote_dir.rstrip('/')}/{file_path.name}"
        block_list = json.dumps([block_md5])

        def report(percent: float, message: str) -> None:
            if on_progress:
                on_progress(JobProgress(percentage=percent, message=message))

        async with self._client() as client:
            report(0.0, "Preparing upload")
            precreate = self._check(
                await client.post(
                    f"{TERABOX_API_URL}/api/precreate",
                    params=self._params(),
                    data={
                        "path": remote_path,
                        "autoinit": 1,
                        "target_path": remote_dir,
                        "block_list": block_list,
                        "size": len(content),
                    },
                )
            )
            upload_id = precreate.get("uploadid") or self.credentials.upload_id

            report(10.0, f"Uploading {len(content) / (1024 * 1024):.1f} MB")
            upload_response = await client.post(
                f"{TERABOX_UPLOAD_URL}/rest/2.0/pcs/superfile2",
                params=self._params(
                    method="upload",
                    path=remote_path,
                    uploadid=upload_id,
                    uploadsign=0,
                    partseq=0,
                ),
                files={"file": ("blob", content, "application/octet-stream")},
            )
            self._check(upload_response)

            report(90.0, "Finalizing upload")
            created = self._check(
                await client.post(
                    f"{TERABOX_API_URL}/api/create",
                    params=self._params(),
                    data={
                        "path": remote_path,
                        "size": len(content),
                        "uploadid": upload_id,
                        "target_path": remote_dir,
                        "block_list": block_list,
                        "isdir": 0,
                        "rtype": 1,
                    },
                )
            )
            report(100.0, "Upload complete")

        logger.info(f"Uploaded {file_path.name} to {remote_path}")
        return created

    async def get_download_link(self, fs_id: str) -> str:
        """Fetch a fresh streaming/download link for a stored file."""
        async with self._client() as client:
            data = self._check(
                await client.get(
                    f"{TERABOX_API_URL}/api/download",
                    params=self._params(fidlist=f"[{fs_id}]", type="dlink"),
                )
            )
        links = data.get("dlink") or []
        if not links or not links[0].get("dlink"):
            raise TeraBoxAPIError(200, f"No download link for fs_id {fs_id}")
        return links[0]["dlink"]


class PublisherService:
    """Service for publishing finished artifacts to remote storage."""

    def __init__(
        self,
        credentials: Optional[TeraBoxCredentials] = None,
        remote_dir: str = "/videos",
        client: Optional[TeraBoxClient] = None,
    ) -> None:
        """
        Initialize the PublisherService.

        Args:
            credentials: TeraBox credential bundle; None selects offline mode
            remote_dir: Remote directory receiving uploads
            client: Preconfigured client (defaults to one built from credentials)
        """
        self.credentials = credentials
        self.remote_dir = remote_dir
        if client is None and credentials is not None:
            client = TeraBoxClient(credentials)
        self.client = client

    @property
    def offline(self) -> bool:
        return self.client is None

    async def publish(
        self,
        artifact_path: Path,
        job_ref: str,
        on_progress: Optional[ProgressSink] = None,
    ) -> str:
        """
        Upload an artifact and return a reference to it.

        The artifact stays on disk; removing it is up to the caller.

        Args:
            artifact_path: Local file to upload
            job_ref: Identifier of the owning job
            on_progress: Optional progress sink

        Returns:
            A download link, ``terabox://<fs_id>``, or ``mock://<job_ref>``
            when no credentials are configured

        Raises:
            PublishError: If the backend rejects the upload
        """
        if self.client is None:
            logger.warning(f"TeraBox credentials not configured, mock publish for {job_ref}")
            if on_progress:
                on_progress(JobProgress(percentage=100.0, message="Mock upload complete"))
            return f"{MOCK_SCHEME}{job_ref}"

        logger.info(f"Publishing {Path(artifact_path).name} for {job_ref}")
        try:
            created = await self.client.upload_file(Path(artifact_path), self.remote_dir, on_progress)
        except PublishError:
            raise
        except (httpx.HTTPError, OSError) as e:
            raise PublishError(f"Upload failed: {e}") from e

        fs_id = created.get("fs_id")
        if not fs_id:
            raise PublishError("Upload succeeded but no fs_id returned")
        fs_id = str(fs_id)

        link = created.get("dlink")
        if link:
            return link

        try:
            link = await self.client.get_download_link(fs_id)
            logger.info(f"Resolved download link for fs_id {fs_id}")
            return link
        except (PublishError, httpx.HTTPError) as e:
            logger.warning(f"Could not resolve link for fs_id {fs_id}: {e}")
            return f"{REFERENCE_SCHEME}{fs_id}"


def create_publisher_service() -> PublisherService:
    """
    Create a PublisherService instance using application settings.

    Returns:
        Configured PublisherService instance
    """
    from media_relay.config import get_settings

    settings = get_settings()
    return PublisherService(
        credentials=credentials_from_settings(settings),
        remote_dir=settings.terabox_remote_dir,
    )
