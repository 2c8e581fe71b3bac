"""Storage services for reading uploaded document blobs."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from app.core.config import settings
from app.core.exceptions import ConfigurationError, StorageError
from app.utils.logging import get_logger

LOGGER = get_logger(__name__)


class StorageService(ABC):
    """Read interface over stored document blobs keyed by their stored path."""

    @abstractmethod
    async def read_bytes(self, path: str) -> Optional[bytes]:
        """Read a stored file.

        Args:
            path: Stored file path as recorded on the document row.

        Returns:
            The file contents, or None when the file does not exist.

        Raises:
            StorageError: If the backend fails for another reason.
        """


class LocalStorageService(StorageService):
    """Files on the local filesystem, optionally below a root directory."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root) if root else None

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        if self.root is not None and not candidate.is_absolute():
            return self.root / candidate
        return candidate

    async def read_bytes(self, path: str) -> Optional[bytes]:
        file_path = self._resolve(path)
        try:
            return await asyncio.to_thread(file_path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as e:
            LOGGER.error(
                f"Error reading local file: {str(e)}",
                exc_info=True,
                extra={"path": str(file_path)}
            )
            raise StorageError(f"Local storage read error: {str(e)}", original_error=e)


class SupabaseStorageService(StorageService):
    """Files in a Supabase storage bucket."""

    def __init__(
        self,
        url: str,
        service_role_key: str,
        bucket: str,
        timeout: float = 60.0,
    ):
        if not url or not service_role_key:
            raise ConfigurationError("Supabase storage requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        self.url = url.rstrip("/")
        self.bucket = bucket
        self.timeout = timeout
        self.base_api_url = f"{self.url}/storage/v1"
        self.headers = {
            "Authorization": f"Bearer {service_role_key}",
            "apikey": service_role_key,
        }

    async def read_bytes(self, path: str) -> Optional[bytes]:
        download_url = f"{self.base_api_url}/object/{self.bucket}/{path.lstrip('/')}"

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    download_url,
                    headers=self.headers,
                    timeout=self.timeout
                )
        except httpx.HTTPError as e:
            LOGGER.error(f"Error downloading file from Supabase: {str(e)}", exc_info=True)
            raise StorageError(f"Storage download error: {str(e)}", original_error=e)

        # Supabase answers 400 with "not_found" for missing objects
        if response.status_code in (400, 404) and "not_found" in response.text.lower().replace(" ", "_"):
            return None
        if response.status_code == 404:
            return None

        if response.status_code != 200:
            LOGGER.error(
                f"Failed to download file from Supabase: {response.text}",
                extra={"bucket": self.bucket, "path": path, "status_code": response.status_code}
            )
            raise StorageError(f"Download failed: {response.text}")

        return response.content


def get_storage_service() -> StorageService:
    """Build the storage backend selected by configuration."""
    backend = settings.storage.backend.lower()
    if backend == "local":
        return LocalStorageService(settings.storage.local_root or None)
    if backend == "supabase":
        return SupabaseStorageService(
            url=settings.storage.supabase_url,
            service_role_key=settings.storage.supabase_service_role_key,
            bucket=settings.storage.bucket,
            timeout=settings.ai.request_timeout_seconds,
        )
    raise ConfigurationError(f"Unknown storage backend: {settings.storage.backend}")
