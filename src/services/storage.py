"""Attachment storage client for defect photos."""
from __future__ import annotations

import time
from typing import Optional

import httpx

from core.config import get_settings
from core.exceptions import ServiceUnavailableError, StorageError
from core.logging_config import get_logger, log_external_call
from services.retry import with_retry

LOGGER = get_logger(__name__)


class StorageClient:
    """Uploads and deletes objects in the external storage service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.storage_base_url) or ""
        self.api_key = api_key if api_key is not None else settings.storage_api_key
        self.timeout = timeout or settings.storage_timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._client

    def _ensure_configured(self) -> None:
        if not (self.base_url and self.api_key):
            raise ServiceUnavailableError(
                "Attachment storage is not configured. Set STORAGE_BASE_URL and STORAGE_API_KEY."
            )

    def public_url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/objects/{path}"

    @with_retry(max_attempts=3, min_wait=0.2, max_wait=2, retry_exceptions=(httpx.TransportError,))
    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return self._get_client().request(method, f"/objects/{path}", **kwargs)

    def upload_attachment(self, path: str, data: bytes, content_type: str) -> str:
        """
        Store ``data`` at ``path``.

        Returns:
            The URL the object can be fetched from.

        Raises:
            ServiceUnavailableError: If storage is not configured.
            StorageError: If the upload fails.
        """
        self._ensure_configured()
        start_time = time.perf_counter()
        success = False
        try:
            response = self._send(
                "PUT", path, content=data, headers={"Content-Type": content_type}
            )
            if response.status_code >= 400:
                raise StorageError(f"Upload of {path} rejected with {response.status_code}", path=path)
            success = True
            body = response.json() if response.content else {}
            return body.get("url") or self.public_url(path)
        except httpx.HTTPError as e:
            raise StorageError(f"Upload of {path} failed: {e}", path=path) from e
        finally:
            log_external_call(
                LOGGER,
                service="storage",
                operation="upload_attachment",
                success=success,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                path=path,
                size=len(data),
            )

    def delete_attachment(self, path: str) -> None:
        """Delete the object at ``path``. Deleting a missing object is not an error."""
        self._ensure_configured()
        start_time = time.perf_counter()
        success = False
        try:
            response = self._send("DELETE", path)
            if response.status_code >= 400 and response.status_code != 404:
                raise StorageError(f"Delete of {path} rejected with {response.status_code}", path=path)
            success = True
        except httpx.HTTPError as e:
            raise StorageError(f"Delete of {path} failed: {e}", path=path) from e
        finally:
            log_external_call(
                LOGGER,
                service="storage",
                operation="delete_attachment",
                success=success,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                path=path,
            )


_client: Optional[StorageClient] = None


def get_storage_client() -> StorageClient:
    """Get the global StorageClient instance."""
    global _client
    if _client is None:
        _client = StorageClient()
    return _client


__all__ = [
    "StorageClient",
    "get_storage_client",
]
