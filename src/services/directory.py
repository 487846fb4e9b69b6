"""Participant directory client (identity collaborator)."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from core.config import get_settings
from core.exceptions import DirectoryError
from core.logging_config import get_logger, log_external_call
from services.cache import TTLCache, get_participant_cache
from services.retry import with_retry

LOGGER = get_logger(__name__)


@dataclass
class ParticipantInfo:
    """Display name and contact details for a buyer or seller."""

    participant_id: str
    display_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def contact_info(self) -> Dict[str, Optional[str]]:
        return {"phone": self.phone, "email": self.email}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "display_name": self.display_name,
            "contact_info": self.contact_info,
        }

    @classmethod
    def from_payload(cls, participant_id: str, data: Dict[str, Any]) -> "ParticipantInfo":
        contact = data.get("contactInfo") or {}
        return cls(
            participant_id=participant_id,
            display_name=data.get("displayName"),
            phone=contact.get("phone"),
            email=contact.get("email"),
        )


class ParticipantDirectory:
    """Read-only lookups against the identity service, cached per process."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        cache: Optional[TTLCache] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = base_url if base_url is not None else settings.directory_base_url
        self.timeout = timeout or settings.directory_timeout
        self.cache = cache if cache is not None else get_participant_cache()
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            )
        return self._client

    @with_retry(max_attempts=2, min_wait=0.1, max_wait=0.5, retry_exceptions=(httpx.TransportError,))
    def _fetch(self, participant_id: str) -> httpx.Response:
        return self._get_client().get(f"/participants/{participant_id}")

    def lookup_participant(self, participant_id: str) -> Optional[ParticipantInfo]:
        """
        Resolve a participant's display name and contact info.

        Returns:
            ParticipantInfo, or None if the directory is not configured or
            does not know the participant.

        Raises:
            DirectoryError: If the directory is unreachable or answers with an error.
        """
        if not self.enabled:
            LOGGER.debug("Participant directory not configured, skipping lookup")
            return None

        cached = self.cache.get(("participant", participant_id))
        if cached is not None:
            return cached

        start_time = time.perf_counter()
        success = False
        try:
            response = self._fetch(participant_id)
            if response.status_code == 404:
                success = True
                return None
            if response.status_code >= 400:
                raise DirectoryError(
                    f"Directory returned {response.status_code} for participant {participant_id}",
                    participant_id=participant_id,
                )
            info = ParticipantInfo.from_payload(participant_id, response.json())
            self.cache.set(("participant", participant_id), info)
            success = True
            return info
        except httpx.HTTPError as e:
            raise DirectoryError(f"Directory lookup failed: {e}", participant_id=participant_id) from e
        finally:
            log_external_call(
                LOGGER,
                service="directory",
                operation="lookup_participant",
                success=success,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                participant_id=participant_id,
            )


_directory: Optional[ParticipantDirectory] = None


def get_participant_directory() -> ParticipantDirectory:
    """Get the global ParticipantDirectory instance."""
    global _directory
    if _directory is None:
        _directory = ParticipantDirectory()
    return _directory


__all__ = [
    "ParticipantDirectory",
    "ParticipantInfo",
    "get_participant_directory",
]
