"""Outbound notification delivery to the messaging collaborator."""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

import httpx

from core.config import get_settings
from core.logging_config import get_logger, log_external_call
from core.utils import CircuitBreaker

LOGGER = get_logger(__name__)

_messaging_circuit = CircuitBreaker(name="messaging", failure_threshold=3, recovery_timeout=300)


class MessagingClient:
    """
    Fire-and-forget delivery of workflow notifications.

    Delivery never raises: a failed post is logged and reported as False so
    the calling transition is not rolled back.
    """

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[int] = None,
        dry_run: Optional[bool] = None,
        circuit: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        settings = get_settings()
        self.webhook_url = webhook_url if webhook_url is not None else settings.messaging_webhook_url
        self.timeout = timeout or settings.messaging_timeout
        self.dry_run = settings.dry_run if dry_run is None else dry_run
        self.circuit = circuit or _messaging_circuit
        self._transport = transport

    def emit_notification(self, target_participant_id: str, payload: Dict[str, Any]) -> bool:
        """
        Deliver ``payload`` to one participant.

        Args:
            target_participant_id: Recipient participant id.
            payload: Title, message, category and action link.

        Returns:
            True if the message was accepted (or logged in dry-run mode).
        """
        if self.dry_run:
            LOGGER.info(
                f"[DRY RUN] Notification to {target_participant_id}: {payload.get('title')}",
                extra={"extra_data": {"payload": payload}},
            )
            return True

        if not self.webhook_url:
            LOGGER.debug("Messaging webhook not configured, notification not delivered")
            return False

        if not self.circuit.can_execute():
            LOGGER.warning("Messaging circuit breaker is open")
            return False

        start_time = time.perf_counter()
        success = False
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    self.webhook_url,
                    json={"to": target_participant_id, **payload},
                )
                response.raise_for_status()
            self.circuit.record_success()
            success = True
            return True
        except httpx.HTTPError as e:
            self.circuit.record_failure()
            LOGGER.error(f"Failed to deliver notification to {target_participant_id}: {e}")
            return False
        finally:
            log_external_call(
                LOGGER,
                service="messaging",
                operation="emit_notification",
                success=success,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                participant_id=target_participant_id,
            )


_client: Optional[MessagingClient] = None


def get_messaging_client() -> MessagingClient:
    """Get the global MessagingClient instance."""
    global _client
    if _client is None:
        _client = MessagingClient()
    return _client


__all__ = [
    "MessagingClient",
    "get_messaging_client",
]
