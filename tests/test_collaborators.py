"""Tests for collaborator clients, caching, and retry helpers."""
from __future__ import annotations

import time

import httpx
import pytest

from core.exceptions import DirectoryError, ServiceUnavailableError, StorageError
from core.utils import CircuitBreaker


# ============================================================================
# Cache
# ============================================================================


class TestCacheUtilities:
    """Test the caching utilities."""

    def test_ttl_cache_set_get(self):
        from services.cache import TTLCache

        cache = TTLCache(default_ttl_seconds=60)
        cache.set("key1", "value1")

        assert cache.get("key1") == "value1"
        assert cache.size == 1

    def test_ttl_cache_miss(self):
        from services.cache import TTLCache

        cache = TTLCache()
        assert cache.get("nonexistent") is None
        assert cache.stats()["misses"] == 1

    def test_ttl_cache_expiry(self):
        from services.cache import TTLCache

        cache = TTLCache()
        cache.set("key1", "value1", ttl_seconds=0.05)
        time.sleep(0.1)

        assert cache.get("key1") is None
        assert cache.size == 0

    def test_zero_ttl_not_stored(self):
        from services.cache import TTLCache

        cache = TTLCache(default_ttl_seconds=0)
        cache.set("key1", "value1")
        assert cache.size == 0

    def test_cleanup_expired(self):
        from services.cache import TTLCache

        cache = TTLCache()
        cache.set("short", 1, ttl_seconds=0.01)
        cache.set("long", 2, ttl_seconds=60)
        time.sleep(0.05)

        assert cache.cleanup_expired() == 1
        assert cache.get("long") == 2


# ============================================================================
# Retry and circuit breaker
# ============================================================================


class TestRetry:

    def test_with_retry_recovers(self):
        from services.retry import with_retry

        calls = {"n": 0}

        @with_retry(max_attempts=3, min_wait=0, max_wait=0)
        def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise ConnectionError("reset")
            return "ok"

        assert flaky() == "ok"
        assert calls["n"] == 3

    def test_with_retry_gives_up(self):
        from services.retry import with_retry

        @with_retry(max_attempts=2, min_wait=0, max_wait=0)
        def always_down():
            raise TimeoutError("slow")

        with pytest.raises(TimeoutError):
            always_down()

    def test_policy_from_settings(self):
        from core.config import get_settings
        from services.retry import ProjectionRetryPolicy

        policy = ProjectionRetryPolicy.from_settings()
        assert policy.attempts == get_settings().projection_retry_attempts


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=2, recovery_timeout=60)
        assert breaker.can_execute()

        breaker.record_failure()
        breaker.record_failure()

        assert breaker.state == CircuitBreaker.OPEN
        assert not breaker.can_execute()

    def test_success_resets_failures(self):
        breaker = CircuitBreaker("test", failure_threshold=2)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state == CircuitBreaker.CLOSED

    def test_half_open_calls_close_it_again(self):
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0, half_open_max_calls=2)
        breaker.record_failure()
        assert breaker.to_dict()["opened_at"] is not None

        assert breaker.can_execute()
        assert breaker.state == CircuitBreaker.HALF_OPEN
        breaker.record_success()
        breaker.record_success()

        assert breaker.state == CircuitBreaker.CLOSED
        assert breaker.to_dict()["failure_count"] == 0

    def test_failed_half_open_call_reopens(self):
        breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        breaker.can_execute()

        breaker.record_failure()

        assert breaker.state == CircuitBreaker.OPEN


# ============================================================================
# Participant directory
# ============================================================================


class TestParticipantDirectory:

    def _directory(self, handler):
        from services.cache import TTLCache
        from services.directory import ParticipantDirectory

        return ParticipantDirectory(
            base_url="https://directory.test",
            cache=TTLCache(),
            transport=httpx.MockTransport(handler),
        )

    def test_lookup_is_cached(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={
                "displayName": "Sam Seller",
                "contactInfo": {"phone": "+15550100", "email": "sam@example.com"},
            })

        directory = self._directory(handler)
        first = directory.lookup_participant("seller-1")
        second = directory.lookup_participant("seller-1")

        assert first.display_name == "Sam Seller"
        assert first.contact_info == {"phone": "+15550100", "email": "sam@example.com"}
        assert second is first
        assert calls == ["/participants/seller-1"]

    def test_unknown_participant(self):
        directory = self._directory(lambda request: httpx.Response(404))
        assert directory.lookup_participant("ghost") is None

    def test_server_error(self):
        directory = self._directory(lambda request: httpx.Response(500))
        with pytest.raises(DirectoryError):
            directory.lookup_participant("seller-1")

    def test_disabled_without_url(self):
        from services.directory import ParticipantDirectory

        assert ParticipantDirectory(base_url="").lookup_participant("seller-1") is None


# ============================================================================
# Messaging
# ============================================================================


class TestMessagingClient:

    def _client(self, handler, circuit=None):
        from services.messaging import MessagingClient

        return MessagingClient(
            webhook_url="https://hooks.test/notify",
            dry_run=False,
            circuit=circuit or CircuitBreaker("messaging-test", failure_threshold=3),
            transport=httpx.MockTransport(handler),
        )

    def test_dry_run_does_not_post(self):
        from services.messaging import MessagingClient

        client = MessagingClient(webhook_url="https://hooks.test/notify", dry_run=True)
        assert client.emit_notification("buyer-1", {"title": "Hello"}) is True

    def test_delivers_payload(self):
        received = []

        def handler(request):
            received.append(request.read())
            return httpx.Response(202)

        client = self._client(handler)
        assert client.emit_notification("buyer-1", {"title": "Hello"}) is True
        assert b'"to":"buyer-1"' in received[0].replace(b" ", b"")

    def test_failure_is_reported_not_raised(self):
        circuit = CircuitBreaker("messaging-test", failure_threshold=1)
        client = self._client(lambda request: httpx.Response(503), circuit)

        assert client.emit_notification("buyer-1", {"title": "Hello"}) is False
        assert circuit.state == CircuitBreaker.OPEN
        assert client.emit_notification("buyer-1", {"title": "Hello"}) is False

    def test_without_webhook(self):
        from services.messaging import MessagingClient

        client = MessagingClient(webhook_url="", dry_run=False)
        assert client.emit_notification("buyer-1", {"title": "Hello"}) is False


# ============================================================================
# Storage
# ============================================================================


class TestStorageClient:

    def _client(self, handler):
        from services.storage import StorageClient

        return StorageClient(
            base_url="https://storage.test",
            api_key="test-key",
            transport=httpx.MockTransport(handler),
        )

    def test_upload_sends_auth_and_returns_url(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["type"] = request.headers.get("Content-Type")
            return httpx.Response(200)

        url = self._client(handler).upload_attachment("a/b.jpg", b"data", "image/jpeg")

        assert url == "https://storage.test/objects/a/b.jpg"
        assert seen == {"auth": "Bearer test-key", "type": "image/jpeg"}

    def test_upload_rejected(self):
        client = self._client(lambda request: httpx.Response(413))
        with pytest.raises(StorageError):
            client.upload_attachment("a/b.jpg", b"data", "image/jpeg")

    def test_delete_missing_is_fine(self):
        self._client(lambda request: httpx.Response(404)).delete_attachment("a/b.jpg")

    def test_not_configured(self):
        from services.storage import StorageClient

        with pytest.raises(ServiceUnavailableError):
            StorageClient(base_url="", api_key="").upload_attachment("a", b"", "image/jpeg")


# ============================================================================
# CLI
# ============================================================================


class TestCli:

    def test_info(self):
        from typer.testing import CliRunner

        from cli import app

        result = CliRunner().invoke(app, ["info"])

        assert result.exit_code == 0
        assert "Dry Run: True" in result.output
