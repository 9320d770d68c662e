"""Tests for the security event monitor."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.services.security_events import (
    SecurityEventLevel,
    SecurityEventType,
    SecurityMonitor,
)


class Clock:
    def __init__(self):
        self.now = datetime(2026, 8, 1, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sender() -> AsyncMock:
    return AsyncMock(return_value=True)


@pytest.fixture
def monitor(clock, sender) -> SecurityMonitor:
    return SecurityMonitor(
        max_events=50,
        alert_thresholds={SecurityEventType.AUTH_FAILURE: 3, SecurityEventType.CSRF_ATTEMPT: 1},
        alert_sender=sender,
        clock=clock,
    )


async def drain() -> None:
    """Let scheduled alert tasks run."""
    await asyncio.sleep(0)
    await asyncio.sleep(0)


class TestEmit:
    def test_records_event(self, monitor):
        monitor.emit(
            SecurityEventType.AUTH_SUCCESS, SecurityEventLevel.INFO, "user-1", {"device_class": "web"}
        )

        [event] = monitor.get_recent_events()
        assert event.type == SecurityEventType.AUTH_SUCCESS
        assert event.user_id == "user-1"
        assert event.metadata == {"device_class": "web"}
        assert event.id.startswith("evt_")

    def test_accepts_plain_strings(self, monitor):
        monitor.emit("token_revoked", "warning")

        [event] = monitor.get_recent_events()
        assert event.type == SecurityEventType.TOKEN_REVOKED
        assert event.level == SecurityEventLevel.WARNING

    def test_redacts_secrets(self, monitor):
        monitor.emit(
            SecurityEventType.AUTH_FAILURE,
            metadata={
                "authorization": "Bearer eyJ...",
                "code_verifier": "v" * 50,
                "refresh_token": "eyJ...",
                "reason": "x" * 300,
                "operation": "login",
                "code": "state_not_found",
            },
        )

        metadata = monitor.get_recent_events()[0].metadata
        assert metadata["authorization"] == "[REDACTED]"
        assert metadata["code_verifier"] == "[REDACTED]"
        assert metadata["refresh_token"] == "[REDACTED]"
        assert metadata["reason"].endswith("...[truncated]")
        assert metadata["operation"] == "login"
        assert metadata["code"] == "state_not_found"

    def test_buffer_is_bounded(self, clock, sender):
        monitor = SecurityMonitor(max_events=5, alert_sender=sender, clock=clock)
        for _ in range(8):
            monitor.emit(SecurityEventType.AUTH_SUCCESS)

        metrics = monitor.get_metrics()
        assert metrics["total_events"] == 5
        assert metrics["event_counts"]["auth_success"] == 8

    def test_event_is_logged_with_structured_extra(self, monitor, caplog):
        with caplog.at_level("WARNING", logger="app.services.security_events"):
            monitor.emit(
                SecurityEventType.CSRF_ATTEMPT, SecurityEventLevel.WARNING, None, {"operation": "login"}
            )

        record = next(r for r in caplog.records if "csrf_attempt" in r.getMessage())
        assert record.event["type"] == "csrf_attempt"


class TestAlerts:
    @pytest.mark.asyncio
    async def test_alert_at_threshold(self, monitor, sender):
        for _ in range(2):
            monitor.emit(SecurityEventType.AUTH_FAILURE, SecurityEventLevel.WARNING)
        await drain()
        sender.assert_not_called()

        monitor.emit(SecurityEventType.AUTH_FAILURE, SecurityEventLevel.WARNING)
        await drain()

        sender.assert_awaited_once()
        title, message, severity, details = sender.await_args.args
        assert title == "Security alert: auth_failure"
        assert "3" in message
        assert severity == "critical"
        assert details["type"] == "auth_failure"

    @pytest.mark.asyncio
    async def test_cooldown(self, monitor, sender, clock):
        for _ in range(5):
            monitor.emit(SecurityEventType.AUTH_FAILURE)
        await drain()
        assert sender.await_count == 1

        clock.now += timedelta(hours=1, seconds=1)
        monitor.emit(SecurityEventType.AUTH_FAILURE)
        await drain()
        assert sender.await_count == 2

    @pytest.mark.asyncio
    async def test_types_without_threshold_never_alert(self, monitor, sender):
        for _ in range(20):
            monitor.emit(SecurityEventType.AUTH_SUCCESS)
        await drain()
        sender.assert_not_called()

    def test_no_running_loop_skips_webhook(self, monitor, sender):
        monitor.emit(SecurityEventType.CSRF_ATTEMPT)

        sender.assert_not_called()
        assert "csrf_attempt" in monitor.get_metrics()["last_alert_times"]


class TestQueries:
    def test_recent_activity_window(self, monitor, clock):
        monitor.emit(SecurityEventType.AUTH_SUCCESS)
        clock.now += timedelta(hours=2)
        monitor.emit(SecurityEventType.AUTH_FAILURE)
        monitor.emit(SecurityEventType.AUTH_FAILURE)

        activity = monitor.get_recent_activity(timedelta(hours=1))

        assert activity["recent_events"] == 2
        assert activity["event_counts"] == {"auth_failure": 2}
        assert activity["events_per_hour"] == 2.0

    def test_clear(self, monitor):
        monitor.emit(SecurityEventType.CSRF_ATTEMPT)
        monitor.clear()

        metrics = monitor.get_metrics()
        assert metrics["total_events"] == 0
        assert metrics["event_counts"] == {}
        assert metrics["last_alert_times"] == {}

    def test_singleton(self):
        assert SecurityMonitor.get_instance() is SecurityMonitor.get_instance()
