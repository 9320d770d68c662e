"""Security event monitor.

Identity code reports what happened (logins, failures, revocations,
evictions) through ``emit``. The monitor logs each event, keeps a bounded
history with per-type counters, and raises a webhook alert when a type
crosses its threshold. Alerts for one type are sent at most once an hour.
"""

import asyncio
import logging
import threading
import uuid
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Protocol

from app.services.webhook_alerting import send_alert

logger = logging.getLogger(__name__)


class SecurityEventType(str, Enum):
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    TOKEN_REVOKED = "token_revoked"
    SESSION_EVICTED = "session_evicted"
    SESSION_INVALIDATED = "session_invalidated"
    CSRF_ATTEMPT = "csrf_attempt"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


class SecurityEventLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


DEFAULT_ALERT_THRESHOLDS: dict[SecurityEventType, int] = {
    SecurityEventType.AUTH_FAILURE: 10,
    SecurityEventType.RATE_LIMIT_EXCEEDED: 20,
    SecurityEventType.CSRF_ATTEMPT: 1,
}

ALERT_COOLDOWN = timedelta(hours=1)

_LOG_LEVELS = {
    SecurityEventLevel.INFO: logging.INFO,
    SecurityEventLevel.WARNING: logging.WARNING,
    SecurityEventLevel.ERROR: logging.ERROR,
    SecurityEventLevel.CRITICAL: logging.CRITICAL,
}

_SENSITIVE_KEYS = ("password", "secret", "verifier", "authorization", "access_token", "refresh_token")


def _redact(metadata: dict[str, Any]) -> dict[str, Any]:
    """Drop values of secret-looking keys and truncate long strings."""
    clean: dict[str, Any] = {}
    for key, value in metadata.items():
        key_lower = key.lower()
        if any(s in key_lower for s in _SENSITIVE_KEYS):
            clean[key] = "[REDACTED]"
        elif isinstance(value, str) and len(value) > 200:
            clean[key] = value[:200] + "...[truncated]"
        else:
            clean[key] = value
    return clean


class SecurityEventSink(Protocol):
    def emit(
        self,
        event_type: SecurityEventType,
        level: SecurityEventLevel = SecurityEventLevel.INFO,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    type: SecurityEventType
    level: SecurityEventLevel
    timestamp: datetime
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["level"] = self.level.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


AlertSender = Callable[..., Awaitable[Any]]


class SecurityMonitor:
    """In-process security event sink with threshold alerting."""

    _instance: Optional["SecurityMonitor"] = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        max_events: int = 10000,
        alert_thresholds: dict[SecurityEventType, int] | None = None,
        alert_sender: AlertSender = send_alert,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._events: deque[SecurityEvent] = deque(maxlen=max_events)
        self._type_counts: Counter[SecurityEventType] = Counter()
        self._level_counts: Counter[SecurityEventLevel] = Counter()
        self._last_alert: dict[SecurityEventType, datetime] = {}
        self.alert_thresholds = dict(
            DEFAULT_ALERT_THRESHOLDS if alert_thresholds is None else alert_thresholds
        )
        self._alert_sender = alert_sender
        self._clock = clock
        self._lock = threading.Lock()
        self._alert_tasks: set[asyncio.Task] = set()

    @classmethod
    def get_instance(cls) -> "SecurityMonitor":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    from app.core.config import settings

                    cls._instance = cls(max_events=settings.security_event_buffer_size)
        return cls._instance

    def emit(
        self,
        event_type: SecurityEventType,
        level: SecurityEventLevel = SecurityEventLevel.INFO,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        event = SecurityEvent(
            id=f"evt_{uuid.uuid4().hex}",
            type=SecurityEventType(event_type),
            level=SecurityEventLevel(level),
            timestamp=self._clock(),
            user_id=user_id,
            metadata=_redact(metadata or {}),
        )

        with self._lock:
            self._events.append(event)
            self._type_counts[event.type] += 1
            self._level_counts[event.level] += 1
            alert_count = self._should_alert(event)

        logger.log(
            _LOG_LEVELS[event.level],
            f"[SECURITY] {event.type.value} user={user_id or '-'}",
            extra={"event": event.to_dict()},
        )

        if alert_count is not None:
            self._dispatch_alert(event, alert_count)

    def _should_alert(self, event: SecurityEvent) -> int | None:
        """Return the running count if an alert is due. Caller holds the lock."""
        threshold = self.alert_thresholds.get(event.type)
        if threshold is None:
            return None
        count = self._type_counts[event.type]
        last = self._last_alert.get(event.type)
        if count >= threshold and (last is None or event.timestamp - last > ALERT_COOLDOWN):
            self._last_alert[event.type] = event.timestamp
            return count
        return None

    def _dispatch_alert(self, event: SecurityEvent, count: int) -> None:
        title = f"Security alert: {event.type.value}"
        message = f"{event.type.value} events reached {count} occurrences"
        logger.warning(f"[SECURITY] {message}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, webhook alert not sent")
            return
        task = loop.create_task(
            self._alert_sender(title, message, "critical", event.to_dict()),
        )
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_tasks.discard)

    def get_recent_events(self, count: int = 100) -> list[SecurityEvent]:
        with self._lock:
            return list(self._events)[-count:]

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_events": len(self._events),
                "max_events": self._events.maxlen,
                "event_counts": {k.value: v for k, v in self._type_counts.items()},
                "level_counts": {k.value: v for k, v in self._level_counts.items()},
                "alert_thresholds": {k.value: v for k, v in self.alert_thresholds.items()},
                "last_alert_times": {k.value: v.isoformat() for k, v in self._last_alert.items()},
            }

    def get_recent_activity(self, duration: timedelta) -> dict[str, Any]:
        cutoff = self._clock() - duration
        with self._lock:
            recent = [e for e in self._events if e.timestamp > cutoff]
        hours = duration.total_seconds() / 3600
        return {
            "duration_seconds": int(duration.total_seconds()),
            "recent_events": len(recent),
            "event_counts": dict(Counter(e.type.value for e in recent)),
            "level_counts": dict(Counter(e.level.value for e in recent)),
            "events_per_hour": len(recent) / hours if hours else 0.0,
        }

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._type_counts.clear()
            self._level_counts.clear()
            self._last_alert.clear()
        logger.info("[SECURITY] All security events cleared")
