"""
Opt-in daemon telemetry.

Events are buffered in memory and sent to Sentry as one batch, either when the
buffer fills up or when the daemon shuts down (`flush_telemetry`).
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import sentry_sdk
from hercules_device.config import get_global_conf
from hercules_device.utils.logger import logger

MAX_BUFFERED_EVENTS = 200


class EventType(Enum):
    SESSION = "session"
    SNAPSHOT = "snapshot"
    COMMAND = "command"
    ERROR = "error"


@dataclass
class EventData:
    detail: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class TelemetryManager:
    def __init__(self, enabled: Optional[bool] = None, max_buffered: int = MAX_BUFFERED_EVENTS) -> None:
        self.enabled = get_global_conf().should_enable_telemetry() if enabled is None else enabled
        self.max_buffered = max_buffered
        self.events: List[Dict[str, Any]] = []
        if self.enabled:
            self._init_sentry()

    def _init_sentry(self) -> None:
        sentry_dsn = get_global_conf().get_sentry_dsn()
        if not sentry_dsn:
            logger.warning("Sentry DSN not configured. Telemetry events will be collected but not sent.")
            return
        try:
            sentry_sdk.init(dsn=sentry_dsn, traces_sample_rate=1.0)
            logger.info("Sentry initialized for hercules-device")
        except Exception as e:
            logger.error(f"Failed to initialize Sentry: {e}")

    def add_event(self, event_type: EventType, event_data: EventData) -> None:
        if not self.enabled:
            return
        self.events.append(
            {
                "type": event_type.value,
                "timestamp": event_data.timestamp,
                "detail": event_data.detail,
                "metadata": event_data.metadata,
            }
        )
        if len(self.events) >= self.max_buffered:
            self.flush()

    def flush(self) -> None:
        """Send the buffered events as one Sentry message and empty the buffer."""
        if not self.enabled or not self.events:
            return
        batch, self.events = self.events, []
        counts = Counter(event["type"] for event in batch)
        try:
            with sentry_sdk.new_scope() as scope:
                scope.set_extra("telemetry_events", batch)
                for event_type, count in counts.items():
                    scope.set_tag(f"events.{event_type}", count)
                sentry_sdk.capture_message("hercules-device telemetry batch")
            logger.info(f"Sent {len(batch)} telemetry events to Sentry ({dict(counts)})")
        except Exception as e:
            logger.error(f"Failed to send telemetry events to Sentry: {e}")


_telemetry_manager: Optional[TelemetryManager] = None


def get_telemetry_manager() -> TelemetryManager:
    global _telemetry_manager
    if _telemetry_manager is None:
        _telemetry_manager = TelemetryManager()
    return _telemetry_manager


def add_event(event_type: EventType, event_data: EventData) -> None:
    get_telemetry_manager().add_event(event_type, event_data)


def flush_telemetry() -> None:
    """Called from daemon shutdown."""
    get_telemetry_manager().flush()
