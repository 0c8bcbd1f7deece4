"""Fire-and-forget telemetry.

Components call :func:`emit` with an event name and flat properties. The
default sink, :class:`LoggingTelemetry`, writes one structured log line per
event. Sink failures are logged and swallowed so telemetry can never change a
categorization outcome.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from .logging_setup import get_logger

_logger = get_logger("hybrid_categorizer.telemetry")


class TelemetrySink(Protocol):
    def capture(self, event: str, properties: Mapping[str, Any]) -> None: ...


class LoggingTelemetry:
    """Sink that logs ``telemetry:<event> key=value ...`` at INFO."""

    def capture(self, event: str, properties: Mapping[str, Any]) -> None:
        rendered = " ".join(f"{k}={v}" for k, v in sorted(properties.items()))
        _logger.info("telemetry:%s %s", event, rendered)


class NullTelemetry:
    def capture(self, event: str, properties: Mapping[str, Any]) -> None:
        return None


def emit(sink: TelemetrySink | None, event: str, **properties: Any) -> None:
    """Send ``event`` to ``sink``; never raises."""

    if sink is None:
        return
    try:
        sink.capture(event, properties)
    except Exception as e:  # noqa: BLE001 - telemetry must not affect outcomes
        _logger.warning("telemetry:sink_failed event=%s error=%s", event, e.__class__.__name__)


__all__ = ["LoggingTelemetry", "NullTelemetry", "TelemetrySink", "emit"]
