"""Application-level telemetry helpers for analysis runs."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any, Callable, Mapping, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}


@dataclass(slots=True)
class RunUsageEvent:
    """Token usage and timing captured for one completed run."""

    tool_id: str
    model: str
    prompt_tokens: int
    response_tokens: int
    thinking_budget: int
    max_tokens: int
    elapsed_seconds: float
    cache_read_tokens: int
    timestamp: float

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)


def summarize_usage(events: Sequence[RunUsageEvent]) -> dict[str, Any]:
    """Aggregate token usage and time across *events*."""

    return {
        "runs": len(events),
        "prompt_tokens": sum(event.prompt_tokens for event in events),
        "response_tokens": sum(event.response_tokens for event in events),
        "cache_read_tokens": sum(event.cache_read_tokens for event in events),
        "elapsed_seconds": round(sum(event.elapsed_seconds for event in events), 3),
    }


class TelemetrySink(Protocol):
    """Sink interface used to collect telemetry events."""

    def record(self, event: RunUsageEvent) -> None:  # pragma: no cover - protocol stub
        ...


class InMemoryTelemetrySink:
    """Simple ring-buffer telemetry sink for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[RunUsageEvent] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: RunUsageEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def tail(self, limit: int | None = None) -> list[RunUsageEvent]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if listeners and callback in listeners:
        listeners.remove(callback)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


__all__ = [
    "InMemoryTelemetrySink",
    "RunUsageEvent",
    "TelemetrySink",
    "emit",
    "register_event_listener",
    "summarize_usage",
    "unregister_event_listener",
]
