"""core/debug_log.py: In-memory ring buffer of pipeline activity.

Keeps the most recent ``capacity`` entries (newest first) for a debug view:
exchange calls, model round trips, tool calls and errors.  Modules never
write here directly; they log with ``extra={"debug_type": ...}`` and
``DebugLogHandler`` mirrors those records into the buffer.
"""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

LogType = Literal[
    "api_call",
    "api_response",
    "ai_request",
    "ai_response",
    "tool_call",
    "tool_response",
    "error",
    "info",
]
LOG_TYPES: tuple[str, ...] = LogType.__args__  # type: ignore[attr-defined]

DEFAULT_CAPACITY = 100

Listener = Callable[[List["LogEntry"]], None]


@dataclass(frozen=True)
class LogEntry:
    id: str
    timestamp: datetime
    type: str
    source: str
    message: str
    data: Optional[Any] = None
    duration_ms: Optional[float] = None


@dataclass
class DebugLog:
    """Bounded newest-first buffer with snapshot listeners."""

    capacity: int = DEFAULT_CAPACITY
    _entries: List[LogEntry] = field(default_factory=list, init=False, repr=False)
    _listeners: List[Listener] = field(default_factory=list, init=False, repr=False)
    _ids: "itertools.count[int]" = field(default_factory=itertools.count, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def add(
        self,
        type: str,
        source: str,
        message: str,
        data: Optional[Any] = None,
        duration_ms: Optional[float] = None,
    ) -> LogEntry:
        if type not in LOG_TYPES:
            raise ValueError(f"Unknown debug log type: {type}")
        entry = LogEntry(
            id=f"log-{next(self._ids)}",
            timestamp=datetime.now(timezone.utc),
            type=type,
            source=source,
            message=message,
            data=data,
            duration_ms=duration_ms,
        )
        with self._lock:
            self._entries.insert(0, entry)
            del self._entries[self.capacity :]
        self._notify()
        return entry

    # ── access ───────────────────────────────────────────────────────────────

    def entries(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        self._notify()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; it receives the current snapshot immediately.

        Returns a callable that removes the listener.
        """
        self._listeners.append(listener)
        listener(self.entries())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.entries()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                logger.debug("Debug log listener failed: %s", exc)


class DebugLogHandler(logging.Handler):
    """Mirrors records logged with ``extra={"debug_type": ...}`` into a ``DebugLog``.

    ERROR records without a ``debug_type`` are captured as ``"error"``.
    """

    def __init__(self, debug_log: DebugLog, level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self.debug_log = debug_log

    def emit(self, record: logging.LogRecord) -> None:
        # the buffer's own listener failures must not loop back into it
        if record.name == __name__:
            return
        debug_type: Optional[str] = getattr(record, "debug_type", None)
        if debug_type is None:
            if record.levelno < logging.ERROR:
                return
            debug_type = "error"
        if debug_type not in LOG_TYPES:
            debug_type = "info"
        try:
            self.debug_log.add(
                debug_type,
                getattr(record, "debug_source", record.name),
                record.getMessage(),
                getattr(record, "debug_data", None),
                getattr(record, "duration_ms", None),
            )
        except Exception:
            self.handleError(record)


def entries_as_dicts(entries: List[LogEntry]) -> List[Dict[str, Any]]:
    return [
        {
            "id": e.id,
            "timestamp": e.timestamp.isoformat(),
            "type": e.type,
            "source": e.source,
            "message": e.message,
            "data": e.data,
            "duration_ms": e.duration_ms,
        }
        for e in entries
    ]
