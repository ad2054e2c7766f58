"""Audit log of state transitions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    name: str
    source: str
    timestamp: int
    fields: dict[str, Any] = field(default_factory=dict)


class EventLog:
    """Append-only list of events for one strategy or bundle.

    Changes to an entity carry ``before``/``after`` (or ``old_*``/``new_*``)
    values so the log can be replayed without reading live state.
    """

    def __init__(self, source: str) -> None:
        self._source = source
        self._events: list[Event] = []

    def emit(self, name: str, timestamp: int, **fields: Any) -> Event:
        event = Event(name=name, source=self._source, timestamp=timestamp, fields=fields)
        self._events.append(event)
        logger.info("%s %s %s", self._source, name, fields)
        return event

    def named(self, name: str) -> list[Event]:
        return [e for e in self._events if e.name == name]

    @property
    def last(self) -> Event | None:
        return self._events[-1] if self._events else None

    def __iter__(self):
        return iter(self._events)

    def __len__(self) -> int:
        return len(self._events)
