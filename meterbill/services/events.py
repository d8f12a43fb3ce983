"""Domain events returned by core operations and dispatched by the calling layer.

The core never talks to notification channels directly: each operation returns
its events, and the caller hands them to an EventDispatcher after the
transaction has committed. A failing handler is logged and skipped so delivery
problems can never undo a committed bill or reconciliation.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from meterbill.services.dates import utcnow

logger = logging.getLogger(__name__)

EventHandler = Callable[["DomainEvent"], None]


@dataclass(frozen=True)
class DomainEvent:
    """Something that happened in the billing core."""

    name: str
    entity_id: int | None
    account_id: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class EventDispatcher:
    """Observer list keyed by event name ('*' receives everything)."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._handlers[event_name].append(handler)

    def dispatch(self, events: Iterable[DomainEvent]) -> list[tuple[DomainEvent, Exception]]:
        """Deliver events to subscribers.

        Returns:
            (event, exception) pairs for handlers that failed
        """
        failures: list[tuple[DomainEvent, Exception]] = []
        for event in events:
            for handler in [*self._handlers.get(event.name, []), *self._handlers.get("*", [])]:
                try:
                    handler(event)
                except Exception as e:
                    logger.exception(
                        "Event handler %r failed for %s (entity %s)",
                        getattr(handler, "__name__", handler),
                        event.name,
                        event.entity_id,
                    )
                    failures.append((event, e))
        return failures


__all__ = ["DomainEvent", "EventDispatcher", "EventHandler"]
