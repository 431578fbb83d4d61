"""
Cycle commit events.

The cycle indexer publishes ``CycleCommitted`` after a new cycle counter has been stored;
subscribers (the block builder) run as a separate step once the publish is awaited.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleCommitted:
    counter: int
    marker: str
    start: int  # seconds


class CycleEventBus:
    """In-process fan-out of cycle events to registered handlers."""

    def __init__(self):
        self._handlers: list[Callable[[CycleCommitted], Any]] = []

    def subscribe(self, handler: Callable[[CycleCommitted], Any]):
        """Register a handler; coroutine functions are awaited."""
        self._handlers.append(handler)

    def unsubscribe(self, handler: Callable[[CycleCommitted], Any]):
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, event: CycleCommitted):
        for handler in list(self._handlers):
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                # A failing subscriber must not undo the cycle commit
                logger.error(f"Handler {getattr(handler, '__qualname__', handler)} failed "
                             f"for cycle {event.counter}: {e}")

    @property
    def handler_count(self) -> int:
        return len(self._handlers)
