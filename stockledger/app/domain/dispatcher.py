from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable, DefaultDict, Iterable, List, Type, TypeVar

from stockledger.app.domain.events import DomainEvent

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT", bound=DomainEvent)
Handler = Callable[[EventT], None]


class DomainEventDispatcher:
    """
    In-process, synchronous dispatcher.

        @register_handler(OrderStatusChanged)
        def notify_purchasing(event: OrderStatusChanged) -> None:
            ...

    Services call ``emit()`` only once their unit of work has succeeded.
    A failing handler is logged and does not stop the others, nor the caller.
    """

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[DomainEvent], List[Handler]] = defaultdict(list)

    def register_handler(self, event_type: Type[EventT]):
        def decorator(func: Handler) -> Handler:
            self._handlers[event_type].append(func)
            logger.debug("Registered handler %s for %s", func.__name__, event_type.__name__)
            return func

        return decorator

    def unregister_handler(self, event_type: Type[DomainEvent], func: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if func in handlers:
            handlers.remove(func)

    def emit(self, event: DomainEvent) -> None:
        event_type = type(event)
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            logger.debug("No handlers registered for event %s", event_type.__name__)
            return

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Error while handling event %s in handler %s",
                    event_type.__name__,
                    getattr(handler, "__name__", repr(handler)),
                )

    def emit_all(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            self.emit(event)


dispatcher = DomainEventDispatcher()

register_handler = dispatcher.register_handler
unregister_handler = dispatcher.unregister_handler
emit = dispatcher.emit
emit_all = dispatcher.emit_all
