"""Typed publish/subscribe with synchronous delivery."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Generic, TypeVar, Union

from loguru import logger

E = TypeVar("E")

Handler = Callable[[E], Any]

WILDCARD = "*"


class EventEmitter(Generic[E]):
    """Deliver payloads to listeners registered per event name.

    Listeners run synchronously inside ``emit()`` in registration order.
    A failing listener is logged and does not stop the others. Listeners
    registered under ``"*"`` receive every event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler[E]]] = defaultdict(list)

    def on(self, event: Union[str, Any], handler: Handler[E]) -> Callable[[], None]:
        """Register *handler*; returns a function that unregisters it."""
        name = _name(event)
        self._handlers[name].append(handler)
        return lambda: self.off(name, handler)

    def off(self, event: Union[str, Any], handler: Handler[E]) -> None:
        handlers = self._handlers.get(_name(event))
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event: Union[str, Any], payload: E) -> None:
        name = _name(event)
        for handler in list(self._handlers.get(name, ())) + list(self._handlers.get(WILDCARD, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Error in {!r} event listener", name)

    def listener_count(self, event: Union[str, Any, None] = None) -> int:
        if event is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(_name(event), ()))

    def clear(self) -> None:
        self._handlers.clear()


def _name(event: Union[str, Any]) -> str:
    return str(getattr(event, "value", event))
