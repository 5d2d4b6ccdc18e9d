"""
Typed publish/subscribe used by the capture engine, channel and coordinator.

Each component declares an ``Enum`` of event kinds and owns one
:class:`EventEmitter` keyed by it. ``subscribe`` returns a disposer so callers
can release their subscription in a ``finally`` block or on teardown.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Generic, Hashable, List, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
Listener = Callable[..., None]
Disposer = Callable[[], None]


class EventEmitter(Generic[K]):
    """Ordered fan-out of events to listeners registered per kind.

    Listeners are called synchronously, in subscription order. A listener that
    raises is logged and skipped; the remaining listeners still run.

    Example:
        >>> emitter: EventEmitter[str] = EventEmitter()
        >>> dispose = emitter.subscribe("tick", print)
        >>> emitter.emit("tick", 1)
        1
        >>> dispose()
        >>> emitter.emit("tick", 2)
    """

    def __init__(self) -> None:
        self._listeners: Dict[K, List[Listener]] = {}

    def subscribe(self, kind: K, listener: Listener) -> Disposer:
        self._listeners.setdefault(kind, []).append(listener)

        def dispose() -> None:
            listeners = self._listeners.get(kind)
            if listeners and listener in listeners:
                listeners.remove(listener)

        return dispose

    def emit(self, kind: K, *args: Any) -> int:
        """Call every listener for ``kind`` and return how many were called."""
        listeners = list(self._listeners.get(kind, ()))
        for listener in listeners:
            try:
                listener(*args)
            except Exception:  # noqa: BLE001
                logger.exception("Listener for %s failed", kind)
        return len(listeners)

    def has_listeners(self, kind: K) -> bool:
        return bool(self._listeners.get(kind))

    def clear(self) -> None:
        self._listeners.clear()
