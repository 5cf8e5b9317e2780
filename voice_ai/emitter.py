from __future__ import annotations

from logging import getLogger
from typing import Any, Callable, Dict, Hashable, List, Tuple

logger = getLogger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """
    Per-instance observer registry.

    Maps an event key to an ordered list of listeners. ``emit`` delivers
    synchronously, in registration order. Listeners registered with ``once``
    are removed before they are called.

    A listener that raises is logged and skipped; remaining listeners still
    receive the event and the emitting code (e.g. a receive loop) keeps running.
    """

    def __init__(self) -> None:
        self._listeners: Dict[Hashable, List[Tuple[Listener, bool]]] = {}

    def on(self, event: Hashable, listener: Listener) -> "EventEmitter":
        self._listeners.setdefault(event, []).append((listener, False))
        return self

    def once(self, event: Hashable, listener: Listener) -> "EventEmitter":
        self._listeners.setdefault(event, []).append((listener, True))
        return self

    def off(self, event: Hashable, listener: Listener) -> "EventEmitter":
        """Remove the first registration of ``listener`` for ``event``; unknown listeners are ignored."""
        entries = self._listeners.get(event)
        if not entries:
            return self
        for i, (fn, _) in enumerate(entries):
            if fn == listener:
                del entries[i]
                break
        if not entries:
            del self._listeners[event]
        return self

    def listener_count(self, event: Hashable) -> int:
        return len(self._listeners.get(event, ()))

    def emit(self, event: Hashable, *args: Any) -> bool:
        """Call every listener for ``event``. Returns False if nobody was listening."""
        entries = self._listeners.get(event)
        if not entries:
            return False

        # snapshot, so listeners may subscribe/unsubscribe while we iterate
        snapshot = list(entries)
        for entry in snapshot:
            if entry[1]:
                try:
                    entries.remove(entry)
                except ValueError:
                    pass
        if not entries:
            self._listeners.pop(event, None)

        for fn, _ in snapshot:
            try:
                fn(*args)
            except Exception as e:
                logger.exception("Listener %r for %r crashed: %r", fn, event, e)
        return True
