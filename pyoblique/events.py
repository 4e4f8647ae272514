import logging
from typing import Any, Callable, List

log = logging.getLogger(__name__)

Listener = Callable[..., Any]


class Event:
    """
    A synchronous event. Listeners are called in registration order with the
    arguments passed to ``raise_event``.
    """

    def __init__(self):
        self._listeners: List[Listener] = []

    @property
    def number_of_listeners(self) -> int:
        return len(self._listeners)

    def add_event_listener(self, listener: Listener) -> Callable[[], None]:
        """Registers a listener and returns a function removing it again."""
        self._listeners.append(listener)

        def remove() -> None:
            self.remove_event_listener(listener)

        return remove

    def remove_event_listener(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    def raise_event(self, *args: Any) -> None:
        # Copy, listeners may unregister themselves while being called
        for listener in list(self._listeners):
            listener(*args)

    def destroy(self) -> None:
        self._listeners.clear()
