import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

Listener = Callable[[str, int], None]

EXPENSE_UPDATED = "expense-updated"


class ChangeNotifier(Protocol):
    def publish(self, event: str, user_id: int) -> None: ...


class NullNotifier:
    def publish(self, event: str, user_id: int) -> None:
        logger.debug(f"notification_dropped: event={event} user_id={user_id}")


class BroadcastNotifier:
    """In-process fan-out of change events.

    Delivery is best effort: a listener that raises is logged and skipped, and
    the publisher never sees the failure.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: str, user_id: int) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, user_id)
            except Exception:
                logger.exception(
                    f"notification_failed: event={event} user_id={user_id}"
                )
