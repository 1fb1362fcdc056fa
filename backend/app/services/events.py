import logging
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger(__name__)

CART_CHANGED = "cart_changed"
VERIFICATION_CHANGED = "verification_changed"
CHECKOUT_BLOCKED = "checkout_blocked"
CHECKOUT_COMPLETED = "checkout_completed"

EventHandler = Callable[[str, Dict[str, Any]], None]


class SessionEvents:
    """
    Synchronous in-process pub/sub for one shopper session.

    Handlers subscribe to a single event name or to "*" for everything. A failing
    handler is logged and does not stop delivery to the others. Every published
    event is also kept in `history` so the HTTP layer can return what a request
    produced.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self.history: List[Dict[str, Any]] = []

    def subscribe(self, name: str, handler: EventHandler) -> None:
        self._subscribers.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = payload or {}
        self.history.append({"name": name, "payload": payload})
        for handler in list(self._subscribers.get(name, [])) + list(self._subscribers.get("*", [])):
            try:
                handler(name, payload)
            except Exception as e:
                log.error("Handler error for event %s: %s", name, e)

    def names(self) -> List[str]:
        return [e["name"] for e in self.history]
