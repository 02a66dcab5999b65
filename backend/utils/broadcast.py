from collections import defaultdict
from typing import Any, Dict, Protocol
import json
import logging

from core.security import BranchScope

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_text(self, data: str) -> None: ...


class BroadcastBus:
    """Branch-scoped realtime groups.

    Delivery is at-most-once: a subscriber whose send fails is dropped and
    nothing is retried. Clients reconcile against the REST API on reconnect.
    """

    def __init__(self):
        self._groups: Dict[BranchScope, list[Subscriber]] = defaultdict(list)

    def subscribe(self, scope: BranchScope, subscriber: Subscriber) -> None:
        self._groups[scope].append(subscriber)

    def unsubscribe(self, scope: BranchScope, subscriber: Subscriber) -> None:
        group = self._groups.get(scope)
        if group and subscriber in group:
            group.remove(subscriber)
        if scope in self._groups and not self._groups[scope]:
            del self._groups[scope]

    def subscriber_count(self, scope: BranchScope | None = None) -> int:
        if scope is not None:
            return len(self._groups.get(scope, []))
        return sum(len(group) for group in self._groups.values())

    async def publish(self, scope: BranchScope, event: str, data: Dict[str, Any]) -> int:
        """Send ``{"event", "data"}`` to every subscriber of the branch group."""
        message = json.dumps({"event": event, "data": data}, default=str)
        delivered = 0
        for subscriber in list(self._groups.get(scope, [])):
            try:
                await subscriber.send_text(message)
                delivered += 1
            except Exception as exc:
                logger.info("Dropping realtime subscriber on %s: %s", scope, exc)
                self.unsubscribe(scope, subscriber)
        return delivered
