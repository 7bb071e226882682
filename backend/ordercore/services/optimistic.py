"""
Optimistic order view

Client-side helper for admin screens: show an intended change immediately,
then settle on whatever the server answers. The server's state always wins.
Only one intent may be in flight per order.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from ordercore.core.exceptions import ConflictError
from ordercore.models import Order
from ordercore.services.projections import display_status

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ("id", "order_number", "status", "cancellation_status", "payment_status", "updated_at")


def order_snapshot(order: Order) -> Dict[str, Any]:
    """The fields an admin list row renders."""
    snapshot = {name: getattr(order, name) for name in SNAPSHOT_FIELDS}
    snapshot["display_status"] = display_status(order)
    return snapshot


class OptimisticOrderView:
    def __init__(self, snapshot: Mapping[str, Any]):
        self._authoritative: Dict[str, Any] = dict(snapshot)
        self._pending: Optional[Dict[str, Any]] = None

    @property
    def state(self) -> Dict[str, Any]:
        """Authoritative state with the pending intent laid over it."""
        merged = dict(self._authoritative)
        if self._pending:
            merged.update(self._pending)
        return merged

    @property
    def authoritative(self) -> Dict[str, Any]:
        return dict(self._authoritative)

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def apply(self, changes: Mapping[str, Any]) -> Dict[str, Any]:
        if self._pending is not None:
            raise ConflictError(
                f"An update to order {self._authoritative.get('id')} is still in flight",
                details={"pending": dict(self._pending)},
            )
        self._pending = dict(changes)
        return self.state

    def confirm(self, server_state: Mapping[str, Any]) -> Dict[str, Any]:
        """Server accepted; its answer replaces local state."""
        self._authoritative = dict(server_state)
        self._pending = None
        return self.state

    def rollback(self) -> Dict[str, Any]:
        """Server rejected; drop the local intent."""
        if self._pending is not None:
            logger.debug(f"Reverting optimistic update on order {self._authoritative.get('id')}")
        self._pending = None
        return self.state

    def resync(self, server_state: Mapping[str, Any]) -> Dict[str, Any]:
        """A fresh server read. Discards any pending intent."""
        return self.confirm(server_state)

    async def run(
        self,
        changes: Mapping[str, Any],
        command: Callable[[], Awaitable[Mapping[str, Any]]],
    ) -> Dict[str, Any]:
        """apply(), await the server command, then confirm or roll back."""
        self.apply(changes)
        try:
            server_state = await command()
        except Exception:
            self.rollback()
            raise
        return self.confirm(server_state)
