"""
Cancellation Workflow

Customer files a request, an admin approves or rejects it.

- Filing never changes the primary status; it only flags
  cancellation_status = requested
- Approval cancels the order through the state machine's guarded update
  and is decided exactly once: the request row is claimed with
  WHERE status = 'pending', so a second approver gets ConflictError
- Rejection leaves the primary status untouched
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ordercore.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OrderCoreError,
    OrderValidationError,
)
from ordercore.models import (
    CancellationRequest,
    CancellationRequestStatus,
    CancellationStatus,
    Order,
    OrderStatus,
    CUSTOMER_CANCELLABLE_STATUSES,
    DIRECT_CANCEL_STATUSES,
)
from ordercore.services.notification_service import NotificationDispatcher
from ordercore.services.order_ref import OrderRef
from ordercore.services.order_state_machine import OrderStateMachine
from ordercore.services.side_effects import SideEffectLedger, record_cancellation_effects

logger = logging.getLogger(__name__)


@dataclass
class BulkResult:
    """Outcome of a bulk decision. Each item succeeds or fails on its own."""
    succeeded: List[int] = field(default_factory=list)
    failed: Dict[int, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class CancellationWorkflow:
    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[NotificationDispatcher] = None,
        side_effects: Optional[SideEffectLedger] = None,
    ):
        self.db = db
        self.machine = OrderStateMachine(db, notifier=notifier, side_effects=side_effects)
        self.notifier = self.machine.notifier
        self.side_effects = self.machine.side_effects

    async def get_request(self, request_id: int) -> CancellationRequest:
        result = await self.db.execute(
            select(CancellationRequest)
            .where(CancellationRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError("Cancellation request", request_id)
        return request

    async def pending_request_for(self, order_id: int) -> Optional[CancellationRequest]:
        result = await self.db.execute(
            select(CancellationRequest).where(
                CancellationRequest.order_id == order_id,
                CancellationRequest.status == CancellationRequestStatus.PENDING.value,
            )
        )
        return result.scalar_one_or_none()

    async def list_requests(
        self,
        status: Optional[CancellationRequestStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[CancellationRequest]:
        """Admin queue, newest first, with the order loaded for display."""
        query = select(CancellationRequest).options(selectinload(CancellationRequest.order))
        if status is not None:
            query = query.where(CancellationRequest.status == CancellationRequestStatus(status).value)
        query = query.order_by(CancellationRequest.created_at.desc(), CancellationRequest.id.desc())
        result = await self.db.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all())

    async def file_cancellation(
        self,
        order_id: int,
        user_id: int,
        reason: str,
        comment: Optional[str] = None,
    ) -> CancellationRequest:
        """
        Customer asks to cancel their order.

        Raises:
            OrderValidationError: blank reason
            NotFoundError: no such order
            ForbiddenError: not the customer's order
            InvalidTransitionError: order already packed or beyond
            ConflictError: a request is already pending
        """
        reason = (reason or "").strip()
        if not reason:
            raise OrderValidationError("Please select a reason for cancellation", field="reason")
        comment = (comment or "").strip() or None

        order = await self.machine.get_order(order_id)
        if order.user_id != user_id:
            raise ForbiddenError(
                "You can only cancel your own orders",
                details={"order_id": order_id},
            )

        current = OrderStatus(order.status)
        if current not in CUSTOMER_CANCELLABLE_STATUSES:
            raise InvalidTransitionError(
                f"Order #{order.order_number} is {current.value} and can no longer be cancelled",
                current=current.value,
                target=OrderStatus.CANCELLED.value,
            )

        if await self.pending_request_for(order_id) is not None:
            raise ConflictError(
                f"A cancellation request for order #{order.order_number} is already pending",
                details={"order_id": order_id},
            )

        ref = await OrderRef.load(self.db, order)

        request = CancellationRequest(
            order_id=order_id,
            user_id=user_id,
            reason=reason,
            comment=comment,
            status=CancellationRequestStatus.PENDING.value,
            previous_order_status=current.value,
        )
        self.db.add(request)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                f"A cancellation request for order #{ref.order_number} is already pending",
                details={"order_id": order_id},
            )

        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_([s.value for s in CUSTOMER_CANCELLABLE_STATUSES]),
            )
            .values(
                cancellation_status=CancellationStatus.REQUESTED.value,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                f"Order #{ref.order_number} moved on before the request could be filed. Refresh and try again.",
                details={"order_id": order_id},
            )
        await self.db.commit()
        request_id = request.id

        logger.info(f"Cancellation requested for order {ref.order_number} by user {user_id}: {reason}")

        await self.notifier.notify_cancellation_requested(ref, reason)
        return await self.get_request(request_id)

    async def approve_cancellation(self, request_id: int, admin_id: int) -> CancellationRequest:
        """
        Approve a pending request and cancel the order.

        Raises:
            NotFoundError: no such request
            ConflictError: already decided, or the order left the cancellable
                range (shipped) in the meantime
        """
        request = await self.get_request(request_id)
        if not request.is_pending:
            raise ConflictError(
                f"Cancellation request {request_id} was already {request.status}",
                details={"request_id": request_id, "status": request.status},
            )

        order = await self.machine.get_order(request.order_id)
        ref = await OrderRef.load(self.db, order)
        reason = request.reason
        now = datetime.now(timezone.utc)

        claimed = await self.db.execute(
            update(CancellationRequest)
            .where(
                CancellationRequest.id == request_id,
                CancellationRequest.status == CancellationRequestStatus.PENDING.value,
            )
            .values(
                status=CancellationRequestStatus.APPROVED.value,
                reviewed_at=now,
                reviewed_by=admin_id,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                f"Cancellation request {request_id} was already decided",
                details={"request_id": request_id},
            )

        applied = await self.machine.apply_guarded(
            order,
            OrderStatus.CANCELLED,
            note=f"Cancellation approved: {reason}",
            actor_id=admin_id,
            allowed_from=DIRECT_CANCEL_STATUSES,
            values={"cancellation_status": CancellationStatus.APPROVED.value},
        )
        if not applied:
            await self.db.rollback()
            current = await self.db.scalar(
                select(Order.status).where(Order.id == ref.id)
            )
            raise ConflictError(
                f"Order #{ref.order_number} is already {current} and can no longer be cancelled. "
                f"Reject the request instead.",
                details={"request_id": request_id, "order_id": ref.id, "status": current},
            )
        await self.db.commit()

        logger.info(f"Cancellation request {request_id} approved by admin {admin_id}; order {ref.order_number} cancelled")

        await self.notifier.notify_cancellation_approved(ref)
        await self.notifier.notify_order_cancelled_admins(ref, by_customer=True)
        await record_cancellation_effects(self.side_effects, self.db, ref)
        await self.notifier.notify_commission_rejected(ref)
        return await self.get_request(request_id)

    async def reject_cancellation(self, request_id: int, admin_id: int, admin_note: str) -> CancellationRequest:
        """
        Reject a pending request. The order keeps its primary status.

        Raises:
            OrderValidationError: blank admin note
            NotFoundError: no such request
            ConflictError: already decided
        """
        admin_note = (admin_note or "").strip()
        if not admin_note:
            raise OrderValidationError("Please provide a reason for rejection", field="admin_note")

        request = await self.get_request(request_id)
        if not request.is_pending:
            raise ConflictError(
                f"Cancellation request {request_id} was already {request.status}",
                details={"request_id": request_id, "status": request.status},
            )

        order = await self.machine.get_order(request.order_id)
        ref = await OrderRef.load(self.db, order)
        now = datetime.now(timezone.utc)

        claimed = await self.db.execute(
            update(CancellationRequest)
            .where(
                CancellationRequest.id == request_id,
                CancellationRequest.status == CancellationRequestStatus.PENDING.value,
            )
            .values(
                status=CancellationRequestStatus.REJECTED.value,
                admin_note=admin_note,
                reviewed_at=now,
                reviewed_by=admin_id,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            raise ConflictError(
                f"Cancellation request {request_id} was already decided",
                details={"request_id": request_id},
            )

        await self.db.execute(
            update(Order)
            .where(
                Order.id == ref.id,
                Order.cancellation_status == CancellationStatus.REQUESTED.value,
            )
            .values(cancellation_status=CancellationStatus.REJECTED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(f"Cancellation request {request_id} rejected by admin {admin_id}")

        await self.notifier.notify_cancellation_rejected(ref, admin_note)
        return await self.get_request(request_id)

    async def bulk_approve(self, request_ids: List[int], admin_id: int) -> BulkResult:
        """Approve each request independently; one failure does not stop the rest."""
        result = BulkResult()
        for request_id in request_ids:
            try:
                await self.approve_cancellation(request_id, admin_id)
                result.succeeded.append(request_id)
            except OrderCoreError as e:
                result.failed[request_id] = e.code
                logger.warning(f"Bulk approve: request {request_id} failed: {e.message}")
            except Exception as e:
                await self.db.rollback()
                result.failed[request_id] = "INTERNAL_ERROR"
                logger.error(f"Bulk approve: request {request_id} failed: {e}", exc_info=True)
        logger.info(f"Bulk approve by admin {admin_id}: {len(result.succeeded)} ok, {len(result.failed)} failed")
        return result

    async def bulk_reject(self, request_ids: List[int], admin_id: int, admin_note: str) -> BulkResult:
        """Reject each request independently with the same note."""
        result = BulkResult()
        for request_id in request_ids:
            try:
                await self.reject_cancellation(request_id, admin_id, admin_note)
                result.succeeded.append(request_id)
            except OrderCoreError as e:
                result.failed[request_id] = e.code
                logger.warning(f"Bulk reject: request {request_id} failed: {e.message}")
            except Exception as e:
                await self.db.rollback()
                result.failed[request_id] = "INTERNAL_ERROR"
                logger.error(f"Bulk reject: request {request_id} failed: {e}", exc_info=True)
        logger.info(f"Bulk reject by admin {admin_id}: {len(result.succeeded)} ok, {len(result.failed)} failed")
        return result
