"""
Audit trail for admin decisions on orders, cancellation requests and returns.

Entries go to the "audit" logger with the structured record under
extra["audit"], so a JSON formatter or log shipper can index them.
"""
import logging
import functools
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any, Callable

from ordercore.core.config import settings
from ordercore.core.exceptions import OrderCoreError

audit_logger = logging.getLogger("audit")
audit_logger.setLevel(logging.INFO)


class AuditAction(str, Enum):
    ORDER_TRANSITION = "order.transition"
    CANCELLATION_APPROVE = "cancellation.approve"
    CANCELLATION_REJECT = "cancellation.reject"
    CANCELLATION_BULK = "cancellation.bulk"
    RETURN_APPROVE = "return.approve"
    RETURN_REJECT = "return.reject"
    RETURN_ADVANCE = "return.advance"
    SHIPMENT_UPDATE = "shipment.update"
    EXPORT = "orders.export"


# Path parameters that identify the resource when the result does not
RESOURCE_ID_PARAMS = ("order_id", "request_id", "return_id")


def log_admin_action(
    action: AuditAction,
    admin_id: Optional[int],
    resource_type: str,
    resource_id: Optional[Any] = None,
    details: Optional[dict] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
):
    """Write one audit entry. Failed attempts are logged at WARNING."""
    action = AuditAction(action)
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "admin_id": admin_id,
        "resource": f"{resource_type}/{resource_id}" if resource_id is not None else resource_type,
        "success": success,
        "ip_address": ip_address,
        "environment": settings.ENVIRONMENT,
        "details": details or {},
    }

    level = logging.INFO if success else logging.WARNING
    outcome = "" if success else " FAILED"
    audit_logger.log(
        level,
        f"AUDIT{outcome}: {action.value} by admin {admin_id} on {entry['resource']}",
        extra={"audit": entry},
    )


def audit_action(action: AuditAction, resource_type: str):
    """
    Audit an admin route.

        @router.post("/orders/{order_id}/transition")
        @audit_action(AuditAction.ORDER_TRANSITION, "order")
        async def transition_order(order_id: int, request: Request, current_admin: Actor = ...):

    Reads `request` (client address) and `current_admin` (Actor) from the
    route's keyword arguments. The resource id comes from the result's `id`,
    or else from the order_id / request_id / return_id path parameter.
    Domain errors are recorded with their code and re-raised.
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            current_admin = kwargs.get("current_admin")
            ip_address = request.client.host if request is not None and request.client else None
            admin_id = getattr(current_admin, "user_id", None)
            resource_id = next((kwargs[p] for p in RESOURCE_ID_PARAMS if p in kwargs), None)

            try:
                result = await func(*args, **kwargs)
            except OrderCoreError as e:
                log_admin_action(
                    action, admin_id, resource_type, resource_id,
                    details={"code": e.code, "error": e.message[:200]},
                    ip_address=ip_address,
                    success=False,
                )
                raise

            result_id = getattr(result, "id", None)
            if result_id is None and isinstance(result, dict):
                result_id = result.get("id")
            log_admin_action(
                action, admin_id, resource_type,
                result_id if result_id is not None else resource_id,
                ip_address=ip_address,
            )
            return result

        return wrapper
    return decorator
