"""
Notification inbox routes
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ordercore.api.deps import Actor, get_current_actor, get_notifier
from ordercore.models import NotificationRole, NotificationStatus
from ordercore.schemas.notification import (
    MarkReadResult,
    NotificationList,
    NotificationResponse,
    UnreadCount,
)
from ordercore.services.notification_service import NotificationDispatcher

router = APIRouter()


@router.get("", response_model=NotificationList)
async def list_notifications(
    status: Optional[NotificationStatus] = None,
    role: Optional[NotificationRole] = None,
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    """Current user's notifications, newest first"""
    notifications = await notifier.list_for_user(actor.user_id, role=role, status=status, limit=limit)
    return NotificationList(
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
        unread_count=await notifier.unread_count(actor.user_id, role=role),
    )


@router.get("/unread-count", response_model=UnreadCount)
async def get_unread_count(
    role: Optional[NotificationRole] = None,
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    return UnreadCount(unread_count=await notifier.unread_count(actor.user_id, role=role))


@router.post("/read-all", response_model=MarkReadResult)
async def mark_all_read(
    role: Optional[NotificationRole] = None,
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    return MarkReadResult(updated=await notifier.mark_all_read(actor.user_id, role=role))


@router.post("/{notification_id}/read", response_model=MarkReadResult)
async def mark_read(
    notification_id: int,
    actor: Actor = Depends(get_current_actor),
    notifier: NotificationDispatcher = Depends(get_notifier)
):
    """Mark one notification read. Repeating the call is harmless."""
    updated = await notifier.mark_read(notification_id, user_id=actor.user_id)
    return MarkReadResult(updated=1 if updated else 0)
