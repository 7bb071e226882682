"""
Notification schemas
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, Field


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    role: str
    module: str
    type: str
    title: str
    message: str
    status: str
    priority: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    action_url: Optional[str] = None
    action_label: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("extra_data", "metadata"))
    created_at: datetime
    read_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationList(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int


class UnreadCount(BaseModel):
    unread_count: int


class MarkReadResult(BaseModel):
    updated: int
