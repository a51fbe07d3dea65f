# file: models/notification.py

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime


class NotificationType(str, Enum):
    TASK_CREATED = "TASK_CREATED"
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_UNASSIGNED = "TASK_UNASSIGNED"
    TASK_STATUS_CHANGED = "TASK_STATUS_CHANGED"
    TASK_DUE_DATE_CHANGED = "TASK_DUE_DATE_CHANGED"
    TASK_COMMENT_ADDED = "TASK_COMMENT_ADDED"
    TASK_FILE_UPLOADED = "TASK_FILE_UPLOADED"
    DEADLINE_REMINDER = "DEADLINE_REMINDER"


class NotificationBase(BaseModel):
    type: NotificationType
    title: str
    message: str
    related_task_id: Optional[int] = None
    triggered_by_id: Optional[int] = None


class NotificationResponse(NotificationBase):
    id: int
    user_id: int
    is_read: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UnreadCountResponse(BaseModel):
    count: int


class MarkAllReadResponse(BaseModel):
    updated: int


class VapidKeyResponse(BaseModel):
    publicKey: str


# --- Web Push ---

class PushSubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionCreate(BaseModel):
    endpoint: str
    keys: PushSubscriptionKeys
    expirationTime: Optional[float] = None


class PushUnsubscribeRequest(BaseModel):
    endpoint: str


class PushPayloadData(BaseModel):
    taskId: Optional[int] = None
    type: str = "general"
    url: str = "/"
    notificationId: Optional[int] = None


class PushPayload(BaseModel):
    """Body delivered to the browser push service and read by the worker's push handler."""
    title: str
    body: str
    icon: str = "/icon-192.png"
    badge: str = "/icon-192.png"
    data: PushPayloadData = Field(default_factory=PushPayloadData)
