# file: controllers/notification.py

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from typing import List

from app.database.connection import get_db
from app.database.models import Notification as NotificationModel, User
from app.models.notification import NotificationResponse, UnreadCountResponse, MarkAllReadResponse
from app.services.auth import get_current_user

router = APIRouter()


@router.get("", response_model=List[NotificationResponse])
async def get_user_notifications(
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    """
    Retrieves all notifications for the currently authenticated user,
    ordered by most recent first.
    """
    stmt = (
        select(NotificationModel)
        .where(NotificationModel.user_id == current_user.id)
        .order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc())
    )
    result = await db.execute(stmt)
    return result.scalars().all()


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    stmt = select(func.count(NotificationModel.id)).where(
        NotificationModel.user_id == current_user.id,
        NotificationModel.is_read == False
    )
    result = await db.execute(stmt)
    return {"count": result.scalar_one()}


@router.patch("/mark-all-read", response_model=MarkAllReadResponse)
async def mark_all_notifications_as_read(
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    """
    Marks every unread notification of the current user as read.
    Rows of other users are never touched.
    """
    stmt = (
        update(NotificationModel)
        .where(NotificationModel.user_id == current_user.id, NotificationModel.is_read == False)
        .values(is_read=True)
    )
    result = await db.execute(stmt)
    await db.commit()
    return {"updated": result.rowcount}


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_as_read(
        notification_id: int,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    """
    Marks a specific notification as read.
    """
    stmt = select(NotificationModel).where(
        NotificationModel.id == notification_id,
        NotificationModel.user_id == current_user.id
    )
    result = await db.execute(stmt)
    db_notification = result.scalars().first()

    if not db_notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")

    db_notification.is_read = True
    await db.commit()
    await db.refresh(db_notification)
    return db_notification
