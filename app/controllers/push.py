# file: controllers/push.py

import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete

from app.config import VAPID_PUBLIC_KEY
from app.database.connection import get_db
from app.database.models import PushSubscription, User
from app.models.notification import PushSubscriptionCreate, PushUnsubscribeRequest, VapidKeyResponse
from app.services.auth import get_current_user
from app.services.push_service import is_push_configured

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/vapid-public-key", response_model=VapidKeyResponse)
async def get_vapid_public_key():
    """Public half of the VAPID key pair, used by the browser to subscribe."""
    if not is_push_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Push notifications are not configured"
        )
    return {"publicKey": VAPID_PUBLIC_KEY}


@router.post("/notifications/subscribe", status_code=status.HTTP_201_CREATED)
async def subscribe(
        subscription: PushSubscriptionCreate,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    """
    Stores a browser push subscription for the current user.
    Re-subscribing the same endpoint refreshes its keys and owner.
    """
    stmt = select(PushSubscription).where(PushSubscription.endpoint == subscription.endpoint)
    result = await db.execute(stmt)
    db_subscription = result.scalars().first()

    if db_subscription:
        db_subscription.user_id = current_user.id
        db_subscription.p256dh = subscription.keys.p256dh
        db_subscription.auth = subscription.keys.auth
    else:
        db_subscription = PushSubscription(
            user_id=current_user.id,
            endpoint=subscription.endpoint,
            p256dh=subscription.keys.p256dh,
            auth=subscription.keys.auth,
        )
        db.add(db_subscription)
    await db.commit()
    logger.info(f"Push subscription saved for user {current_user.id}")
    return {"success": True}


@router.post("/notifications/unsubscribe")
async def unsubscribe(
        request: PushUnsubscribeRequest,
        current_user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    stmt = delete(PushSubscription).where(
        PushSubscription.endpoint == request.endpoint,
        PushSubscription.user_id == current_user.id
    )
    result = await db.execute(stmt)
    await db.commit()
    return {"success": True, "removed": result.rowcount}
