# file: services/push_service.py

import asyncio
import logging
from typing import List

from pywebpush import webpush, WebPushException
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import VAPID_PUBLIC_KEY, VAPID_PRIVATE_KEY, VAPID_SUBJECT
from app.database.models import PushSubscription
from app.models.notification import PushPayload

logger = logging.getLogger(__name__)

PUSH_SENT = "sent"
PUSH_EXPIRED = "expired"
PUSH_FAILED = "failed"
PUSH_DISABLED = "disabled"

# Push services answer these when a subscription is gone for good
EXPIRED_STATUS_CODES = {404, 410}


def is_push_configured() -> bool:
    return bool(VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY)


async def send_web_push(subscription: PushSubscription, payload: PushPayload) -> str:
    """
    Sends one payload to one browser subscription through its push service.
    Never raises: the outcome is reported as one of the PUSH_* constants.
    """
    if not is_push_configured():
        return PUSH_DISABLED

    subscription_info = {
        "endpoint": subscription.endpoint,
        "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
    }
    try:
        # webpush() is blocking and fills in 'aud'/'exp' on the claims dict it gets
        await asyncio.to_thread(
            webpush,
            subscription_info=subscription_info,
            data=payload.model_dump_json(),
            vapid_private_key=VAPID_PRIVATE_KEY,
            vapid_claims={"sub": VAPID_SUBJECT},
        )
        return PUSH_SENT
    except WebPushException as e:
        status_code = e.response.status_code if e.response is not None else None
        if status_code in EXPIRED_STATUS_CODES:
            logger.info(f"Push subscription {subscription.id} expired ({status_code}), removing it")
            return PUSH_EXPIRED
        logger.error(f"Push service rejected notification for subscription {subscription.id}: {e}")
        return PUSH_FAILED
    except Exception as e:
        logger.error(f"Error sending push to subscription {subscription.id}: {e}")
        return PUSH_FAILED


async def push_to_user(db: AsyncSession, user_id: int, payload: PushPayload) -> List[str]:
    """Delivers a payload to every subscription of a user and prunes the expired ones."""
    if not is_push_configured():
        return []

    result = await db.execute(select(PushSubscription).where(PushSubscription.user_id == user_id))
    subscriptions = result.scalars().all()

    outcomes = []
    expired_ids = []
    for subscription in subscriptions:
        outcome = await send_web_push(subscription, payload)
        outcomes.append(outcome)
        if outcome == PUSH_EXPIRED:
            expired_ids.append(subscription.id)

    if expired_ids:
        await db.execute(delete(PushSubscription).where(PushSubscription.id.in_(expired_ids)))
        await db.commit()
    return outcomes
