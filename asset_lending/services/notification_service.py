from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.deps import reads_store
from models.lending_models import NotificationQueue
from services.settlement_service import utcnow

LOGGER = logging.getLogger("asset_lending.notifications")


def enqueue_notification(
    db: Session,
    user_id: str | None,
    notification_type: str,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> bool:
    """Queue a user-facing message after the settling transaction has committed.

    Delivery is downstream of the lending core, so a failed enqueue is logged
    and reported as False instead of raising.
    """
    try:
        db.add(
            NotificationQueue(
                UserID=user_id,
                NotificationType=notification_type,
                Payload=json.dumps(payload, ensure_ascii=False, default=str),
                CreatedAt=now or utcnow(),
            )
        )
        db.commit()
        return True
    except SQLAlchemyError:
        db.rollback()
        LOGGER.warning("Notification enqueue failed user_id=%s type=%s", user_id, notification_type, exc_info=True)
        return False


@reads_store
def list_pending_notifications(db: Session, limit: int = 100) -> list[dict[str, Any]]:
    rows = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.NotificationID)
        .limit(limit)
    ).scalars().all()
    return [
        {
            "notificationID": n.NotificationID,
            "userID": n.UserID,
            "type": n.NotificationType,
            "payload": n.Payload,
            "createdAt": n.CreatedAt,
        }
        for n in rows
    ]
