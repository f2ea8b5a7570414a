from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from models.lending_models import AuditLog
from services.settlement_service import utcnow


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: str | int,
    action: str,
    details: str | None = None,
    user_id: str | None = None,
    now: datetime | None = None,
) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=str(entity_id),
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=now or utcnow(),
        )
    )
