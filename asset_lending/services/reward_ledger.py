from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.deps import reads_store
from models.lending_models import RewardLedgerEntry, User
from services.errors import DuplicateLedgerEntry, UserNotFound
from services.settlement_service import kilograms

# Ledger kind -> cached total column on Users.
_TOTAL_COLUMNS = {
    "points": User.GreenPoints,
    "co2": User.Co2SavedKg,
}


def _normalize_amount(kind: str, amount: Any) -> Decimal:
    if kind == "points":
        return Decimal(int(amount))
    return kilograms(amount)


def post_reward(
    db: Session,
    user_id: str,
    kind: str,
    entry_type: str,
    amount: Any,
    *,
    now: datetime,
    reference_id: str | None = None,
    description: str | None = None,
) -> RewardLedgerEntry:
    if kind not in _TOTAL_COLUMNS:
        raise ValueError(f"Unknown reward ledger kind: {kind}")
    column = _TOTAL_COLUMNS[kind]
    delta = _normalize_amount(kind, amount)
    increment = int(delta) if kind == "points" else delta

    result = db.execute(
        update(User)
        .where(User.UserID == user_id)
        .values({column.key: column + increment})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise UserNotFound(user_id=user_id)
    total = db.execute(select(column).where(User.UserID == user_id)).scalar()

    entry = RewardLedgerEntry(
        UserID=user_id,
        LedgerKind=kind,
        EntryType=entry_type,
        Amount=delta,
        BalanceAfter=_normalize_amount(kind, total or 0),
        ReferenceID=reference_id,
        Description=description,
        CreatedAt=now,
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError as exc:
        raise DuplicateLedgerEntry(entry_type=entry_type, reference_id=reference_id) from exc
    return entry


@reads_store
def reward_summary(db: Session, user_id: str, limit: int = 50) -> dict[str, Any]:
    user = db.execute(
        select(User).where(User.UserID == user_id).execution_options(populate_existing=True)
    ).scalars().first()
    if not user:
        raise UserNotFound(user_id=user_id)
    history = db.execute(
        select(RewardLedgerEntry)
        .where(RewardLedgerEntry.UserID == user_id)
        .order_by(RewardLedgerEntry.EntryID.desc())
        .limit(limit)
    ).scalars().all()
    return {
        "userID": user_id,
        "greenPoints": int(user.GreenPoints or 0),
        "co2SavedKg": kilograms(user.Co2SavedKg or 0),
        "totalCupsSaved": int(user.TotalCupsSaved or 0),
        "history": [
            {
                "entryID": entry.EntryID,
                "kind": entry.LedgerKind,
                "type": entry.EntryType,
                "amount": entry.Amount,
                "balanceAfter": entry.BalanceAfter,
                "referenceID": entry.ReferenceID,
                "description": entry.Description,
                "createdAt": entry.CreatedAt,
            }
            for entry in history
        ],
    }
