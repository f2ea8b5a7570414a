from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.deps import reads_store
from models.lending_models import User, WalletLedgerEntry
from services.errors import DuplicateLedgerEntry, InsufficientBalance, UserNotFound
from services.settlement_service import money

WALLET_ENTRY_TYPES = {
    "borrow_fee",
    "return_deposit",
    "rental_fare",
    "trip_fare",
    "deposit_topup",
    "withdrawal",
    "withdrawal_reversal",
}


def lock_user(db: Session, user_id: str) -> User:
    stmt = (
        select(User)
        .where(User.UserID == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = db.execute(stmt).scalars().first()
    if not user:
        raise UserNotFound(user_id=user_id)
    return user


def _cached_balance_or_none(db: Session, user_id: str) -> Decimal | None:
    value = db.execute(select(User.WalletBalance).where(User.UserID == user_id)).scalar()
    if value is None:
        return None
    return money(value)


def current_balance(db: Session, user_id: str) -> Decimal:
    value = _cached_balance_or_none(db, user_id)
    if value is None:
        raise UserNotFound(user_id=user_id)
    return value


def post_entry(
    db: Session,
    user_id: str,
    entry_type: str,
    amount: Any,
    *,
    description: str,
    now: datetime,
    reference_type: str | None = None,
    reference_id: str | None = None,
    details: dict[str, Any] | None = None,
    require_funds: bool = False,
) -> WalletLedgerEntry:
    """Append a ledger entry and move the cached balance by the same signed amount.

    The balance moves with a relative UPDATE on the user row, so concurrent
    credits and debits for one user never overwrite each other. With
    ``require_funds`` the debit only applies while the balance covers it.
    """
    if entry_type not in WALLET_ENTRY_TYPES:
        raise ValueError(f"Unknown wallet entry type: {entry_type}")
    delta = money(amount)

    stmt = update(User).where(User.UserID == user_id)
    if require_funds and delta < 0:
        stmt = stmt.where(User.WalletBalance >= -delta)
    result = db.execute(
        stmt.values(WalletBalance=User.WalletBalance + delta).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        cached = _cached_balance_or_none(db, user_id)
        if cached is None:
            raise UserNotFound(user_id=user_id)
        raise InsufficientBalance(required=-delta, current=cached)

    entry = WalletLedgerEntry(
        UserID=user_id,
        EntryType=entry_type,
        Amount=delta,
        BalanceAfter=current_balance(db, user_id),
        Description=description,
        ReferenceType=reference_type,
        ReferenceID=reference_id,
        Details=json.dumps(details, default=str) if details else None,
        CreatedAt=now,
    )
    db.add(entry)
    try:
        db.flush()
    except IntegrityError as exc:
        raise DuplicateLedgerEntry(entry_type=entry_type, reference_id=reference_id) from exc
    return entry


def recompute_balance(db: Session, user_id: str) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(WalletLedgerEntry.Amount), 0)).where(WalletLedgerEntry.UserID == user_id)
    ).scalar()
    return money(total or 0)


@reads_store
def balance_report(db: Session, user_id: str) -> dict[str, Any]:
    cached = current_balance(db, user_id)
    ledger = recompute_balance(db, user_id)
    return {
        "userID": user_id,
        "balance": cached,
        "ledgerBalance": ledger,
        "consistent": cached == ledger,
    }


@reads_store
def list_entries(db: Session, user_id: str, limit: int = 50) -> list[WalletLedgerEntry]:
    stmt = (
        select(WalletLedgerEntry)
        .where(WalletLedgerEntry.UserID == user_id)
        .order_by(WalletLedgerEntry.EntryID.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def serialize_entry(entry: WalletLedgerEntry) -> dict[str, Any]:
    details = None
    if entry.Details:
        try:
            details = json.loads(entry.Details)
        except (TypeError, ValueError):
            details = None
    return {
        "entryID": entry.EntryID,
        "type": entry.EntryType,
        "amount": entry.Amount,
        "balanceAfter": entry.BalanceAfter,
        "description": entry.Description,
        "referenceType": entry.ReferenceType,
        "referenceID": entry.ReferenceID,
        "details": details,
        "createdAt": entry.CreatedAt,
    }
