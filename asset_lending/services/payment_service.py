from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.deps import atomic, reads_store, store_read
from models.lending_models import PaymentTransaction
from services.audit_service import log_audit
from services.errors import (
    ConflictError,
    InsufficientBalance,
    LendingValidationError,
    PaymentAlreadyProcessed,
    PaymentAmountMismatch,
    PaymentNotFound,
    PaymentNotReady,
    UserBlocked,
    WithdrawalLimitExceeded,
)
from services.notification_service import enqueue_notification
from services.payment_gateway import (
    WITHDRAWAL_PREFIX,
    GatewayConfig,
    build_payment_params,
    build_payment_url,
    describe_response_code,
    from_minor_units,
    is_success,
    make_external_code,
    user_id_from_external_code,
    verify_callback,
)
from services.policy import WalletLimits, load_wallet_limits
from services.settlement_service import money, utcnow
from services.wallet_ledger import lock_user, post_entry

LOGGER = logging.getLogger("asset_lending.payments")

TERMINAL_STATUSES = {"completed", "rejected"}
REVIEW_AUDIT_ACTIONS = {"approve": "WithdrawalApproved", "reject": "WithdrawalRejected"}


@dataclass(frozen=True)
class CallbackOutcome:
    payment_id: int
    external_code: str
    direction: str
    status: str
    response_code: str
    message: str
    credited: Decimal


def _check_bounds(amount: Decimal, minimum: Decimal, maximum: Decimal) -> None:
    if amount < minimum or amount > maximum:
        raise LendingValidationError(
            f"amount must be between {minimum} and {maximum}.",
            field="amount",
            min=minimum,
            max=maximum,
        )


def _lock_payment_by_code(db: Session, external_code: str) -> PaymentTransaction:
    stmt = (
        select(PaymentTransaction)
        .where(PaymentTransaction.ExternalCode == external_code)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = db.execute(stmt).scalars().first()
    if not payment:
        raise PaymentNotFound(external_code=external_code)
    return payment


def _lock_payment(db: Session, payment_id: int) -> PaymentTransaction:
    stmt = (
        select(PaymentTransaction)
        .where(PaymentTransaction.PaymentID == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    payment = db.execute(stmt).scalars().first()
    if not payment:
        raise PaymentNotFound(payment_id=payment_id)
    return payment


def _transition_payment(db: Session, payment: PaymentTransaction, expected: str, **values: Any) -> None:
    result = db.execute(
        update(PaymentTransaction)
        .where(PaymentTransaction.PaymentID == payment.PaymentID, PaymentTransaction.Status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PaymentAlreadyProcessed(external_code=payment.ExternalCode)


def _insert_payment(db: Session, payment: PaymentTransaction) -> None:
    db.add(payment)
    try:
        db.flush()
    except IntegrityError as exc:
        raise ConflictError("Payment reference already exists, retry the request.") from exc


def serialize_payment(payment: PaymentTransaction) -> dict[str, Any]:
    return {
        "paymentID": payment.PaymentID,
        "userID": payment.UserID,
        "direction": payment.Direction,
        "amount": payment.Amount,
        "externalCode": payment.ExternalCode,
        "status": payment.Status,
        "needsReview": bool(payment.NeedsReview),
        "bankName": payment.BankName,
        "accountNumber": payment.AccountNumber,
        "accountName": payment.AccountName,
        "responseCode": payment.ResponseCode,
        "reviewedBy": payment.ReviewedBy,
        "reviewedAt": payment.ReviewedAt,
        "reviewReason": payment.ReviewReason,
        "createdAt": payment.CreatedAt,
        "completedAt": payment.CompletedAt,
    }


def create_topup(
    db: Session,
    *,
    user_id: str,
    amount: Any,
    client_ip: str,
    config: GatewayConfig,
    bank_code: str | None = None,
    order_info: str | None = None,
    now: datetime | None = None,
    limits: WalletLimits | None = None,
) -> dict[str, Any]:
    limits = limits or load_wallet_limits()
    now = now or utcnow()
    value = money(amount)
    _check_bounds(value, limits.topup_min, limits.topup_max)
    external_code = make_external_code(user_id, now)
    info = order_info or f"Wallet top-up {external_code}"

    with atomic(db):
        user = lock_user(db, user_id)
        if user.IsBlacklisted:
            raise UserBlocked(reason=user.BlacklistReason or "blacklisted")
        payment = PaymentTransaction(
            UserID=user_id,
            Direction="topup",
            Amount=value,
            ExternalCode=external_code,
            Status="pending",
            NeedsReview=False,
            BankCode=bank_code,
            Description=info,
            CreatedAt=now,
        )
        _insert_payment(db, payment)
        log_audit(db, "Payment", payment.PaymentID, "TopupRequested", f"code={external_code} amount={value}", user_id, now)

    params = build_payment_params(
        config=config,
        external_code=external_code,
        amount=value,
        order_info=info,
        client_ip=client_ip,
        now=now,
        bank_code=bank_code,
    )
    LOGGER.info("Topup requested payment_id=%s code=%s amount=%s", payment.PaymentID, external_code, value)
    return {
        "paymentID": payment.PaymentID,
        "externalCode": external_code,
        "amount": value,
        "status": "pending",
        "paymentUrl": build_payment_url(params, config),
    }


def _withdrawals_today(db: Session, user_id: str, now: datetime) -> int:
    day_start = datetime.combine(now.date(), time.min)
    return int(
        db.execute(
            select(func.count(PaymentTransaction.PaymentID)).where(
                PaymentTransaction.UserID == user_id,
                PaymentTransaction.Direction == "withdrawal",
                PaymentTransaction.CreatedAt >= day_start,
            )
        ).scalar()
        or 0
    )


def request_withdrawal(
    db: Session,
    *,
    user_id: str,
    amount: Any,
    bank_name: str,
    account_number: str,
    account_name: str,
    now: datetime | None = None,
    limits: WalletLimits | None = None,
) -> dict[str, Any]:
    limits = limits or load_wallet_limits()
    now = now or utcnow()
    value = money(amount)
    _check_bounds(value, limits.withdraw_min, limits.withdraw_max)
    external_code = make_external_code(user_id, now, prefix=WITHDRAWAL_PREFIX)
    needs_review = value > limits.withdraw_review_threshold

    with atomic(db):
        user = lock_user(db, user_id)
        if user.IsBlacklisted:
            raise UserBlocked(reason=user.BlacklistReason or "blacklisted")
        if _withdrawals_today(db, user_id, now) >= limits.withdraw_max_per_day:
            raise WithdrawalLimitExceeded(limit=limits.withdraw_max_per_day)
        balance = money(user.WalletBalance or 0)
        if balance < value:
            raise InsufficientBalance(required=value, current=balance)

        payment = PaymentTransaction(
            UserID=user_id,
            Direction="withdrawal",
            Amount=value,
            ExternalCode=external_code,
            Status="pending" if needs_review else "processing",
            NeedsReview=needs_review,
            BankName=bank_name,
            AccountNumber=account_number,
            AccountName=account_name,
            Description=f"Withdrawal to {bank_name}",
            CreatedAt=now,
        )
        _insert_payment(db, payment)
        if not needs_review:
            post_entry(
                db,
                user_id,
                "withdrawal",
                -value,
                description=f"Withdrawal to {bank_name}",
                now=now,
                reference_type="Payment",
                reference_id=external_code,
                require_funds=True,
            )
        log_audit(
            db,
            "Payment",
            payment.PaymentID,
            "WithdrawalRequested",
            f"code={external_code} amount={value} needs_review={needs_review}",
            user_id,
            now,
        )

    LOGGER.info("Withdrawal requested payment_id=%s code=%s amount=%s needs_review=%s", payment.PaymentID, external_code, value, needs_review)
    return serialize_payment(payment)


def decide_withdrawal(
    db: Session,
    *,
    payment_id: int,
    decision: str,
    reviewer_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    if decision not in {"approve", "reject"}:
        raise LendingValidationError("decision must be approve or reject.", field="decision")
    if decision == "reject" and not (reason or "").strip():
        raise LendingValidationError("A reason is required to reject a withdrawal.", field="reason")

    with atomic(db):
        payment = _lock_payment(db, payment_id)
        if payment.Direction != "withdrawal":
            raise LendingValidationError("Only withdrawals can be reviewed.", field="paymentID")
        if payment.Status != "pending":
            raise PaymentAlreadyProcessed(external_code=payment.ExternalCode, status=payment.Status)
        if decision == "approve":
            next_status = "processing"
            _transition_payment(db, payment, "pending", Status=next_status, ReviewedBy=reviewer_id, ReviewedAt=now, ReviewReason=reason)
            post_entry(
                db,
                payment.UserID,
                "withdrawal",
                -money(payment.Amount),
                description=f"Withdrawal to {payment.BankName}",
                now=now,
                reference_type="Payment",
                reference_id=payment.ExternalCode,
                details={"reviewedBy": reviewer_id},
                require_funds=True,
            )
        else:
            next_status = "rejected"
            _transition_payment(
                db,
                payment,
                "pending",
                Status=next_status,
                ReviewedBy=reviewer_id,
                ReviewedAt=now,
                ReviewReason=reason,
                CompletedAt=now,
            )
        log_audit(db, "Payment", payment.PaymentID, REVIEW_AUDIT_ACTIONS[decision], reason, reviewer_id, now)

    LOGGER.info("Withdrawal reviewed payment_id=%s decision=%s reviewer=%s", payment_id, decision, reviewer_id)
    enqueue_notification(
        db,
        payment.UserID,
        "WithdrawalReviewed",
        {"paymentID": payment_id, "status": next_status, "reason": reason},
        now,
    )
    with store_read(db):
        db.refresh(payment)
    return serialize_payment(payment)


def process_gateway_callback(
    db: Session,
    *,
    params: Mapping[str, Any],
    config: GatewayConfig,
    now: datetime | None = None,
) -> CallbackOutcome:
    """Apply a verified gateway callback at most once per external code."""
    now = now or utcnow()
    verified = verify_callback(params, config.hash_secret)
    external_code = verified.get("vnp_TxnRef") or ""
    response_code = verified.get("vnp_ResponseCode") or "99"
    success = is_success(verified)
    credited = money(0)

    with atomic(db):
        payment = _lock_payment_by_code(db, external_code)
        if user_id_from_external_code(external_code) != payment.UserID:
            LOGGER.warning("Callback reference does not match payment owner code=%s payment_id=%s", external_code, payment.PaymentID)
            raise PaymentNotFound("Transaction reference does not belong to the payment owner.", external_code=external_code)
        if from_minor_units(verified.get("vnp_Amount") or "0") != money(payment.Amount):
            raise PaymentAmountMismatch(external_code=external_code)
        if payment.Status in TERMINAL_STATUSES:
            raise PaymentAlreadyProcessed(external_code=external_code, status=payment.Status)
        if payment.Direction == "withdrawal" and payment.Status != "processing":
            raise PaymentNotReady(external_code=external_code, status=payment.Status)

        previous = payment.Status
        next_status = "completed" if success else "rejected"
        _transition_payment(
            db,
            payment,
            previous,
            Status=next_status,
            ResponseCode=response_code,
            GatewayTransactionNo=verified.get("vnp_TransactionNo"),
            BankCode=verified.get("vnp_BankCode") or payment.BankCode,
            CompletedAt=now,
        )
        amount = money(payment.Amount)
        if payment.Direction == "topup" and success:
            post_entry(
                db,
                payment.UserID,
                "deposit_topup",
                amount,
                description="Wallet top-up",
                now=now,
                reference_type="Payment",
                reference_id=external_code,
                details={"transactionNo": verified.get("vnp_TransactionNo"), "bankCode": verified.get("vnp_BankCode")},
            )
            credited = amount
        elif payment.Direction == "withdrawal" and not success:
            post_entry(
                db,
                payment.UserID,
                "withdrawal_reversal",
                amount,
                description="Withdrawal returned by bank",
                now=now,
                reference_type="Payment",
                reference_id=external_code,
                details={"responseCode": response_code},
            )
            credited = amount
        log_audit(
            db,
            "Payment",
            payment.PaymentID,
            "GatewayCallback",
            f"code={external_code} response={response_code} status={next_status}",
            payment.UserID,
            now,
        )

    LOGGER.info(
        "Gateway callback applied code=%s direction=%s response=%s status=%s credited=%s",
        external_code,
        payment.Direction,
        response_code,
        next_status,
        credited,
    )
    enqueue_notification(
        db,
        payment.UserID,
        "PaymentUpdated",
        {"externalCode": external_code, "status": next_status, "message": describe_response_code(response_code)},
        now,
    )
    return CallbackOutcome(
        payment_id=payment.PaymentID,
        external_code=external_code,
        direction=payment.Direction,
        status=next_status,
        response_code=response_code,
        message=describe_response_code(response_code),
        credited=credited,
    )


def describe_gateway_return(params: Mapping[str, Any], config: GatewayConfig) -> dict[str, Any]:
    verified = verify_callback(params, config.hash_secret)
    code = verified.get("vnp_ResponseCode") or "99"
    return {
        "externalCode": verified.get("vnp_TxnRef"),
        "amount": from_minor_units(verified.get("vnp_Amount") or "0"),
        "success": is_success(verified),
        "responseCode": code,
        "message": describe_response_code(code),
    }


@reads_store
def list_withdrawals(db: Session, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
    stmt = select(PaymentTransaction).where(PaymentTransaction.Direction == "withdrawal")
    if status:
        stmt = stmt.where(PaymentTransaction.Status == status)
    rows = db.execute(stmt.order_by(PaymentTransaction.CreatedAt.desc()).limit(limit)).scalars().all()
    return [serialize_payment(row) for row in rows]
