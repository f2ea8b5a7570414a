from __future__ import annotations

from decimal import Decimal
from typing import Any


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


class LendingError(Exception):
    category = "Internal"
    code = "Internal"
    status_code = 500
    default_message = "Unexpected lending error."

    def __init__(self, message: str | None = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        detail = {"category": self.category, "code": self.code, "message": self.message}
        for key, value in self.extra.items():
            detail[key] = _plain(value)
        return detail


# ValidationError


class LendingValidationError(LendingError):
    category = "ValidationError"
    code = "ValidationError"
    status_code = 400
    default_message = "Invalid request."


# PreconditionFailed


class PreconditionFailed(LendingError):
    category = "PreconditionFailed"
    code = "PreconditionFailed"
    status_code = 409


class UserBlocked(PreconditionFailed):
    code = "UserBlocked"
    status_code = 403
    default_message = "Account is blocked."


class AlreadyRenting(PreconditionFailed):
    code = "AlreadyRenting"
    default_message = "You already have an active bike rental."


class AssetNotAvailable(PreconditionFailed):
    code = "AssetNotAvailable"
    default_message = "Asset is not available."


class InsufficientBalance(PreconditionFailed):
    code = "InsufficientBalance"
    status_code = 402
    default_message = "Insufficient wallet balance."

    def __init__(self, required: Decimal, current: Decimal, message: str | None = None):
        self.required = Decimal(required)
        self.current = Decimal(current)
        super().__init__(message, required=self.required, current=self.current)


class VerificationRequired(PreconditionFailed):
    code = "VerificationRequired"
    status_code = 403
    default_message = "Identity verification is required before renting a bike."

    def __init__(self, message: str | None = None, **extra: Any):
        extra.setdefault("action", "complete_verification")
        super().__init__(message, **extra)


class NotAtStation(PreconditionFailed):
    code = "NotAtStation"
    default_message = "Asset is not at the returning station."


class NotOwner(PreconditionFailed):
    code = "NotOwner"
    status_code = 403
    default_message = "Checkout does not belong to the caller."


class WithdrawalLimitExceeded(PreconditionFailed):
    code = "WithdrawalLimitExceeded"
    status_code = 429
    default_message = "Daily withdrawal limit reached."


# NotFound


class NotFoundError(LendingError):
    category = "NotFound"
    code = "NotFound"
    status_code = 404
    default_message = "Not found."


class UserNotFound(NotFoundError):
    code = "UserNotFound"
    default_message = "User not found."


class AssetNotFound(NotFoundError):
    code = "AssetNotFound"
    default_message = "Asset not found."


class StationNotFound(NotFoundError):
    code = "StationNotFound"
    default_message = "Station not found."


class CheckoutNotFound(NotFoundError):
    code = "CheckoutNotFound"
    default_message = "Checkout not found."


class PaymentNotFound(NotFoundError):
    code = "PaymentNotFound"
    default_message = "Payment transaction not found."


# Conflict


class ConflictError(LendingError):
    category = "Conflict"
    code = "Conflict"
    status_code = 409
    default_message = "Conflicting state change."


class CheckoutAlreadyClosed(ConflictError):
    code = "CheckoutAlreadyClosed"
    default_message = "Checkout is already closed."


class AssetStateMismatch(ConflictError):
    code = "AssetStateMismatch"
    default_message = "Asset state does not match the checkout."


class DuplicateLedgerEntry(ConflictError):
    code = "DuplicateLedgerEntry"
    default_message = "Ledger entry already recorded."


class PaymentAlreadyProcessed(ConflictError):
    code = "PaymentAlreadyProcessed"
    default_message = "Payment transaction already processed."


class PaymentAmountMismatch(ConflictError):
    code = "PaymentAmountMismatch"
    default_message = "Callback amount does not match the payment transaction."


class PaymentNotReady(ConflictError):
    code = "PaymentNotReady"
    default_message = "Payment transaction is awaiting review."


# SignatureInvalid


class InvalidSignature(LendingError):
    category = "SignatureInvalid"
    code = "InvalidSignature"
    status_code = 400
    default_message = "Invalid payment signature."


# Internal


class StoreUnavailable(LendingError):
    category = "Internal"
    code = "StoreUnavailable"
    status_code = 503
    default_message = "Data store unavailable. No changes were applied."


class GatewayNotConfigured(LendingError):
    category = "Internal"
    code = "GatewayNotConfigured"
    status_code = 503
    default_message = "Payment gateway is not configured."
