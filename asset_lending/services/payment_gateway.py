"""Signed redirect/callback protocol for the card and bank-transfer gateway.

Outbound parameters are canonicalised (keys sorted by byte value, keys and
values form-encoded, joined with ``&``), signed with HMAC-SHA512 and the hex
digest is appended as ``vnp_SecureHash`` after signing. Inbound callbacks are
verified by stripping the hash fields and repeating the same canonicalisation.
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import logging
import os
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Iterable, Mapping
from urllib.parse import quote_plus

from services.errors import GatewayNotConfigured, InvalidSignature, LendingError, LendingValidationError

LOGGER = logging.getLogger("asset_lending.payments")

GATEWAY_VERSION = "2.1.0"
GATEWAY_COMMAND = "pay"
GATEWAY_CURRENCY = "VND"
GATEWAY_ORDER_TYPE = "other"
HASH_FIELD = "vnp_SecureHash"
HASH_TYPE_FIELD = "vnp_SecureHashType"
PAYMENT_EXPIRY_MINUTES = 15
GATEWAY_TZ = timezone(timedelta(hours=7))
WITHDRAWAL_PREFIX = "WD_"

RESPONSE_MESSAGES = {
    "00": "Transaction successful.",
    "07": "Amount deducted, transaction flagged as suspicious.",
    "09": "Card or account is not registered for internet banking.",
    "10": "Card or account authentication failed more than 3 times.",
    "11": "Payment window expired.",
    "12": "Card or account is locked.",
    "13": "Wrong one-time password.",
    "24": "Transaction cancelled by customer.",
    "51": "Insufficient funds in the account.",
    "65": "Daily transaction limit exceeded.",
    "75": "Bank is under maintenance.",
    "79": "Wrong payment password entered too many times.",
    "99": "Unknown error.",
}

ACK_SUCCESS = ("00", "Confirm Success")
ACK_BY_ERROR_CODE = {
    "PaymentNotFound": ("01", "Order not found"),
    "PaymentAlreadyProcessed": ("02", "Order already confirmed"),
    "PaymentNotReady": ("02", "Order already confirmed"),
    "PaymentAmountMismatch": ("04", "Invalid Amount"),
    "InvalidSignature": ("97", "Invalid Checksum"),
}
ACK_FORBIDDEN = ("99", "Forbidden")
ACK_UNKNOWN = ("99", "Unknown error")


@dataclass(frozen=True)
class GatewayConfig:
    tmn_code: str
    hash_secret: str
    gateway_url: str
    return_url: str


def load_gateway_config() -> GatewayConfig:
    return GatewayConfig(
        tmn_code=(os.environ.get("PAYMENT_TMN_CODE") or "").strip(),
        hash_secret=(os.environ.get("PAYMENT_HASH_SECRET") or "").strip(),
        gateway_url=(os.environ.get("PAYMENT_GATEWAY_URL") or "https://sandbox.vnpayment.vn/paymentv2/vpcpay.html").strip(),
        return_url=(os.environ.get("PAYMENT_RETURN_URL") or "http://localhost:8000/api/payment/return").strip(),
    )


def _require_secret(secret: str) -> bytes:
    if not secret:
        raise GatewayNotConfigured("PAYMENT_HASH_SECRET must be set to sign gateway requests.")
    return secret.encode("utf-8")


def canonical_query(params: Mapping[str, Any]) -> str:
    pairs = []
    for key in sorted(params, key=lambda item: str(item).encode("utf-8")):
        value = params[key]
        if value is None or value == "":
            continue
        pairs.append(f"{quote_plus(str(key))}={quote_plus(str(value))}")
    return "&".join(pairs)


def sign_params(params: Mapping[str, Any], secret: str) -> str:
    digest = hmac.new(_require_secret(secret), canonical_query(params).encode("utf-8"), hashlib.sha512)
    return digest.hexdigest()


def build_payment_url(params: Mapping[str, Any], config: GatewayConfig) -> str:
    query = canonical_query(params)
    secure_hash = sign_params(params, config.hash_secret)
    return f"{config.gateway_url}?{query}&{HASH_FIELD}={secure_hash}"


def verify_callback(params: Mapping[str, Any], secret: str) -> dict[str, str]:
    """Return the signed parameters when the hash matches; raise InvalidSignature otherwise."""
    received = str(params.get(HASH_FIELD) or "")
    signed = {key: value for key, value in params.items() if key not in {HASH_FIELD, HASH_TYPE_FIELD}}
    if not received:
        raise InvalidSignature("Callback is missing its secure hash.")
    expected = sign_params(signed, secret)
    if not hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8")):
        LOGGER.warning("Callback signature mismatch txn_ref=%s hash_prefix=%s", signed.get("vnp_TxnRef"), received[:8])
        raise InvalidSignature()
    return {str(key): str(value) for key, value in signed.items()}


def to_minor_units(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value(rounding=ROUND_DOWN))


def from_minor_units(raw: Any) -> Decimal:
    try:
        return (Decimal(str(raw)) / 100).quantize(Decimal("0.01"))
    except ArithmeticError as exc:
        raise LendingValidationError("vnp_Amount is not a number.", field="vnp_Amount") from exc


def gateway_timestamp(moment: datetime) -> str:
    """Format a naive-UTC or aware timestamp in the gateway's GMT+7 yyyyMMddHHmmss form."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(GATEWAY_TZ).strftime("%Y%m%d%H%M%S")


def strip_accents(text: str) -> str:
    normalized = unicodedata.normalize("NFD", text or "")
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return stripped.replace("đ", "d").replace("Đ", "D")


def make_external_code(user_id: str, now: datetime, prefix: str = "") -> str:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return f"{prefix}{user_id}_{int(now.timestamp() * 1000)}"


def user_id_from_external_code(code: str) -> str | None:
    raw = code[len(WITHDRAWAL_PREFIX):] if code.startswith(WITHDRAWAL_PREFIX) else code
    user_id, sep, stamp = raw.rpartition("_")
    if not sep or not user_id or not stamp.isdigit():
        return None
    return user_id


def build_payment_params(
    *,
    config: GatewayConfig,
    external_code: str,
    amount: Any,
    order_info: str,
    client_ip: str,
    now: datetime,
    bank_code: str | None = None,
    locale: str = "vn",
) -> dict[str, str]:
    params = {
        "vnp_Version": GATEWAY_VERSION,
        "vnp_Command": GATEWAY_COMMAND,
        "vnp_TmnCode": config.tmn_code,
        "vnp_Locale": locale,
        "vnp_CurrCode": GATEWAY_CURRENCY,
        "vnp_TxnRef": external_code,
        "vnp_OrderInfo": strip_accents(order_info),
        "vnp_OrderType": GATEWAY_ORDER_TYPE,
        "vnp_Amount": str(to_minor_units(amount)),
        "vnp_ReturnUrl": config.return_url,
        "vnp_IpAddr": client_ip,
        "vnp_CreateDate": gateway_timestamp(now),
        "vnp_ExpireDate": gateway_timestamp(now + timedelta(minutes=PAYMENT_EXPIRY_MINUTES)),
    }
    if bank_code:
        params["vnp_BankCode"] = bank_code
    return params


def describe_response_code(code: str | None) -> str:
    return RESPONSE_MESSAGES.get(str(code or ""), RESPONSE_MESSAGES["99"])


def is_success(params: Mapping[str, Any]) -> bool:
    if str(params.get("vnp_ResponseCode") or "") != "00":
        return False
    status = params.get("vnp_TransactionStatus")
    return status is None or str(status) == "00"


def ack_for_error(exc: LendingError) -> tuple[str, str]:
    return ACK_BY_ERROR_CODE.get(exc.code, ACK_UNKNOWN)


def client_ip_allowed(client_ip: str, allowlist: Iterable[str]) -> bool:
    try:
        candidate = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for allowed in allowlist:
        try:
            if candidate in ipaddress.ip_network(allowed, strict=False):
                return True
        except ValueError:
            if client_ip == allowed:
                return True
    return False
