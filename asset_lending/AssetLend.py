import logging
import os
import threading
import time

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from db.deps import get_lending_db
from schemas.lending import (
    BikeCheckoutRequest,
    BikeReturnRequest,
    CupCheckoutRequest,
    CupReturnRequest,
    MobilityTripRequest,
    RestockRequest,
)
from schemas.payments import DeviceEventRequest, TopupRequest, WithdrawalDecisionRequest, WithdrawalRequest
from services.device_service import DeviceSignaler, LocationVerifier, LoggingDeviceSignaler, StationTrustingVerifier
from services.errors import InvalidSignature, LendingError
from services.incident_service import device_key_valid, list_open_incidents, record_incident
from services.lending_service import (
    Actor,
    checkout_bike,
    checkout_cup,
    get_checkout,
    list_active_checkouts,
    record_mobility_trip,
    restock_asset,
    return_bike,
    return_cup,
)
from services.notification_service import list_pending_notifications
from services.payment_gateway import (
    ACK_FORBIDDEN,
    ACK_SUCCESS,
    GatewayConfig,
    ack_for_error,
    client_ip_allowed,
    load_gateway_config,
)
from services.payment_service import (
    create_topup,
    decide_withdrawal,
    describe_gateway_return,
    list_withdrawals,
    process_gateway_callback,
    request_withdrawal,
)
from services.reward_ledger import reward_summary
from services.user_access_service import read_session, revoke_session_token
from services.wallet_ledger import balance_report, list_entries, serialize_entry

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

LENDING_THROTTLE_WINDOW_SECONDS = int(os.environ.get("LENDING_THROTTLE_WINDOW_SECONDS") or "60")
LENDING_THROTTLE_MAX_REQUESTS = int(os.environ.get("LENDING_THROTTLE_MAX_REQUESTS") or "10")
API_LOGGER = logging.getLogger("asset_lending.api")
PAYMENT_LOGGER = logging.getLogger("asset_lending.payments")
IOT_LOGGER = logging.getLogger("asset_lending.iot")
_THROTTLE_LOCK = threading.Lock()
_REQUESTS_BY_KEY: dict[str, list[float]] = {}


def get_location_verifier() -> LocationVerifier:
    return StationTrustingVerifier()


def get_device_signaler() -> DeviceSignaler:
    return LoggingDeviceSignaler()


def get_gateway_config() -> GatewayConfig:
    return load_gateway_config()


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _get_peer_ip(request: Request) -> str:
    if _env_flag("PAYMENT_TRUST_FORWARDED_FOR", "false"):
        return _get_client_ip(request)
    return request.client.host if request.client and request.client.host else "unknown"


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(LENDING_THROTTLE_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def _check_request_throttle(key: str) -> int | None:
    now_ts = time.time()
    with _THROTTLE_LOCK:
        attempts = _prune_attempts(_REQUESTS_BY_KEY.get(key, []), now_ts)
        if len(attempts) >= max(LENDING_THROTTLE_MAX_REQUESTS, 1):
            _REQUESTS_BY_KEY[key] = attempts
            return max(1, int((attempts[0] + LENDING_THROTTLE_WINDOW_SECONDS) - now_ts))
        attempts.append(now_ts)
        _REQUESTS_BY_KEY[key] = attempts
    return None


def _enforce_throttle(actor: Actor) -> None:
    key = f"lending:{actor.user_id}"
    retry_after = _check_request_throttle(key)
    if retry_after is not None:
        API_LOGGER.warning("Request throttled key=%s retry_after=%s", key, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )


def _http_error(exc: LendingError, actor: Actor | None = None) -> HTTPException:
    API_LOGGER.info(
        "Request rejected code=%s status=%s user_id=%s",
        exc.code,
        exc.status_code,
        actor.user_id if actor else None,
    )
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _require_actor(session_token: str | None) -> Actor:
    claims = read_session(session_token)
    if not claims:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return Actor(
        user_id=str(claims["sub"]),
        role=str(claims.get("role") or "User"),
        station_ids=tuple(claims.get("stations") or ()),
        rights=dict(claims.get("rights") or {}),
    )


def _require_right(actor: Actor, right: str) -> None:
    if not actor.rights.get(right):
        raise HTTPException(status_code=403, detail=f"Permission '{right}' required.")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/logout")
def auth_logout(x_session_token: str | None = Header(None, alias="X-Session-Token")):
    return {"ok": revoke_session_token(x_session_token)}


@app.post("/api/cups/checkout")
def cup_checkout(
    payload: CupCheckoutRequest,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _require_right(actor, "checkout")
    _enforce_throttle(actor)
    try:
        result = checkout_cup(db, user_id=actor.user_id, asset_id=payload.assetID, branch_id=payload.branchID)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc
    return result.to_dict()


@app.post("/api/cups/return")
def cup_return(
    payload: CupReturnRequest,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _enforce_throttle(actor)
    try:
        result = return_cup(
            db,
            checkout_id=payload.checkoutID,
            actor=actor,
            branch_id=payload.branchID,
            condition=payload.condition,
        )
    except LendingError as exc:
        raise _http_error(exc, actor) from exc
    return result.to_dict()


@app.post("/api/bikes/checkout")
def bike_checkout(
    payload: BikeCheckoutRequest,
    db: Session = Depends(get_lending_db),
    signaler: DeviceSignaler = Depends(get_device_signaler),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _require_right(actor, "checkout")
    _enforce_throttle(actor)
    try:
        result = checkout_bike(
            db,
            user_id=actor.user_id,
            asset_id=payload.assetID,
            station_id=payload.stationID,
            planned_hours=payload.plannedDurationHours,
            signaler=signaler,
        )
    except LendingError as exc:
        raise _http_error(exc, actor) from exc
    return result.to_dict()


@app.post("/api/bikes/return")
def bike_return(
    payload: BikeReturnRequest,
    db: Session = Depends(get_lending_db),
    verifier: LocationVerifier = Depends(get_location_verifier),
    signaler: DeviceSignaler = Depends(get_device_signaler),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _enforce_throttle(actor)
    try:
        result = return_bike(
            db,
            checkout_id=payload.checkoutID,
            actor=actor,
            station_id=payload.stationID,
            distance_km=payload.distanceKm,
            location_verifier=verifier,
            signaler=signaler,
        )
    except LendingError as exc:
        raise _http_error(exc, actor) from exc
    return result.to_dict()


@app.post("/api/mobility/trips")
def mobility_trip(
    payload: MobilityTripRequest,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _enforce_throttle(actor)
    try:
        return record_mobility_trip(
            db,
            user_id=actor.user_id,
            trip_type=payload.tripType,
            fare=payload.fare,
            distance_km=payload.distanceKm,
            route_code=payload.routeCode,
        )
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.get("/api/checkouts/active")
def active_checkouts(
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    try:
        return list_active_checkouts(db, actor.user_id)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.get("/api/checkouts/{checkout_id}")
def checkout_detail(
    checkout_id: str,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    try:
        return get_checkout(db, checkout_id, actor)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.post("/api/assets/{asset_id}/restock")
def restock(
    asset_id: str,
    payload: RestockRequest,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _require_right(actor, "manageAssets")
    try:
        return restock_asset(db, asset_id=asset_id, station_id=payload.stationID, actor=actor)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.get("/api/wallet")
def wallet_balance(
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    try:
        return balance_report(db, actor.user_id)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.get("/api/wallet/history")
def wallet_history(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    try:
        return [serialize_entry(entry) for entry in list_entries(db, actor.user_id, limit)]
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.get("/api/rewards")
def rewards(
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    try:
        return reward_summary(db, actor.user_id, limit)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.post("/api/wallet/topup")
def wallet_topup(
    request: Request,
    payload: TopupRequest,
    db: Session = Depends(get_lending_db),
    config: GatewayConfig = Depends(get_gateway_config),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    try:
        return create_topup(
            db,
            user_id=actor.user_id,
            amount=payload.amount,
            client_ip=_get_client_ip(request),
            config=config,
            bank_code=payload.bankCode,
            order_info=payload.orderInfo,
        )
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.post("/api/wallet/withdraw")
def wallet_withdraw(
    payload: WithdrawalRequest,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    try:
        return request_withdrawal(
            db,
            user_id=actor.user_id,
            amount=payload.amount,
            bank_name=payload.bankName,
            account_number=payload.accountNumber,
            account_name=payload.accountName,
        )
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.get("/api/admin/withdrawals")
def admin_withdrawals(
    status: str | None = Query(None),
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _require_right(actor, "reviewWithdrawals")
    try:
        return list_withdrawals(db, status)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.post("/api/admin/withdrawals/{payment_id}/decide")
def admin_decide_withdrawal(
    payment_id: int,
    payload: WithdrawalDecisionRequest,
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _require_right(actor, "reviewWithdrawals")
    try:
        return decide_withdrawal(
            db,
            payment_id=payment_id,
            decision=payload.decision,
            reviewer_id=actor.user_id,
            reason=payload.reason,
        )
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


def _payment_callback_ip_allowed(client_ip: str) -> bool:
    if (os.environ.get("APP_ENV") or "").strip().lower() != "production":
        return True
    return client_ip_allowed(client_ip, _parse_csv_env("PAYMENT_GATEWAY_IPS", ""))


@app.get("/api/payment/callback")
def payment_callback(
    request: Request,
    db: Session = Depends(get_lending_db),
    config: GatewayConfig = Depends(get_gateway_config),
):
    client_ip = _get_peer_ip(request)
    if not _payment_callback_ip_allowed(client_ip):
        PAYMENT_LOGGER.warning("Callback refused ip=%s reason=ip_not_allowed", client_ip)
        rsp_code, message = ACK_FORBIDDEN
        return JSONResponse(status_code=403, content={"RspCode": rsp_code, "Message": message})

    params = dict(request.query_params)
    try:
        outcome = process_gateway_callback(db, params=params, config=config)
    except InvalidSignature as exc:
        rsp_code, message = ack_for_error(exc)
        PAYMENT_LOGGER.warning("Callback rejected ip=%s txn_ref=%s reason=invalid_signature", client_ip, params.get("vnp_TxnRef"))
        return JSONResponse(status_code=400, content={"RspCode": rsp_code, "Message": message})
    except LendingError as exc:
        rsp_code, message = ack_for_error(exc)
        if exc.category == "Internal":
            # Non-200 so the gateway retries once the service recovers.
            PAYMENT_LOGGER.error("Callback failed ip=%s txn_ref=%s code=%s", client_ip, params.get("vnp_TxnRef"), exc.code)
            return JSONResponse(status_code=exc.status_code, content={"RspCode": rsp_code, "Message": message})
        PAYMENT_LOGGER.warning("Callback not applied ip=%s txn_ref=%s code=%s", client_ip, params.get("vnp_TxnRef"), exc.code)
        return {"RspCode": rsp_code, "Message": message}

    rsp_code, message = ACK_SUCCESS
    return {
        "RspCode": rsp_code,
        "Message": message,
        "status": outcome.status,
        "gatewayMessage": outcome.message,
    }


@app.get("/api/payment/return")
def payment_return(request: Request, config: GatewayConfig = Depends(get_gateway_config)):
    try:
        return describe_gateway_return(dict(request.query_params), config)
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.post("/api/iot/events")
def iot_event(
    payload: DeviceEventRequest,
    request: Request,
    db: Session = Depends(get_lending_db),
    x_device_key: str | None = Header(None, alias="X-Device-Key"),
):
    if not device_key_valid(x_device_key):
        IOT_LOGGER.warning("Device event refused ip=%s reason=invalid_key", _get_client_ip(request))
        raise HTTPException(status_code=401, detail="Invalid device key.")
    try:
        return record_incident(
            db,
            incident_type=payload.eventType,
            description=payload.description,
            asset_id=payload.assetID,
            station_id=payload.stationID,
            user_id=payload.userID,
            priority=payload.priority,
        )
    except LendingError as exc:
        raise _http_error(exc) from exc


@app.get("/api/incidents")
def open_incidents(
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _require_right(actor, "operateStations")
    try:
        return list_open_incidents(db)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc


@app.get("/api/notifications/pending")
def pending_notifications(
    db: Session = Depends(get_lending_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    actor = _require_actor(x_session_token)
    _require_right(actor, "operateStations")
    try:
        return list_pending_notifications(db)
    except LendingError as exc:
        raise _http_error(exc, actor) from exc
