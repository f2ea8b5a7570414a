from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.deps import atomic, reads_store, store_read
from models.lending_models import Asset, Checkout, MobilityTrip, Station, User
from services.asset_registry import claim_asset, lock_asset, release_asset, return_to_service
from services.audit_service import log_audit
from services.device_service import DeviceSignaler, LocationVerifier, StationTrustingVerifier, signal_device
from services.errors import (
    AlreadyRenting,
    AssetNotAvailable,
    AssetStateMismatch,
    CheckoutAlreadyClosed,
    CheckoutNotFound,
    InsufficientBalance,
    LendingValidationError,
    NotAtStation,
    NotOwner,
    StationNotFound,
    UserBlocked,
    VerificationRequired,
)
from services.notification_service import enqueue_notification
from services.policy import BikePolicy, CupPolicy, MobilityPolicy, load_bike_policy, load_cup_policy, load_mobility_policy
from services.reward_ledger import post_reward
from services.settlement_service import (
    CUP_CONDITIONS,
    bike_fare_for,
    money,
    settle_bike_return,
    settle_cup_return,
    settle_mobility_trip,
    utcnow,
    validate_distance,
)
from services.wallet_ledger import current_balance, lock_user, post_entry

LOGGER = logging.getLogger("asset_lending.lending")

STATION_KIND_BY_ASSET = {"cup": "store", "bike": "bike_station"}


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = "User"
    station_ids: tuple = ()
    rights: dict = field(default_factory=dict)

    def can_operate(self, station_id: str | None) -> bool:
        if self.role == "Admin":
            return True
        if self.role != "Staff" or not self.rights.get("operateStations"):
            return False
        return bool(station_id) and station_id in self.station_ids


@dataclass(frozen=True)
class CheckoutResult:
    checkout_id: str
    asset_id: str
    kind: str
    charge: Decimal
    balance: Decimal
    opened_at: datetime
    due_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkoutID": self.checkout_id,
            "assetID": self.asset_id,
            "kind": self.kind,
            "charge": self.charge,
            "newBalance": self.balance,
            "openedAt": self.opened_at,
            "dueAt": self.due_at,
        }


@dataclass(frozen=True)
class ReturnResult:
    checkout_id: str
    asset_id: str
    kind: str
    outcome: dict
    refund: Decimal
    penalty: Decimal
    balance: Decimal
    points_earned: int
    co2_saved_kg: Decimal
    asset_status: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkoutID": self.checkout_id,
            "assetID": self.asset_id,
            "kind": self.kind,
            "outcome": self.outcome,
            "refund": self.refund,
            "penalty": self.penalty,
            "newBalance": self.balance,
            "pointsEarned": self.points_earned,
            "co2SavedKg": self.co2_saved_kg,
            "assetStatus": self.asset_status,
            "message": self.message,
        }


def _require_station(db: Session, station_id: str, kind: str | None) -> Station:
    station = db.get(Station, station_id)
    if not station or not station.IsActive or (kind and station.Kind != kind):
        raise StationNotFound(station_id=station_id)
    return station


def _lock_eligible_user(db: Session, user_id: str) -> User:
    user = lock_user(db, user_id)
    if user.IsBlacklisted:
        raise UserBlocked(reason=user.BlacklistReason or "blacklisted")
    return user


def _lock_asset_of_kind(db: Session, asset_id: str, kind: str) -> Asset:
    asset = lock_asset(db, asset_id)
    if asset.Kind != kind:
        raise LendingValidationError(f"Asset {asset_id} is not a {kind}.", field="assetID")
    return asset


def _require_available(asset: Asset) -> None:
    if asset.Status != "available" or asset.CurrentCheckoutID:
        raise AssetNotAvailable(asset_id=asset.AssetID, status=asset.Status)


def _require_funds(user: User, required: Decimal) -> None:
    balance = money(user.WalletBalance or 0)
    if balance < required:
        raise InsufficientBalance(required=required, current=balance)


def _ongoing_bike_checkout(db: Session, user_id: str) -> Checkout | None:
    stmt = select(Checkout).where(
        Checkout.UserID == user_id,
        Checkout.AssetKind == "bike",
        Checkout.Status == "ongoing",
    )
    return db.execute(stmt).scalars().first()


def _open_checkout(
    db: Session,
    *,
    checkout_id: str,
    asset: Asset,
    user_id: str,
    station_id: str,
    opened_at: datetime,
    due_at: datetime,
    charge: Decimal,
    planned_hours: int | None = None,
) -> Checkout:
    checkout = Checkout(
        CheckoutID=checkout_id,
        AssetID=asset.AssetID,
        AssetKind=asset.Kind,
        UserID=user_id,
        OpenedAt=opened_at,
        DueAt=due_at,
        Status="ongoing",
        ChargeBasis=charge,
        PlannedDurationHours=planned_hours,
        OpenLocationID=station_id,
    )
    db.add(checkout)
    try:
        db.flush()
    except IntegrityError as exc:
        message = str(exc.orig)
        if asset.Kind == "bike" and ("OngoingBikeUser" in message or "Checkouts.UserID" in message):
            raise AlreadyRenting(user_id=user_id) from exc
        raise AssetNotAvailable("Asset already has an ongoing checkout.", asset_id=asset.AssetID) from exc
    return checkout


def _lock_open_checkout(
    db: Session,
    checkout_id: str,
    actor: Actor,
    kind: str,
    station_id: str,
    for_update: bool = True,
) -> Checkout:
    stmt = select(Checkout).where(Checkout.CheckoutID == checkout_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    checkout = db.execute(stmt).scalars().first()
    if not checkout:
        raise CheckoutNotFound(checkout_id=checkout_id)
    if checkout.AssetKind != kind:
        raise LendingValidationError(f"Checkout {checkout_id} is not a {kind} checkout.", field="checkoutID")
    if checkout.UserID != actor.user_id and not actor.can_operate(station_id):
        raise NotOwner(checkout_id=checkout_id)
    if checkout.Status != "ongoing":
        raise CheckoutAlreadyClosed(checkout_id=checkout_id, closedAt=str(checkout.ClosedAt or ""))
    return checkout


def _require_asset_reference(asset: Asset, checkout: Checkout) -> None:
    if asset.Status != "in_use" or asset.CurrentCheckoutID != checkout.CheckoutID:
        raise AssetStateMismatch(asset_id=asset.AssetID, checkout_id=checkout.CheckoutID)


def _close_checkout(
    db: Session,
    checkout: Checkout,
    *,
    now: datetime,
    station_id: str,
    outcome: dict,
    closed_by: str,
    condition: str | None = None,
    distance_km: Decimal | None = None,
) -> None:
    result = db.execute(
        update(Checkout)
        .where(Checkout.CheckoutID == checkout.CheckoutID, Checkout.Status == "ongoing")
        .values(
            Status="completed",
            ClosedAt=now,
            CloseLocationID=station_id,
            Outcome=json.dumps(outcome),
            ClosedBy=closed_by,
            ReturnCondition=condition,
            DistanceKm=distance_km,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CheckoutAlreadyClosed(checkout_id=checkout.CheckoutID)


def checkout_cup(
    db: Session,
    *,
    user_id: str,
    asset_id: str,
    branch_id: str,
    now: datetime | None = None,
    policy: CupPolicy | None = None,
) -> CheckoutResult:
    policy = policy or load_cup_policy()
    now = now or utcnow()
    deposit = money(policy.deposit)
    checkout_id = str(uuid.uuid4())
    due_at = now + timedelta(hours=policy.borrow_hours)

    with atomic(db):
        _require_station(db, branch_id, "store")
        user = _lock_eligible_user(db, user_id)
        asset = _lock_asset_of_kind(db, asset_id, "cup")
        _require_available(asset)
        _require_funds(user, deposit)

        claim_asset(db, asset, user_id, checkout_id, now)
        _open_checkout(
            db,
            checkout_id=checkout_id,
            asset=asset,
            user_id=user_id,
            station_id=branch_id,
            opened_at=now,
            due_at=due_at,
            charge=deposit,
        )
        entry = post_entry(
            db,
            user_id,
            "borrow_fee",
            -deposit,
            description=f"Cup deposit {asset_id}",
            now=now,
            reference_type="Checkout",
            reference_id=checkout_id,
            details={"assetID": asset_id, "branchID": branch_id},
            require_funds=True,
        )
        balance = money(entry.BalanceAfter)
        log_audit(db, "Checkout", checkout_id, "CupCheckout", f"asset={asset_id} branch={branch_id} deposit={deposit}", user_id, now)

    LOGGER.info("Checkout opened checkout_id=%s asset_id=%s user_id=%s charge=%s", checkout_id, asset_id, user_id, deposit)
    result = CheckoutResult(checkout_id, asset_id, "cup", deposit, balance, now, due_at)
    enqueue_notification(db, user_id, "CheckoutOpened", result.to_dict(), now)
    return result


def checkout_bike(
    db: Session,
    *,
    user_id: str,
    asset_id: str,
    station_id: str,
    planned_hours: int,
    signaler: DeviceSignaler | None = None,
    now: datetime | None = None,
    policy: BikePolicy | None = None,
) -> CheckoutResult:
    policy = policy or load_bike_policy()
    now = now or utcnow()
    fare = bike_fare_for(planned_hours, policy)
    checkout_id = str(uuid.uuid4())
    due_at = now + timedelta(hours=planned_hours)

    with atomic(db):
        _require_station(db, station_id, "bike_station")
        user = _lock_eligible_user(db, user_id)
        active = _ongoing_bike_checkout(db, user_id)
        if active:
            raise AlreadyRenting(checkout_id=active.CheckoutID, asset_id=active.AssetID)
        asset = _lock_asset_of_kind(db, asset_id, "bike")
        _require_available(asset)
        if asset.HomeLocationID != station_id:
            raise AssetNotAvailable("Bike is not docked at this station.", asset_id=asset_id, station_id=station_id)
        _require_funds(user, fare)
        if not user.IsVerified:
            raise VerificationRequired()

        claim_asset(db, asset, user_id, checkout_id, now)
        _open_checkout(
            db,
            checkout_id=checkout_id,
            asset=asset,
            user_id=user_id,
            station_id=station_id,
            opened_at=now,
            due_at=due_at,
            charge=fare,
            planned_hours=planned_hours,
        )
        entry = post_entry(
            db,
            user_id,
            "rental_fare",
            -fare,
            description=f"Bike rental {asset_id} ({planned_hours}h)",
            now=now,
            reference_type="Checkout",
            reference_id=checkout_id,
            details={"assetID": asset_id, "stationID": station_id, "plannedDurationHours": planned_hours},
            require_funds=True,
        )
        balance = money(entry.BalanceAfter)
        log_audit(db, "Checkout", checkout_id, "BikeCheckout", f"asset={asset_id} station={station_id} fare={fare}", user_id, now)

    LOGGER.info("Checkout opened checkout_id=%s asset_id=%s user_id=%s charge=%s", checkout_id, asset_id, user_id, fare)
    signal_device(signaler, asset_id, "unlock")
    result = CheckoutResult(checkout_id, asset_id, "bike", fare, balance, now, due_at)
    enqueue_notification(db, user_id, "CheckoutOpened", result.to_dict(), now)
    return result


def _cup_return_message(refund: Decimal, overdue_penalty: Decimal, damage_penalty: Decimal, hours: int, points: int) -> str:
    parts = [f"Cup returned. Refund {refund} VND."]
    if hours:
        parts.append(f"Overdue {hours}h, penalty {overdue_penalty} VND.")
    if damage_penalty:
        parts.append(f"Damage penalty {damage_penalty} VND.")
    if points:
        parts.append(f"+{points} points.")
    return " ".join(parts)


def return_cup(
    db: Session,
    *,
    checkout_id: str,
    actor: Actor,
    branch_id: str,
    condition: str,
    now: datetime | None = None,
    policy: CupPolicy | None = None,
) -> ReturnResult:
    policy = policy or load_cup_policy()
    now = now or utcnow()
    if condition not in CUP_CONDITIONS:
        raise LendingValidationError(f"condition must be one of {', '.join(CUP_CONDITIONS)}.", field="condition")

    with atomic(db):
        checkout = _lock_open_checkout(db, checkout_id, actor, "cup", branch_id)
        _require_station(db, branch_id, "store")
        asset = lock_asset(db, checkout.AssetID)
        _require_asset_reference(asset, checkout)

        settlement = settle_cup_return(
            opened_at=checkout.OpenedAt,
            due_at=checkout.DueAt,
            now=now,
            condition=condition,
            deposit=checkout.ChargeBasis,
            policy=policy,
        )
        outcome = settlement.to_outcome()
        owner_id = checkout.UserID
        _close_checkout(
            db,
            checkout,
            now=now,
            station_id=branch_id,
            outcome=outcome,
            closed_by=actor.user_id,
            condition=condition,
        )
        release_asset(db, asset, checkout_id, settlement.target_status, branch_id, now)

        if settlement.refund > 0:
            post_entry(
                db,
                owner_id,
                "return_deposit",
                settlement.refund,
                description=f"Cup deposit refund {asset.AssetID}",
                now=now,
                reference_type="Checkout",
                reference_id=checkout_id,
                details={"penalty": settlement.total_penalty, "hoursOverdue": settlement.hours_overdue},
            )
        if settlement.points > 0:
            post_reward(
                db,
                owner_id,
                "points",
                "earn_early_return" if settlement.early_bonus else "earn_return",
                settlement.points,
                now=now,
                reference_id=checkout_id,
                description=f"Cup return {asset.AssetID}",
            )
        if condition != "damaged":
            post_reward(
                db,
                owner_id,
                "co2",
                "cup_reuse",
                settlement.co2_saved_kg,
                now=now,
                reference_id=checkout_id,
                description=f"Cup reuse {asset.AssetID}",
            )
            db.execute(
                update(User)
                .where(User.UserID == owner_id)
                .values(TotalCupsSaved=User.TotalCupsSaved + 1)
                .execution_options(synchronize_session=False)
            )
        balance = current_balance(db, owner_id)
        log_audit(
            db,
            "Checkout",
            checkout_id,
            "CupReturn",
            f"condition={condition} refund={settlement.refund} penalty={settlement.total_penalty}",
            actor.user_id,
            now,
        )

    LOGGER.info(
        "Checkout closed checkout_id=%s asset_id=%s refund=%s penalty=%s points=%s clamped=%s",
        checkout_id,
        asset.AssetID,
        settlement.refund,
        settlement.total_penalty,
        settlement.points,
        settlement.clamped,
    )
    result = ReturnResult(
        checkout_id=checkout_id,
        asset_id=asset.AssetID,
        kind="cup",
        outcome=outcome,
        refund=settlement.refund,
        penalty=settlement.total_penalty,
        balance=balance,
        points_earned=settlement.points,
        co2_saved_kg=settlement.co2_saved_kg,
        asset_status=settlement.target_status,
        message=_cup_return_message(
            settlement.refund,
            settlement.overdue_penalty,
            settlement.damage_penalty,
            settlement.hours_overdue,
            settlement.points,
        ),
    )
    enqueue_notification(db, owner_id, "CheckoutClosed", result.to_dict(), now)
    return result


def _verify_position(verifier: LocationVerifier, asset_id: str, station_id: str) -> None:
    try:
        at_station = verifier.is_at_station(asset_id, station_id)
    except Exception as exc:
        LOGGER.warning("Location check failed asset_id=%s station_id=%s", asset_id, station_id, exc_info=True)
        raise NotAtStation("Bike position could not be verified.", asset_id=asset_id, station_id=station_id) from exc
    if not at_station:
        raise NotAtStation(asset_id=asset_id, station_id=station_id)


def return_bike(
    db: Session,
    *,
    checkout_id: str,
    actor: Actor,
    station_id: str,
    distance_km: Any,
    location_verifier: LocationVerifier | None = None,
    signaler: DeviceSignaler | None = None,
    now: datetime | None = None,
    policy: BikePolicy | None = None,
) -> ReturnResult:
    policy = policy or load_bike_policy()
    now = now or utcnow()
    validate_distance(distance_km)

    # Position is checked before the unit of work so no row lock is held during the device query.
    with store_read(db):
        checkout = _lock_open_checkout(db, checkout_id, actor, "bike", station_id, for_update=False)
    _verify_position(location_verifier or StationTrustingVerifier(), checkout.AssetID, station_id)

    with atomic(db):
        checkout = _lock_open_checkout(db, checkout_id, actor, "bike", station_id)
        _require_station(db, station_id, "bike_station")
        asset = lock_asset(db, checkout.AssetID)
        _require_asset_reference(asset, checkout)

        settlement = settle_bike_return(fare=checkout.ChargeBasis, distance_km=distance_km, policy=policy)
        outcome = settlement.to_outcome()
        owner_id = checkout.UserID
        _close_checkout(
            db,
            checkout,
            now=now,
            station_id=station_id,
            outcome=outcome,
            closed_by=actor.user_id,
            distance_km=settlement.distance_km,
        )
        release_asset(db, asset, checkout_id, settlement.target_status, station_id, now)
        post_reward(
            db,
            owner_id,
            "points",
            "earn_ride",
            settlement.points,
            now=now,
            reference_id=checkout_id,
            description=f"Bike ride {settlement.distance_km} km",
        )
        post_reward(
            db,
            owner_id,
            "co2",
            "ride_co2",
            settlement.co2_saved_kg,
            now=now,
            reference_id=checkout_id,
            description=f"Bike ride {settlement.distance_km} km",
        )
        balance = current_balance(db, owner_id)
        log_audit(
            db,
            "Checkout",
            checkout_id,
            "BikeReturn",
            f"station={station_id} distance={settlement.distance_km} co2={settlement.co2_saved_kg}",
            actor.user_id,
            now,
        )

    LOGGER.info(
        "Checkout closed checkout_id=%s asset_id=%s distance_km=%s points=%s",
        checkout_id,
        asset.AssetID,
        settlement.distance_km,
        settlement.points,
    )
    signal_device(signaler, asset.AssetID, "lock")
    result = ReturnResult(
        checkout_id=checkout_id,
        asset_id=asset.AssetID,
        kind="bike",
        outcome=outcome,
        refund=money(0),
        penalty=money(0),
        balance=balance,
        points_earned=settlement.points,
        co2_saved_kg=settlement.co2_saved_kg,
        asset_status=settlement.target_status,
        message=(
            f"Bike returned after {settlement.distance_km} km. "
            f"Saved {settlement.co2_saved_kg} kg CO2, +{settlement.points} points."
        ),
    )
    enqueue_notification(db, owner_id, "CheckoutClosed", result.to_dict(), now)
    return result


def record_mobility_trip(
    db: Session,
    *,
    user_id: str,
    trip_type: str,
    fare: Any,
    distance_km: Any,
    route_code: str | None = None,
    now: datetime | None = None,
    policy: MobilityPolicy | None = None,
) -> dict[str, Any]:
    policy = policy or load_mobility_policy()
    now = now or utcnow()
    settlement = settle_mobility_trip(trip_type=trip_type, fare=fare, distance_km=distance_km, policy=policy)
    trip_id = str(uuid.uuid4())

    with atomic(db):
        user = _lock_eligible_user(db, user_id)
        _require_funds(user, settlement.fare)
        db.add(
            MobilityTrip(
                TripID=trip_id,
                UserID=user_id,
                TripType=settlement.trip_type,
                RouteCode=route_code,
                Fare=settlement.fare,
                DistanceKm=settlement.distance_km,
                Co2SavedKg=settlement.co2_saved_kg,
                PointsEarned=settlement.points,
                CreatedAt=now,
            )
        )
        db.flush()
        entry = post_entry(
            db,
            user_id,
            "trip_fare",
            -settlement.fare,
            description=f"{settlement.trip_type.title()} trip {route_code or ''}".strip(),
            now=now,
            reference_type="MobilityTrip",
            reference_id=trip_id,
            details={"distanceKm": settlement.distance_km},
            require_funds=True,
        )
        if settlement.points > 0:
            post_reward(db, user_id, "points", "earn_trip", settlement.points, now=now, reference_id=trip_id)
        post_reward(db, user_id, "co2", "trip_co2", settlement.co2_saved_kg, now=now, reference_id=trip_id)
        balance = money(entry.BalanceAfter)
        log_audit(db, "MobilityTrip", trip_id, "TripRecorded", f"type={trip_type} fare={settlement.fare}", user_id, now)

    LOGGER.info("Trip recorded trip_id=%s user_id=%s fare=%s distance_km=%s", trip_id, user_id, settlement.fare, settlement.distance_km)
    result = {
        "tripID": trip_id,
        "tripType": settlement.trip_type,
        "fare": settlement.fare,
        "distanceKm": settlement.distance_km,
        "co2SavedKg": settlement.co2_saved_kg,
        "pointsEarned": settlement.points,
        "newBalance": balance,
    }
    enqueue_notification(db, user_id, "TripRecorded", result, now)
    return result


def restock_asset(
    db: Session,
    *,
    asset_id: str,
    station_id: str,
    actor: Actor,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    if not actor.can_operate(station_id):
        raise NotOwner("Staff permission over the station is required.", station_id=station_id)
    with atomic(db):
        asset = lock_asset(db, asset_id)
        _require_station(db, station_id, STATION_KIND_BY_ASSET.get(asset.Kind))
        previous = return_to_service(db, asset_id, station_id, now)
        log_audit(db, "Asset", asset_id, "Restock", f"from={previous} station={station_id}", actor.user_id, now)
    LOGGER.info("Asset restocked asset_id=%s previous=%s station_id=%s", asset_id, previous, station_id)
    return {"assetID": asset_id, "previousStatus": previous, "status": "available", "stationID": station_id}


def serialize_checkout(checkout: Checkout) -> dict[str, Any]:
    outcome = None
    if checkout.Outcome:
        try:
            outcome = json.loads(checkout.Outcome)
        except (TypeError, ValueError):
            outcome = None
    return {
        "checkoutID": checkout.CheckoutID,
        "assetID": checkout.AssetID,
        "kind": checkout.AssetKind,
        "userID": checkout.UserID,
        "status": checkout.Status,
        "openedAt": checkout.OpenedAt,
        "dueAt": checkout.DueAt,
        "closedAt": checkout.ClosedAt,
        "chargeBasis": checkout.ChargeBasis,
        "plannedDurationHours": checkout.PlannedDurationHours,
        "openLocationID": checkout.OpenLocationID,
        "closeLocationID": checkout.CloseLocationID,
        "distanceKm": checkout.DistanceKm,
        "returnCondition": checkout.ReturnCondition,
        "outcome": outcome,
    }


@reads_store
def list_active_checkouts(db: Session, user_id: str) -> list[dict[str, Any]]:
    rows = db.execute(
        select(Checkout)
        .where(Checkout.UserID == user_id, Checkout.Status == "ongoing")
        .order_by(Checkout.OpenedAt.desc())
    ).scalars().all()
    return [serialize_checkout(row) for row in rows]


@reads_store
def get_checkout(db: Session, checkout_id: str, actor: Actor) -> dict[str, Any]:
    checkout = db.execute(
        select(Checkout).where(Checkout.CheckoutID == checkout_id).execution_options(populate_existing=True)
    ).scalars().first()
    if not checkout:
        raise CheckoutNotFound(checkout_id=checkout_id)
    if checkout.UserID != actor.user_id and actor.role not in {"Staff", "Admin"}:
        raise NotOwner(checkout_id=checkout_id)
    return serialize_checkout(checkout)
