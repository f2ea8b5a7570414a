"""Settlement arithmetic for cup returns, bike rentals and mobility trips.

Everything here is pure: callers pass timestamps, conditions and distances in,
and get an immutable settlement back. Money is Decimal rounded to 0.01, CO2 is
Decimal kilograms rounded to 0.001.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Any

from services.errors import LendingValidationError
from services.policy import MAX_DISTANCE_KM, MIN_DISTANCE_KM, BikePolicy, CupPolicy, MobilityPolicy

CUP_CONDITIONS = ("clean", "dirty", "damaged")
MOBILITY_TRIP_TYPES = ("bus", "metro")

_CENT = Decimal("0.01")
_GRAM = Decimal("0.001")
_ZERO = Decimal("0")


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def kilograms(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(_GRAM, rounding=ROUND_HALF_UP)


def _ceil_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


@dataclass(frozen=True)
class CupSettlement:
    deposit: Decimal
    condition: str
    is_overdue: bool
    hours_overdue: int
    overdue_penalty: Decimal
    damage_penalty: Decimal
    refund: Decimal
    points: int
    early_bonus: bool
    co2_saved_kg: Decimal
    target_status: str
    clamped: bool

    @property
    def total_penalty(self) -> Decimal:
        return self.overdue_penalty + self.damage_penalty

    def to_outcome(self) -> dict[str, Any]:
        return {
            "deposit": str(self.deposit),
            "condition": self.condition,
            "isOverdue": self.is_overdue,
            "hoursOverdue": self.hours_overdue,
            "overduePenalty": str(self.overdue_penalty),
            "damagePenalty": str(self.damage_penalty),
            "totalPenalty": str(self.total_penalty),
            "refund": str(self.refund),
            "points": self.points,
            "earlyBonus": self.early_bonus,
            "co2SavedKg": str(self.co2_saved_kg),
            "targetStatus": self.target_status,
            "clamped": self.clamped,
        }


@dataclass(frozen=True)
class BikeSettlement:
    fare: Decimal
    distance_km: Decimal
    co2_saved_kg: Decimal
    points: int
    target_status: str = "available"

    def to_outcome(self) -> dict[str, Any]:
        return {
            "fare": str(self.fare),
            "distanceKm": str(self.distance_km),
            "co2SavedKg": str(self.co2_saved_kg),
            "points": self.points,
            "targetStatus": self.target_status,
        }


@dataclass(frozen=True)
class TripSettlement:
    trip_type: str
    fare: Decimal
    distance_km: Decimal
    co2_saved_kg: Decimal
    points: int


def hours_overdue(due_at: datetime, now: datetime) -> int:
    if now <= due_at:
        return 0
    return math.ceil((now - due_at) / timedelta(hours=1))


def validate_distance(distance_km: Any) -> Decimal:
    try:
        distance = Decimal(str(distance_km))
    except ArithmeticError as exc:
        raise LendingValidationError("distanceKm must be a number.", field="distanceKm") from exc
    if not distance.is_finite() or distance <= MIN_DISTANCE_KM or distance > MAX_DISTANCE_KM:
        raise LendingValidationError(
            f"distanceKm must be greater than {MIN_DISTANCE_KM} and at most {MAX_DISTANCE_KM}.",
            field="distanceKm",
        )
    return distance.quantize(_CENT, rounding=ROUND_HALF_UP)


def settle_cup_return(
    *,
    opened_at: datetime,
    due_at: datetime,
    now: datetime,
    condition: str,
    deposit: Any | None = None,
    policy: CupPolicy | None = None,
) -> CupSettlement:
    policy = policy or CupPolicy()
    if condition not in CUP_CONDITIONS:
        raise LendingValidationError(
            f"condition must be one of {', '.join(CUP_CONDITIONS)}.",
            field="condition",
        )
    deposit_amount = money(policy.deposit if deposit is None else deposit)
    damaged = condition == "damaged"

    overdue_hours = hours_overdue(due_at, now)
    overdue_penalty = money(
        min(Decimal(overdue_hours) * policy.penalty_per_hour, deposit_amount * policy.overdue_cap_ratio)
    )
    damage_penalty = money(deposit_amount * policy.damage_ratio) if damaged else money(_ZERO)

    refund = deposit_amount - overdue_penalty - damage_penalty
    clamped = False
    if refund < _ZERO:
        # Penalties are settled out of the deposit only; the damage share absorbs the excess.
        overdue_penalty = min(overdue_penalty, deposit_amount)
        damage_penalty = max(money(_ZERO), deposit_amount - overdue_penalty)
        refund = money(_ZERO)
        clamped = True

    early_bonus = False
    if damaged:
        points = 0
    else:
        points = max(0, policy.base_points - overdue_hours)
        if overdue_hours == 0 and (now - opened_at) <= timedelta(hours=policy.early_return_hours):
            early_bonus = True
            points += policy.early_bonus_points

    return CupSettlement(
        deposit=deposit_amount,
        condition=condition,
        is_overdue=overdue_hours > 0,
        hours_overdue=overdue_hours,
        overdue_penalty=overdue_penalty,
        damage_penalty=damage_penalty,
        refund=money(refund),
        points=points,
        early_bonus=early_bonus,
        co2_saved_kg=kilograms(_ZERO if damaged else policy.co2_per_return_kg),
        target_status="broken" if damaged else "cleaning",
        clamped=clamped,
    )


def bike_fare_for(planned_hours: int, policy: BikePolicy | None = None) -> Decimal:
    policy = policy or BikePolicy()
    if isinstance(planned_hours, bool) or not isinstance(planned_hours, int):
        raise LendingValidationError("plannedDurationHours must be an integer.", field="plannedDurationHours")
    if planned_hours < policy.min_hours or planned_hours > policy.max_hours:
        raise LendingValidationError(
            f"plannedDurationHours must be between {policy.min_hours} and {policy.max_hours}.",
            field="plannedDurationHours",
        )
    for plan_hours in sorted(policy.fare_plans):
        if planned_hours <= plan_hours:
            return money(policy.fare_plans[plan_hours])
    raise LendingValidationError("No fare plan covers the requested duration.", field="plannedDurationHours")


def settle_bike_return(*, fare: Any, distance_km: Any, policy: BikePolicy | None = None) -> BikeSettlement:
    policy = policy or BikePolicy()
    distance = validate_distance(distance_km)
    co2 = kilograms(distance * policy.co2_per_km)
    points = _ceil_int(distance * policy.points_per_km) + policy.trip_bonus_points
    return BikeSettlement(fare=money(fare), distance_km=distance, co2_saved_kg=co2, points=points)


def settle_mobility_trip(
    *,
    trip_type: str,
    fare: Any,
    distance_km: Any,
    policy: MobilityPolicy | None = None,
) -> TripSettlement:
    policy = policy or MobilityPolicy()
    if trip_type not in MOBILITY_TRIP_TYPES:
        raise LendingValidationError(
            f"tripType must be one of {', '.join(MOBILITY_TRIP_TYPES)}.",
            field="tripType",
        )
    fare_amount = money(fare)
    if fare_amount < policy.min_fare or fare_amount > policy.max_fare:
        raise LendingValidationError(
            f"fare must be between {policy.min_fare} and {policy.max_fare}.",
            field="fare",
        )
    distance = validate_distance(distance_km)
    co2 = kilograms(distance * policy.co2_per_km)
    return TripSettlement(
        trip_type=trip_type,
        fare=fare_amount,
        distance_km=distance,
        co2_saved_kg=co2,
        points=_ceil_int(distance * policy.points_per_km),
    )


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the store persists DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
