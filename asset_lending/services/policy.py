from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal

DEFAULT_BIKE_FARE_PLANS = {
    1: Decimal("20000"),
    3: Decimal("45000"),
    5: Decimal("80000"),
    24: Decimal("120000"),
}


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.environ.get(name) or "").strip()
    return Decimal(raw or default)


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name) or str(default))


@dataclass(frozen=True)
class CupPolicy:
    deposit: Decimal = Decimal("30000")
    borrow_hours: int = 24
    penalty_per_hour: Decimal = Decimal("2000")
    overdue_cap_ratio: Decimal = Decimal("0.5")
    damage_ratio: Decimal = Decimal("0.3")
    base_points: int = 10
    early_bonus_points: int = 5
    early_return_hours: int = 6
    co2_per_return_kg: Decimal = Decimal("0.02")


@dataclass(frozen=True)
class BikePolicy:
    fare_plans: dict = field(default_factory=lambda: dict(DEFAULT_BIKE_FARE_PLANS))
    min_hours: int = 1
    max_hours: int = 24
    co2_per_km: Decimal = Decimal("0.15")
    points_per_km: Decimal = Decimal("1.5")
    trip_bonus_points: int = 5


@dataclass(frozen=True)
class MobilityPolicy:
    min_fare: Decimal = Decimal("5000")
    max_fare: Decimal = Decimal("200000")
    co2_per_km: Decimal = Decimal("0.12")
    points_per_km: Decimal = Decimal("1.2")


@dataclass(frozen=True)
class WalletLimits:
    topup_min: Decimal = Decimal("10000")
    topup_max: Decimal = Decimal("50000000")
    withdraw_min: Decimal = Decimal("50000")
    withdraw_max: Decimal = Decimal("10000000")
    withdraw_max_per_day: int = 3
    withdraw_review_threshold: Decimal = Decimal("500000")


MIN_DISTANCE_KM = Decimal("0.1")
MAX_DISTANCE_KM = Decimal("500")


def load_cup_policy() -> CupPolicy:
    return CupPolicy(
        deposit=_env_decimal("CUP_DEPOSIT_AMOUNT", "30000"),
        borrow_hours=_env_int("CUP_BORROW_HOURS", 24),
        penalty_per_hour=_env_decimal("CUP_PENALTY_PER_HOUR", "2000"),
        overdue_cap_ratio=_env_decimal("CUP_OVERDUE_CAP_RATIO", "0.5"),
        damage_ratio=_env_decimal("CUP_DAMAGE_RATIO", "0.3"),
        base_points=_env_int("CUP_BASE_POINTS", 10),
        early_bonus_points=_env_int("CUP_EARLY_BONUS_POINTS", 5),
        early_return_hours=_env_int("CUP_EARLY_RETURN_HOURS", 6),
        co2_per_return_kg=_env_decimal("CUP_CO2_PER_RETURN_KG", "0.02"),
    )


def load_bike_policy() -> BikePolicy:
    return BikePolicy(
        co2_per_km=_env_decimal("BIKE_CO2_PER_KM", "0.15"),
        points_per_km=_env_decimal("BIKE_POINTS_PER_KM", "1.5"),
        trip_bonus_points=_env_int("BIKE_TRIP_BONUS_POINTS", 5),
    )


def load_mobility_policy() -> MobilityPolicy:
    return MobilityPolicy(
        co2_per_km=_env_decimal("MOBILITY_CO2_PER_KM", "0.12"),
        points_per_km=_env_decimal("MOBILITY_POINTS_PER_KM", "1.2"),
    )


def load_wallet_limits() -> WalletLimits:
    return WalletLimits(
        topup_min=_env_decimal("TOPUP_MIN_AMOUNT", "10000"),
        topup_max=_env_decimal("TOPUP_MAX_AMOUNT", "50000000"),
        withdraw_min=_env_decimal("WITHDRAW_MIN_AMOUNT", "50000"),
        withdraw_max=_env_decimal("WITHDRAW_MAX_AMOUNT", "10000000"),
        withdraw_max_per_day=_env_int("WITHDRAW_MAX_PER_DAY", 3),
        withdraw_review_threshold=_env_decimal("WITHDRAW_REVIEW_THRESHOLD", "500000"),
    )
