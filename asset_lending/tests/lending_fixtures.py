import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("ASSET_LENDING_DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SESSION_SIGNING_SECRET", "x" * 48)
os.environ.setdefault("PAYMENT_HASH_SECRET", "test-hash-secret")
os.environ.setdefault("IOT_API_KEY", "device-test-key")
os.environ.setdefault("LENDING_THROTTLE_MAX_REQUESTS", "1000")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import build_engine, build_session_factory
from models.lending_models import Asset, Station, User
from services.payment_gateway import HASH_FIELD, GatewayConfig, sign_params
from services.wallet_ledger import post_entry

T0 = datetime(2026, 3, 1, 8, 0, 0)

TEST_GATEWAY = GatewayConfig(
    tmn_code="TESTTMN1",
    hash_secret="test-hash-secret",
    gateway_url="https://gateway.example/pay",
    return_url="http://localhost/api/payment/return",
)


def make_store(db_url: str = "sqlite+pysqlite:///:memory:"):
    engine = build_engine(db_url)
    Base.metadata.create_all(engine)
    return engine, build_session_factory(engine)


def add_station(db, station_id: str, kind: str = "store", active: bool = True) -> Station:
    station = Station(StationID=station_id, StationName=f"Station {station_id}", Kind=kind, IsActive=active)
    db.add(station)
    db.commit()
    return station


def add_asset(db, asset_id: str, kind: str = "cup", status: str = "available", home: str | None = None) -> Asset:
    asset = Asset(AssetID=asset_id, Kind=kind, Status=status, HomeLocationID=home)
    db.add(asset)
    db.commit()
    return asset


def add_user(
    db,
    user_id: str,
    balance: str = "0",
    verified: bool = True,
    blacklisted: bool = False,
) -> User:
    user = User(
        UserID=user_id,
        DisplayName=user_id.title(),
        IsVerified=verified,
        IsBlacklisted=blacklisted,
        BlacklistReason="fraud" if blacklisted else None,
        WalletBalance=Decimal("0"),
    )
    db.add(user)
    db.flush()
    if Decimal(balance) > 0:
        post_entry(
            db,
            user_id,
            "deposit_topup",
            Decimal(balance),
            description="Opening balance",
            now=T0,
            reference_type="Seed",
            reference_id=f"seed-{user_id}",
        )
    db.commit()
    return user


def signed(params: dict, secret: str = TEST_GATEWAY.hash_secret) -> dict:
    return dict(params, **{HASH_FIELD: sign_params(params, secret)})


class RecordingSignaler:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, asset_id, command, *, timeout):
        if self.fail:
            raise ConnectionError("device offline")
        self.sent.append((asset_id, command))


class FixedVerifier:
    def __init__(self, answer=True, error: Exception | None = None):
        self.answer = answer
        self.error = error

    def is_at_station(self, asset_id, station_id):
        if self.error:
            raise self.error
        return self.answer
