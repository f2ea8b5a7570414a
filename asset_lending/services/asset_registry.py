from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.lending_models import Asset
from services.errors import AssetNotAvailable, AssetNotFound, AssetStateMismatch

RETURN_TARGETS = {
    "cup": {"cleaning", "broken"},
    "bike": {"available"},
}
SERVICE_STATES = {
    "cup": {"cleaning", "broken"},
    "bike": {"charging", "maintenance"},
}


def lock_asset(db: Session, asset_id: str) -> Asset:
    stmt = (
        select(Asset)
        .where(Asset.AssetID == asset_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    asset = db.execute(stmt).scalars().first()
    if not asset:
        raise AssetNotFound(asset_id=asset_id)
    return asset


def claim_asset(db: Session, asset: Asset, user_id: str, checkout_id: str, now: datetime) -> None:
    if asset.Status != "available" or asset.CurrentCheckoutID:
        raise AssetNotAvailable(asset_id=asset.AssetID, status=asset.Status)
    result = db.execute(
        update(Asset)
        .where(
            Asset.AssetID == asset.AssetID,
            Asset.Status == "available",
            Asset.CurrentCheckoutID.is_(None),
        )
        .values(
            Status="in_use",
            CurrentHolderID=user_id,
            CurrentCheckoutID=checkout_id,
            HomeLocationID=None,
            UpdatedAt=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AssetNotAvailable("Asset was taken by a concurrent checkout.", asset_id=asset.AssetID)


def release_asset(
    db: Session,
    asset: Asset,
    checkout_id: str,
    target_status: str,
    location_id: str,
    now: datetime,
) -> None:
    if target_status not in RETURN_TARGETS.get(asset.Kind, set()):
        raise AssetStateMismatch(
            f"{asset.Kind} cannot be returned into status {target_status}.",
            asset_id=asset.AssetID,
        )
    result = db.execute(
        update(Asset)
        .where(
            Asset.AssetID == asset.AssetID,
            Asset.Status == "in_use",
            Asset.CurrentCheckoutID == checkout_id,
        )
        .values(
            Status=target_status,
            CurrentHolderID=None,
            CurrentCheckoutID=None,
            HomeLocationID=location_id,
            UpdatedAt=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AssetStateMismatch(asset_id=asset.AssetID, checkout_id=checkout_id)


def return_to_service(db: Session, asset_id: str, station_id: str, now: datetime) -> str:
    asset = lock_asset(db, asset_id)
    previous = asset.Status
    if previous not in SERVICE_STATES.get(asset.Kind, set()):
        raise AssetStateMismatch(
            f"Asset in status {previous} cannot be put back into service.",
            asset_id=asset_id,
            status=previous,
        )
    result = db.execute(
        update(Asset)
        .where(
            Asset.AssetID == asset_id,
            Asset.Status == previous,
            Asset.CurrentCheckoutID.is_(None),
        )
        .values(Status="available", HomeLocationID=station_id, UpdatedAt=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AssetStateMismatch(asset_id=asset_id, status=previous)
    return previous
