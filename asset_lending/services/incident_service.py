from __future__ import annotations

import hmac
import logging
import os
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.deps import atomic, reads_store
from models.lending_models import Incident
from services.audit_service import log_audit
from services.errors import LendingValidationError
from services.settlement_service import utcnow

LOGGER = logging.getLogger("asset_lending.iot")

INCIDENT_TYPES = ("geofence_breach", "device_fault", "low_battery", "tamper", "other")
INCIDENT_PRIORITIES = ("low", "medium", "high", "critical")


def device_key_valid(supplied: str | None) -> bool:
    expected = (os.environ.get("IOT_API_KEY") or "").strip()
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.strip().encode("utf-8"))


def record_incident(
    db: Session,
    *,
    incident_type: str,
    description: str,
    asset_id: str | None = None,
    station_id: str | None = None,
    user_id: str | None = None,
    priority: str = "medium",
    source: str = "iot",
    now: datetime | None = None,
) -> dict[str, Any]:
    if incident_type not in INCIDENT_TYPES:
        raise LendingValidationError("Unknown incident type.", incident_type=incident_type)
    if priority not in INCIDENT_PRIORITIES:
        raise LendingValidationError("Unknown incident priority.", priority=priority)
    now = now or utcnow()
    with atomic(db):
        incident = Incident(
            IncidentType=incident_type,
            AssetID=asset_id,
            StationID=station_id,
            UserID=user_id,
            Description=description,
            Priority=priority,
            Status="open",
            Source=source,
            CreatedAt=now,
        )
        db.add(incident)
        db.flush()
        log_audit(db, "Incident", incident.IncidentID, "IncidentOpened", f"type={incident_type} asset={asset_id}", None, now)
    LOGGER.info("Incident opened incident_id=%s type=%s asset_id=%s priority=%s", incident.IncidentID, incident_type, asset_id, priority)
    return serialize_incident(incident)


def serialize_incident(incident: Incident) -> dict[str, Any]:
    return {
        "incidentID": incident.IncidentID,
        "type": incident.IncidentType,
        "assetID": incident.AssetID,
        "stationID": incident.StationID,
        "userID": incident.UserID,
        "description": incident.Description,
        "priority": incident.Priority,
        "status": incident.Status,
        "source": incident.Source,
        "createdAt": incident.CreatedAt,
    }


@reads_store
def list_open_incidents(db: Session, limit: int = 100) -> list[dict[str, Any]]:
    rows = db.execute(
        select(Incident).where(Incident.Status == "open").order_by(Incident.IncidentID.desc()).limit(limit)
    ).scalars().all()
    return [serialize_incident(row) for row in rows]
