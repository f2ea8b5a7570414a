from __future__ import annotations

import logging
import os
from typing import Protocol

LOGGER = logging.getLogger("asset_lending.devices")

DEVICE_COMMANDS = {"unlock", "lock", "locate", "alarm"}
DEVICE_SIGNAL_TIMEOUT_SECONDS = float(os.environ.get("DEVICE_SIGNAL_TIMEOUT_SECONDS") or "5")


class LocationVerifier(Protocol):
    def is_at_station(self, asset_id: str, station_id: str) -> bool:
        ...


class DeviceSignaler(Protocol):
    def send(self, asset_id: str, command: str, *, timeout: float) -> None:
        ...


class StationTrustingVerifier:
    """Accepts every position report until station geofencing is wired in."""

    def is_at_station(self, asset_id: str, station_id: str) -> bool:
        LOGGER.debug("Location check skipped asset_id=%s station_id=%s", asset_id, station_id)
        return True


class LoggingDeviceSignaler:
    def send(self, asset_id: str, command: str, *, timeout: float) -> None:
        if command not in DEVICE_COMMANDS:
            raise ValueError(f"Unsupported device command: {command}")
        LOGGER.info("Device command sent asset_id=%s command=%s timeout=%s", asset_id, command, timeout)


def signal_device(signaler: DeviceSignaler | None, asset_id: str, command: str) -> bool:
    if signaler is None:
        return False
    try:
        signaler.send(asset_id, command, timeout=DEVICE_SIGNAL_TIMEOUT_SECONDS)
        return True
    except Exception:
        # Lock/unlock is best-effort; the settlement has already committed.
        LOGGER.warning("Device command failed asset_id=%s command=%s", asset_id, command, exc_info=True)
        return False
