from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TopupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: int = Field(gt=0)
    bankCode: Optional[str] = Field(default=None, max_length=30)
    orderInfo: Optional[str] = Field(default=None, max_length=255)


class WithdrawalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: int = Field(gt=0)
    bankName: str = Field(min_length=1, max_length=255)
    accountNumber: str = Field(pattern=r"^[0-9]{6,20}$")
    accountName: str = Field(min_length=1, max_length=255)


class WithdrawalDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: Literal["approve", "reject"]
    reason: Optional[str] = Field(default=None, max_length=500)


class DeviceEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    eventType: Literal["geofence_breach", "device_fault", "low_battery", "tamper", "other"]
    description: str = Field(min_length=1, max_length=2000)
    assetID: Optional[str] = Field(default=None, max_length=64)
    stationID: Optional[str] = Field(default=None, max_length=64)
    userID: Optional[str] = Field(default=None, max_length=64)
    priority: Literal["low", "medium", "high", "critical"] = "medium"
