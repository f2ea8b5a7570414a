from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CupCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: str = Field(min_length=1, max_length=64)
    branchID: str = Field(min_length=1, max_length=64)


class CupReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    checkoutID: str = Field(min_length=1, max_length=36)
    branchID: str = Field(min_length=1, max_length=64)
    condition: Literal["clean", "dirty", "damaged"]


class BikeCheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: str = Field(min_length=1, max_length=64)
    stationID: str = Field(min_length=1, max_length=64)
    plannedDurationHours: int = Field(ge=1, le=24)


class BikeReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    checkoutID: str = Field(min_length=1, max_length=36)
    stationID: str = Field(min_length=1, max_length=64)
    distanceKm: float = Field(gt=0.1, le=500)


class MobilityTripRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tripType: Literal["bus", "metro"]
    fare: int = Field(ge=5000, le=200000)
    distanceKm: float = Field(gt=0.1, le=500)
    routeCode: Optional[str] = Field(default=None, max_length=50)


class RestockRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    stationID: str = Field(min_length=1, max_length=64)
