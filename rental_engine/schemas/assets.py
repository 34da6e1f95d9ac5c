from typing import Optional

from pydantic import BaseModel, ConfigDict


class AssetIntakeDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: Optional[str] = None
    code: Optional[str] = None
    name: str
    assetType: str
    requiresOperator: bool = False
    requiresTracking: bool = False
    currentLocation: Optional[str] = None


class LocationUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    location: str


class StateChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    targetState: str
    workflowID: str = "asset-lifecycle"


class DecommissionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = None
    notes: Optional[str] = None
    attributableToClient: bool = False
    clientID: Optional[str] = None
