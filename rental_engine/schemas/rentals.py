from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateContractDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    contractID: Optional[str] = None
    clientID: str
    status: Optional[str] = None


class UpdateContractDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    clientID: Optional[str] = None
    status: Optional[str] = None


class AssignAssetDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: str
    obra: str
    estimatedStart: date
    estimatedEnd: date
    estimatedHours: Optional[float] = None
    estimatedDays: Optional[int] = None


class UpdateContractAssetDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    actualHours: Optional[float] = None
    actualEnd: Optional[date] = None


class PostObraEvaluationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    needsMaintenance: bool


class CreateUsageReportDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: str
    contractID: str
    metric: str
    value: float
    reportedBy: str
    notes: Optional[str] = None


class CreateIncidentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetID: str
    contractID: str
    description: str


class ResolveIncidentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    # Parsed by the incident workflow so unknown values surface as InvalidInputError.
    decision: str
    resolution: Optional[str] = None
