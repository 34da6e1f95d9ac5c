from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_engine.models.rental_models import Asset, UsageReport
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.contract_service import get_contract_asset


OVER_ESTIMATE = "OVER_ESTIMATE"
UNDER_ESTIMATE = "UNDER_ESTIMATE"
ON_TARGET = "ON_TARGET"
NO_ESTIMATE = "NO_ESTIMATE"


def compute_variance(estimated_hours: float | None, actual_hours: float) -> dict:
    if estimated_hours is None:
        return {"hours": None, "percentage": None, "status": NO_ESTIMATE}

    variance = actual_hours - estimated_hours
    percentage = None
    if estimated_hours > 0:
        percentage = round(variance / estimated_hours * 100, 2)

    if variance > 0:
        status = OVER_ESTIMATE
    elif variance < 0:
        status = UNDER_ESTIMATE
    else:
        status = ON_TARGET
    return {"hours": variance, "percentage": percentage, "status": status}


def get_usage_variance(db: Session, scope: TenantScope, contract_asset_id: str) -> dict:
    contract_asset = get_contract_asset(db, scope, contract_asset_id)
    asset = db.get(Asset, contract_asset.AssetID)

    reports = db.execute(
        select(UsageReport)
        .where(UsageReport.AssetID == contract_asset.AssetID)
        .where(UsageReport.ContractID == contract_asset.ContractID)
    ).scalars().all()
    reported_total = sum(float(report.Value or 0) for report in reports)

    estimated_hours = float(contract_asset.EstimatedHours) if contract_asset.EstimatedHours is not None else None
    if contract_asset.ActualHours is not None:
        actual_hours = float(contract_asset.ActualHours)
    else:
        actual_hours = reported_total

    return {
        "contractAssetId": contract_asset.ContractAssetID,
        "assetId": contract_asset.AssetID,
        "assetName": asset.Name if asset else None,
        "contractId": contract_asset.ContractID,
        "obra": contract_asset.Obra,
        "estimated": {
            "hours": estimated_hours,
            "days": contract_asset.EstimatedDays,
            "startDate": contract_asset.EstimatedStart,
            "endDate": contract_asset.EstimatedEnd,
        },
        "actual": {
            "hours": actual_hours,
            "endDate": contract_asset.ActualEnd,
            "reportsCount": len(reports),
        },
        "variance": compute_variance(estimated_hours, actual_hours),
        "needsPostObraMaintenance": contract_asset.NeedsPostObraMaintenance,
    }
