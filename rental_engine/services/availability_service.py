from __future__ import annotations

from datetime import date, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_engine.config import DEFAULT_MARGIN_DAYS
from rental_engine.models.rental_models import Asset, ContractAsset, RentalContract
from rental_engine.models.states import AssetLifecycleState, ContractStatus
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.asset_service import get_asset, normalize_asset_type


AVAILABLE_NOW = "AVAILABLE_NOW"
IN_USE = "IN_USE"
MAINTENANCE = "MAINTENANCE"
INDETERMINATE = "INDETERMINATE"
UNKNOWN_STATE = "UNKNOWN"


class AvailabilityProjection(BaseModel):
    model_config = ConfigDict(frozen=True)

    assetID: str
    currentState: str
    status: str
    estimatedAvailableDate: Optional[date] = None
    details: str


def project_availability(
    asset_id: str,
    current_state: str | None,
    assignment: ContractAsset | None = None,
    margin_days: int = DEFAULT_MARGIN_DAYS,
) -> AvailabilityProjection:
    state = current_state or UNKNOWN_STATE

    if state == AssetLifecycleState.AVAILABLE.value:
        return AvailabilityProjection(
            assetID=asset_id,
            currentState=state,
            status=AVAILABLE_NOW,
            details="Asset is available immediately",
        )

    if state == AssetLifecycleState.IN_USE.value:
        if assignment is None or assignment.EstimatedEnd is None:
            return AvailabilityProjection(
                assetID=asset_id,
                currentState=state,
                status=IN_USE,
                details="In use but no active assignment found",
            )
        estimated = assignment.EstimatedEnd + timedelta(days=margin_days)
        return AvailabilityProjection(
            assetID=asset_id,
            currentState=state,
            status=IN_USE,
            estimatedAvailableDate=estimated,
            details=f"Estimated available from {estimated.isoformat()} (includes {margin_days} days margin)",
        )

    if state == AssetLifecycleState.MAINTENANCE.value:
        return AvailabilityProjection(
            assetID=asset_id,
            currentState=state,
            status=MAINTENANCE,
            details="Availability depends on technical evaluation",
        )

    if state == AssetLifecycleState.INCIDENT.value:
        return AvailabilityProjection(
            assetID=asset_id,
            currentState=state,
            status=INDETERMINATE,
            details="Requires human resolution",
        )

    return AvailabilityProjection(
        assetID=asset_id,
        currentState=state,
        status=INDETERMINATE,
        details=f"Unknown state: {state}",
    )


def _active_assignment(db: Session, asset_id: str) -> ContractAsset | None:
    stmt = (
        select(ContractAsset)
        .join(RentalContract, RentalContract.ContractID == ContractAsset.ContractID)
        .where(ContractAsset.AssetID == asset_id)
        .where(ContractAsset.ActualEnd.is_(None))
        .where(RentalContract.Status == ContractStatus.ACTIVE)
        .order_by(ContractAsset.EstimatedEnd.desc())
    )
    return db.execute(stmt).scalars().first()


def _project_loaded_asset(db: Session, asset: Asset, margin_days: int) -> AvailabilityProjection:
    current_state = asset.State.CurrentState if asset.State else None
    assignment = None
    if current_state == AssetLifecycleState.IN_USE.value:
        assignment = _active_assignment(db, asset.AssetID)
    return project_availability(asset.AssetID, current_state, assignment, margin_days)


def project_asset_availability(
    db: Session,
    scope: TenantScope,
    asset_id: str,
    margin_days: int = DEFAULT_MARGIN_DAYS,
) -> AvailabilityProjection:
    asset = get_asset(db, scope, asset_id)
    return _project_loaded_asset(db, asset, margin_days)


def _sort_key(projection: AvailabilityProjection) -> tuple:
    if projection.status == AVAILABLE_NOW:
        return (0, date.min)
    if projection.estimatedAvailableDate is not None:
        return (1, projection.estimatedAvailableDate)
    return (2, date.min)


def sort_projections(projections: list[AvailabilityProjection]) -> list[AvailabilityProjection]:
    """Available now first, then soonest estimated date, undated last."""
    return sorted(projections, key=_sort_key)


def project_availability_by_type(
    db: Session,
    scope: TenantScope,
    asset_type: str,
    margin_days: int = DEFAULT_MARGIN_DAYS,
) -> list[AvailabilityProjection]:
    stmt = (
        select(Asset)
        .options(selectinload(Asset.State))
        .where(Asset.TenantID == scope.tenant_id)
        .where(Asset.BusinessUnitID == scope.business_unit_id)
        .where(Asset.AssetType == normalize_asset_type(asset_type))
        .order_by(Asset.Name)
    )
    assets = db.execute(stmt).scalars().all()
    return sort_projections([_project_loaded_asset(db, asset, margin_days) for asset in assets])
