from __future__ import annotations

import logging
import re
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_engine.db.session import unit_of_work
from rental_engine.models.rental_models import Asset, AssetState
from rental_engine.models.states import INITIAL_STATE, LIFECYCLE_WORKFLOW_ID
from rental_engine.schemas.assets import AssetIntakeDto
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.errors import ConflictError, InvalidInputError, NotFoundError
from rental_engine.services.event_log import record_event


LOGGER = logging.getLogger("rental_engine.assets")

ASSET_TYPE_PATTERN = re.compile(r"^[\w][\w .\-/]{0,99}$")


def normalize_asset_type(raw: str | None) -> str:
    value = (raw or "").strip()
    if not value or not ASSET_TYPE_PATTERN.match(value):
        raise InvalidInputError(f"Invalid asset type {raw!r}.")
    return value


def get_asset(db: Session, scope: TenantScope, asset_id: str) -> Asset:
    asset = db.execute(
        select(Asset)
        .where(Asset.AssetID == asset_id)
        .where(Asset.TenantID == scope.tenant_id)
        .where(Asset.BusinessUnitID == scope.business_unit_id)
    ).scalars().first()
    if not asset:
        raise NotFoundError("Asset")
    return asset


def list_assets_by_type(db: Session, scope: TenantScope, asset_type: str) -> list[Asset]:
    stmt = (
        select(Asset)
        .where(Asset.TenantID == scope.tenant_id)
        .where(Asset.BusinessUnitID == scope.business_unit_id)
        .where(Asset.AssetType == normalize_asset_type(asset_type))
        .order_by(Asset.Name)
    )
    return list(db.execute(stmt).scalars().all())


def create_asset(db: Session, scope: TenantScope, payload: AssetIntakeDto) -> Asset:
    """Register an asset and give it its initial lifecycle state.

    The AssetState row is created here and nowhere else; every later
    workflow expects it to exist.
    """
    name = (payload.name or "").strip()
    if not name:
        raise InvalidInputError("Asset name is required.")
    asset_type = normalize_asset_type(payload.assetType)

    with unit_of_work(db, "create_asset"):
        if payload.assetID and db.get(Asset, payload.assetID) is not None:
            raise ConflictError("Identifier unavailable.")
        asset = Asset(
            TenantID=scope.tenant_id,
            BusinessUnitID=scope.business_unit_id,
            Code=payload.code,
            Name=name,
            AssetType=asset_type,
            RequiresOperator=bool(payload.requiresOperator),
            RequiresTracking=bool(payload.requiresTracking),
            CurrentLocation=payload.currentLocation,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        if payload.assetID:
            asset.AssetID = payload.assetID
        asset.State = AssetState(
            WorkflowID=LIFECYCLE_WORKFLOW_ID,
            CurrentState=INITIAL_STATE.value,
            UpdatedAt=datetime.now(),
        )
        db.add(asset)
        db.flush()
        record_event(
            db,
            scope,
            "asset.created",
            {"assetId": asset.AssetID, "name": asset.Name, "assetType": asset.AssetType},
            asset_id=asset.AssetID,
        )

    LOGGER.info("Asset created asset_id=%s type=%s", asset.AssetID, asset.AssetType)
    return asset


def relocate_asset(db: Session, scope: TenantScope, asset: Asset, location: str) -> None:
    """Move an asset; the caller owns the transaction."""
    previous = asset.CurrentLocation
    asset.CurrentLocation = location
    asset.UpdatedDate = datetime.now()
    record_event(
        db,
        scope,
        "asset.location_changed",
        {"previousLocation": previous, "newLocation": location},
        asset_id=asset.AssetID,
    )


def update_asset_location(db: Session, scope: TenantScope, asset_id: str, location: str) -> Asset:
    location = (location or "").strip()
    if not location:
        raise InvalidInputError("Location is required.")
    with unit_of_work(db, "update_asset_location"):
        asset = get_asset(db, scope, asset_id)
        relocate_asset(db, scope, asset, location)
    return asset


def delete_asset(db: Session, scope: TenantScope, asset_id: str) -> None:
    with unit_of_work(db, "delete_asset"):
        asset = get_asset(db, scope, asset_id)
        record_event(db, scope, "asset.deleted", {"assetId": asset.AssetID}, asset_id=asset.AssetID)
        db.flush()
        db.delete(asset)
    LOGGER.info("Asset deleted asset_id=%s", asset_id)


def serialize_asset(asset: Asset) -> dict:
    state = asset.State
    return {
        "assetID": asset.AssetID,
        "tenantID": asset.TenantID,
        "businessUnitID": asset.BusinessUnitID,
        "code": asset.Code,
        "name": asset.Name,
        "assetType": asset.AssetType,
        "requiresOperator": bool(asset.RequiresOperator),
        "requiresTracking": bool(asset.RequiresTracking),
        "currentLocation": asset.CurrentLocation,
        "state": {
            "workflowID": state.WorkflowID,
            "currentState": state.CurrentState,
            "version": state.Version,
            "updatedAt": state.UpdatedAt,
        } if state else None,
        "createdDate": asset.CreatedDate,
        "updatedDate": asset.UpdatedDate,
    }
