from __future__ import annotations

import logging
import re
from datetime import datetime, time

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_engine.db.session import unit_of_work
from rental_engine.models.rental_models import Asset, ContractAsset, RentalContract
from rental_engine.models.states import HOLDING_CONTRACT_STATUSES, ContractStatus
from rental_engine.schemas.rentals import CreateContractDto, UpdateContractAssetDto, UpdateContractDto
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.errors import ConflictError, InvalidInputError, InvalidStateError, NotFoundError
from rental_engine.services.event_log import record_event
from rental_engine.services.lifecycle_service import get_asset_state


LOGGER = logging.getLogger("rental_engine.contracts")

CONTRACT_STATUS_PATTERN = re.compile(r"^[A-Z][A-Z_]{1,19}$")


def _normalize_status(raw: str | None, default: str | None = None) -> str:
    value = (raw or default or "").strip().upper()
    if not CONTRACT_STATUS_PATTERN.match(value):
        raise InvalidInputError(f"Invalid contract status {raw!r}.")
    return value


def get_contract(db: Session, scope: TenantScope, contract_id: str, with_assets: bool = False) -> RentalContract:
    stmt = (
        select(RentalContract)
        .where(RentalContract.ContractID == contract_id)
        .where(RentalContract.TenantID == scope.tenant_id)
        .where(RentalContract.BusinessUnitID == scope.business_unit_id)
    )
    if with_assets:
        stmt = stmt.options(selectinload(RentalContract.ContractAssets))
    contract = db.execute(stmt).scalars().first()
    if not contract:
        raise NotFoundError("Contract")
    return contract


def list_contracts(
    db: Session,
    scope: TenantScope,
    status: str | None = None,
    client_id: str | None = None,
) -> list[RentalContract]:
    stmt = (
        select(RentalContract)
        .where(RentalContract.TenantID == scope.tenant_id)
        .where(RentalContract.BusinessUnitID == scope.business_unit_id)
        .order_by(RentalContract.CreatedDate.desc())
    )
    if status:
        stmt = stmt.where(RentalContract.Status == _normalize_status(status))
    if client_id:
        stmt = stmt.where(RentalContract.ClientID == client_id)
    return list(db.execute(stmt).scalars().all())


def create_contract(db: Session, scope: TenantScope, payload: CreateContractDto) -> RentalContract:
    client_id = (payload.clientID or "").strip()
    if not client_id:
        raise InvalidInputError("clientID is required.")
    status = _normalize_status(payload.status, ContractStatus.DRAFT)
    if status == ContractStatus.FINISHED:
        raise InvalidInputError("A contract cannot be created as FINISHED.")

    with unit_of_work(db, "create_contract"):
        if payload.contractID and db.get(RentalContract, payload.contractID) is not None:
            raise ConflictError("Identifier unavailable.")
        contract = RentalContract(
            TenantID=scope.tenant_id,
            BusinessUnitID=scope.business_unit_id,
            ClientID=client_id,
            Status=status,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        if payload.contractID:
            contract.ContractID = payload.contractID
        db.add(contract)
        db.flush()
        record_event(
            db,
            scope,
            "rental_contract.created",
            {"contractId": contract.ContractID, "clientId": contract.ClientID, "status": contract.Status},
        )
    LOGGER.info("Contract created contract_id=%s status=%s", contract.ContractID, contract.Status)
    return contract


def find_open_assignment(
    db: Session,
    asset_id: str,
    exclude_contract_id: str | None = None,
) -> ContractAsset | None:
    """The asset's assignment still open under an ACTIVE or DRAFT contract, if any."""
    stmt = (
        select(ContractAsset)
        .join(RentalContract, RentalContract.ContractID == ContractAsset.ContractID)
        .where(ContractAsset.AssetID == asset_id)
        .where(ContractAsset.ActualEnd.is_(None))
        .where(RentalContract.Status.in_(HOLDING_CONTRACT_STATUSES))
        .order_by(ContractAsset.EstimatedEnd.desc())
    )
    if exclude_contract_id:
        stmt = stmt.where(ContractAsset.ContractID != exclude_contract_id)
    return db.execute(stmt).scalars().first()


def _check_reactivation(db: Session, scope: TenantScope, contract: RentalContract) -> None:
    # A contract re-entering ACTIVE/DRAFT takes back its open assignments; each must still be exclusive.
    open_rows = db.execute(
        select(ContractAsset)
        .where(ContractAsset.ContractID == contract.ContractID)
        .where(ContractAsset.ActualEnd.is_(None))
    ).scalars().all()
    for row in open_rows:
        get_asset_state(db, scope, row.AssetID, for_update=True)
        holder = find_open_assignment(db, row.AssetID, exclude_contract_id=contract.ContractID)
        if holder is not None:
            LOGGER.warning(
                "Reactivation rejected contract_id=%s asset_id=%s held_by_contract=%s",
                contract.ContractID,
                row.AssetID,
                holder.ContractID,
            )
            raise ConflictError(
                f"Asset {row.AssetID} is already assigned to an active contract ({holder.ContractID})."
            )


def update_contract(db: Session, scope: TenantScope, contract_id: str, payload: UpdateContractDto) -> RentalContract:
    changes: dict[str, str] = {}
    with unit_of_work(db, "update_contract"):
        contract = get_contract(db, scope, contract_id)
        if contract.Status == ContractStatus.FINISHED:
            raise InvalidStateError("Finished contracts cannot be modified.", current_state=contract.Status)
        if payload.clientID is not None:
            client_id = payload.clientID.strip()
            if not client_id:
                raise InvalidInputError("clientID must not be blank.")
            changes["clientId"] = client_id
        if payload.status is not None:
            status = _normalize_status(payload.status)
            if status == ContractStatus.FINISHED:
                raise InvalidStateError("Contracts are finished through finalization.", current_state=contract.Status)
            changes["status"] = status
            if status in HOLDING_CONTRACT_STATUSES and contract.Status not in HOLDING_CONTRACT_STATUSES:
                _check_reactivation(db, scope, contract)

        if "clientId" in changes:
            contract.ClientID = changes["clientId"]
        if "status" in changes:
            changes["previousStatus"] = contract.Status
            contract.Status = changes["status"]
        contract.UpdatedDate = datetime.now()
        record_event(db, scope, "rental_contract.updated", {"contractId": contract.ContractID, "changes": changes})
    return contract


def get_contract_asset(db: Session, scope: TenantScope, contract_asset_id: str) -> ContractAsset:
    stmt = (
        select(ContractAsset)
        .join(Asset, Asset.AssetID == ContractAsset.AssetID)
        .where(ContractAsset.ContractAssetID == contract_asset_id)
        .where(Asset.TenantID == scope.tenant_id)
        .where(Asset.BusinessUnitID == scope.business_unit_id)
    )
    contract_asset = db.execute(stmt).scalars().first()
    if not contract_asset:
        raise NotFoundError("Contract asset")
    return contract_asset


def update_contract_asset(
    db: Session,
    scope: TenantScope,
    contract_asset_id: str,
    payload: UpdateContractAssetDto,
) -> ContractAsset:
    if payload.actualHours is not None and payload.actualHours < 0:
        raise InvalidInputError("actualHours must not be negative.")
    with unit_of_work(db, "update_contract_asset"):
        contract_asset = get_contract_asset(db, scope, contract_asset_id)
        changes: dict[str, object] = {}
        if payload.actualHours is not None:
            contract_asset.ActualHours = payload.actualHours
            changes["actualHours"] = payload.actualHours
        if payload.actualEnd is not None:
            if payload.actualEnd < contract_asset.EstimatedStart:
                raise InvalidInputError("actualEnd must be on or after the estimated start.")
            contract_asset.ActualEnd = datetime.combine(payload.actualEnd, time.min)
            changes["actualEnd"] = payload.actualEnd
        record_event(
            db,
            scope,
            "contract_asset.updated",
            {"contractAssetId": contract_asset.ContractAssetID, "contractId": contract_asset.ContractID, "changes": changes},
            asset_id=contract_asset.AssetID,
        )
    return contract_asset


def serialize_contract_asset(contract_asset: ContractAsset) -> dict:
    return {
        "contractAssetID": contract_asset.ContractAssetID,
        "contractID": contract_asset.ContractID,
        "assetID": contract_asset.AssetID,
        "obra": contract_asset.Obra,
        "estimatedStart": contract_asset.EstimatedStart,
        "estimatedEnd": contract_asset.EstimatedEnd,
        "estimatedHours": float(contract_asset.EstimatedHours) if contract_asset.EstimatedHours is not None else None,
        "estimatedDays": contract_asset.EstimatedDays,
        "actualEnd": contract_asset.ActualEnd,
        "actualHours": float(contract_asset.ActualHours) if contract_asset.ActualHours is not None else None,
        "needsPostObraMaintenance": contract_asset.NeedsPostObraMaintenance,
        "isOpen": contract_asset.ActualEnd is None,
    }


def serialize_contract(contract: RentalContract, include_assets: bool = False) -> dict:
    payload = {
        "contractID": contract.ContractID,
        "tenantID": contract.TenantID,
        "businessUnitID": contract.BusinessUnitID,
        "clientID": contract.ClientID,
        "status": contract.Status,
        "createdDate": contract.CreatedDate,
        "updatedDate": contract.UpdatedDate,
    }
    if include_assets:
        payload["contractAssets"] = [serialize_contract_asset(item) for item in contract.ContractAssets]
    return payload
