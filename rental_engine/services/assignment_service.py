from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from rental_engine.db.session import unit_of_work
from rental_engine.models.rental_models import ContractAsset
from rental_engine.models.states import HOLDING_CONTRACT_STATUSES, AssetLifecycleState
from rental_engine.schemas.rentals import AssignAssetDto
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.asset_service import get_asset, relocate_asset
from rental_engine.services.contract_service import find_open_assignment, get_contract
from rental_engine.services.errors import ConflictError, InvalidInputError, InvalidStateError
from rental_engine.services.event_log import record_event
from rental_engine.services.lifecycle_service import get_asset_state, transition


LOGGER = logging.getLogger("rental_engine.assignment")


def _validate_estimates(payload: AssignAssetDto) -> str:
    obra = (payload.obra or "").strip()
    if not obra:
        raise InvalidInputError("obra (job site) is required.")
    if payload.estimatedEnd < payload.estimatedStart:
        raise InvalidInputError("estimatedEnd must be on or after estimatedStart.")
    if payload.estimatedHours is not None and payload.estimatedHours < 0:
        raise InvalidInputError("estimatedHours must not be negative.")
    if payload.estimatedDays is not None and payload.estimatedDays < 0:
        raise InvalidInputError("estimatedDays must not be negative.")
    return obra


def assign_asset_to_contract(
    db: Session,
    scope: TenantScope,
    contract_id: str,
    payload: AssignAssetDto,
) -> ContractAsset:
    """Reserve an asset, bind it to a contract and deploy it to the job site.

    Every precondition is checked with the asset's state row locked, and
    the state writes are versioned, so two requests racing for the same
    asset cannot both succeed. Either all steps commit or none do.
    """
    obra = _validate_estimates(payload)
    asset_id = payload.assetID

    with unit_of_work(db, "assign_asset_to_contract"):
        asset = get_asset(db, scope, asset_id)
        contract = get_contract(db, scope, contract_id)
        if contract.Status not in HOLDING_CONTRACT_STATUSES:
            raise InvalidStateError(
                f"Contract does not accept assignments. Current status: {contract.Status}",
                current_state=contract.Status,
            )

        state_row = get_asset_state(db, scope, asset_id, for_update=True)
        if state_row.CurrentState != AssetLifecycleState.AVAILABLE.value:
            LOGGER.warning("Assignment rejected asset_id=%s state=%s", asset_id, state_row.CurrentState)
            raise InvalidStateError(
                f"Asset is not available. Current state: {state_row.CurrentState.lower()}",
                current_state=state_row.CurrentState,
            )

        existing = find_open_assignment(db, asset_id)
        if existing is not None:
            LOGGER.warning(
                "Assignment rejected asset_id=%s held_by_contract=%s", asset_id, existing.ContractID
            )
            raise ConflictError(
                f"Asset is already assigned to an active contract ({existing.ContractID})."
            )

        transition(db, scope, asset_id, AssetLifecycleState.RESERVED, context={"contractId": contract_id})

        contract_asset = ContractAsset(
            ContractID=contract.ContractID,
            AssetID=asset_id,
            Obra=obra,
            EstimatedStart=payload.estimatedStart,
            EstimatedEnd=payload.estimatedEnd,
            EstimatedHours=payload.estimatedHours,
            EstimatedDays=payload.estimatedDays,
            CreatedDate=datetime.now(),
        )
        db.add(contract_asset)
        db.flush()

        transition(db, scope, asset_id, AssetLifecycleState.IN_USE, context={"contractId": contract_id})
        relocate_asset(db, scope, asset, obra)
        record_event(
            db,
            scope,
            "asset.assigned_to_contract",
            {
                "contractId": contract.ContractID,
                "contractAssetId": contract_asset.ContractAssetID,
                "obra": obra,
                "estimatedStart": payload.estimatedStart,
                "estimatedEnd": payload.estimatedEnd,
            },
            asset_id=asset_id,
        )

    LOGGER.info(
        "Asset assigned asset_id=%s contract_id=%s contract_asset_id=%s",
        asset_id,
        contract_id,
        contract_asset.ContractAssetID,
    )
    return contract_asset
