from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_engine.config import DEFAULT_DEPOT_LOCATION
from rental_engine.db.session import unit_of_work
from rental_engine.models.rental_models import ContractAsset, Incident, RentalContract
from rental_engine.models.states import AssetLifecycleState, ContractStatus
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.asset_service import get_asset, relocate_asset
from rental_engine.services.contract_service import get_contract, get_contract_asset
from rental_engine.services.errors import ConflictError, FinalizationError, InvalidInputError, InvalidStateError
from rental_engine.services.event_log import record_event
from rental_engine.services.lifecycle_service import get_asset_state, require_state, transition


LOGGER = logging.getLogger("rental_engine.finalization")


def _count_unresolved_incidents(db: Session, contract_id: str) -> int:
    stmt = (
        select(func.count(Incident.IncidentID))
        .where(Incident.ContractID == contract_id)
        .where(Incident.Resolved.is_(False))
    )
    return int(db.execute(stmt).scalar() or 0)


def _contract_assets(db: Session, contract_id: str) -> list[ContractAsset]:
    stmt = (
        select(ContractAsset)
        .where(ContractAsset.ContractID == contract_id)
        .order_by(ContractAsset.CreatedDate, ContractAsset.ContractAssetID)
    )
    return list(db.execute(stmt).scalars().all())


# States a returned asset keeps: decommissioned assets stay terminal, assets
# already sent to the workshop stay there.
KEPT_STATES_ON_RETURN = {
    AssetLifecycleState.OUT_OF_SERVICE.value,
    AssetLifecycleState.MAINTENANCE.value,
}


def _return_asset(
    db: Session,
    scope: TenantScope,
    contract: RentalContract,
    contract_asset: ContractAsset,
    depot_location: str,
) -> dict:
    returned_at = datetime.now()
    asset = get_asset(db, scope, contract_asset.AssetID)
    state_row = get_asset_state(db, scope, asset.AssetID, for_update=True)
    previous = state_row.CurrentState
    state_changed = previous not in KEPT_STATES_ON_RETURN
    if state_changed:
        transition(
            db,
            scope,
            asset.AssetID,
            AssetLifecycleState.RETURNED,
            context={"contractId": contract.ContractID},
        )
    if previous != AssetLifecycleState.OUT_OF_SERVICE.value:
        relocate_asset(db, scope, asset, depot_location)
    contract_asset.ActualEnd = returned_at
    record_event(
        db,
        scope,
        "asset.returned",
        {
            "contractId": contract.ContractID,
            "contractAssetId": contract_asset.ContractAssetID,
            "actualEnd": returned_at,
            "previousState": previous,
            "stateChanged": state_changed,
        },
        asset_id=asset.AssetID,
    )
    return {
        "assetId": asset.AssetID,
        "contractAssetId": contract_asset.ContractAssetID,
        "status": state_row.CurrentState,
        "stateChanged": state_changed,
    }


def finalize_contract(
    db: Session,
    scope: TenantScope,
    contract_id: str,
    depot_location: str = DEFAULT_DEPOT_LOCATION,
) -> dict:
    """Return every asset still bound to the contract and close it.

    All-or-nothing: the loop runs in one transaction, and a failure on any
    asset rolls back the returns already made and raises FinalizationError
    naming the asset that failed. A ConflictError from a concurrent writer
    is re-raised as is. Assignments closed before this call are left alone,
    so a retry after a rollback works on the same pending set.

    Assets in OUT_OF_SERVICE or MAINTENANCE have their assignment closed but
    keep their state; they are listed under stateKeptAssetIds.
    """
    depot_location = (depot_location or "").strip()
    if not depot_location:
        raise InvalidInputError("A depot location is required.")

    returned: list[dict] = []
    current_asset_id: str | None = None
    try:
        with unit_of_work(db, "finalize_contract"):
            contract = get_contract(db, scope, contract_id)
            if contract.Status != ContractStatus.ACTIVE:
                raise InvalidStateError(
                    f"Contract not active. Current status: {contract.Status}",
                    current_state=contract.Status,
                )
            unresolved = _count_unresolved_incidents(db, contract.ContractID)
            if unresolved:
                raise InvalidStateError(
                    f"Contract has {unresolved} unresolved incident(s); resolve them before finalizing.",
                    current_state=contract.Status,
                )

            contract_assets = _contract_assets(db, contract.ContractID)
            pending = [item for item in contract_assets if item.ActualEnd is None]
            skipped = [item.ContractAssetID for item in contract_assets if item.ActualEnd is not None]
            for item in pending:
                current_asset_id = item.AssetID
                returned.append(_return_asset(db, scope, contract, item, depot_location))
            current_asset_id = None

            contract.Status = ContractStatus.FINISHED
            contract.UpdatedDate = datetime.now()
            record_event(
                db,
                scope,
                "contract.finished",
                {"contractId": contract.ContractID, "assetsReturned": len(returned)},
            )
    except ConflictError:
        raise
    except Exception as exc:
        if current_asset_id is None:
            raise
        LOGGER.warning(
            "Finalization rolled back contract_id=%s failed_asset_id=%s rolled_back=%s",
            contract_id,
            current_asset_id,
            len(returned),
        )
        raise FinalizationError(
            contract_id,
            current_asset_id,
            [item["assetId"] for item in returned],
            exc,
        ) from exc

    LOGGER.info("Contract finalized contract_id=%s assets_returned=%s", contract_id, len(returned))
    return {
        "contractId": contract_id,
        "status": ContractStatus.FINISHED,
        "assetsReturned": returned,
        "skippedContractAssets": skipped,
        "stateKeptAssetIds": [item["assetId"] for item in returned if not item["stateChanged"]],
    }


def evaluate_asset_post_obra(
    db: Session,
    scope: TenantScope,
    contract_asset_id: str,
    needs_maintenance: bool,
) -> ContractAsset:
    """Inspector's verdict on a returned asset: back to the fleet or to the workshop."""
    with unit_of_work(db, "evaluate_asset_post_obra"):
        contract_asset = get_contract_asset(db, scope, contract_asset_id)
        state_row = get_asset_state(db, scope, contract_asset.AssetID, for_update=True)
        require_state(state_row, {AssetLifecycleState.RETURNED}, "Only returned assets can be evaluated.")

        new_state = AssetLifecycleState.MAINTENANCE if needs_maintenance else AssetLifecycleState.AVAILABLE
        contract_asset.NeedsPostObraMaintenance = bool(needs_maintenance)
        transition(
            db,
            scope,
            contract_asset.AssetID,
            new_state,
            context={"contractAssetId": contract_asset_id},
        )
        record_event(
            db,
            scope,
            "asset.post_obra_evaluated",
            {
                "contractAssetId": contract_asset_id,
                "needsMaintenance": bool(needs_maintenance),
                "newState": new_state.value,
            },
            asset_id=contract_asset.AssetID,
        )
    LOGGER.info("Post-obra evaluation contract_asset_id=%s new_state=%s", contract_asset_id, new_state.value)
    return contract_asset
