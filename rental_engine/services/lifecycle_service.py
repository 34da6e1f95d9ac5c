from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from rental_engine.db.session import unit_of_work
from rental_engine.models.rental_models import AssetState, ContractAsset, RentalContract
from rental_engine.models.states import (
    INCIDENT_EXIT_STATES,
    LIFECYCLE_TRANSITIONS,
    LIFECYCLE_WORKFLOW_ID,
    TERMINAL_STATES,
    WORKFLOW_STATES,
    AssetLifecycleState,
    ContractStatus,
)
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.asset_service import get_asset
from rental_engine.services.errors import ConflictError, InvalidInputError, InvalidStateError, NotFoundError
from rental_engine.services.event_log import record_event


LOGGER = logging.getLogger("rental_engine.lifecycle")


def parse_state(raw: str | AssetLifecycleState, workflow_id: str = LIFECYCLE_WORKFLOW_ID) -> AssetLifecycleState:
    states = WORKFLOW_STATES.get(workflow_id)
    if states is None:
        raise InvalidInputError(f"Unknown workflow {workflow_id!r}.")
    try:
        return states((raw.value if isinstance(raw, AssetLifecycleState) else str(raw or "")).strip().upper())
    except ValueError as exc:
        raise InvalidInputError(f"Unknown state {raw!r} for workflow {workflow_id}.") from exc


def get_asset_state(db: Session, scope: TenantScope, asset_id: str, for_update: bool = False) -> AssetState:
    get_asset(db, scope, asset_id)
    stmt = select(AssetState).where(AssetState.AssetID == asset_id)
    if for_update:
        stmt = stmt.with_for_update()
    try:
        state_row = db.execute(stmt).scalars().first()
    except StaleDataError as exc:
        raise ConflictError(f"Asset {asset_id} was modified concurrently; retry the operation.") from exc
    if not state_row:
        # Never fall back to AVAILABLE; a missing row is a provisioning bug.
        raise NotFoundError("Asset state")
    return state_row


def can_transition(current: AssetLifecycleState | str, target: AssetLifecycleState | str) -> bool:
    try:
        current_state = AssetLifecycleState(current)
        target_state = AssetLifecycleState(target)
    except ValueError:
        return False
    return target_state in LIFECYCLE_TRANSITIONS.get(current_state, set())


def require_state(
    state_row: AssetState,
    allowed: Iterable[AssetLifecycleState],
    message: str,
) -> AssetLifecycleState:
    allowed_values = {state.value for state in allowed}
    if state_row.CurrentState not in allowed_values:
        raise InvalidStateError(f"{message} Current state: {state_row.CurrentState}", current_state=state_row.CurrentState)
    return AssetLifecycleState(state_row.CurrentState)


def transition(
    db: Session,
    scope: TenantScope,
    asset_id: str,
    target_state: AssetLifecycleState | str,
    workflow_id: str = LIFECYCLE_WORKFLOW_ID,
    *,
    source: str = "workflow",
    context: dict[str, Any] | None = None,
) -> AssetState:
    """Overwrite an asset's current state and record the change.

    Graph legality is the caller's job: the incident workflow, for one, may
    leave INCIDENT where no other caller can. The caller also owns the
    transaction. The flush runs the versioned UPDATE so a concurrent writer
    on the same asset surfaces here as a ConflictError.
    """
    target = parse_state(target_state, workflow_id)
    state_row = get_asset_state(db, scope, asset_id, for_update=True)
    previous = state_row.CurrentState

    state_row.CurrentState = target.value
    state_row.WorkflowID = workflow_id
    state_row.UpdatedAt = datetime.now()
    try:
        db.flush()
    except StaleDataError as exc:
        LOGGER.warning("Concurrent state change detected asset_id=%s target=%s", asset_id, target.value)
        raise ConflictError(f"Asset {asset_id} was modified concurrently; retry the operation.") from exc

    payload = {"workflowId": workflow_id, "previousState": previous, "newState": target.value}
    if context:
        payload.update(context)
    record_event(db, scope, "asset.state_changed", payload, asset_id=asset_id, source=source)
    LOGGER.info("Asset state changed asset_id=%s %s -> %s", asset_id, previous, target.value)
    return state_row


def _unfinished_assignment_contract(db: Session, asset_id: str) -> str | None:
    stmt = (
        select(ContractAsset.ContractID)
        .join(RentalContract, RentalContract.ContractID == ContractAsset.ContractID)
        .where(ContractAsset.AssetID == asset_id)
        .where(ContractAsset.ActualEnd.is_(None))
        .where(RentalContract.Status != ContractStatus.FINISHED)
    )
    return db.execute(stmt).scalars().first()


def change_state(
    db: Session,
    scope: TenantScope,
    asset_id: str,
    target_state: str,
    workflow_id: str = LIFECYCLE_WORKFLOW_ID,
) -> AssetState:
    """Administrative transition, checked against the lifecycle graph."""
    target = parse_state(target_state, workflow_id)
    if target == AssetLifecycleState.OUT_OF_SERVICE:
        raise InvalidInputError("Use decommission to take an asset out of service.")
    with unit_of_work(db, "change_state"):
        state_row = get_asset_state(db, scope, asset_id, for_update=True)
        current = state_row.CurrentState
        if current == AssetLifecycleState.INCIDENT.value and target in INCIDENT_EXIT_STATES:
            raise InvalidStateError(
                "Assets leave INCIDENT only through incident resolution.",
                current_state=current,
            )
        if not can_transition(current, target):
            raise InvalidStateError(f"Invalid state transition: {current} -> {target.value}", current_state=current)
        if target == AssetLifecycleState.AVAILABLE:
            held_by = _unfinished_assignment_contract(db, asset_id)
            if held_by is not None:
                LOGGER.warning("State change rejected asset_id=%s open_assignment_contract=%s", asset_id, held_by)
                raise InvalidStateError(
                    f"Asset still has an open assignment under contract {held_by}.",
                    current_state=current,
                )
        transition(db, scope, asset_id, target, workflow_id, source="system")
    return state_row


def decommission(
    db: Session,
    scope: TenantScope,
    asset_id: str,
    reason: str | None,
    *,
    notes: str | None = None,
    attributable_to_client: bool = False,
    client_id: str | None = None,
) -> AssetState:
    reason = (reason or "").strip()
    if not reason:
        raise InvalidInputError("A decommission reason is required.")
    if attributable_to_client and not (client_id or "").strip():
        raise InvalidInputError("clientID is required when the loss is attributable to the client.")

    with unit_of_work(db, "decommission"):
        state_row = get_asset_state(db, scope, asset_id, for_update=True)
        previous = state_row.CurrentState
        if previous in {state.value for state in TERMINAL_STATES}:
            raise InvalidStateError("Asset is already out of service.", current_state=previous)
        transition(db, scope, asset_id, AssetLifecycleState.OUT_OF_SERVICE, source="system")
        record_event(
            db,
            scope,
            "asset.decommissioned",
            {
                "reason": reason,
                "notes": notes,
                "attributableToClient": bool(attributable_to_client),
                "clientId": client_id if attributable_to_client else None,
                "previousState": previous,
            },
            asset_id=asset_id,
        )
    LOGGER.info("Asset decommissioned asset_id=%s previous=%s", asset_id, previous)
    return state_row
