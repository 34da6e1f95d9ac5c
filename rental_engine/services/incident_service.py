from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from rental_engine.db.session import unit_of_work
from rental_engine.models.rental_models import Asset, Incident
from rental_engine.models.states import AssetLifecycleState, ContractStatus, IncidentDecision
from rental_engine.schemas.rentals import CreateIncidentDto
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.contract_service import get_contract
from rental_engine.services.errors import ConflictError, InvalidInputError, InvalidStateError, NotFoundError
from rental_engine.services.event_log import record_event
from rental_engine.services.lifecycle_service import get_asset_state, require_state, transition


LOGGER = logging.getLogger("rental_engine.incidents")


@dataclass(frozen=True)
class ResolutionPlan:
    """State changes one incident decision asks for, before any are applied."""

    decision: IncidentDecision
    event_type: str
    asset_state: AssetLifecycleState | None = None
    contract_status: str | None = None
    event_payload: dict[str, Any] = field(default_factory=dict)


def _plan_replace(incident: Incident) -> ResolutionPlan:
    return ResolutionPlan(
        decision=IncidentDecision.REPLACE,
        event_type="asset.incident_resolved_replace",
        asset_state=AssetLifecycleState.MAINTENANCE,
        event_payload={"incidentId": incident.IncidentID, "decision": "REPLACE", "requiresReplacement": True},
    )


def _plan_pause(incident: Incident) -> ResolutionPlan:
    # The asset stays in INCIDENT while the contract is on hold.
    return ResolutionPlan(
        decision=IncidentDecision.PAUSE,
        event_type="asset.incident_resolved_pause",
        contract_status=ContractStatus.PAUSED,
        event_payload={"incidentId": incident.IncidentID, "decision": "PAUSE", "contractPaused": True},
    )


def _plan_continue(incident: Incident) -> ResolutionPlan:
    return ResolutionPlan(
        decision=IncidentDecision.CONTINUE,
        event_type="asset.incident_resolved_continue",
        asset_state=AssetLifecycleState.IN_USE,
        event_payload={"incidentId": incident.IncidentID, "decision": "CONTINUE", "continuedUse": True},
    )


RESOLUTION_PLANNERS: dict[IncidentDecision, Callable[[Incident], ResolutionPlan]] = {
    IncidentDecision.REPLACE: _plan_replace,
    IncidentDecision.PAUSE: _plan_pause,
    IncidentDecision.CONTINUE: _plan_continue,
}


def parse_decision(raw: str | IncidentDecision | None) -> IncidentDecision:
    if isinstance(raw, IncidentDecision):
        return raw
    try:
        return IncidentDecision((raw or "").strip().upper())
    except ValueError as exc:
        raise InvalidInputError(f"Invalid decision: {raw}. Must be REPLACE, PAUSE, or CONTINUE") from exc


def plan_resolution(incident: Incident, decision: IncidentDecision) -> ResolutionPlan:
    return RESOLUTION_PLANNERS[decision](incident)


def _scoped_incident_query(scope: TenantScope):
    return (
        select(Incident)
        .join(Asset, Asset.AssetID == Incident.AssetID)
        .where(Asset.TenantID == scope.tenant_id)
        .where(Asset.BusinessUnitID == scope.business_unit_id)
    )


def get_incident(db: Session, scope: TenantScope, incident_id: str, for_update: bool = False) -> Incident:
    stmt = _scoped_incident_query(scope).where(Incident.IncidentID == incident_id)
    if for_update:
        stmt = stmt.with_for_update()
    incident = db.execute(stmt).scalars().first()
    if not incident:
        raise NotFoundError("Incident")
    return incident


def count_open_incidents(db: Session, asset_id: str, exclude_incident_id: str | None = None) -> int:
    stmt = (
        select(func.count(Incident.IncidentID))
        .where(Incident.AssetID == asset_id)
        .where(Incident.Resolved.is_(False))
    )
    if exclude_incident_id:
        stmt = stmt.where(Incident.IncidentID != exclude_incident_id)
    return int(db.execute(stmt).scalar() or 0)


def report_incident(
    db: Session,
    scope: TenantScope,
    payload: CreateIncidentDto,
    allow_concurrent: bool = False,
) -> Incident:
    description = (payload.description or "").strip()
    if not description:
        raise InvalidInputError("Incident description is required.")

    with unit_of_work(db, "report_incident"):
        state_row = get_asset_state(db, scope, payload.assetID, for_update=True)
        contract = get_contract(db, scope, payload.contractID)
        if contract.Status != ContractStatus.ACTIVE:
            raise InvalidStateError(
                f"Contract is not active. Current status: {contract.Status}",
                current_state=contract.Status,
            )
        if not allow_concurrent and count_open_incidents(db, payload.assetID) > 0:
            LOGGER.warning("Incident rejected asset_id=%s reason=open_incident_exists", payload.assetID)
            raise InvalidStateError(
                "Asset already has an unresolved incident.",
                current_state=state_row.CurrentState,
            )

        # An incident pre-empts whatever the asset was doing.
        transition(
            db,
            scope,
            payload.assetID,
            AssetLifecycleState.INCIDENT,
            context={"contractId": contract.ContractID},
        )
        incident = Incident(
            AssetID=payload.assetID,
            ContractID=contract.ContractID,
            Description=description,
            Resolved=False,
            CreatedAt=datetime.now(),
        )
        db.add(incident)
        db.flush()
        record_event(
            db,
            scope,
            "asset.incident_reported",
            {"incidentId": incident.IncidentID, "contractId": contract.ContractID, "description": description},
            asset_id=payload.assetID,
        )
    LOGGER.info("Incident reported incident_id=%s asset_id=%s", incident.IncidentID, payload.assetID)
    return incident


def apply_resolution_plan(
    db: Session,
    scope: TenantScope,
    incident: Incident,
    plan: ResolutionPlan,
) -> dict[str, Any]:
    """Apply a plan inside the caller's transaction and report what changed."""
    applied: dict[str, Any] = {"assetState": None, "contractStatus": None}

    if plan.asset_state is not None:
        # With several open incidents the asset leaves INCIDENT only when the last one is resolved.
        if count_open_incidents(db, incident.AssetID, exclude_incident_id=incident.IncidentID) == 0:
            transition(
                db,
                scope,
                incident.AssetID,
                plan.asset_state,
                context={"incidentId": incident.IncidentID, "decision": plan.decision.value},
            )
            applied["assetState"] = plan.asset_state.value

    if plan.contract_status is not None:
        contract = get_contract(db, scope, incident.ContractID)
        contract.Status = plan.contract_status
        contract.UpdatedDate = datetime.now()
        applied["contractStatus"] = plan.contract_status

    record_event(db, scope, plan.event_type, plan.event_payload, asset_id=incident.AssetID)
    return applied


def resolve_incident(
    db: Session,
    scope: TenantScope,
    incident_id: str,
    decision: str | IncidentDecision,
    resolution: str | None = None,
) -> Incident:
    parsed = parse_decision(decision)

    with unit_of_work(db, "resolve_incident"):
        incident = get_incident(db, scope, incident_id, for_update=True)
        if incident.Resolved:
            raise InvalidStateError(
                f"Incident already resolved with decision {incident.Decision}",
                current_state="RESOLVED",
            )
        state_row = get_asset_state(db, scope, incident.AssetID, for_update=True)
        require_state(state_row, {AssetLifecycleState.INCIDENT}, "Asset is not in an incident state.")
        get_contract(db, scope, incident.ContractID)

        plan = plan_resolution(incident, parsed)
        applied = apply_resolution_plan(db, scope, incident, plan)

        incident.Resolved = True
        incident.Decision = parsed.value
        incident.Resolution = resolution
        incident.ResolvedAt = datetime.now()
        try:
            db.flush()
        except StaleDataError as exc:
            raise ConflictError(f"Incident {incident_id} was resolved concurrently.") from exc

        record_event(
            db,
            scope,
            "asset.incident_resolved",
            {"incidentId": incident_id, "decision": parsed.value, "resolution": resolution, **applied},
            asset_id=incident.AssetID,
        )
    LOGGER.info("Incident resolved incident_id=%s decision=%s", incident_id, parsed.value)
    return incident


def list_incidents(
    db: Session,
    scope: TenantScope,
    asset_id: str | None = None,
    contract_id: str | None = None,
    resolved: bool | None = None,
) -> list[Incident]:
    stmt = _scoped_incident_query(scope).order_by(Incident.CreatedAt.desc())
    if asset_id:
        stmt = stmt.where(Incident.AssetID == asset_id)
    if contract_id:
        stmt = stmt.where(Incident.ContractID == contract_id)
    if resolved is not None:
        stmt = stmt.where(Incident.Resolved.is_(resolved))
    return list(db.execute(stmt).scalars().all())


def list_active_incidents(db: Session, scope: TenantScope) -> list[Incident]:
    return list_incidents(db, scope, resolved=False)


def serialize_incident(incident: Incident) -> dict:
    return {
        "incidentID": incident.IncidentID,
        "assetID": incident.AssetID,
        "contractID": incident.ContractID,
        "description": incident.Description,
        "resolved": bool(incident.Resolved),
        "decision": incident.Decision,
        "resolution": incident.Resolution,
        "resolvedAt": incident.ResolvedAt,
        "createdAt": incident.CreatedAt,
    }
