from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_engine.db.session import unit_of_work
from rental_engine.models.rental_models import Asset, UsageReport
from rental_engine.models.states import AssetLifecycleState, ContractStatus
from rental_engine.schemas.rentals import CreateUsageReportDto
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.contract_service import get_contract
from rental_engine.services.errors import InvalidInputError, InvalidStateError
from rental_engine.services.event_log import record_event
from rental_engine.services.lifecycle_service import get_asset_state, require_state


LOGGER = logging.getLogger("rental_engine.usage")


def record_usage(db: Session, scope: TenantScope, payload: CreateUsageReportDto) -> UsageReport:
    metric = (payload.metric or "").strip().lower()
    if not metric:
        raise InvalidInputError("metric is required.")
    if payload.value is None or payload.value < 0:
        raise InvalidInputError("Usage value must not be negative.")
    reported_by = (payload.reportedBy or "").strip()
    if not reported_by:
        raise InvalidInputError("reportedBy is required.")

    with unit_of_work(db, "record_usage"):
        state_row = get_asset_state(db, scope, payload.assetID)
        require_state(state_row, {AssetLifecycleState.IN_USE}, "Asset is not in use.")
        contract = get_contract(db, scope, payload.contractID)
        if contract.Status != ContractStatus.ACTIVE:
            raise InvalidStateError(
                f"Contract is not active. Current status: {contract.Status}",
                current_state=contract.Status,
            )

        report = UsageReport(
            AssetID=payload.assetID,
            ContractID=contract.ContractID,
            Metric=metric,
            Value=payload.value,
            ReportedBy=reported_by,
            Notes=payload.notes,
            CreatedAt=datetime.now(),
        )
        db.add(report)
        db.flush()
        record_event(
            db,
            scope,
            "asset.usage_reported",
            {
                "reportId": report.ReportID,
                "contractId": contract.ContractID,
                "metric": metric,
                "value": payload.value,
                "reportedBy": reported_by,
            },
            asset_id=payload.assetID,
        )
    LOGGER.info("Usage recorded asset_id=%s contract_id=%s %s=%s", payload.assetID, payload.contractID, metric, payload.value)
    return report


def list_usage_reports(
    db: Session,
    scope: TenantScope,
    asset_id: str | None = None,
    contract_id: str | None = None,
) -> list[UsageReport]:
    stmt = (
        select(UsageReport)
        .join(Asset, Asset.AssetID == UsageReport.AssetID)
        .where(Asset.TenantID == scope.tenant_id)
        .where(Asset.BusinessUnitID == scope.business_unit_id)
        .order_by(UsageReport.CreatedAt.desc())
    )
    if asset_id:
        stmt = stmt.where(UsageReport.AssetID == asset_id)
    if contract_id:
        stmt = stmt.where(UsageReport.ContractID == contract_id)
    return list(db.execute(stmt).scalars().all())


def serialize_usage_report(report: UsageReport) -> dict:
    return {
        "reportID": report.ReportID,
        "assetID": report.AssetID,
        "contractID": report.ContractID,
        "metric": report.Metric,
        "value": float(report.Value) if report.Value is not None else None,
        "reportedBy": report.ReportedBy,
        "notes": report.Notes,
        "createdAt": report.CreatedAt,
    }
