import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from rental_engine.config import EngineSettings, load_settings
from rental_engine.db.deps import get_db
from rental_engine.db.session import build_engine, build_session_factory
from rental_engine.schemas.assets import AssetIntakeDto, DecommissionRequest, LocationUpdateRequest, StateChangeRequest
from rental_engine.schemas.rentals import (
    AssignAssetDto,
    CreateContractDto,
    CreateIncidentDto,
    CreateUsageReportDto,
    PostObraEvaluationRequest,
    ResolveIncidentDto,
    UpdateContractAssetDto,
    UpdateContractDto,
)
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.asset_service import create_asset, delete_asset, get_asset, serialize_asset, update_asset_location
from rental_engine.services.assignment_service import assign_asset_to_contract
from rental_engine.services.availability_service import project_asset_availability, project_availability_by_type
from rental_engine.services.contract_service import (
    create_contract,
    get_contract,
    list_contracts,
    serialize_contract,
    serialize_contract_asset,
    update_contract,
    update_contract_asset,
)
from rental_engine.services.errors import (
    ConflictError,
    FinalizationError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    RentalEngineError,
)
from rental_engine.services.event_log import list_asset_events, serialize_event
from rental_engine.services.finalization_service import evaluate_asset_post_obra, finalize_contract
from rental_engine.services.incident_service import (
    list_active_incidents,
    list_incidents,
    report_incident,
    resolve_incident,
    serialize_incident,
)
from rental_engine.services.lifecycle_service import change_state, decommission
from rental_engine.services.usage_service import list_usage_reports, record_usage, serialize_usage_report
from rental_engine.services.variance_service import get_usage_variance


API_LOGGER = logging.getLogger("rental_engine.api")

ERROR_STATUS_CODES = {
    NotFoundError: 404,
    InvalidInputError: 400,
    ConflictError: 409,
    InvalidStateError: 409,
}


def _status_code_for(exc: RentalEngineError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return 400


def get_scope(
    x_tenant_id: str | None = Header(None, alias="X-Tenant-ID"),
    x_business_unit_id: str | None = Header(None, alias="X-Business-Unit-ID"),
) -> TenantScope:
    tenant_id = (x_tenant_id or "").strip()
    business_unit_id = (x_business_unit_id or "").strip()
    if not tenant_id or not business_unit_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID and X-Business-Unit-ID headers are required.")
    return TenantScope(tenant_id=tenant_id, business_unit_id=business_unit_id)


def get_settings(request: Request) -> EngineSettings:
    return request.app.state.settings


def create_app(settings: EngineSettings, session_factory: sessionmaker | None = None) -> FastAPI:
    app = FastAPI(title="Rental asset lifecycle engine")
    app.state.settings = settings
    app.state.session_factory = session_factory or build_session_factory(build_engine(settings.database_url))

    allow_credentials = "*" not in settings.cors_allow_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RentalEngineError)
    async def rental_engine_error_handler(request: Request, exc: RentalEngineError):
        status_code = _status_code_for(exc)
        body = {"detail": str(exc), "error": exc.kind}
        if isinstance(exc, InvalidStateError):
            body["currentState"] = exc.current_state
        if isinstance(exc, FinalizationError):
            body["failedAssetID"] = exc.failed_asset_id
            body["rolledBackAssetIDs"] = exc.rolled_back_asset_ids
        API_LOGGER.warning("Request rejected path=%s error=%s detail=%s", request.url.path, exc.kind, exc)
        return JSONResponse(status_code=status_code, content=body)

    app.include_router(_build_routes())
    return app


def _build_routes() -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/health")
    def healthcheck(db: Session = Depends(get_db)):
        try:
            db.execute(text("SELECT 1"))
        except Exception as exc:
            raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc
        return {"status": "ok"}

    # Assets

    @router.post("/assets", status_code=201)
    def intake_asset(payload: AssetIntakeDto, scope: TenantScope = Depends(get_scope), db: Session = Depends(get_db)):
        return serialize_asset(create_asset(db, scope, payload))

    @router.get("/assets/{asset_id}")
    def get_asset_item(asset_id: str, scope: TenantScope = Depends(get_scope), db: Session = Depends(get_db)):
        return serialize_asset(get_asset(db, scope, asset_id))

    @router.delete("/assets/{asset_id}")
    def delete_asset_item(asset_id: str, scope: TenantScope = Depends(get_scope), db: Session = Depends(get_db)):
        delete_asset(db, scope, asset_id)
        return {"message": "Asset deleted"}

    @router.patch("/assets/{asset_id}/location")
    def relocate_asset_item(
        asset_id: str,
        payload: LocationUpdateRequest,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return serialize_asset(update_asset_location(db, scope, asset_id, payload.location))

    @router.get("/assets/{asset_id}/events")
    def get_asset_events(
        asset_id: str,
        limit: int = Query(50, ge=1, le=500),
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        get_asset(db, scope, asset_id)
        return [serialize_event(event) for event in list_asset_events(db, scope, asset_id, limit)]

    @router.post("/assets/{asset_id}/state")
    def change_asset_state(
        asset_id: str,
        payload: StateChangeRequest,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        change_state(db, scope, asset_id, payload.targetState, payload.workflowID)
        return serialize_asset(get_asset(db, scope, asset_id))

    @router.post("/assets/{asset_id}/decommission")
    def decommission_asset(
        asset_id: str,
        payload: DecommissionRequest,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        decommission(
            db,
            scope,
            asset_id,
            payload.reason,
            notes=payload.notes,
            attributable_to_client=payload.attributableToClient,
            client_id=payload.clientID,
        )
        return serialize_asset(get_asset(db, scope, asset_id))

    @router.get("/assets/{asset_id}/availability")
    def get_asset_availability(
        asset_id: str,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
        settings: EngineSettings = Depends(get_settings),
    ):
        return project_asset_availability(db, scope, asset_id, settings.availability_margin_days)

    @router.get("/availability")
    def get_availability_by_type(
        asset_type: str = Query(..., alias="assetType"),
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
        settings: EngineSettings = Depends(get_settings),
    ):
        return project_availability_by_type(db, scope, asset_type, settings.availability_margin_days)

    # Contracts

    @router.post("/contracts", status_code=201)
    def create_contract_item(payload: CreateContractDto, scope: TenantScope = Depends(get_scope), db: Session = Depends(get_db)):
        return serialize_contract(create_contract(db, scope, payload))

    @router.get("/contracts")
    def list_contract_items(
        status: Optional[str] = None,
        client_id: Optional[str] = Query(None, alias="clientID"),
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return [serialize_contract(item) for item in list_contracts(db, scope, status, client_id)]

    @router.get("/contracts/{contract_id}")
    def get_contract_item(contract_id: str, scope: TenantScope = Depends(get_scope), db: Session = Depends(get_db)):
        return serialize_contract(get_contract(db, scope, contract_id, with_assets=True), include_assets=True)

    @router.patch("/contracts/{contract_id}")
    def update_contract_item(
        contract_id: str,
        payload: UpdateContractDto,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return serialize_contract(update_contract(db, scope, contract_id, payload))

    @router.post("/contracts/{contract_id}/assets", status_code=201)
    def assign_asset(
        contract_id: str,
        payload: AssignAssetDto,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return serialize_contract_asset(assign_asset_to_contract(db, scope, contract_id, payload))

    @router.post("/contracts/{contract_id}/finalize")
    def finalize_contract_item(
        contract_id: str,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
        settings: EngineSettings = Depends(get_settings),
    ):
        return finalize_contract(db, scope, contract_id, settings.default_depot_location)

    # Contract assets

    @router.patch("/contract-assets/{contract_asset_id}")
    def update_contract_asset_item(
        contract_asset_id: str,
        payload: UpdateContractAssetDto,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return serialize_contract_asset(update_contract_asset(db, scope, contract_asset_id, payload))

    @router.post("/contract-assets/{contract_asset_id}/evaluate")
    def evaluate_contract_asset(
        contract_asset_id: str,
        payload: PostObraEvaluationRequest,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return serialize_contract_asset(evaluate_asset_post_obra(db, scope, contract_asset_id, payload.needsMaintenance))

    @router.get("/contract-assets/{contract_asset_id}/variance")
    def get_contract_asset_variance(
        contract_asset_id: str,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return get_usage_variance(db, scope, contract_asset_id)

    # Usage and incidents

    @router.post("/usage-reports", status_code=201)
    def create_usage_report(payload: CreateUsageReportDto, scope: TenantScope = Depends(get_scope), db: Session = Depends(get_db)):
        return serialize_usage_report(record_usage(db, scope, payload))

    @router.get("/usage-reports")
    def get_usage_reports(
        asset_id: Optional[str] = Query(None, alias="assetID"),
        contract_id: Optional[str] = Query(None, alias="contractID"),
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return [serialize_usage_report(item) for item in list_usage_reports(db, scope, asset_id, contract_id)]

    @router.post("/incidents", status_code=201)
    def create_incident(
        payload: CreateIncidentDto,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
        settings: EngineSettings = Depends(get_settings),
    ):
        incident = report_incident(db, scope, payload, allow_concurrent=settings.allow_concurrent_incidents)
        return serialize_incident(incident)

    @router.get("/incidents")
    def get_incidents(
        asset_id: Optional[str] = Query(None, alias="assetID"),
        contract_id: Optional[str] = Query(None, alias="contractID"),
        resolved: Optional[bool] = None,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return [serialize_incident(item) for item in list_incidents(db, scope, asset_id, contract_id, resolved)]

    @router.get("/incidents/active")
    def get_active_incidents(scope: TenantScope = Depends(get_scope), db: Session = Depends(get_db)):
        return [serialize_incident(item) for item in list_active_incidents(db, scope)]

    @router.post("/incidents/{incident_id}/resolve")
    def resolve_incident_item(
        incident_id: str,
        payload: ResolveIncidentDto,
        scope: TenantScope = Depends(get_scope),
        db: Session = Depends(get_db),
    ):
        return serialize_incident(resolve_incident(db, scope, incident_id, payload.decision, payload.resolution))

    return router


def create_default_app() -> FastAPI:
    """Factory for `uvicorn rental_engine.RentalMan:create_default_app --factory`."""
    return create_app(load_settings())
