from datetime import date

from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rental_engine.db.base import Base
from rental_engine.db.session import build_engine, build_session_factory
from rental_engine.models import rental_models  # noqa: F401  registers tables on Base.metadata
from rental_engine.schemas.assets import AssetIntakeDto
from rental_engine.schemas.rentals import AssignAssetDto, CreateContractDto
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.asset_service import create_asset
from rental_engine.services.assignment_service import assign_asset_to_contract
from rental_engine.services.contract_service import create_contract


SCOPE = TenantScope(tenant_id="tenant-1", business_unit_id="bu-1")
OTHER_SCOPE = TenantScope(tenant_id="tenant-2", business_unit_id="bu-1")


def make_session_factory(database_url: str | None = None) -> sessionmaker:
    if database_url is None:
        engine = build_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = build_engine(database_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    return build_session_factory(engine)


def seed_asset(db, asset_id="A1", asset_type="excavator", name=None, scope=SCOPE):
    return create_asset(
        db,
        scope,
        AssetIntakeDto(assetID=asset_id, name=name or f"Asset {asset_id}", assetType=asset_type, currentLocation="TALLER"),
    )


def seed_contract(db, contract_id="C1", status="ACTIVE", client_id="client-1", scope=SCOPE):
    return create_contract(db, scope, CreateContractDto(contractID=contract_id, clientID=client_id, status=status))


def seed_assignment(
    db,
    asset_id="A1",
    contract_id="C1",
    obra="Obra Norte",
    start=date(2025, 1, 1),
    end=date(2025, 1, 10),
    hours=100,
    scope=SCOPE,
):
    return assign_asset_to_contract(
        db,
        scope,
        contract_id,
        AssignAssetDto(
            assetID=asset_id,
            obra=obra,
            estimatedStart=start,
            estimatedEnd=end,
            estimatedHours=hours,
        ),
    )
