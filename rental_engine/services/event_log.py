from __future__ import annotations

import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_engine.models.rental_models import AssetEvent
from rental_engine.schemas.scope import TenantScope
from rental_engine.services.errors import InvalidInputError


EVENT_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)+$")
EVENT_SOURCES = {"system", "workflow"}


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _to_json(payload: dict[str, Any] | None) -> str:
    return json.dumps(payload or {}, ensure_ascii=True, default=_json_default)


def _from_json_dict(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def validate_event_type(event_type: str) -> str:
    value = (event_type or "").strip()
    if not EVENT_TYPE_PATTERN.match(value):
        raise InvalidInputError(f"Invalid event type {event_type!r}; expected a dotted lowercase tag.")
    return value


def record_event(
    db: Session,
    scope: TenantScope,
    event_type: str,
    payload: dict[str, Any] | None = None,
    *,
    asset_id: str | None = None,
    source: str = "system",
) -> AssetEvent:
    if source not in EVENT_SOURCES:
        raise InvalidInputError(f"Invalid event source {source!r}.")
    event = AssetEvent(
        TenantID=scope.tenant_id,
        BusinessUnitID=scope.business_unit_id,
        AssetID=asset_id,
        EventType=validate_event_type(event_type),
        Source=source,
        Payload=_to_json(payload),
        CreatedAt=datetime.now(),
    )
    db.add(event)
    return event


def list_asset_events(db: Session, scope: TenantScope, asset_id: str, limit: int = 50) -> list[AssetEvent]:
    stmt = (
        select(AssetEvent)
        .where(AssetEvent.TenantID == scope.tenant_id)
        .where(AssetEvent.BusinessUnitID == scope.business_unit_id)
        .where(AssetEvent.AssetID == asset_id)
        .order_by(AssetEvent.CreatedAt.desc())
        .limit(max(1, limit))
    )
    return list(db.execute(stmt).scalars().all())


def list_events_by_type(db: Session, scope: TenantScope, event_type: str) -> list[AssetEvent]:
    stmt = (
        select(AssetEvent)
        .where(AssetEvent.TenantID == scope.tenant_id)
        .where(AssetEvent.BusinessUnitID == scope.business_unit_id)
        .where(AssetEvent.EventType == validate_event_type(event_type))
        .order_by(AssetEvent.CreatedAt)
    )
    return list(db.execute(stmt).scalars().all())


def serialize_event(event: AssetEvent) -> dict:
    return {
        "eventID": event.EventID,
        "tenantID": event.TenantID,
        "businessUnitID": event.BusinessUnitID,
        "assetID": event.AssetID,
        "eventType": event.EventType,
        "source": event.Source,
        "payload": _from_json_dict(event.Payload),
        "createdAt": event.CreatedAt,
    }
