from pydantic import BaseModel, ConfigDict, field_validator


class TenantScope(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    business_unit_id: str

    @field_validator("tenant_id", "business_unit_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("scope identifiers must not be blank")
        return value
