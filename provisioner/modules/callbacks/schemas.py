from pydantic import Field, field_validator
from typing import Literal, Optional

from provisioner.modules.provisioning.schemas import CamelModel, normalize_domain


class DeployCallback(CamelModel):
    external_ref: str = Field(min_length=1)
    status: Literal["success", "failed"]
    url: Optional[str] = None
    error: Optional[str] = None


class DomainCallback(CamelModel):
    domain: str = Field(min_length=1)
    status: Literal["verified", "failed"]
    tenant_ref: Optional[str] = None
    error: Optional[str] = None

    @field_validator("domain")
    @classmethod
    def _normalize_domain(cls, value: str) -> str:
        normalized = normalize_domain(value)
        if normalized is None:
            raise ValueError("domain must not be blank")
        return normalized


class CallbackAck(CamelModel):
    success: bool = True
