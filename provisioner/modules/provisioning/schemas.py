import re
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any, List

from provisioner.config.workflow_templates import DEFAULT_TEMPLATE

SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$")
SUBDOMAIN_MIN_LENGTH = 3
SUBDOMAIN_MAX_LENGTH = 30

CANCELLED_ERROR = "cancelled by operator"
TIMEOUT_ERROR = "timed out awaiting external confirmation"
STALLED_ERROR = "provisioning stalled without progress"


def is_valid_subdomain(subdomain: str) -> bool:
    """Lowercase alphanumerics and hyphens, 3-30 chars, no leading/trailing hyphen."""
    if not isinstance(subdomain, str):
        return False
    if not SUBDOMAIN_MIN_LENGTH <= len(subdomain) <= SUBDOMAIN_MAX_LENGTH:
        return False
    return bool(SUBDOMAIN_PATTERN.match(subdomain))


def normalize_domain(domain: Optional[str]) -> Optional[str]:
    """Hostnames are compared lowercase without a trailing dot. Blank becomes None."""
    if domain is None:
        return None
    domain = domain.strip().rstrip(".").lower()
    return domain or None


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase keys; serialized with camelCase by FastAPI."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobStatus(str, Enum):
    initializing = "initializing"
    running = "running"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = {JobStatus.completed, JobStatus.failed}
ACTIVE_STATUSES = {JobStatus.initializing, JobStatus.running}


class TenantProvisionRequest(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
    )

    blog_name: str = Field(min_length=1, max_length=120)
    subdomain: str
    owner_email: EmailStr
    custom_domain: Optional[str] = None
    owner_name: Optional[str] = None
    company_name: Optional[str] = None
    niche: Optional[str] = None
    theme: str = "modern"
    primary_color: str = Field(default="#3B82F6", pattern=r"^#[0-9A-Fa-f]{6}$")
    template: str = DEFAULT_TEMPLATE

    @field_validator("custom_domain")
    @classmethod
    def _normalize_custom_domain(cls, value: Optional[str]) -> Optional[str]:
        return normalize_domain(value)


class StepEntry(CamelModel):
    message: str
    timestamp: datetime


class AwaitingSignal(CamelModel):
    step: str
    signal: str
    external_ref: str
    since: datetime


class ProvisioningJob(CamelModel):
    id: str
    tenant_ref: str
    spec: TenantProvisionRequest
    template: str
    status: JobStatus = JobStatus.initializing
    progress: int = 0
    steps: List[StepEntry] = Field(default_factory=list)
    completed_steps: List[str] = Field(default_factory=list)
    current_step: Optional[str] = None
    awaiting: Optional[AwaitingSignal] = None
    external_refs: Dict[str, str] = Field(default_factory=dict)
    early_signals: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)
    deploy_url: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def subdomain(self) -> str:
        return self.spec.subdomain

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ProvisioningJobResponse(CamelModel):
    id: str
    tenant_ref: str
    spec: TenantProvisionRequest
    template: str
    status: JobStatus
    progress: int
    steps: List[StepEntry]
    completed_steps: List[str]
    current_step: Optional[str] = None
    awaiting: Optional[AwaitingSignal] = None
    deploy_url: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: ProvisioningJob) -> "ProvisioningJobResponse":
        return cls.model_validate(job.model_dump())


class SubmissionResponse(CamelModel):
    job_id: str
    tenant_ref: str
    status: JobStatus
    estimated_time: str = "5-10 minutes"


class BulkProvisionStarted(CamelModel):
    subdomain: str
    job_id: str
    status: JobStatus


class BulkProvisionFailure(CamelModel):
    subdomain: Optional[str] = None
    spec: Any = None
    code: str
    error: str


class BulkProvisionResponse(CamelModel):
    successful: List[BulkProvisionStarted]
    failed: List[BulkProvisionFailure]
    total_requested: int
    total_started: int
    total_failed: int


class DeleteJobRequest(CamelModel):
    confirm: Optional[str] = None


class DeleteJobResponse(CamelModel):
    job_id: str
    deleted: bool
    job: Optional[ProvisioningJobResponse] = None


class CleanupRequest(CamelModel):
    retention_hours: Optional[float] = Field(default=None, ge=0)


class CleanupResponse(CamelModel):
    cleaned_count: int
    remaining_count: int


class TemplateStep(CamelModel):
    name: str
    weight: int


class TemplateResponse(CamelModel):
    name: str
    description: str
    steps: List[TemplateStep]


class AnalyticsResponse(CamelModel):
    total_jobs: int
    jobs_by_status: Dict[str, int]
    jobs_by_theme: Dict[str, int]
    jobs_by_niche: Dict[str, int]
    jobs_by_day: Dict[str, int]
    custom_domains: int
    success_rate: float
    active_jobs: int
    queue_size: int
