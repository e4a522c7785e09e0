from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from fastapi import HTTPException
from pydantic import ValidationError

from provisioner.config.workflow_templates import RESERVED_SUBDOMAINS
from provisioner.modules.provisioning.engine import ProvisioningEngine
from provisioner.modules.provisioning.job_store import (
    CustomDomainConflict,
    JobNotFound,
    JobStore,
    SubdomainConflict,
    utcnow,
)
from provisioner.modules.provisioning.schemas import (
    ACTIVE_STATUSES,
    AnalyticsResponse,
    BulkProvisionFailure,
    BulkProvisionResponse,
    BulkProvisionStarted,
    CleanupResponse,
    DeleteJobResponse,
    JobStatus,
    ProvisioningJob,
    ProvisioningJobResponse,
    TemplateResponse,
    TemplateStep,
    TenantProvisionRequest,
    is_valid_subdomain,
)

logger = logging.getLogger(__name__)

DELETE_CONFIRMATION = "DELETE"
BULK_REQUEST_FACTOR = 5

REQUIRED_FIELDS = (
    ("blog_name", "blogName"),
    ("subdomain", "subdomain"),
    ("owner_email", "ownerEmail"),
)


class SubmissionError(HTTPException):
    """Request rejected before any job was created."""

    def __init__(self, status_code: int, code: str, message: str, **extra: Any):
        self.code = code
        self.message = message
        super().__init__(status_code=status_code, detail={"code": code, "message": message, **extra})


def _field(payload: Dict[str, Any], snake: str, camel: str) -> Any:
    value = payload.get(camel)
    if value is None:
        value = payload.get(snake)
    if isinstance(value, str):
        value = value.strip()
    return value


class ProvisioningService:
    def __init__(
        self,
        store: JobStore,
        engine: ProvisioningEngine,
        tenants,
        bulk_max_specs: int = 10,
        bulk_max_request_specs: Optional[int] = None,
        retention: timedelta = timedelta(hours=24),
    ):
        self.store = store
        self.engine = engine
        self.tenants = tenants
        self.bulk_max_specs = bulk_max_specs
        self.bulk_max_request_specs = (
            bulk_max_request_specs if bulk_max_request_specs is not None else bulk_max_specs * BULK_REQUEST_FACTOR
        )
        self.retention = retention

    def parse_request(self, payload: Any) -> TenantProvisionRequest:
        """Validate a raw submission body. Raises SubmissionError with a typed code."""
        if not isinstance(payload, dict):
            raise SubmissionError(400, "INVALID_REQUEST", "Provisioning request must be a JSON object")

        missing = [
            camel for snake, camel in REQUIRED_FIELDS
            if _field(payload, snake, camel) in (None, "")
        ]
        if missing:
            raise SubmissionError(
                400,
                "MISSING_FIELDS",
                f"Missing required fields: {', '.join(missing)}",
                fields=missing,
            )

        subdomain = payload.get("subdomain")
        if not is_valid_subdomain(subdomain):
            raise SubmissionError(
                400,
                "INVALID_SUBDOMAIN",
                "Invalid subdomain format. Use only lowercase letters, numbers, and hyphens (3-30 chars)",
            )
        if subdomain in RESERVED_SUBDOMAINS:
            raise SubmissionError(400, "INVALID_SUBDOMAIN", f"Subdomain '{subdomain}' is reserved")

        try:
            spec = TenantProvisionRequest.model_validate(payload)
        except ValidationError as e:
            errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            raise SubmissionError(400, "INVALID_REQUEST", "Invalid provisioning request", errors=errors)

        if spec.template not in self.engine.templates:
            raise SubmissionError(
                400,
                "INVALID_TEMPLATE",
                f"Template '{spec.template}' not found",
                available=sorted(self.engine.templates),
            )
        return spec

    def submit(self, payload: Any) -> ProvisioningJob:
        """Create a job in initializing. The workflow is started by the caller."""
        return self._create(self.parse_request(payload))

    def _create(self, spec: TenantProvisionRequest) -> ProvisioningJob:
        now = utcnow()
        job = ProvisioningJob(
            id=str(uuid.uuid4()),
            tenant_ref=str(uuid.uuid4()),
            spec=spec,
            template=spec.template,
            started_at=now,
            updated_at=now,
        )
        try:
            self.store.create(job, is_subdomain_taken=self.tenants.subdomain_taken)
        except SubdomainConflict:
            raise SubmissionError(409, "SUBDOMAIN_EXISTS", "Subdomain already exists")
        except CustomDomainConflict as e:
            raise SubmissionError(
                409, "CUSTOM_DOMAIN_EXISTS", f"Custom domain '{e.custom_domain}' is already being provisioned"
            )
        logger.info(f"[{job.id}] Provisioning accepted for {spec.subdomain} (template {spec.template})")
        return job

    def submit_bulk(self, specs: Any) -> Tuple[BulkProvisionResponse, List[str]]:
        """Validate every spec, then create each valid one independently.

        The limit applies to the specs that pass validation and is checked
        before any job is created. The raw list length has its own cap.
        Returns the response and the started job ids.
        """
        if not isinstance(specs, list) or not specs:
            raise SubmissionError(400, "INVALID_BULK_REQUEST", "specs must be a non-empty list")
        if len(specs) > self.bulk_max_request_specs:
            raise SubmissionError(
                400,
                "BULK_LIMIT_EXCEEDED",
                f"Maximum {self.bulk_max_request_specs} specs per bulk request",
            )

        parsed = []
        for raw in specs:
            try:
                parsed.append((raw, self.parse_request(raw), None))
            except SubmissionError as e:
                parsed.append((raw, None, e))
        if sum(1 for _, spec, _ in parsed if spec is not None) > self.bulk_max_specs:
            raise SubmissionError(
                400,
                "BULK_LIMIT_EXCEEDED",
                f"Maximum {self.bulk_max_specs} tenants per bulk operation",
            )

        successful = []
        failed = []
        for raw, spec, error in parsed:
            if spec is not None:
                try:
                    job = self._create(spec)
                except SubmissionError as e:
                    error = e
                else:
                    successful.append(BulkProvisionStarted(subdomain=job.subdomain, job_id=job.id, status=job.status))
                    continue
            subdomain = raw.get("subdomain") if isinstance(raw, dict) else None
            failed.append(BulkProvisionFailure(
                subdomain=subdomain if isinstance(subdomain, str) else None,
                spec=raw,
                code=error.code,
                error=error.message,
            ))

        logger.info(f"Bulk provisioning started: {len(successful)}/{len(specs)} tenants")
        response = BulkProvisionResponse(
            successful=successful,
            failed=failed,
            total_requested=len(specs),
            total_started=len(successful),
            total_failed=len(failed),
        )
        return response, [s.job_id for s in successful]

    def get_job(self, job_id: str) -> ProvisioningJob:
        try:
            return self.store.get(job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail={"code": "JOB_NOT_FOUND", "message": "Deployment not found"})

    def list_jobs(self, tenant_ref: Optional[str] = None, status: Optional[JobStatus] = None) -> List[ProvisioningJob]:
        return self.store.list(status=status, tenant_ref=tenant_ref)

    def delete_job(self, job_id: str, confirm: Optional[str]) -> DeleteJobResponse:
        """Cancel an in-flight job, or delete a finished one. Requires the DELETE confirmation token."""
        if confirm != DELETE_CONFIRMATION:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": "CONFIRMATION_REQUIRED",
                    "message": 'Confirmation required. Send { "confirm": "DELETE" } to proceed',
                },
            )
        job = self.get_job(job_id)
        if not job.is_terminal:
            cancelled = self.engine.cancel(job_id)
            job = cancelled or self.get_job(job_id)
            logger.info(f"[{job_id}] Cancelled by operator")
            return DeleteJobResponse(job_id=job_id, deleted=False, job=ProvisioningJobResponse.from_job(job))
        deleted = self.store.delete(job_id)
        return DeleteJobResponse(job_id=job_id, deleted=deleted)

    def cleanup(self, retention_hours: Optional[float] = None, now: Optional[datetime] = None) -> CleanupResponse:
        """Delete terminal jobs whose last update is older than the retention window."""
        retention = timedelta(hours=retention_hours) if retention_hours is not None else self.retention
        cutoff = (now or utcnow()) - retention
        cleaned = 0
        for job in self.store.list():
            if job.is_terminal and job.updated_at <= cutoff:
                if self.store.delete(job.id):
                    cleaned += 1
        remaining = self.store.count()
        if cleaned:
            logger.info(f"Deployment cleanup removed {cleaned} job(s), {remaining} remaining")
        return CleanupResponse(cleaned_count=cleaned, remaining_count=remaining)

    def list_templates(self) -> List[TemplateResponse]:
        return [
            TemplateResponse(
                name=template.name,
                description=template.description,
                steps=[TemplateStep(name=s.name, weight=s.weight) for s in template.steps],
            )
            for template in self.engine.templates.values()
        ]

    def analytics(self, days: int = 30) -> AnalyticsResponse:
        jobs = self.store.list()
        since = utcnow() - timedelta(days=days)
        recent = [j for j in jobs if j.started_at >= since]

        by_status = Counter(j.status.value for j in recent)
        finished = by_status.get(JobStatus.completed.value, 0) + by_status.get(JobStatus.failed.value, 0)
        success_rate = round(by_status.get(JobStatus.completed.value, 0) / finished * 100, 2) if finished else 0.0

        return AnalyticsResponse(
            total_jobs=len(recent),
            jobs_by_status=dict(by_status),
            jobs_by_theme=dict(Counter(j.spec.theme for j in recent)),
            jobs_by_niche=dict(Counter(j.spec.niche or "general" for j in recent)),
            jobs_by_day=dict(Counter(j.started_at.date().isoformat() for j in recent)),
            custom_domains=sum(1 for j in recent if j.spec.custom_domain),
            success_rate=success_rate,
            active_jobs=sum(1 for j in jobs if j.status in ACTIVE_STATUSES),
            queue_size=len(jobs),
        )
