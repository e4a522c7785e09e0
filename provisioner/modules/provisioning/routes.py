from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query
from typing import Any, Dict, List, Optional

from provisioner.core.dependencies import get_provisioning_service, require_admin
from provisioner.modules.provisioning.schemas import (
    AnalyticsResponse,
    BulkProvisionResponse,
    CleanupRequest,
    CleanupResponse,
    DeleteJobRequest,
    DeleteJobResponse,
    JobStatus,
    ProvisioningJobResponse,
    SubmissionResponse,
    TemplateResponse,
)
from provisioner.modules.provisioning.service import ProvisioningService, SubmissionError

router = APIRouter(prefix="/provisioning", tags=["provisioning"])


@router.get("/templates", response_model=List[TemplateResponse])
async def list_templates(service: ProvisioningService = Depends(get_provisioning_service)):
    """Site templates a tenant can be provisioned from, with their weighted steps"""
    return service.list_templates()


@router.post("/jobs", response_model=SubmissionResponse, status_code=202)
async def submit_job(
    background_tasks: BackgroundTasks,
    payload: Any = Body(...),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """
    Accept a tenant provisioning request.
    The job is visible as initializing before this returns; the workflow runs in the background.
    """
    job = service.submit(payload)
    background_tasks.add_task(service.engine.run, job.id)
    return SubmissionResponse(job_id=job.id, tenant_ref=job.tenant_ref, status=job.status)


@router.post("/jobs/bulk", response_model=BulkProvisionResponse, status_code=202)
async def submit_bulk(
    background_tasks: BackgroundTasks,
    payload: Any = Body(...),
    user_data: Dict = Depends(require_admin),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Provision several tenants at once; each spec is accepted or rejected on its own"""
    if not isinstance(payload, dict):
        raise SubmissionError(400, "INVALID_BULK_REQUEST", "Body must be an object with a specs list")
    response, job_ids = service.submit_bulk(payload.get("specs"))
    for job_id in job_ids:
        background_tasks.add_task(service.engine.run, job_id)
    return response


@router.get("/jobs/{job_id}", response_model=ProvisioningJobResponse)
async def get_job(
    job_id: str,
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Poll a provisioning job for status, progress and step log"""
    return ProvisioningJobResponse.from_job(service.get_job(job_id))


@router.get("/jobs", response_model=List[ProvisioningJobResponse])
async def list_jobs(
    tenant_ref: Optional[str] = Query(None, alias="tenantRef"),
    status: Optional[JobStatus] = Query(None),
    user_data: Dict = Depends(require_admin),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    return [ProvisioningJobResponse.from_job(job) for job in service.list_jobs(tenant_ref=tenant_ref, status=status)]


@router.delete("/jobs/{job_id}", response_model=DeleteJobResponse, response_model_exclude_none=True)
async def delete_job(
    job_id: str,
    request: Optional[DeleteJobRequest] = Body(None),
    user_data: Dict = Depends(require_admin),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Cancel an in-flight job, or remove a finished one. Body must be {"confirm": "DELETE"}."""
    return service.delete_job(job_id, request.confirm if request else None)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_jobs(
    request: Optional[CleanupRequest] = Body(None),
    user_data: Dict = Depends(require_admin),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    """Delete finished jobs older than the retention window"""
    return service.cleanup(retention_hours=request.retention_hours if request else None)


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(
    days: int = Query(30, ge=1, le=365),
    user_data: Dict = Depends(require_admin),
    service: ProvisioningService = Depends(get_provisioning_service),
):
    return service.analytics(days=days)
