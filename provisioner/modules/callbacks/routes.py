from fastapi import APIRouter, BackgroundTasks, Body, Depends
from typing import Any

from provisioner.core.dependencies import get_engine
from provisioner.modules.callbacks.schemas import CallbackAck
from provisioner.modules.callbacks.service import CallbackService
from provisioner.modules.provisioning.engine import ProvisioningEngine

router = APIRouter(prefix="/callbacks", tags=["callbacks"])


def get_callback_service(engine: ProvisioningEngine = Depends(get_engine)) -> CallbackService:
    return CallbackService(engine)


@router.post("/deploy", response_model=CallbackAck)
async def deploy_callback(
    background_tasks: BackgroundTasks,
    payload: Any = Body(...),
    service: CallbackService = Depends(get_callback_service),
):
    """Build result from the hosting platform. Unknown or stale references are acknowledged and ignored."""
    job_id = service.handle_deploy(payload)
    if job_id:
        background_tasks.add_task(service.engine.run, job_id)
    return CallbackAck()


@router.post("/domain", response_model=CallbackAck)
async def domain_callback(
    background_tasks: BackgroundTasks,
    payload: Any = Body(...),
    service: CallbackService = Depends(get_callback_service),
):
    """Domain and SSL verification result"""
    job_id = service.handle_domain(payload)
    if job_id:
        background_tasks.add_task(service.engine.run, job_id)
    return CallbackAck()
