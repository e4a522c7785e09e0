import asyncio
import logging
import time
from typing import Optional

from provisioner.modules.provisioning.engine import ProvisioningEngine
from provisioner.modules.provisioning.service import ProvisioningService

logger = logging.getLogger(__name__)


async def sweep_stalled_jobs(engine: ProvisioningEngine):
    """Fail jobs whose external confirmation never arrived."""
    try:
        failed = await asyncio.to_thread(engine.fail_stalled)
        if not failed:
            logger.debug("No stalled provisioning jobs found")
        return failed
    except Exception as e:
        logger.error(f"Error in provisioning timeout sweep: {str(e)}")
        return []


async def cleanup_finished_jobs(service: ProvisioningService):
    try:
        result = await asyncio.to_thread(service.cleanup)
        return result.cleaned_count
    except Exception as e:
        logger.error(f"Error in provisioning retention cleanup: {str(e)}")
        return 0


async def provisioning_scheduler_loop(
    engine: ProvisioningEngine,
    service: ProvisioningService,
    sweep_interval: float = 60,
    cleanup_interval: float = 3600,
    iterations: Optional[int] = None,
):
    """Background task: timeout sweep every ``sweep_interval`` seconds, retention cleanup every ``cleanup_interval``"""
    last_cleanup = time.monotonic()
    ran = 0
    while iterations is None or ran < iterations:
        try:
            await sweep_stalled_jobs(engine)
            if time.monotonic() - last_cleanup >= cleanup_interval:
                await cleanup_finished_jobs(service)
                last_cleanup = time.monotonic()
        except Exception as e:
            logger.error(f"Error in provisioning scheduler loop: {str(e)}")
        ran += 1
        await asyncio.sleep(sweep_interval)
