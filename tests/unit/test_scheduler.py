from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from provisioner.modules.provisioning.scheduler import (
    cleanup_finished_jobs,
    provisioning_scheduler_loop,
    sweep_stalled_jobs,
)
from provisioner.modules.provisioning.schemas import TIMEOUT_ERROR, JobStatus
from tests.factories import make_spec


@pytest.mark.asyncio
async def test_sweep_fails_stalled_jobs(service, engine, store):
    # Arrange
    job = service.submit(make_spec())
    engine.run(job.id)
    engine.callback_timeout = timedelta(0)

    # Act
    failed = await sweep_stalled_jobs(engine)

    # Assert
    assert failed == [job.id]
    assert store.get(job.id).error == TIMEOUT_ERROR


@pytest.mark.asyncio
async def test_sweep_errors_are_logged_not_raised():
    engine = MagicMock()
    engine.fail_stalled.side_effect = RuntimeError("store unreachable")

    assert await sweep_stalled_jobs(engine) == []


@pytest.mark.asyncio
async def test_cleanup_errors_are_logged_not_raised():
    service = MagicMock()
    service.cleanup.side_effect = RuntimeError("store unreachable")

    assert await cleanup_finished_jobs(service) == 0


@pytest.mark.asyncio
async def test_scheduler_loop_sweeps_then_cleans_up(service, engine, store):
    """A stalled job is timed out and, once past retention, removed"""
    # Arrange
    job = service.submit(make_spec())
    engine.run(job.id)
    engine.callback_timeout = timedelta(0)
    service.retention = timedelta(0)

    # Act
    await provisioning_scheduler_loop(engine, service, sweep_interval=0, cleanup_interval=0, iterations=1)

    # Assert
    assert store.count() == 0


@pytest.mark.asyncio
async def test_scheduler_loop_survives_failing_iterations():
    engine = MagicMock()
    engine.fail_stalled.side_effect = RuntimeError("boom")
    service = MagicMock()

    await provisioning_scheduler_loop(engine, service, sweep_interval=0, cleanup_interval=3600, iterations=3)

    assert engine.fail_stalled.call_count == 3
    service.cleanup.assert_not_called()


@pytest.mark.asyncio
async def test_scheduler_leaves_waiting_jobs_within_timeout(service, engine, store):
    job = service.submit(make_spec())
    engine.run(job.id)

    await provisioning_scheduler_loop(engine, service, sweep_interval=0, cleanup_interval=0, iterations=1)

    assert store.get(job.id).status == JobStatus.running
