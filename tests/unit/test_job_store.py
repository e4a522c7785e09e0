import threading
from datetime import timedelta

import pytest

from provisioner.modules.provisioning.job_store import (
    CustomDomainConflict,
    InvalidTransition,
    JobNotFound,
    SubdomainConflict,
    utcnow,
)
from provisioner.modules.provisioning.schemas import JobStatus, StepEntry
from tests.factories import make_job


def test_create_and_get_returns_copy(store):
    """Callers never hold a live reference to the stored job"""
    # Arrange
    job = make_job("job-1", "acme")
    store.create(job)

    # Act
    loaded = store.get("job-1")
    loaded.progress = 50

    # Assert
    assert store.get("job-1").progress == 0
    assert store.get("job-1").status == JobStatus.initializing


def test_get_unknown_job_raises(store):
    with pytest.raises(JobNotFound):
        store.get("missing")


def test_create_rejects_subdomain_held_by_active_job(store):
    store.create(make_job("job-1", "acme"))

    with pytest.raises(SubdomainConflict):
        store.create(make_job("job-2", "acme"))
    assert store.count() == 1


def test_create_allows_subdomain_of_failed_job(store):
    store.create(make_job("job-1", "acme", status=JobStatus.failed, error="boom"))

    store.create(make_job("job-2", "acme"))

    assert store.count() == 2


def test_create_consults_external_availability_check(store):
    with pytest.raises(SubdomainConflict):
        store.create(make_job("job-1", "acme"), is_subdomain_taken=lambda s: s == "acme")
    assert store.count() == 0


def test_create_rejects_custom_domain_held_by_active_job(store):
    store.create(make_job("job-1", "acme", custom_domain="blog.example.com"))

    with pytest.raises(CustomDomainConflict):
        store.create(make_job("job-2", "beta", custom_domain="Blog.Example.com"))
    assert store.count() == 1


def test_create_allows_custom_domain_of_finished_job(store):
    store.create(make_job("job-1", "acme", status=JobStatus.failed, error="boom", custom_domain="blog.example.com"))

    store.create(make_job("job-2", "beta", custom_domain="blog.example.com"))

    assert store.count() == 2


def test_concurrent_create_reserves_subdomain_once(store):
    """Exactly one of many simultaneous submissions for the same subdomain wins"""
    # Arrange
    results = []
    barrier = threading.Barrier(8)

    def submit(i):
        barrier.wait()
        try:
            store.create(make_job(f"job-{i}", "acme"))
            results.append("ok")
        except SubdomainConflict:
            results.append("conflict")

    threads = [threading.Thread(target=submit, args=(i,)) for i in range(8)]

    # Act
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # Assert
    assert results.count("ok") == 1
    assert results.count("conflict") == 7
    assert store.count() == 1


def test_update_applies_mutator_and_bumps_updated_at(store):
    job = make_job("job-1", "acme")
    store.create(job)

    def start(j):
        j.status = JobStatus.running
        j.progress = 5
        return j

    updated = store.update("job-1", start)

    assert updated.status == JobStatus.running
    assert updated.progress == 5
    assert updated.updated_at >= job.updated_at


def test_update_mutator_returning_none_leaves_job_untouched(store):
    store.create(make_job("job-1", "acme"))
    before = store.get("job-1")

    after = store.update("job-1", lambda j: None)

    assert after == before
    assert store.get("job-1") == before


def test_update_unknown_job_raises(store):
    with pytest.raises(JobNotFound):
        store.update("missing", lambda j: j)


def _set(**fields):
    def mutate(job):
        for key, value in fields.items():
            setattr(job, key, value)
        return job
    return mutate


def test_terminal_job_cannot_change(store):
    store.create(make_job("job-1", "acme", status=JobStatus.completed))

    with pytest.raises(InvalidTransition):
        store.update("job-1", _set(error="late"))


def test_status_cannot_move_backwards(store):
    store.create(make_job("job-1", "acme", status=JobStatus.running))

    with pytest.raises(InvalidTransition):
        store.update("job-1", _set(status=JobStatus.initializing))


def test_progress_cannot_decrease(store):
    store.create(make_job("job-1", "acme", status=JobStatus.running, progress=40))

    with pytest.raises(InvalidTransition):
        store.update("job-1", _set(progress=20))


def test_progress_100_only_when_completed(store):
    store.create(make_job("job-1", "acme", status=JobStatus.running, progress=90))

    with pytest.raises(InvalidTransition):
        store.update("job-1", _set(progress=100))
    with pytest.raises(InvalidTransition):
        store.update("job-1", _set(status=JobStatus.completed))


def test_progress_frozen_on_failure(store):
    store.create(make_job("job-1", "acme", status=JobStatus.running, progress=40))

    with pytest.raises(InvalidTransition):
        store.update("job-1", _set(status=JobStatus.failed, progress=60))
    failed = store.update("job-1", _set(status=JobStatus.failed, error="boom"))
    assert failed.progress == 40


def test_step_log_is_append_only(store):
    store.create(make_job("job-1", "acme", status=JobStatus.running))

    def log_one(j):
        j.steps.append(StepEntry(message="one", timestamp=j.updated_at))
        return j

    first = store.update("job-1", log_one)

    with pytest.raises(InvalidTransition):
        store.update("job-1", _set(steps=[]))
    assert [s.message for s in store.get("job-1").steps] == [s.message for s in first.steps]


def test_concurrent_updates_are_not_lost(store):
    """Interleaved read-modify-write through update never drops an increment"""
    store.create(make_job("job-1", "acme", status=JobStatus.running))

    def bump(j):
        j.context["count"] = j.context.get("count", 0) + 1
        return j

    threads = [threading.Thread(target=lambda: [store.update("job-1", bump) for _ in range(25)]) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get("job-1").context["count"] == 100


def test_list_filters_and_orders_newest_first(store):
    now = utcnow()
    store.create(make_job("old", "old-blog", status=JobStatus.failed, error="x", now=now - timedelta(hours=2)))
    store.create(make_job("new", "new-blog", now=now))

    assert [j.id for j in store.list()] == ["new", "old"]
    assert [j.id for j in store.list(status=JobStatus.failed)] == ["old"]
    assert [j.id for j in store.list(tenant_ref="tenant-new")] == ["new"]


def test_refs_resolve_until_job_deleted(store):
    store.create(make_job("job-1", "acme"))
    store.register_ref("job-1", "deploy", "build_1")

    assert store.find_by_ref("deploy", "build_1") == "job-1"
    assert store.find_by_ref("domain", "build_1") is None

    assert store.delete("job-1") is True
    assert store.find_by_ref("deploy", "build_1") is None
    assert store.delete("job-1") is False
