from unittest.mock import MagicMock

import pytest

from provisioner.config.settings import settings
from provisioner.modules.provisioning.schemas import JobStatus
from tests.factories import make_job, make_spec

JOBS_URL = "/api/v1/provisioning/jobs"


@pytest.mark.asyncio
async def test_submit_returns_202_initializing(client):
    response = await client.post(JOBS_URL, json=make_spec())

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "initializing"
    assert body["jobId"]
    assert body["tenantRef"]
    assert body["estimatedTime"] == "5-10 minutes"


@pytest.mark.asyncio
async def test_submitted_job_runs_until_deploy_wait(client):
    job_id = (await client.post(JOBS_URL, json=make_spec())).json()["jobId"]

    response = await client.get(f"{JOBS_URL}/{job_id}")

    assert response.status_code == 200
    job = response.json()
    assert job["status"] == "running"
    assert job["progress"] == 55
    assert job["awaiting"]["signal"] == "deploy"
    assert job["spec"]["blogName"] == "Acme"
    assert "earlySignals" not in job
    assert "context" not in job


@pytest.mark.asyncio
async def test_submit_invalid_subdomain(client):
    response = await client.post(JOBS_URL, json=make_spec(subdomain="AB"))

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_SUBDOMAIN"


@pytest.mark.asyncio
async def test_submit_missing_fields(client):
    response = await client.post(JOBS_URL, json={"blogName": "Acme"})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "MISSING_FIELDS"


@pytest.mark.asyncio
async def test_submit_duplicate_subdomain_conflicts(client):
    await client.post(JOBS_URL, json=make_spec())

    response = await client.post(JOBS_URL, json=make_spec(blogName="Acme Two"))

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "SUBDOMAIN_EXISTS"


@pytest.mark.asyncio
async def test_get_unknown_job(client):
    response = await client.get(f"{JOBS_URL}/missing")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "JOB_NOT_FOUND"


@pytest.mark.asyncio
async def test_list_templates(client):
    response = await client.get("/api/v1/provisioning/templates")

    assert response.status_code == 200
    names = [t["name"] for t in response.json()]
    assert "modern-blog" in names


@pytest.mark.asyncio
async def test_bulk_requires_admin(client):
    response = await client.post(f"{JOBS_URL}/bulk", json={"specs": [make_spec()]})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_bulk_rejects_wrong_api_key(client):
    response = await client.post(
        f"{JOBS_URL}/bulk",
        json={"specs": [make_spec()]},
        headers={"X-Admin-API-Key": "wrong"},
    )

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "INVALID_API_KEY"


@pytest.mark.asyncio
async def test_bulk_partial_success(client, admin_headers):
    specs = [make_spec(subdomain="blog-one"), make_spec(subdomain="blog-two"), make_spec(subdomain="AB")]

    response = await client.post(f"{JOBS_URL}/bulk", json={"specs": specs}, headers=admin_headers)

    assert response.status_code == 202
    body = response.json()
    assert body["totalRequested"] == 3
    assert body["totalStarted"] == 2
    assert body["totalFailed"] == 1
    assert body["failed"][0]["spec"]["subdomain"] == "AB"


@pytest.mark.asyncio
async def test_bulk_over_limit(client, admin_headers):
    specs = [make_spec(subdomain=f"blog-{i}") for i in range(11)]

    response = await client.post(f"{JOBS_URL}/bulk", json={"specs": specs}, headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "BULK_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_list_jobs_by_tenant_and_status(client, admin_headers):
    created = (await client.post(JOBS_URL, json=make_spec())).json()
    await client.post(JOBS_URL, json=make_spec(subdomain="other"))

    by_tenant = await client.get(JOBS_URL, params={"tenantRef": created["tenantRef"]}, headers=admin_headers)
    completed = await client.get(JOBS_URL, params={"status": "completed"}, headers=admin_headers)

    assert [j["id"] for j in by_tenant.json()] == [created["jobId"]]
    assert completed.json() == []


@pytest.mark.asyncio
async def test_list_jobs_requires_admin(client):
    response = await client.get(JOBS_URL)

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_super_user_bearer_token_is_admin(client, monkeypatch):
    auth_service = MagicMock()
    auth_service.get_current_user.return_value = {"id": "u-1", "app_metadata": {"type": "super_user"}}
    monkeypatch.setattr(settings, "supabase_url", "http://supabase.test")
    monkeypatch.setattr(settings, "supabase_key", "anon")
    monkeypatch.setattr("provisioner.core.dependencies.get_auth_service", lambda: auth_service)

    response = await client.get(JOBS_URL, headers={"Authorization": "Bearer token"})

    assert response.status_code == 200
    auth_service.get_current_user.assert_called_once_with("token")


@pytest.mark.asyncio
async def test_regular_user_bearer_token_is_forbidden(client, monkeypatch):
    auth_service = MagicMock()
    auth_service.get_current_user.return_value = {"id": "u-2", "app_metadata": {"type": "user"}}
    monkeypatch.setattr(settings, "supabase_url", "http://supabase.test")
    monkeypatch.setattr(settings, "supabase_key", "anon")
    monkeypatch.setattr("provisioner.core.dependencies.get_auth_service", lambda: auth_service)

    response = await client.get(JOBS_URL, headers={"Authorization": "Bearer token"})

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_delete_requires_confirmation(client, admin_headers):
    job_id = (await client.post(JOBS_URL, json=make_spec())).json()["jobId"]

    response = await client.request("DELETE", f"{JOBS_URL}/{job_id}", json={}, headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "CONFIRMATION_REQUIRED"


@pytest.mark.asyncio
async def test_delete_cancels_running_job(client, admin_headers):
    job_id = (await client.post(JOBS_URL, json=make_spec())).json()["jobId"]

    response = await client.request(
        "DELETE", f"{JOBS_URL}/{job_id}", json={"confirm": "DELETE"}, headers=admin_headers
    )

    assert response.status_code == 200
    body = response.json()
    assert body["deleted"] is False
    assert body["job"]["status"] == "failed"
    assert body["job"]["error"] == "cancelled by operator"


@pytest.mark.asyncio
async def test_delete_removes_finished_job(client, admin_headers, store):
    store.create(make_job("done", "done-blog", status=JobStatus.completed))

    response = await client.request(
        "DELETE", f"{JOBS_URL}/done", json={"confirm": "DELETE"}, headers=admin_headers
    )

    assert response.json() == {"jobId": "done", "deleted": True}
    assert (await client.get(f"{JOBS_URL}/done")).status_code == 404


@pytest.mark.asyncio
async def test_cleanup_with_zero_retention(client, admin_headers, store):
    for i in range(3):
        store.create(make_job(f"done-{i}", f"done-{i}", status=JobStatus.completed))
    for i in range(2):
        store.create(make_job(f"failed-{i}", f"failed-{i}", status=JobStatus.failed, error="boom"))
    store.create(make_job("running", "running", status=JobStatus.running))

    response = await client.post(
        "/api/v1/provisioning/cleanup", json={"retentionHours": 0}, headers=admin_headers
    )

    assert response.status_code == 200
    assert response.json() == {"cleanedCount": 5, "remainingCount": 1}


@pytest.mark.asyncio
async def test_cleanup_default_retention_keeps_recent_jobs(client, admin_headers, store):
    store.create(make_job("done", "done-blog", status=JobStatus.completed))

    response = await client.post("/api/v1/provisioning/cleanup", headers=admin_headers)

    assert response.json() == {"cleanedCount": 0, "remainingCount": 1}


@pytest.mark.asyncio
async def test_analytics(client, admin_headers, store):
    store.create(make_job("done", "done-blog", status=JobStatus.completed))

    response = await client.get("/api/v1/provisioning/analytics", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["totalJobs"] == 1
    assert body["successRate"] == 100.0
    assert body["jobsByStatus"] == {"completed": 1}


@pytest.mark.asyncio
async def test_probes(client):
    assert (await client.get("/health")).json() == {"status": "healthy"}
    assert (await client.get("/ready")).json() == {"status": "ready"}

    response = await client.get("/")
    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"


@pytest.mark.asyncio
async def test_api_responses_are_not_cached(client):
    response = await client.get("/api/v1/provisioning/templates")

    assert response.headers["Cache-Control"] == "no-store"
    assert "Cache-Control" not in (await client.get("/health")).headers
