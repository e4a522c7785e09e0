import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from provisioner.config.settings import settings
from provisioner.core.dependencies import ProvisioningRuntime, get_engine, get_provisioning_service


@pytest.fixture
def admin_headers():
    return {"X-Admin-API-Key": settings.admin_api_key}


@pytest_asyncio.fixture
async def client(engine, service):
    from provisioner.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_provisioning_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    ProvisioningRuntime.reset()
