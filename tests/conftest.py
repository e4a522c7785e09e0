from datetime import timedelta

import pytest

from provisioner.modules.provisioning.engine import ProvisioningEngine
from provisioner.modules.provisioning.job_store import InMemoryJobStore
from provisioner.modules.provisioning.providers import (
    Collaborators,
    InMemoryTenantDirectory,
    LoggingDnsProvider,
    LoggingHostingPlatform,
    LoggingNotifier,
    LoggingSslVerifier,
)
from provisioner.modules.provisioning.service import ProvisioningService
from provisioner.modules.provisioning.site_storage import LocalSiteStorage


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def collaborators(tmp_path):
    return Collaborators(
        tenants=InMemoryTenantDirectory(),
        dns=LoggingDnsProvider(),
        storage=LocalSiteStorage(str(tmp_path / "sites")),
        hosting=LoggingHostingPlatform(),
        ssl=LoggingSslVerifier(),
        notifier=LoggingNotifier(),
    )


@pytest.fixture
def engine(store, collaborators):
    return ProvisioningEngine(store, collaborators, callback_timeout=timedelta(minutes=15))


@pytest.fixture
def service(store, engine, collaborators):
    return ProvisioningService(store, engine, collaborators.tenants, bulk_max_specs=10)
