"""
Core dependencies: provisioning runtime singletons and the administrative guard
"""

from datetime import timedelta
from fastapi import Header, HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional, Dict, Any
import hmac
import logging

from provisioner.config.settings import settings
from provisioner.database.supabase_client import SupabaseClient
from provisioner.modules.auth.service import AuthService, is_super_user
from provisioner.modules.provisioning.engine import ProvisioningEngine
from provisioner.modules.provisioning.job_store import InMemoryJobStore, JobStore, SupabaseJobStore
from provisioner.modules.provisioning.providers import build_collaborators
from provisioner.modules.provisioning.service import ProvisioningService

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class ProvisioningRuntime:
    """Process-wide job store, engine and service. The store is the only shared mutable state."""

    _store: JobStore = None
    _engine: ProvisioningEngine = None
    _service: ProvisioningService = None

    @classmethod
    def get_store(cls) -> JobStore:
        if cls._store is None:
            if settings.job_store_backend == "supabase":
                cls._store = SupabaseJobStore(SupabaseClient.get_service_client())
            elif settings.job_store_backend == "memory":
                cls._store = InMemoryJobStore()
            else:
                raise ValueError(f"Unknown JOB_STORE_BACKEND '{settings.job_store_backend}'")
            logger.info(f"Using {settings.job_store_backend} job store")
        return cls._store

    @classmethod
    def get_engine(cls) -> ProvisioningEngine:
        if cls._engine is None:
            supabase = SupabaseClient.get_service_client() if settings.supabase_configured else None
            cls._engine = ProvisioningEngine(
                cls.get_store(),
                build_collaborators(supabase),
                callback_timeout=timedelta(minutes=settings.callback_timeout_minutes),
            )
        return cls._engine

    @classmethod
    def get_service(cls) -> ProvisioningService:
        if cls._service is None:
            engine = cls.get_engine()
            cls._service = ProvisioningService(
                cls.get_store(),
                engine,
                engine.collaborators.tenants,
                bulk_max_specs=settings.bulk_max_specs,
                bulk_max_request_specs=settings.bulk_max_request_specs,
                retention=timedelta(hours=settings.retention_hours),
            )
        return cls._service

    @classmethod
    def reset(cls):
        SupabaseClient.reset_client()
        cls._store = None
        cls._engine = None
        cls._service = None


def get_engine() -> ProvisioningEngine:
    return ProvisioningRuntime.get_engine()


def get_provisioning_service() -> ProvisioningService:
    return ProvisioningRuntime.get_service()


def get_auth_service() -> AuthService:
    return AuthService(SupabaseClient.get_client())


def require_admin(
    x_admin_api_key: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
) -> Dict[str, Any]:
    """Allow the admin API key (service-to-service) or a super user's bearer token"""
    if x_admin_api_key:
        if hmac.compare_digest(x_admin_api_key, settings.admin_api_key):
            return {"id": "admin-api-key", "app_metadata": {"type": "super_admin"}}
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "INVALID_API_KEY", "message": "Invalid admin API key"},
        )

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Admin API key or bearer token required"},
        )
    if not settings.supabase_configured:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "UNAUTHORIZED", "message": "Bearer authentication is not configured"},
        )

    user_data = get_auth_service().get_current_user(credentials.credentials)
    if not is_super_user(user_data):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "FORBIDDEN", "message": "Super admin access required"},
        )
    return user_data
