"""External collaborators used by the workflow steps.

Tenant rows live in supabase; DNS, hosting, SSL and e-mail providers sit
behind small classes so a real integration can replace the logging
implementations without touching the engine.
"""
import logging
import threading
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from supabase import Client

from provisioner.config.settings import settings
from provisioner.modules.provisioning.schemas import TenantProvisionRequest

logger = logging.getLogger(__name__)

# Logging stand-ins keep only their most recent requests
RECENT_LIMIT = 100


def _remember(entries: OrderedDict, key: str, value: Any, limit: int = RECENT_LIMIT) -> None:
    entries[key] = value
    entries.move_to_end(key)
    while len(entries) > limit:
        entries.popitem(last=False)


def _tenant_settings(spec: TenantProvisionRequest) -> Dict[str, Any]:
    return {
        "theme": spec.theme,
        "primary_color": spec.primary_color,
        "niche": spec.niche,
        "company_name": spec.company_name,
        "template": spec.template,
    }


class SupabaseTenantDirectory:
    """Tenant and owner rows in the shared blog database."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    def subdomain_taken(self, subdomain: str) -> bool:
        result = self.supabase.table("tenants")\
            .select("id")\
            .eq("subdomain", subdomain)\
            .limit(1)\
            .execute()
        return bool(result.data)

    def create_tenant(self, tenant_ref: str, spec: TenantProvisionRequest) -> Dict[str, Any]:
        """Create the tenant row and its admin user. Safe to call again for the same tenant_ref."""
        existing = self.supabase.table("tenants")\
            .select("*")\
            .eq("id", tenant_ref)\
            .maybe_single()\
            .execute()
        if existing and existing.data:
            return existing.data

        result = self.supabase.table("tenants").insert({
            "id": tenant_ref,
            "name": spec.blog_name,
            "slug": spec.subdomain,
            "subdomain": spec.subdomain,
            "custom_domain": spec.custom_domain,
            "owner_email": spec.owner_email,
            "status": "provisioning",
            "settings": _tenant_settings(spec),
        }).execute()
        if not result.data:
            raise RuntimeError(f"Failed to create tenant {spec.subdomain}")
        tenant = result.data[0]

        user_result = self.supabase.table("users").insert({
            "tenant_id": tenant_ref,
            "email": spec.owner_email,
            "name": spec.owner_name or "Admin",
            "role": "admin",
            "is_active": True,
        }).execute()
        if not user_result.data:
            raise RuntimeError(f"Failed to create admin user for tenant {spec.subdomain}")
        return tenant

    def activate_tenant(self, tenant_ref: str, deploy_url: Optional[str]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self.supabase.table("tenants").update({
            "status": "active",
            "deployment_url": deploy_url,
            "deployed_at": now,
            "provisioned_at": now,
        }).eq("id", tenant_ref).execute()
        self.supabase.table("api_keys").insert({
            "tenant_id": tenant_ref,
            "name": "Default API Key",
            "permissions": ["read", "write"],
            "rate_limit": 1000,
            "is_active": True,
        }).execute()

    def mark_domain_verified(self, tenant_ref: str, domain: str) -> None:
        self.supabase.table("tenants").update({
            "domain_verified": True,
            "domain_verified_at": datetime.now(timezone.utc).isoformat(),
        }).eq("id", tenant_ref).execute()


class InMemoryTenantDirectory:
    """Tenant registry for development and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.tenants: Dict[str, Dict[str, Any]] = {}

    def subdomain_taken(self, subdomain: str) -> bool:
        with self._lock:
            return any(t["subdomain"] == subdomain for t in self.tenants.values())

    def create_tenant(self, tenant_ref: str, spec: TenantProvisionRequest) -> Dict[str, Any]:
        with self._lock:
            if tenant_ref not in self.tenants:
                self.tenants[tenant_ref] = {
                    "id": tenant_ref,
                    "name": spec.blog_name,
                    "subdomain": spec.subdomain,
                    "custom_domain": spec.custom_domain,
                    "owner_email": spec.owner_email,
                    "owner_name": spec.owner_name or "Admin",
                    "status": "provisioning",
                    "settings": _tenant_settings(spec),
                    "domain_verified": False,
                }
            return dict(self.tenants[tenant_ref])

    def activate_tenant(self, tenant_ref: str, deploy_url: Optional[str]) -> None:
        with self._lock:
            tenant = self.tenants[tenant_ref]
            tenant["status"] = "active"
            tenant["deployment_url"] = deploy_url

    def mark_domain_verified(self, tenant_ref: str, domain: str) -> None:
        with self._lock:
            if tenant_ref in self.tenants:
                self.tenants[tenant_ref]["domain_verified"] = True


class LoggingDnsProvider:
    """Records DNS entries in memory. Stand-in until a DNS provider integration exists."""

    def __init__(self):
        self._lock = threading.Lock()
        self.records: "OrderedDict[str, str]" = OrderedDict()

    def register_subdomain(self, fqdn: str, target: str) -> str:
        with self._lock:
            _remember(self.records, fqdn, target)
        logger.info(f"DNS record {fqdn} -> {target}")
        return f"dns_{uuid.uuid4().hex[:12]}"

    def map_custom_domain(self, custom_domain: str, fqdn: str) -> None:
        with self._lock:
            _remember(self.records, custom_domain, fqdn)
        logger.info(f"Setting up custom domain: {custom_domain} -> {fqdn}")


class DeployHookPlatform:
    """Triggers a build through the hosting platform's deploy hook URL."""

    def __init__(self, hook_url: str, callback_url: str, timeout: float = 10.0):
        self.hook_url = hook_url
        self.callback_url = callback_url
        self.timeout = timeout

    def request_deploy(self, external_ref: str, site: Dict[str, Any]) -> None:
        response = httpx.post(
            self.hook_url,
            json={
                "externalRef": external_ref,
                "callbackUrl": self.callback_url,
                "site": site,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        logger.info(f"Deploy hook accepted build {external_ref} for {site.get('subdomain')}")


class LoggingHostingPlatform:
    """Accepts deploy requests without calling out; the result must be posted to the deploy callback."""

    def __init__(self):
        self._lock = threading.Lock()
        self.requests: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()

    def request_deploy(self, external_ref: str, site: Dict[str, Any]) -> None:
        with self._lock:
            _remember(self.requests, external_ref, site)
        logger.info(f"Simulating deploy request {external_ref} for {site.get('subdomain')}")


class LoggingSslVerifier:
    """Accepts verification requests; the result must be posted to the domain callback."""

    def __init__(self):
        self._lock = threading.Lock()
        self.requests: "OrderedDict[str, str]" = OrderedDict()

    def request_verification(self, domain: str, tenant_ref: str) -> None:
        with self._lock:
            _remember(self.requests, domain, tenant_ref)
        logger.info(f"Requested domain and SSL verification for {domain}")


class LoggingNotifier:
    def __init__(self):
        self.sent = deque(maxlen=RECENT_LIMIT)

    def send_welcome(self, email: Dict[str, Any]) -> None:
        self.sent.append(email)
        logger.info(f"Sending welcome email to {email['to']}")


@dataclass
class Collaborators:
    tenants: Any
    dns: Any
    storage: Any
    hosting: Any
    ssl: Any
    notifier: Any
    base_domain: str = "faceblog.com"
    api_base_url: str = "http://localhost:5000"
    hosting_target: str = "vercel"


def build_collaborators(supabase: Optional[Client] = None) -> Collaborators:
    """Wire collaborators from settings."""
    from provisioner.modules.provisioning.site_storage import get_site_storage

    tenants = SupabaseTenantDirectory(supabase) if supabase is not None else InMemoryTenantDirectory()
    if settings.deploy_hook_url:
        hosting = DeployHookPlatform(
            settings.deploy_hook_url,
            f"{settings.callback_base_url.rstrip('/')}/deploy",
            timeout=settings.deploy_hook_timeout_seconds,
        )
    else:
        hosting = LoggingHostingPlatform()
    return Collaborators(
        tenants=tenants,
        dns=LoggingDnsProvider(),
        storage=get_site_storage(),
        hosting=hosting,
        ssl=LoggingSslVerifier(),
        notifier=LoggingNotifier(),
        base_domain=settings.base_domain,
        api_base_url=settings.api_base_url,
        hosting_target=settings.hosting_target,
    )
