"""Workflow step catalogue.

A workflow is an ordered list of named, weighted steps. Synchronous steps
finish inside their handler; asynchronous steps return a ``Wait`` naming
the signal and external reference the job suspends on, and complete when
Callback Ingestion delivers that signal.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from provisioner.config import workflow_templates as wt
from provisioner.modules.provisioning.providers import Collaborators
from provisioner.modules.provisioning.schemas import ProvisioningJob, is_valid_subdomain

logger = logging.getLogger(__name__)

SYNC = "sync"
ASYNC = "async"

DEPLOY_SIGNAL = "deploy"
DOMAIN_SIGNAL = "domain"


class StepFailed(Exception):
    pass


class StepAborted(Exception):
    """The job reached a terminal state (e.g. operator cancel) while the step was running."""


@dataclass(frozen=True)
class Wait:
    signal: str
    external_ref: str


@dataclass
class StepResult:
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    wait: Optional[Wait] = None


@dataclass
class StepContext:
    job: ProvisioningJob
    collaborators: Collaborators
    reserve_ref: Callable[[str, str], None]

    @property
    def spec(self):
        return self.job.spec

    @property
    def data(self) -> Dict[str, Any]:
        return self.job.context

    @property
    def site_host(self) -> str:
        return f"{self.spec.subdomain}.{self.collaborators.base_domain}"

    @property
    def public_domain(self) -> str:
        return self.spec.custom_domain or self.site_host


SignalHandler = Callable[[Dict[str, Any], Dict[str, Any]], Tuple[Dict[str, Any], str]]


@dataclass(frozen=True)
class StepDefinition:
    name: str
    weight: int
    handler: Callable[[StepContext], StepResult]
    mode: str = SYNC
    signal: Optional[str] = None
    on_signal: Optional[SignalHandler] = None

    @property
    def label(self) -> str:
        return wt.STEP_LABELS.get(self.name, self.name)


class WorkflowTemplate:
    def __init__(self, name: str, steps: List[StepDefinition], description: str = ""):
        names = [s.name for s in steps]
        if not steps:
            raise ValueError(f"Template '{name}' has no steps")
        if len(set(names)) != len(names):
            raise ValueError(f"Template '{name}' has duplicate step names")
        if any(s.weight <= 0 for s in steps):
            raise ValueError(f"Template '{name}' has a step with non-positive weight")
        total = sum(s.weight for s in steps)
        if total != 100:
            raise ValueError(f"Template '{name}' step weights sum to {total}, expected 100")
        for s in steps:
            if s.mode == ASYNC and (s.signal is None or s.on_signal is None):
                raise ValueError(f"Async step '{s.name}' needs a signal and a signal handler")
        self.name = name
        self.description = description
        self.steps = list(steps)

    def step(self, name: str) -> StepDefinition:
        for s in self.steps:
            if s.name == name:
                return s
        raise KeyError(name)

    def __len__(self):
        return len(self.steps)


# Step handlers

def validate_subdomain(ctx: StepContext) -> StepResult:
    subdomain = ctx.spec.subdomain
    if not is_valid_subdomain(subdomain):
        raise StepFailed(f"Invalid subdomain format: {subdomain}")
    if subdomain in wt.RESERVED_SUBDOMAINS:
        raise StepFailed(f"Subdomain '{subdomain}' is reserved")
    if ctx.collaborators.tenants.subdomain_taken(subdomain):
        raise StepFailed(f"Subdomain '{subdomain}' is already taken")
    return StepResult(message=f"Subdomain {ctx.site_host} is available")


def register_dns(ctx: StepContext) -> StepResult:
    dns = ctx.collaborators.dns
    record_id = dns.register_subdomain(ctx.site_host, ctx.collaborators.hosting_target)
    data = {"dns_record_id": record_id, "site_host": ctx.site_host}
    if ctx.spec.custom_domain:
        dns.map_custom_domain(ctx.spec.custom_domain, ctx.site_host)
        data["custom_domain_mapped"] = True
    return StepResult(message="Domain configuration completed", data=data)


def render_site_config(ctx: StepContext) -> Dict[str, Any]:
    spec = ctx.spec
    return {
        "name": spec.blog_name,
        "description": f"Blog {spec.blog_name} - Powered by FaceBlog",
        "url": f"https://{ctx.public_domain}",
        "subdomain": spec.subdomain,
        "tenant_id": ctx.job.tenant_ref,
        "template": spec.template,
        "theme": spec.theme,
        "primaryColor": spec.primary_color,
        "niche": spec.niche,
        "owner": {"email": spec.owner_email, "name": spec.owner_name},
        "api": {"baseUrl": ctx.collaborators.api_base_url},
    }


def render_env_file(ctx: StepContext) -> str:
    spec = ctx.spec
    lines = [
        "# FaceBlog Tenant Configuration",
        f"NEXT_PUBLIC_TENANT_ID={ctx.job.tenant_ref}",
        f"NEXT_PUBLIC_SUBDOMAIN={spec.subdomain}",
        f"NEXT_PUBLIC_CUSTOM_DOMAIN={spec.custom_domain or ''}",
        f"NEXT_PUBLIC_BLOG_NAME={spec.blog_name}",
        f"NEXT_PUBLIC_THEME={spec.theme}",
        f"NEXT_PUBLIC_PRIMARY_COLOR={spec.primary_color}",
        f"NEXT_PUBLIC_NICHE={spec.niche or ''}",
        f"NEXT_PUBLIC_API_BASE_URL={ctx.collaborators.api_base_url}",
    ]
    return "\n".join(lines) + "\n"


def scaffold_site_content(ctx: StepContext) -> StepResult:
    ctx.collaborators.tenants.create_tenant(ctx.job.tenant_ref, ctx.spec)
    storage = ctx.collaborators.storage
    prefix = f"{ctx.spec.subdomain}/{ctx.job.id}"
    config_location = storage.upload_file(
        json.dumps(render_site_config(ctx), indent=2).encode(),
        f"{prefix}/site.json",
    )
    storage.upload_file(render_env_file(ctx).encode(), f"{prefix}/.env.local", content_type="text/plain")
    return StepResult(
        message="Tenant application generated successfully",
        data={"site_config_location": config_location, "site_prefix": prefix},
    )


def request_external_deploy(ctx: StepContext) -> StepResult:
    external_ref = f"build_{uuid.uuid4().hex}"
    # Registered before the platform is called so an immediate callback can be matched
    ctx.reserve_ref(DEPLOY_SIGNAL, external_ref)
    ctx.collaborators.hosting.request_deploy(external_ref, {
        "subdomain": ctx.spec.subdomain,
        "host": ctx.site_host,
        "custom_domain": ctx.spec.custom_domain,
        "template": ctx.spec.template,
        "site_config": ctx.data.get("site_config_location"),
        "target": ctx.collaborators.hosting_target,
    })
    return StepResult(
        message=f"Deploy requested on {ctx.collaborators.hosting_target} (build {external_ref})",
        data={"deploy_ref": external_ref},
    )


def await_deploy_confirmation(ctx: StepContext) -> StepResult:
    external_ref = ctx.data.get("deploy_ref")
    if not external_ref:
        raise StepFailed("No deploy request was issued for this job")
    return StepResult(message="Waiting for deploy confirmation", wait=Wait(DEPLOY_SIGNAL, external_ref))


def deploy_confirmed(payload: Dict[str, Any], data: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    url = payload.get("url") or f"https://{data.get('site_host')}"
    return {"deploy_url": url}, f"Application deployed successfully: {url}"


def verify_domain_ssl(ctx: StepContext) -> StepResult:
    domain = ctx.public_domain
    ctx.reserve_ref(DOMAIN_SIGNAL, domain)
    ctx.collaborators.ssl.request_verification(domain, ctx.job.tenant_ref)
    return StepResult(message=f"Waiting for verification of {domain}", wait=Wait(DOMAIN_SIGNAL, domain))


def domain_verified(payload: Dict[str, Any], data: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    domain = payload.get("domain")
    return {"verified_domain": domain}, f"Domain {domain} verified with SSL"


def send_welcome_notification(ctx: StepContext) -> StepResult:
    deploy_url = ctx.data.get("deploy_url")
    tenants = ctx.collaborators.tenants
    if ctx.data.get("verified_domain"):
        tenants.mark_domain_verified(ctx.job.tenant_ref, ctx.data["verified_domain"])
    tenants.activate_tenant(ctx.job.tenant_ref, deploy_url)
    ctx.collaborators.notifier.send_welcome({
        "to": ctx.spec.owner_email,
        "subject": f"Welcome to {ctx.spec.blog_name}!",
        "template": "welcome",
        "data": {
            "blog_name": ctx.spec.blog_name,
            "deploy_url": deploy_url,
            "admin_url": f"{deploy_url}/admin" if deploy_url else None,
            "api_docs": f"{ctx.collaborators.api_base_url}/docs",
        },
    })
    return StepResult(message="Deployment finalized successfully")


def _definition(name: str, weight: int) -> StepDefinition:
    if name == wt.AWAIT_DEPLOY_CONFIRMATION:
        return StepDefinition(name, weight, await_deploy_confirmation, ASYNC, DEPLOY_SIGNAL, deploy_confirmed)
    if name == wt.VERIFY_DOMAIN_SSL:
        return StepDefinition(name, weight, verify_domain_ssl, ASYNC, DOMAIN_SIGNAL, domain_verified)
    return StepDefinition(name, weight, SYNC_HANDLERS[name])


SYNC_HANDLERS = {
    wt.VALIDATE_SUBDOMAIN: validate_subdomain,
    wt.REGISTER_DNS: register_dns,
    wt.SCAFFOLD_SITE_CONTENT: scaffold_site_content,
    wt.REQUEST_EXTERNAL_DEPLOY: request_external_deploy,
    wt.SEND_WELCOME_NOTIFICATION: send_welcome_notification,
}


def load_templates(config: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, WorkflowTemplate]:
    """Build WorkflowTemplate objects from the templates configuration."""
    config = config if config is not None else wt.TEMPLATES
    templates = {}
    for name, template_config in config.items():
        steps = [_definition(step, weight) for step, weight in template_config["steps"]]
        templates[name] = WorkflowTemplate(name, steps, template_config.get("description", ""))
    logger.debug(f"Loaded {len(templates)} workflow templates")
    return templates
