import logging
from typing import Any, Optional, Type, TypeVar

from fastapi import HTTPException
from pydantic import BaseModel, ValidationError

from provisioner.modules.callbacks.schemas import DeployCallback, DomainCallback
from provisioner.modules.provisioning.engine import ProvisioningEngine, SignalOutcome
from provisioner.modules.provisioning.steps import DEPLOY_SIGNAL, DOMAIN_SIGNAL

logger = logging.getLogger(__name__)

CallbackModel = TypeVar("CallbackModel", bound=BaseModel)


def parse_callback(model: Type[CallbackModel], payload: Any) -> CallbackModel:
    """Validate a raw callback body; malformed payloads are rejected before touching any job."""
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_CALLBACK", "message": "Callback body must be a JSON object"},
        )
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        logger.warning(f"Rejected malformed {model.__name__}: {errors}")
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_CALLBACK", "message": "Malformed callback payload", "errors": errors},
        )


class CallbackService:
    """Turns platform callbacks into engine signals. Returns the job id to resume, if any."""

    def __init__(self, engine: ProvisioningEngine):
        self.engine = engine

    def handle_deploy(self, payload: Any) -> Optional[str]:
        callback = parse_callback(DeployCallback, payload)
        succeeded = callback.status == "success"
        outcome = self.engine.resolve_signal(
            DEPLOY_SIGNAL,
            callback.external_ref,
            succeeded,
            payload={"url": callback.url},
            error=None if succeeded else (callback.error or "Deploy reported failure"),
        )
        return self._resumable(outcome, DEPLOY_SIGNAL, callback.external_ref)

    def handle_domain(self, payload: Any) -> Optional[str]:
        callback = parse_callback(DomainCallback, payload)
        succeeded = callback.status == "verified"
        outcome = self.engine.resolve_signal(
            DOMAIN_SIGNAL,
            callback.domain,
            succeeded,
            payload={"domain": callback.domain},
            error=None if succeeded else (callback.error or f"Verification of {callback.domain} failed"),
            tenant_ref=callback.tenant_ref,
        )
        return self._resumable(outcome, DOMAIN_SIGNAL, callback.domain)

    def _resumable(self, outcome: SignalOutcome, signal: str, external_ref: str) -> Optional[str]:
        if outcome != SignalOutcome.resumed:
            return None
        return self.engine.store.find_by_ref(signal, external_ref)
