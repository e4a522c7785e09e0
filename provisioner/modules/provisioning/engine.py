import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from provisioner.modules.provisioning.job_store import JobNotFound, JobStore, utcnow
from provisioner.modules.provisioning.providers import Collaborators
from provisioner.modules.provisioning.schemas import (
    CANCELLED_ERROR,
    STALLED_ERROR,
    TIMEOUT_ERROR,
    AwaitingSignal,
    JobStatus,
    ProvisioningJob,
    StepEntry,
)
from provisioner.modules.provisioning.steps import (
    StepAborted,
    StepContext,
    StepDefinition,
    StepResult,
    WorkflowTemplate,
    load_templates,
)

logger = logging.getLogger(__name__)


class SignalOutcome(str, Enum):
    unknown = "unknown"        # no job registered for the reference
    ignored = "ignored"        # job already terminal
    mismatched = "mismatched"  # job is not waiting on this reference
    deferred = "deferred"      # reference issued, wait not armed yet; kept on the job
    resumed = "resumed"        # step completed, workflow must continue
    completed = "completed"    # step completed and it was the last one
    failed = "failed"          # platform reported failure


def _early_key(signal: str, external_ref: str) -> str:
    return f"{signal}:{external_ref}"


def _idle_since(job: ProvisioningJob) -> datetime:
    return job.awaiting.since if job.awaiting is not None else job.updated_at


def _apply_completion(
    job: ProvisioningJob,
    template: WorkflowTemplate,
    step: StepDefinition,
    data: Dict[str, Any],
    message: str,
    now: datetime,
) -> ProvisioningJob:
    job.context.update(data)
    job.steps.append(StepEntry(message=message, timestamp=now))
    job.completed_steps.append(step.name)
    job.current_step = None
    job.awaiting = None
    job.status = JobStatus.running
    if len(job.completed_steps) == len(template):
        job.progress = 100
        job.status = JobStatus.completed
        job.deploy_url = job.context.get("deploy_url")
        job.completed_at = now
    else:
        job.progress = min(99, job.progress + step.weight)
    return job


def _apply_failure(job: ProvisioningJob, error: str, message: str, now: datetime) -> ProvisioningJob:
    job.status = JobStatus.failed
    job.error = error
    job.awaiting = None
    job.completed_at = now
    job.steps.append(StepEntry(message=message, timestamp=now))
    return job


class ProvisioningEngine:
    """Drives provisioning jobs through their workflow template.

    ``run`` executes steps in order until the job completes, fails, or
    suspends on an asynchronous step. Suspended jobs are resumed by
    ``resolve_signal`` (callbacks) or failed by ``fail_stalled`` (sweep).
    """

    def __init__(
        self,
        store: JobStore,
        collaborators: Collaborators,
        templates: Optional[Dict[str, WorkflowTemplate]] = None,
        callback_timeout: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.collaborators = collaborators
        self.templates = templates if templates is not None else load_templates()
        self.callback_timeout = callback_timeout
        self.clock = clock

    def template_for(self, job: ProvisioningJob) -> WorkflowTemplate:
        return self.templates[job.template]

    def run(self, job_id: str) -> None:
        """Execute the job's remaining steps. Safe to call on terminal or suspended jobs.

        Errors outside step handlers (store outages, bad template names) fail
        the job instead of escaping the background task.
        """
        while True:
            try:
                if not self._run_next_step(job_id):
                    return
            except JobNotFound:
                logger.warning(f"[{job_id}] Job disappeared while its workflow ran")
                return
            except Exception as e:
                logger.exception(f"[{job_id}] Workflow interrupted: {str(e)}")
                self._fail_interrupted(job_id, e)
                return

    def _run_next_step(self, job_id: str) -> bool:
        """Run one step. Returns True when the workflow should continue with the next one."""
        job = self.store.get(job_id)
        if job.is_terminal or job.awaiting is not None:
            return False
        template = self.template_for(job)
        index = len(job.completed_steps)
        if index >= len(template):
            logger.error(f"[{job_id}] All steps recorded but job is still {job.status.value}")
            return False
        step = template.steps[index]

        job = self._begin_step(job_id, step, index)
        if job is None:
            return False
        logger.info(f"[{job_id}] {step.label}")

        try:
            result = step.handler(self._context(job))
        except StepAborted:
            logger.info(f"[{job_id}] Step {step.name} aborted, job already finished")
            return False
        except Exception as e:
            logger.error(f"[{job_id}] Step {step.name} failed: {str(e)}")
            self.fail(job_id, str(e), message=f"Failed to {step.name}: {str(e)}")
            return False

        if result.wait is not None:
            return self._suspend(job_id, template, step, index, result)

        self._complete_step(job_id, template, step, index, result)
        return True

    def _fail_interrupted(self, job_id: str, err: Exception) -> None:
        try:
            self.fail(job_id, str(err), message=f"Workflow interrupted: {str(err)}")
        except Exception as e:
            # Left active; fail_stalled picks it up once idle past the timeout
            logger.error(f"[{job_id}] Could not record workflow failure: {str(e)}")

    def _context(self, job: ProvisioningJob) -> StepContext:
        return StepContext(
            job=job,
            collaborators=self.collaborators,
            reserve_ref=lambda signal, ref: self._reserve_ref(job.id, signal, ref),
        )

    def _begin_step(self, job_id: str, step: StepDefinition, index: int) -> Optional[ProvisioningJob]:
        def mutate(job: ProvisioningJob):
            if job.is_terminal or job.awaiting is not None or len(job.completed_steps) != index:
                return None
            job.status = JobStatus.running
            job.current_step = step.name
            return job

        job = self.store.update(job_id, mutate)
        if job.is_terminal or job.current_step != step.name or len(job.completed_steps) != index:
            return None
        return job

    def _complete_step(
        self,
        job_id: str,
        template: WorkflowTemplate,
        step: StepDefinition,
        index: int,
        result: StepResult,
    ) -> ProvisioningJob:
        now = self.clock()

        def mutate(job: ProvisioningJob):
            if job.is_terminal or len(job.completed_steps) != index:
                return None
            return _apply_completion(job, template, step, result.data, result.message, now)

        job = self.store.update(job_id, mutate)
        logger.info(f"[{job_id}] {result.message} ({job.progress}%)")
        if job.status == JobStatus.completed:
            logger.info(f"[{job_id}] Provisioning completed: {job.deploy_url}")
        return job

    def _reserve_ref(self, job_id: str, signal: str, external_ref: str) -> None:
        self.store.register_ref(job_id, signal, external_ref)

        def mutate(job: ProvisioningJob):
            if job.is_terminal:
                return None
            job.external_refs[signal] = external_ref
            return job

        job = self.store.update(job_id, mutate)
        if job.is_terminal:
            raise StepAborted(job_id)

    def _suspend(
        self,
        job_id: str,
        template: WorkflowTemplate,
        step: StepDefinition,
        index: int,
        result: StepResult,
    ) -> bool:
        """Arm the wait for an async step. Returns True when the workflow can continue right away."""
        wait = result.wait
        now = self.clock()
        early: Dict[str, Any] = {}

        def mutate(job: ProvisioningJob):
            if job.is_terminal or len(job.completed_steps) != index:
                return None
            signal = job.early_signals.pop(_early_key(wait.signal, wait.external_ref), None)
            if signal is None:
                job.awaiting = AwaitingSignal(
                    step=step.name,
                    signal=wait.signal,
                    external_ref=wait.external_ref,
                    since=now,
                )
                return job
            early.update(signal)
            if signal["succeeded"]:
                data, message = step.on_signal(signal["payload"], job.context)
                return _apply_completion(job, template, step, data, message, now)
            error = signal.get("error") or f"{wait.signal} reported failure"
            return _apply_failure(job, error, f"Failed to {step.name}: {error}", now)

        job = self.store.update(job_id, mutate)
        if early:
            logger.info(f"[{job_id}] Applied early {wait.signal} signal for {wait.external_ref}")
            return not job.is_terminal
        if job.awaiting is not None:
            logger.info(f"[{job_id}] Suspended on {wait.signal} {wait.external_ref}")
        return False

    def resolve_signal(
        self,
        signal: str,
        external_ref: str,
        succeeded: bool,
        payload: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        tenant_ref: Optional[str] = None,
    ) -> SignalOutcome:
        """Feed an external platform signal into the job waiting on ``external_ref``.

        Never raises for unknown references or finished jobs; those are
        logged no-ops. When the outcome is ``resumed`` the caller must
        schedule ``run`` for the job.
        """
        payload = payload or {}
        job_id = self.store.find_by_ref(signal, external_ref)
        if job_id is None:
            logger.warning(f"Ignoring {signal} callback for unknown reference {external_ref}")
            return SignalOutcome.unknown

        now = self.clock()
        outcome = {"value": SignalOutcome.mismatched}

        def mutate(job: ProvisioningJob):
            if job.is_terminal:
                outcome["value"] = SignalOutcome.ignored
                return None
            if tenant_ref is not None and tenant_ref != job.tenant_ref:
                return None
            template = self.template_for(job)
            waiting = job.awaiting
            if waiting is None or waiting.signal != signal or waiting.external_ref != external_ref:
                pending = any(
                    s.signal == signal and s.name not in job.completed_steps for s in template.steps
                )
                if waiting is None and pending and job.external_refs.get(signal) == external_ref:
                    job.early_signals[_early_key(signal, external_ref)] = {
                        "succeeded": succeeded,
                        "payload": payload,
                        "error": error,
                    }
                    outcome["value"] = SignalOutcome.deferred
                    return job
                return None
            step = template.step(waiting.step)
            if succeeded:
                data, message = step.on_signal(payload, job.context)
                job = _apply_completion(job, template, step, data, message, now)
                outcome["value"] = (
                    SignalOutcome.completed if job.status == JobStatus.completed else SignalOutcome.resumed
                )
                return job
            reason = error or f"{signal} reported failure"
            outcome["value"] = SignalOutcome.failed
            return _apply_failure(job, reason, f"Failed to {step.name}: {reason}", now)

        try:
            self.store.update(job_id, mutate)
        except JobNotFound:
            logger.warning(f"Ignoring {signal} callback for deleted job {job_id}")
            return SignalOutcome.unknown

        result = outcome["value"]
        if result in (SignalOutcome.ignored, SignalOutcome.mismatched):
            logger.info(f"[{job_id}] {signal} callback for {external_ref} ignored ({result.value})")
        else:
            logger.info(f"[{job_id}] {signal} callback for {external_ref}: {result.value}")
        return result

    def fail(self, job_id: str, error: str, message: Optional[str] = None) -> Optional[ProvisioningJob]:
        """Move a non-terminal job to failed. Returns None if the job was already terminal."""
        now = self.clock()
        changed = []

        def mutate(job: ProvisioningJob):
            if job.is_terminal:
                return None
            changed.append(True)
            return _apply_failure(job, error, message or error, now)

        job = self.store.update(job_id, mutate)
        if not changed:
            return None
        logger.warning(f"[{job_id}] Provisioning failed: {error}")
        return job

    def cancel(self, job_id: str) -> Optional[ProvisioningJob]:
        return self.fail(job_id, CANCELLED_ERROR, message="Cancelled by operator")

    def fail_stalled(self, now: Optional[datetime] = None) -> List[str]:
        """Fail active jobs idle past the callback timeout. Returns their ids.

        A job waiting on a callback is measured from ``awaiting.since``; any
        other active job from its last update.
        """
        now = now or self.clock()
        cutoff = now - self.callback_timeout
        failed = []
        for job in self.store.list():
            if job.is_terminal or _idle_since(job) > cutoff:
                continue
            if self._fail_if_stalled(job.id, cutoff, now):
                failed.append(job.id)
        if failed:
            logger.warning(f"Failed {len(failed)} stalled job(s)")
        return failed

    def _fail_if_stalled(self, job_id: str, cutoff: datetime, now: datetime) -> bool:
        changed = []

        def mutate(job: ProvisioningJob):
            if job.is_terminal or _idle_since(job) > cutoff:
                return None
            changed.append(True)
            waiting = job.awaiting
            if waiting is None:
                message = f"No progress at {job.current_step or 'start'} since {job.updated_at.isoformat()}"
                return _apply_failure(job, STALLED_ERROR, message, now)
            message = f"Timed out waiting for {waiting.signal} confirmation ({waiting.external_ref})"
            return _apply_failure(job, TIMEOUT_ERROR, message, now)

        try:
            self.store.update(job_id, mutate)
        except JobNotFound:
            return False
        return bool(changed)
