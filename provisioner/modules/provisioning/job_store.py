"""Registry of provisioning jobs with per-job atomic updates.

Every mutation goes through ``JobStore.update``: the mutator runs on a copy
of the current job while the job's lock is held, and the result is checked
against the forward-only state machine before it is saved. Creation holds a
separate lock so the subdomain and custom domain checks and the insert
happen together.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from supabase import Client

from provisioner.modules.provisioning.models import JOBS_TABLE, REFS_TABLE, job_to_row, row_to_job
from provisioner.modules.provisioning.schemas import (
    ACTIVE_STATUSES,
    JobStatus,
    ProvisioningJob,
)

logger = logging.getLogger(__name__)

Mutator = Callable[[ProvisioningJob], Optional[ProvisioningJob]]

_STATUS_ORDER = {
    JobStatus.initializing: 0,
    JobStatus.running: 1,
    JobStatus.completed: 2,
    JobStatus.failed: 2,
}


class JobNotFound(Exception):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Provisioning job {job_id} not found")


class SubdomainConflict(Exception):
    def __init__(self, subdomain: str):
        self.subdomain = subdomain
        super().__init__(f"Subdomain '{subdomain}' is already taken")


class CustomDomainConflict(Exception):
    def __init__(self, custom_domain: str):
        self.custom_domain = custom_domain
        super().__init__(f"Custom domain '{custom_domain}' is already being provisioned")


class InvalidTransition(Exception):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_transition(current: ProvisioningJob, updated: ProvisioningJob) -> None:
    """Raise InvalidTransition if ``updated`` breaks a job invariant relative to ``current``."""
    if updated.id != current.id or updated.tenant_ref != current.tenant_ref:
        raise InvalidTransition("job identity is immutable")
    if updated.spec != current.spec:
        raise InvalidTransition("job spec is immutable")
    if current.is_terminal:
        raise InvalidTransition(f"job {current.id} is already {current.status.value}")
    if _STATUS_ORDER[updated.status] < _STATUS_ORDER[current.status]:
        raise InvalidTransition(
            f"job {current.id} cannot move from {current.status.value} to {updated.status.value}"
        )
    if updated.status != JobStatus.failed and updated.progress < current.progress:
        raise InvalidTransition(f"job {current.id} progress cannot decrease")
    if updated.status == JobStatus.failed and updated.progress != current.progress:
        raise InvalidTransition(f"job {current.id} progress is frozen on failure")
    if (updated.progress == 100) != (updated.status == JobStatus.completed):
        raise InvalidTransition("progress reaches 100 exactly when the job completes")
    if updated.steps[:len(current.steps)] != current.steps:
        raise InvalidTransition(f"job {current.id} step log is append-only")
    if updated.completed_steps[:len(current.completed_steps)] != current.completed_steps:
        raise InvalidTransition(f"job {current.id} completed steps are append-only")


class JobStore:
    """Storage-independent locking and invariant checks. Subclasses provide the row access hooks."""

    def __init__(self):
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._create_lock = threading.Lock()

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[job_id] = lock
            return lock

    def _drop_lock(self, job_id: str) -> None:
        with self._locks_guard:
            self._locks.pop(job_id, None)

    # Backend hooks

    def _load(self, job_id: str) -> Optional[ProvisioningJob]:
        raise NotImplementedError

    def _insert(self, job: ProvisioningJob) -> None:
        raise NotImplementedError

    def _save(self, job: ProvisioningJob) -> None:
        raise NotImplementedError

    def _remove(self, job_id: str) -> bool:
        raise NotImplementedError

    def _query(self, status: Optional[JobStatus], tenant_ref: Optional[str]) -> List[ProvisioningJob]:
        raise NotImplementedError

    def _active_holder(self, subdomain: str) -> Optional[str]:
        raise NotImplementedError

    def _active_domain_holder(self, custom_domain: str) -> Optional[str]:
        raise NotImplementedError

    def _put_ref(self, signal: str, external_ref: str, job_id: str) -> None:
        raise NotImplementedError

    def _get_ref(self, signal: str, external_ref: str) -> Optional[str]:
        raise NotImplementedError

    # Public contract

    def create(
        self,
        job: ProvisioningJob,
        is_subdomain_taken: Optional[Callable[[str], bool]] = None,
    ) -> str:
        """Insert ``job`` after reserving its subdomain and custom domain.

        Raises SubdomainConflict or CustomDomainConflict.
        """
        with self._create_lock:
            holder = self._active_holder(job.subdomain)
            if holder is not None:
                logger.info(f"Subdomain {job.subdomain} held by in-flight job {holder}")
                raise SubdomainConflict(job.subdomain)
            if is_subdomain_taken is not None and is_subdomain_taken(job.subdomain):
                raise SubdomainConflict(job.subdomain)
            custom_domain = job.spec.custom_domain
            if custom_domain is not None:
                holder = self._active_domain_holder(custom_domain)
                if holder is not None:
                    logger.info(f"Custom domain {custom_domain} held by in-flight job {holder}")
                    raise CustomDomainConflict(custom_domain)
            self._insert(job.model_copy(deep=True))
        logger.debug(f"Created provisioning job {job.id} for {job.subdomain}")
        return job.id

    def get(self, job_id: str) -> ProvisioningJob:
        job = self._load(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def update(self, job_id: str, mutator: Mutator) -> ProvisioningJob:
        """Atomically apply ``mutator``. A mutator returning None leaves the job untouched."""
        with self._lock_for(job_id):
            current = self._load(job_id)
            if current is None:
                raise JobNotFound(job_id)
            updated = mutator(current.model_copy(deep=True))
            if updated is None:
                return current
            check_transition(current, updated)
            updated.updated_at = utcnow()
            self._save(updated)
            return updated.model_copy(deep=True)

    def list(self, status: Optional[JobStatus] = None, tenant_ref: Optional[str] = None) -> List[ProvisioningJob]:
        jobs = self._query(status, tenant_ref)
        return sorted(jobs, key=lambda j: j.started_at, reverse=True)

    def count(self) -> int:
        return len(self._query(None, None))

    def delete(self, job_id: str) -> bool:
        with self._lock_for(job_id):
            removed = self._remove(job_id)
        self._drop_lock(job_id)
        if removed:
            logger.debug(f"Deleted provisioning job {job_id}")
        return removed

    def register_ref(self, job_id: str, signal: str, external_ref: str) -> None:
        """Index a correlation key so callbacks can find the job."""
        self._put_ref(signal, external_ref, job_id)

    def find_by_ref(self, signal: str, external_ref: str) -> Optional[str]:
        return self._get_ref(signal, external_ref)


class InMemoryJobStore(JobStore):
    """Process-local store. Jobs are kept and returned as copies."""

    def __init__(self):
        super().__init__()
        self._jobs: Dict[str, ProvisioningJob] = {}
        self._refs: Dict[Tuple[str, str], str] = {}
        self._by_tenant: Dict[str, Set[str]] = {}
        self._index_lock = threading.Lock()

    def _load(self, job_id: str) -> Optional[ProvisioningJob]:
        with self._index_lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def _insert(self, job: ProvisioningJob) -> None:
        with self._index_lock:
            self._jobs[job.id] = job
            self._by_tenant.setdefault(job.tenant_ref, set()).add(job.id)

    def _save(self, job: ProvisioningJob) -> None:
        with self._index_lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    def _remove(self, job_id: str) -> bool:
        with self._index_lock:
            job = self._jobs.pop(job_id, None)
            if job is not None:
                ids = self._by_tenant.get(job.tenant_ref, set())
                ids.discard(job_id)
                if not ids:
                    self._by_tenant.pop(job.tenant_ref, None)
            for key in [k for k, v in self._refs.items() if v == job_id]:
                del self._refs[key]
            return job is not None

    def _query(self, status: Optional[JobStatus], tenant_ref: Optional[str]) -> List[ProvisioningJob]:
        with self._index_lock:
            if tenant_ref is None:
                jobs = list(self._jobs.values())
            else:
                jobs = [self._jobs[i] for i in self._by_tenant.get(tenant_ref, ())]
        return [j.model_copy(deep=True) for j in jobs if status is None or j.status == status]

    def _active_holder(self, subdomain: str) -> Optional[str]:
        with self._index_lock:
            for job in self._jobs.values():
                if job.subdomain == subdomain and job.status in ACTIVE_STATUSES:
                    return job.id
        return None

    def _active_domain_holder(self, custom_domain: str) -> Optional[str]:
        with self._index_lock:
            for job in self._jobs.values():
                if job.spec.custom_domain == custom_domain and job.status in ACTIVE_STATUSES:
                    return job.id
        return None

    def _put_ref(self, signal: str, external_ref: str, job_id: str) -> None:
        with self._index_lock:
            self._refs[(signal, external_ref)] = job_id

    def _get_ref(self, signal: str, external_ref: str) -> Optional[str]:
        with self._index_lock:
            return self._refs.get((signal, external_ref))


class SupabaseJobStore(JobStore):
    """One row per job in provisioning_jobs. Locks are per process."""

    def __init__(self, supabase: Client):
        super().__init__()
        self.supabase = supabase

    def _load(self, job_id: str) -> Optional[ProvisioningJob]:
        result = self.supabase.table(JOBS_TABLE)\
            .select("*")\
            .eq("id", job_id)\
            .maybe_single()\
            .execute()
        if not result or not result.data:
            return None
        return row_to_job(result.data)

    def _insert(self, job: ProvisioningJob) -> None:
        result = self.supabase.table(JOBS_TABLE).insert(job_to_row(job)).execute()
        if not result.data:
            raise RuntimeError(f"Failed to insert provisioning job {job.id}")

    def _save(self, job: ProvisioningJob) -> None:
        row = job_to_row(job)
        row.pop("id")
        self.supabase.table(JOBS_TABLE)\
            .update(row)\
            .eq("id", job.id)\
            .execute()

    def _remove(self, job_id: str) -> bool:
        self.supabase.table(REFS_TABLE).delete().eq("job_id", job_id).execute()
        result = self.supabase.table(JOBS_TABLE).delete().eq("id", job_id).execute()
        return bool(result.data)

    def _query(self, status: Optional[JobStatus], tenant_ref: Optional[str]) -> List[ProvisioningJob]:
        query = self.supabase.table(JOBS_TABLE).select("*")
        if status is not None:
            query = query.eq("status", status.value)
        if tenant_ref is not None:
            query = query.eq("tenant_ref", tenant_ref)
        result = query.order("started_at", desc=True).execute()
        return [row_to_job(row) for row in (result.data or [])]

    def _active_holder(self, subdomain: str) -> Optional[str]:
        result = self.supabase.table(JOBS_TABLE)\
            .select("id")\
            .eq("subdomain", subdomain)\
            .in_("status", [s.value for s in ACTIVE_STATUSES])\
            .limit(1)\
            .execute()
        if not result.data:
            return None
        return result.data[0]["id"]

    def _active_domain_holder(self, custom_domain: str) -> Optional[str]:
        result = self.supabase.table(JOBS_TABLE)\
            .select("id")\
            .eq("custom_domain", custom_domain)\
            .in_("status", [s.value for s in ACTIVE_STATUSES])\
            .limit(1)\
            .execute()
        if not result.data:
            return None
        return result.data[0]["id"]

    def _put_ref(self, signal: str, external_ref: str, job_id: str) -> None:
        self.supabase.table(REFS_TABLE).upsert({
            "signal": signal,
            "external_ref": external_ref,
            "job_id": job_id,
        }).execute()

    def _get_ref(self, signal: str, external_ref: str) -> Optional[str]:
        result = self.supabase.table(REFS_TABLE)\
            .select("job_id")\
            .eq("signal", signal)\
            .eq("external_ref", external_ref)\
            .maybe_single()\
            .execute()
        if not result or not result.data:
            return None
        return result.data["job_id"]
