# Supabase tables: provisioning_jobs, provisioning_job_refs
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in job_store.py (SupabaseJobStore)

"""
Expected Supabase table structure:

provisioning_jobs (one row per ProvisioningJob)
- id: text (primary key, uuid4 string generated by the service)
- tenant_ref: text (not null) - tenant id the job provisions; row in tenants is created by the scaffold step
- subdomain: text (not null) - denormalized from spec for the uniqueness check
- custom_domain: text (nullable) - denormalized, lowercase, from spec for the in-flight domain check
- template: text (not null)
- status: text (not null, default: 'initializing') - values: initializing, running, completed, failed
- progress: integer (not null, default: 0)
- spec: jsonb (not null) - immutable TenantProvisionRequest
- steps: jsonb (not null, default: []) - ordered array of {message, timestamp}; append-only
- completed_steps: jsonb (not null, default: []) - ordered array of step names
- current_step: text (nullable)
- awaiting: jsonb (nullable) - {step, signal, external_ref, since}
- external_refs: jsonb (not null, default: {}) - {signal: external_ref}
- early_signals: jsonb (not null, default: {})
- context: jsonb (not null, default: {})
- deploy_url: text (nullable)
- error: text (nullable)
- started_at: timestamptz (not null)
- updated_at: timestamptz (not null)
- completed_at: timestamptz (nullable)

Recommended indexes:
- (tenant_ref)
- (status, updated_at) for retention and the timeout sweep
- unique (subdomain) where status in ('initializing', 'running')
- unique (custom_domain) where status in ('initializing', 'running')

provisioning_job_refs (correlation keys used by callbacks)
- signal: text (not null) - 'deploy' or 'domain'
- external_ref: text (not null)
- job_id: text (not null, foreign key to provisioning_jobs.id, on delete cascade)
- primary key (signal, external_ref)
"""

from typing import Any, Dict

from provisioner.modules.provisioning.schemas import ProvisioningJob

JOBS_TABLE = "provisioning_jobs"
REFS_TABLE = "provisioning_job_refs"
DENORMALIZED_COLUMNS = ("subdomain", "custom_domain")


def job_to_row(job: ProvisioningJob) -> Dict[str, Any]:
    row = job.model_dump(mode="json")
    row["subdomain"] = job.subdomain
    row["custom_domain"] = job.spec.custom_domain
    return row


def row_to_job(row: Dict[str, Any]) -> ProvisioningJob:
    data = {k: v for k, v in row.items() if k not in DENORMALIZED_COLUMNS}
    return ProvisioningJob.model_validate(data)
