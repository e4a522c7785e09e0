from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Required by background workers writing job rows

    # AWS S3 for generated site artefacts (will read from uppercase env vars automatically)
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "us-east-1"
    sites_bucket_name: Optional[str] = None
    sites_output_dir: str = "./deployments"  # Used when no bucket is configured

    # App
    app_name: str = "faceblog-provisioner"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"
    admin_api_key: str = "dev-admin-key-change-in-production"

    # Tenant sites
    base_domain: str = "faceblog.com"
    api_base_url: str = "http://localhost:5000"
    hosting_target: str = "vercel"
    deploy_hook_url: Optional[str] = None  # Build hook of the hosting platform; simulated when unset
    callback_base_url: str = "http://localhost:8000/api/v1/callbacks"
    deploy_hook_timeout_seconds: float = 10.0

    # Provisioning
    job_store_backend: str = "memory"  # memory | supabase
    callback_timeout_minutes: int = 15
    retention_hours: float = 24
    sweep_interval_seconds: int = 60
    cleanup_interval_seconds: int = 3600
    bulk_max_specs: int = 10
    bulk_max_request_specs: int = 50  # cap on the raw bulk list, valid or not
    scheduler_enabled: bool = True

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
