from supabase import create_client, Client
from provisioner.config.settings import settings


class SupabaseNotConfigured(RuntimeError):
    pass


class SupabaseClient:
    """Process-wide supabase clients shared by the tenant directory and the job store."""

    _client: Client = None
    _service_client: Client = None

    @classmethod
    def _require_settings(cls) -> None:
        if not settings.supabase_configured:
            raise SupabaseNotConfigured("SUPABASE_URL and SUPABASE_KEY must be set")

    @classmethod
    def get_client(cls) -> Client:
        if cls._client is None:
            cls._require_settings()
            cls._client = create_client(settings.supabase_url, settings.supabase_key)
        return cls._client

    @classmethod
    def get_service_client(cls) -> Client:
        """Client with service_role key; bypasses RLS. Workflow steps run outside any user request."""
        if cls._service_client is None and settings.supabase_service_role_key:
            cls._require_settings()
            cls._service_client = create_client(
                settings.supabase_url, settings.supabase_service_role_key
            )
        return cls._service_client or cls.get_client()

    @classmethod
    def reset_client(cls):
        cls._client = None
        cls._service_client = None