"""Store wiring: service-role Supabase client and the gateway chosen by config."""

from supabase import create_client, Client

from jobengine.config import Settings, settings
from jobengine.db.gateway import MemoryGateway, SupabaseGateway, TableGateway

_client: Client | None = None


def get_supabase(config: Settings = settings) -> Client:
    """Get or create the Supabase client using the service role key."""
    global _client
    if _client is None:
        if not config.supabase_url or not config.supabase_service_role_key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set"
            )
        _client = create_client(
            config.supabase_url,
            config.supabase_service_role_key,
        )
    return _client


def build_gateway(config: Settings = settings) -> TableGateway:
    """Return the table gateway for ``config.storage_backend``."""
    backend = config.storage_backend.lower()
    if backend == "supabase":
        return SupabaseGateway(get_supabase(config))
    if backend == "memory":
        return MemoryGateway()
    raise ValueError(f"Unknown storage_backend '{config.storage_backend}'")
