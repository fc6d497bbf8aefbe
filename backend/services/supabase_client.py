"""
Supabase client factory.

IMPORTANT: This module is the only place that creates Supabase clients.
Stores and notifiers take a client as an argument; they never build one.

Only the service-role client is used. It bypasses RLS, so every store and
inbox built on it filters by organization_id or user_id itself.
"""

from supabase import create_client, Client
from config import get_settings

settings = get_settings()


def get_admin_client() -> Client:
    """
    Service-role Supabase client. Bypasses RLS.
    Verify authorization in application code before querying with it.
    """
    settings.require_supabase()
    return create_client(settings.supabase_url, settings.supabase_service_key)
