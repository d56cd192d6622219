"""Backend utilities"""
from .supabase_client import create_supabase_client, supabase_configured
from .auth import get_current_user, verify_cron_secret
from .services import TutorServices, build_services

__all__ = [
    "create_supabase_client",
    "supabase_configured",
    "get_current_user",
    "verify_cron_secret",
    "TutorServices",
    "build_services",
]
