"""API routers and shared-secret authentication."""

from dialer_engine.api.security import require_admin_token, require_cron_secret

__all__ = [
    "require_admin_token",
    "require_cron_secret",
]
