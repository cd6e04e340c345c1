"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. Separate instances per module would each get an isolated
counter and limits would never trigger.

The limit strings come from Settings, read when a request is checked, so a
deployment (or the test suite) can change them through the environment.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


def register_limit() -> str:
    return get_settings().register_rate_limit


def refresh_limit() -> str:
    return get_settings().refresh_rate_limit


def password_reset_limit() -> str:
    return get_settings().password_reset_rate_limit
