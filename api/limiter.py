"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/v1/users.py
(to apply per-route limits with @limiter.limit()).

A single shared instance means all routes share one in-memory counter store.
Instantiated per module, each module would get its own isolated counter and
limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
