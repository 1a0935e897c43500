"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()).

This is a coarse per-IP request ceiling for the public mutation endpoints
(register, refresh, logout, reset confirm). Login brute-force defense is a
separate, failure-counting policy in auth/rate_limit.py.

Using a single shared instance ensures all routes share the same in-memory
counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
