"""
api/limiter.py -- Client IP resolution and the shared slowapi limiter.

client_ip() is the single place the HTTP layer decides who a caller is. Both
the slowapi decorators and the LockoutGuard IP windows key on it.

X-Forwarded-For is honoured only when TRUST_PROXY_HEADERS is set; otherwise
any client could pick its own rate-limit bucket by sending the header.

Using a single shared Limiter instance ensures all routes share the same
in-memory counter store.
"""

from fastapi import Request
from slowapi import Limiter

from core.config import get_settings


def client_ip(request: Request) -> str:
    if get_settings().trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=client_ip, storage_uri="memory://")
