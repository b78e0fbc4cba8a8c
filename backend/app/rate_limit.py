"""Rate limiting configuration for the coordinator API.

Requests carrying a requester address are limited per address; everything
else is limited per client IP.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from .auth import REQUESTER_HEADER
from .config import get_settings


def get_rate_limit_key(request) -> str:
    """Key requests by requester address, falling back to client IP."""
    requester = request.headers.get(REQUESTER_HEADER)
    if requester:
        return f"requester:{requester.strip().lower()}"
    return get_remote_address(request)


limiter = Limiter(key_func=get_rate_limit_key, enabled=get_settings().rate_limit_enabled)
