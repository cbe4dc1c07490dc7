"""
Process-wide slowapi limiter.

Routers decorate endpoints with ``@limiter.limit(...)``; the application
registers the limiter on ``app.state`` and installs the 429 handler.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from lastmile.core.config import get_settings

limiter = Limiter(key_func=get_remote_address)


def geo_rate_limit() -> str:
    return get_settings().geo_rate_limit
