# clinicbook/limiter.py
# Rate limiter instance lives in its own module to avoid circular imports between main.py and the routers.
# Counters are kept in RATE_LIMIT_STORAGE_URI; point it at redis:// when running more than one instance.

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_settings.rate_limit_storage_uri,
    enabled=_settings.rate_limit_enabled,
    headers_enabled=False,
)
