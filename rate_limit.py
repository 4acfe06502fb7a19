"""
Fixed-window login rate limiting per client IP.
"""

import logging
import math
import time
from threading import Lock

from fastapi import Request

from config import settings
from errors import ApiError

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = "Muitas tentativas de login. Tente novamente em alguns minutos."

CLEANUP_INTERVAL_SECONDS = 60  # Drop expired windows at most once a minute

_attempts = {}  # ip -> (window_start, count)
_lock = Lock()
_last_cleanup = 0.0


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def _cleanup_expired(now: float, window: int):
    """Forget windows that have elapsed; caller holds _lock"""
    global _last_cleanup
    if now - _last_cleanup < CLEANUP_INTERVAL_SECONDS:
        return

    expired = [ip for ip, (window_start, _) in _attempts.items() if now - window_start >= window]
    for ip in expired:
        del _attempts[ip]
    if expired:
        logger.debug(f"🧹 Cleaned up {len(expired)} expired login rate limit entries")
    _last_cleanup = now


def register_attempt(ip: str, now: float = None) -> int:
    """
    Count a login attempt for ip.
    Returns 0 when allowed, or the seconds to wait when the window is exhausted.
    """
    now = time.time() if now is None else now
    window = settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS
    with _lock:
        _cleanup_expired(now, window)
        window_start, count = _attempts.get(ip, (now, 0))
        if now - window_start >= window:
            window_start, count = now, 0
        if count >= settings.LOGIN_RATE_LIMIT_MAX:
            return max(1, math.ceil(window_start + window - now))
        _attempts[ip] = (window_start, count + 1)
        return 0


def reset_login_rate_limit():
    global _last_cleanup
    with _lock:
        _attempts.clear()
        _last_cleanup = 0.0


async def login_rate_limit(request: Request):
    """Dependency for POST /auth/login"""
    retry_after = register_attempt(get_client_ip(request))
    if retry_after:
        raise ApiError(429, RATE_LIMIT_MESSAGE, headers={"Retry-After": str(retry_after)})
