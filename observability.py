"""
Logging setup, request tracing and in-process request metrics.

- Console + file logging (LOG_FILE)
- In-memory ring buffer of the latest log lines (served by GET /api/logs)
- x-request-id propagation and per-request access log
- Request counters served by GET /metrics
"""

import logging
import os
import resource
import sys
import time
import uuid
from collections import deque
from datetime import datetime
from threading import Lock

from fastapi import Request

from config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("petpro.requests")


class RingBufferHandler(logging.Handler):
    """Keeps the last N formatted log lines in memory"""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self.lines = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord):
        try:
            self.lines.append(self.format(record))
        except Exception:
            self.handleError(record)


_buffer_handler = RingBufferHandler(settings.LOG_BUFFER_SIZE)
_configured = False


def configure_logging():
    """Install console, file and buffer handlers on the root logger (idempotent)."""
    global _configured
    if _configured:
        return

    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if settings.LOG_FILE:
        try:
            file_handler = logging.FileHandler(settings.LOG_FILE, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError as e:
            root.warning(f"⚠️ Could not open log file {settings.LOG_FILE}: {e}")

    _buffer_handler.setFormatter(formatter)
    root.addHandler(_buffer_handler)
    _configured = True


def get_log_lines() -> list:
    return list(_buffer_handler.lines)


# ==================== METRICS ====================

def current_rss_mb() -> float:
    """Current resident set size in MB (peak RSS where /proc is unavailable)"""
    try:
        with open("/proc/self/statm") as statm:
            resident_pages = int(statm.read().split()[1])
        return round(resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024), 1)
    except (OSError, ValueError, IndexError):
        # ru_maxrss is reported in kilobytes on Linux
        return round(resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024, 1)


class RequestMetrics:
    def __init__(self):
        self._lock = Lock()
        self.reset()

    def reset(self):
        with self._lock:
            self.started_at = datetime.utcnow()
            self._started_monotonic = time.monotonic()
            self.total_requests = 0
            self.total_errors = 0
            self.by_status = {}

    def record(self, status_code: int):
        with self._lock:
            self.total_requests += 1
            if status_code >= 500:
                self.total_errors += 1
            key = str(status_code)
            self.by_status[key] = self.by_status.get(key, 0) + 1

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "started_at": self.started_at.isoformat(),
                "total_requests": self.total_requests,
                "total_errors": self.total_errors,
                "by_status": dict(self.by_status),
                "uptime_seconds": int(time.monotonic() - self._started_monotonic),
                "memory_mb": current_rss_mb(),
            }


metrics = RequestMetrics()


async def request_context_middleware(request: Request, call_next):
    """Attach a request id, log the request and count it."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        metrics.record(500)
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.error(f"[{request_id}] {request.method} {request.url.path} -> 500 ({elapsed_ms:.0f}ms)")
        raise

    elapsed_ms = (time.perf_counter() - start) * 1000
    metrics.record(response.status_code)
    response.headers["x-request-id"] = request_id
    logger.info(f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)")
    return response
