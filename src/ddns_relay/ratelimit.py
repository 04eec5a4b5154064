"""Per-client-IP rate limiting as WSGI middleware.

Runs in front of the Flask application, so a throttled request never reaches
routing, authentication or the ledger.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


def _valid_ip(value: str) -> Optional[str]:
    candidate = value.strip()
    if not candidate:
        return None
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def client_ip(environ: Dict[str, Any]) -> str:
    """Derive the client address, preferring proxy headers.

    ``X-Forwarded-For`` is scanned left to right for the first valid address,
    then ``X-Real-IP``; the raw connection address is the fallback.
    """
    for part in environ.get("HTTP_X_FORWARDED_FOR", "").split(","):
        ip = _valid_ip(part)
        if ip:
            return ip
    ip = _valid_ip(environ.get("HTTP_X_REAL_IP", ""))
    if ip:
        return ip
    return environ.get("REMOTE_ADDR", "") or "unknown"


class RateLimiter:
    """Fixed cool-down window per client IP."""

    def __init__(
        self, interval_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic
    ):
        self.interval = interval_seconds
        self._clock = clock
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._last_prune = clock()

    def allow(self, ip: str) -> bool:
        """Record a request from ``ip``; False if it falls inside the cool-down."""
        now = self._clock()
        with self._lock:
            self._prune_locked(now)
            last = self._last_seen.get(ip)
            if last is not None and now - last < self.interval:
                return False
            self._last_seen[ip] = now
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_seen)

    def _prune_locked(self, now: float) -> None:
        if now - self._last_prune < self.interval:
            return
        self._last_prune = now
        expired = [ip for ip, seen in self._last_seen.items() if now - seen >= self.interval]
        for ip in expired:
            del self._last_seen[ip]


class RateLimitMiddleware:
    def __init__(self, app: Callable, limiter: RateLimiter):
        self.app = app
        self.limiter = limiter

    def __call__(self, environ: Dict[str, Any], start_response: Callable) -> Iterable[bytes]:
        ip = client_ip(environ)
        if self.limiter.allow(ip):
            return self.app(environ, start_response)

        logger.warning(f"Rate limit: too many requests from {ip}")
        body = json.dumps(
            {"status": "error", "message": "too many requests, please retry later"}
        ).encode("utf-8")
        start_response(
            "429 Too Many Requests",
            [
                ("Content-Type", "application/json"),
                ("Content-Length", str(len(body))),
                ("Retry-After", str(int(self.limiter.interval) or 1)),
            ],
        )
        return [body]
