"""Per-client-IP token-bucket rate limiting for the share routes."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable

TOO_MANY_REQUESTS_BODY = b"Too Many Requests\n"

# Distinct keys beyond this cap evict one existing entry before insert.
MAX_VISITOR_ENTRIES = 4096

Clock = Callable[[], float]


@dataclass(frozen=True)
class RateLimitConfig:
    """Steady refill rate in tokens per second and the bucket size."""

    rate: float
    burst: int


def default_share_rate_limit() -> RateLimitConfig:
    """Loopback defaults: 12 requests per second refill, burst of 80."""
    return RateLimitConfig(rate=12.0, burst=80)


class TokenBucket:
    """A token bucket that starts full and refills continuously."""

    def __init__(self, rate: float, burst: int, clock: Clock = time.monotonic) -> None:
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """Take one token if available and report whether one was taken."""
        if math.isinf(self.rate) and self.rate > 0:
            return True
        with self._lock:
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._last = now
            if self.rate > 0:
                self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False


class IPRateLimiter:
    """Holds one token bucket per client key, bounded in number."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._visitors: dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._visitors)

    def allow(self, host_key: str, cfg: RateLimitConfig) -> bool:
        """Report whether a request from *host_key* is within its limit."""
        with self._lock:
            bucket = self._visitors.get(host_key)
            if bucket is None:
                if len(self._visitors) >= MAX_VISITOR_ENTRIES:
                    del self._visitors[next(iter(self._visitors))]
                bucket = TokenBucket(cfg.rate, cfg.burst, self._clock)
                self._visitors[host_key] = bucket
            return bucket.allow()


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0 or not addr[end + 1 :].startswith(":"):
            raise ValueError(f"invalid address {addr!r}")
        host, port = addr[1:end], addr[end + 2 :]
        if ":" in port:
            raise ValueError(f"too many colons in address {addr!r}")
        return host, port
    idx = addr.rfind(":")
    if idx < 0:
        raise ValueError(f"missing port in address {addr!r}")
    host, port = addr[:idx], addr[idx + 1 :]
    if ":" in host:
        raise ValueError(f"too many colons in address {addr!r}")
    return host, port


def client_ip_key(remote_addr: str | None) -> str:
    """Return the host part of a remote address, or the address unchanged.

    Forwarded-for headers are deliberately ignored.
    """
    if remote_addr is None:
        return ""
    try:
        host, _ = _split_host_port(remote_addr)
    except ValueError:
        return remote_addr
    return host


class RateLimitedApp:
    """WSGI middleware answering 429 once a client exceeds its limit."""

    def __init__(
        self,
        inner: Callable,
        cfg: RateLimitConfig | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.inner = inner
        self.cfg = cfg if cfg is not None else default_share_rate_limit()
        self.ips = IPRateLimiter(clock)

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        if self.ips.allow(client_ip_key(environ.get("REMOTE_ADDR")), self.cfg):
            return self.inner(environ, start_response)
        start_response(
            "429 Too Many Requests",
            [
                ("Content-Type", "text/plain; charset=utf-8"),
                ("Cache-Control", "no-store"),
                ("Content-Length", str(len(TOO_MANY_REQUESTS_BODY))),
            ],
        )
        if environ.get("REQUEST_METHOD", "GET").upper() == "HEAD":
            return [b""]
        return [TOO_MANY_REQUESTS_BODY]