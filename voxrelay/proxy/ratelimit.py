"""Per-client sliding-window rate limiting for the proxy mount path.

Each client identifier keeps a log of the monotonic timestamps of its
admitted requests. A request is admitted while fewer than ``max_requests``
timestamps fall inside the trailing window, so there is no burst at bucket
boundaries.

All state lives on the event loop thread and is mutated synchronously, so
no lock is needed.
"""

from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from aiohttp import web
from aiohttp.typedefs import Handler

from voxrelay.audit.logger import AuditLogger
from voxrelay.config.schema import RateLimitSettings, Settings


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the request may proceed.
        limit: Configured maximum per window.
        remaining: Admissions left in the current window after this one.
        reset_after: Seconds until the oldest counted request leaves the window.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_after: float


class SlidingWindowRateLimiter:
    """Sliding-log limiter keyed by client identifier."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> SlidingWindowRateLimiter:
        return cls(settings.max_requests, settings.window_seconds)

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def _prune(self, window: deque[float], now: float) -> None:
        cutoff = now - self._window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def admit(self, client_id: str) -> RateLimitDecision:
        """Check and record one request from *client_id*.

        Rejected requests are not recorded, so a client that keeps hammering
        the limit regains access as soon as its oldest admission expires.
        """
        now = self._clock()
        window = self._windows.get(client_id)
        if window is None:
            window = self._windows[client_id] = deque()
        self._prune(window, now)

        if len(window) >= self._max_requests:
            reset_after = window[0] + self._window_seconds - now
            return RateLimitDecision(
                allowed=False,
                limit=self._max_requests,
                remaining=0,
                reset_after=max(0.0, reset_after),
            )

        window.append(now)
        return RateLimitDecision(
            allowed=True,
            limit=self._max_requests,
            remaining=self._max_requests - len(window),
            reset_after=window[0] + self._window_seconds - now,
        )

    def count(self, client_id: str) -> int:
        """Number of admissions for *client_id* inside the current window."""
        window = self._windows.get(client_id)
        if window is None:
            return 0
        self._prune(window, self._clock())
        return len(window)

    def sweep(self) -> int:
        """Drop clients whose window has fully expired. Returns how many were dropped."""
        now = self._clock()
        stale = []
        for client_id, window in self._windows.items():
            self._prune(window, now)
            if not window:
                stale.append(client_id)
        for client_id in stale:
            del self._windows[client_id]
        return len(stale)

    @property
    def tracked_clients(self) -> int:
        return len(self._windows)


def client_identifier(request: web.Request, trusted_proxies: int) -> str:
    """Derive the rate-limit key for a request.

    With ``trusted_proxies`` hops in front of us, the client is the entry that
    many positions from the right of ``X-Forwarded-For`` + peer address. Entries
    further left were supplied by the client and may be spoofed, so they are
    never used.
    """
    peer = request.remote or "unknown"
    if trusted_proxies <= 0:
        return peer

    forwarded = request.headers.getall("X-Forwarded-For", [])
    chain = [
        part.strip()
        for header in forwarded
        for part in header.split(",")
        if part.strip()
    ]
    chain.append(peer)

    index = max(0, len(chain) - 1 - trusted_proxies)
    return chain[index]


def _format_window(seconds: float) -> str:
    minutes = seconds / 60
    if minutes >= 1 and minutes.is_integer():
        unit = "minute" if minutes == 1 else "minutes"
        return f"{int(minutes)} {unit}"
    return f"{math.ceil(seconds)} seconds"


def rate_limit_middleware(
    limiter: SlidingWindowRateLimiter,
    settings: Settings,
    audit_logger: AuditLogger,
) -> Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]:
    """Build an aiohttp middleware that guards the mount path only.

    The client identifier is stored on the request as ``request["client_id"]``
    so downstream handlers can log it.
    """
    message = (
        "Too many requests from this IP, please try again after "
        f"{_format_window(limiter.window_seconds)}"
    )

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if not settings.owns_path(request.path):
            return await handler(request)

        client_id = client_identifier(request, settings.rate_limit.trusted_proxies)
        request["client_id"] = client_id

        decision = limiter.admit(client_id)
        if not decision.allowed:
            audit_logger.log_rate_limited(client_id, request.path)
            reset = math.ceil(decision.reset_after)
            return web.Response(
                status=429,
                text=message,
                headers={
                    "Retry-After": str(reset),
                    "RateLimit-Limit": str(decision.limit),
                    "RateLimit-Remaining": "0",
                    "RateLimit-Reset": str(reset),
                },
            )
        return await handler(request)

    return middleware
