"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

import json
from pathlib import Path
from unittest import mock

import aiohttp
import pytest
from aiohttp.test_utils import make_mocked_request

from voxrelay.config.schema import RateLimitSettings
from voxrelay.proxy.ratelimit import SlidingWindowRateLimiter, client_identifier


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _request(peer: str, forwarded: str | None = None):
    transport = mock.Mock()
    transport.get_extra_info.side_effect = (
        lambda name, default=None: (peer, 51000) if name == "peername" else default
    )
    headers = {"X-Forwarded-For": forwarded} if forwarded is not None else {}
    return make_mocked_request("GET", "/api-proxy/x", headers=headers, transport=transport)


class TestSlidingWindow:
    def test_hundredth_admitted_hundred_first_rejected(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(100, 900, clock=clock)

        for i in range(100):
            decision = limiter.admit("1.2.3.4")
            assert decision.allowed, f"request {i + 1} should be admitted"
            clock.advance(1)

        decision = limiter.admit("1.2.3.4")
        assert not decision.allowed
        assert decision.remaining == 0

    def test_remaining_counts_down(self) -> None:
        limiter = SlidingWindowRateLimiter(3, 60, clock=FakeClock())
        assert [limiter.admit("a").remaining for _ in range(3)] == [2, 1, 0]

    def test_clients_are_independent(self) -> None:
        limiter = SlidingWindowRateLimiter(1, 60, clock=FakeClock())
        assert limiter.admit("a").allowed
        assert not limiter.admit("a").allowed
        assert limiter.admit("b").allowed

    def test_no_burst_at_window_boundary(self) -> None:
        """A fixed bucket would reset at t=60 and allow a second full burst."""
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(4, 60, clock=clock)

        clock.advance(50)
        for _ in range(4):
            assert limiter.admit("a").allowed

        clock.advance(15)  # 65s: past a fixed boundary at 60s, still inside the trailing window
        assert not limiter.admit("a").allowed

    def test_slots_free_as_oldest_entries_expire(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(2, 60, clock=clock)

        assert limiter.admit("a").allowed      # t=0
        clock.advance(30)
        assert limiter.admit("a").allowed      # t=30
        assert not limiter.admit("a").allowed

        clock.advance(30)                      # t=60: first entry leaves the window
        assert limiter.admit("a").allowed
        assert not limiter.admit("a").allowed

    def test_rejections_are_not_recorded(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(1, 60, clock=clock)
        assert limiter.admit("a").allowed
        for _ in range(10):
            assert not limiter.admit("a").allowed
        assert limiter.count("a") == 1

        clock.advance(60)
        assert limiter.admit("a").allowed

    def test_reset_after_points_at_oldest_entry(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(1, 60, clock=clock)
        limiter.admit("a")
        clock.advance(20)
        decision = limiter.admit("a")
        assert not decision.allowed
        assert decision.reset_after == pytest.approx(40)

    def test_sweep_drops_idle_clients(self) -> None:
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(5, 60, clock=clock)
        limiter.admit("a")
        clock.advance(30)
        limiter.admit("b")
        clock.advance(31)

        assert limiter.sweep() == 1
        assert limiter.tracked_clients == 1
        assert limiter.count("b") == 1

    def test_from_settings(self) -> None:
        limiter = SlidingWindowRateLimiter.from_settings(RateLimitSettings())
        assert limiter.window_seconds == 900


class TestClientIdentifier:
    def test_peer_address_without_forwarding(self) -> None:
        assert client_identifier(_request("10.0.0.9"), trusted_proxies=1) == "10.0.0.9"

    def test_one_trusted_hop_uses_last_forwarded_entry(self) -> None:
        request = _request("10.0.0.1", "6.6.6.6, 203.0.113.7")
        assert client_identifier(request, trusted_proxies=1) == "203.0.113.7"

    def test_zero_trusted_hops_ignores_header(self) -> None:
        request = _request("10.0.0.1", "203.0.113.7")
        assert client_identifier(request, trusted_proxies=0) == "10.0.0.1"

    def test_two_trusted_hops(self) -> None:
        request = _request("10.0.0.1", "198.51.100.2, 10.0.0.2")
        assert client_identifier(request, trusted_proxies=2) == "198.51.100.2"

    def test_more_hops_than_entries_clamps_to_leftmost(self) -> None:
        request = _request("10.0.0.1", "198.51.100.2")
        assert client_identifier(request, trusted_proxies=5) == "198.51.100.2"


class TestRateLimitMiddleware:
    @pytest.mark.asyncio
    async def test_boundary_through_relay(self, start_relay, tmp_path: Path) -> None:
        _, base = await start_relay()

        async with aiohttp.ClientSession() as session:
            for _ in range(100):
                async with session.options(f"{base}/api-proxy/v1beta/models") as resp:
                    assert resp.status == 200

            async with session.options(f"{base}/api-proxy/v1beta/models") as resp:
                assert resp.status == 429
                assert "Too many requests" in await resp.text()
                assert "15 minutes" in await resp.text()
                assert int(resp.headers["Retry-After"]) > 0
                assert resp.headers["RateLimit-Limit"] == "100"
                assert resp.headers["RateLimit-Remaining"] == "0"

        entries = [
            json.loads(line)
            for line in (tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()
        ]
        rejected = [e for e in entries if e["event"] == "rate_limited"]
        assert len(rejected) == 1
        assert rejected[0]["client"] == "127.0.0.1"
        assert rejected[0]["path"] == "/api-proxy/v1beta/models"

    @pytest.mark.asyncio
    async def test_static_paths_are_not_limited(self, start_relay, tmp_path: Path) -> None:
        (tmp_path / "dist").mkdir()
        (tmp_path / "dist" / "app.js").write_text("console.log('hi');", encoding="utf-8")
        limiter = SlidingWindowRateLimiter(1, 900)
        _, base = await start_relay(rate_limiter=limiter)

        async with aiohttp.ClientSession() as session:
            for _ in range(3):
                async with session.get(f"{base}/app.js") as resp:
                    assert resp.status == 200

            async with session.options(f"{base}/api-proxy/x") as resp:
                assert resp.status == 200
            async with session.options(f"{base}/api-proxy/x") as resp:
                assert resp.status == 429

    @pytest.mark.asyncio
    async def test_upgrade_requests_count_against_limit(self, start_relay) -> None:
        limiter = SlidingWindowRateLimiter(1, 900)
        _, base = await start_relay(rate_limiter=limiter, api_key="k")

        async with aiohttp.ClientSession() as session:
            async with session.options(f"{base}/api-proxy/x") as resp:
                assert resp.status == 200
            with pytest.raises(aiohttp.WSServerHandshakeError) as excinfo:
                await session.ws_connect(f"{base}/api-proxy/ws")
            assert excinfo.value.status == 429
