"""Shared fixtures: audit logger, mock upstream servers, running relays."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from aiohttp import web

from voxrelay.audit.logger import AuditLogger
from voxrelay.config.schema import Settings
from voxrelay.proxy.ratelimit import SlidingWindowRateLimiter
from voxrelay.proxy.server import ProxyServer


@pytest.fixture()
def audit_logger(tmp_path: Path) -> Iterator[AuditLogger]:
    """Create an audit logger writing to a temp file."""
    logger = AuditLogger(log_path=tmp_path / "audit.jsonl")
    yield logger
    logger.close()


async def _free_port() -> int:
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()
    return port


async def _wait_until_listening(port: int, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        try:
            _, writer = await asyncio.open_connection("127.0.0.1", port)
        except OSError:
            if loop.time() > deadline:
                raise
            await asyncio.sleep(0.02)
            continue
        writer.close()
        await writer.wait_closed()
        return


@pytest.fixture()
async def serve_app() -> AsyncIterator[Callable[[web.Application], Awaitable[str]]]:
    """Start mock upstream apps on free ports; returns ``host:port``."""
    runners: list[web.AppRunner] = []

    async def _serve(app: web.Application) -> str:
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
        runners.append(runner)
        return f"127.0.0.1:{port}"

    yield _serve

    for runner in reversed(runners):
        await runner.cleanup()


@pytest.fixture()
async def start_relay(
    audit_logger: AuditLogger,
    tmp_path: Path,
) -> AsyncIterator[Callable[..., Awaitable[tuple[ProxyServer, str]]]]:
    """Start ProxyServer instances; returns ``(server, base_url)``.

    Keyword arguments are passed to ``Settings``. ``rate_limiter`` and
    ``base_dir`` are passed to ``ProxyServer``.
    """
    running: list[tuple[asyncio.Event, asyncio.Task[None]]] = []

    async def _start(
        *,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        base_dir: Path | None = None,
        **overrides: Any,
    ) -> tuple[ProxyServer, str]:
        port = await _free_port()
        settings = Settings(listen_host="127.0.0.1", listen_port=port, **overrides)
        server = ProxyServer(
            settings,
            audit_logger,
            base_dir=base_dir if base_dir is not None else tmp_path,
            rate_limiter=rate_limiter,
        )
        shutdown = asyncio.Event()
        task = asyncio.create_task(server.run(shutdown))
        running.append((shutdown, task))
        await _wait_until_listening(port)
        return server, f"http://127.0.0.1:{port}"

    yield _start

    for shutdown, task in running:
        shutdown.set()
        await asyncio.wait_for(task, timeout=10)

