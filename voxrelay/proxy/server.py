"""voxrelay HTTP server.

Assembles the aiohttp application: rate limiting on the mount path, HTTP
forwarding and WebSocket tunnelling under it, static UI everywhere else.

Architecture:
  Browser (UI bundle from dist/)
    ↕ HTTP + WebSocket
  ProxyServer (listen_host:listen_port)
    ├─ /api-proxy/*  → rate limiter → GatewayHandler | TunnelManager
    └─ /*            → StaticSite (bootstrap scripts injected into index.html)
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import AsyncIterator
from pathlib import Path
from sys import platform as _platform

from aiohttp import ClientSession, ClientTimeout, web
from rich.console import Console

from voxrelay.audit.logger import AuditLogger
from voxrelay.config.schema import Settings
from voxrelay.proxy.gateway import GatewayHandler
from voxrelay.proxy.ratelimit import SlidingWindowRateLimiter, rate_limit_middleware
from voxrelay.proxy.static import StaticSite
from voxrelay.proxy.tunnel import TunnelManager, is_websocket_upgrade, upgrade_guard_middleware

_console = Console(stderr=True)


class ProxyServer:
    """The voxrelay web server.

    Args:
        settings: Frozen process settings.
        audit_logger: Structured audit logger.
        base_dir: Directory that ``static_dir`` and ``public_dir`` are relative to.
            Defaults to the current working directory.
        rate_limiter: Optional limiter instance (tests inject one with a fake clock).
    """

    def __init__(
        self,
        settings: Settings,
        audit_logger: AuditLogger,
        base_dir: Path | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        self._settings = settings
        self._audit_logger = audit_logger
        self._site = StaticSite(settings, base_dir)
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter.from_settings(
            settings.rate_limit,
        )
        self._session: ClientSession | None = None
        self._gateway: GatewayHandler | None = None
        self._tunnel: TunnelManager | None = None

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        return self._rate_limiter

    @property
    def tunnel(self) -> TunnelManager | None:
        return self._tunnel

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application(
            client_max_size=self._settings.max_body_bytes,
            middlewares=[
                upgrade_guard_middleware(self._settings, self._audit_logger),
                rate_limit_middleware(self._rate_limiter, self._settings, self._audit_logger),
            ],
        )
        app.cleanup_ctx.append(self._upstream_ctx)

        prefix = self._settings.mount_prefix
        app.router.add_route("*", prefix, self._handle_proxy)
        app.router.add_route("*", prefix + "/{tail:.*}", self._handle_proxy)

        app.router.add_get("/", self._site.index)
        app.router.add_get("/service-worker.js", self._site.service_worker)
        app.router.add_get("/public/{filename:.+}", self._site.public_file)
        app.router.add_get("/{filename:.+}", self._site.static_file)
        return app

    async def _upstream_ctx(self, app: web.Application) -> AsyncIterator[None]:
        """Own the outbound client session for the lifetime of the app."""
        # No total timeout: generation streams and live sessions can run long.
        session = ClientSession(
            timeout=ClientTimeout(total=None, connect=self._settings.upstream_connect_timeout),
            auto_decompress=False,
        )
        self._session = session
        self._gateway = GatewayHandler(self._settings, self._audit_logger, session)
        self._tunnel = TunnelManager(self._settings, self._audit_logger, session)
        sweeper = asyncio.create_task(self._sweep_rate_limits())
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await session.close()
            self._session = None

    async def _sweep_rate_limits(self) -> None:
        """Periodically forget clients whose window has expired."""
        interval = self._settings.rate_limit.window_seconds
        while True:
            await asyncio.sleep(interval)
            self._rate_limiter.sweep()

    async def _handle_proxy(self, request: web.Request) -> web.StreamResponse:
        assert self._gateway is not None and self._tunnel is not None
        if is_websocket_upgrade(request):
            return await self._tunnel.handle(request)
        return await self._gateway.handle(request)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event | None = None) -> None:
        """Start the server and block until shutdown.

        Args:
            shutdown_event: Optional external event to trigger shutdown. If
                *None*, the server registers its own SIGINT/SIGTERM handlers.
        """
        self._audit_logger.log_startup(self._settings)
        if not self._settings.has_credential:
            self._audit_logger.log_credential_missing()

        runner = web.AppRunner(self.build_app())
        await runner.setup()
        site = web.TCPSite(runner, self._settings.listen_host, self._settings.listen_port)

        own_event = shutdown_event is None
        if shutdown_event is None:
            shutdown_event = asyncio.Event()

        if own_event and _platform != "win32":
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, shutdown_event.set)

        try:
            try:
                await site.start()
            except OSError as e:
                _console.print(
                    f"[bold red]Error:[/bold red] Failed to bind to "
                    f"{self._settings.listen_host}:{self._settings.listen_port}: {e}",
                    highlight=False,
                )
                return

            _console.print(
                f"[bold #00ff88]Listening on http://{self._settings.listen_host}:"
                f"{self._settings.listen_port}[/bold #00ff88]",
            )
            _console.print("[dim]Press Ctrl+C to stop[/dim]")

            await shutdown_event.wait()
        finally:
            await runner.cleanup()
            self._audit_logger.log_shutdown("signal received")
