"""WebSocket tunnel between browser clients and the remote live API.

Every upgrade request under the mount prefix gets its own TunnelSession:
the client socket is accepted right away, the upstream socket is opened in
the background, and frames the client sends before upstream is ready are
queued and flushed in order once it is.

Architecture:
  Browser UI
    ↕ WS  /api-proxy/<rest>?<query>
  TunnelManager / TunnelSession
    ↕ WSS <remote_ws_base>/<rest>?<query>&key=<credential>
  Remote generative-AI API

Close and error on either leg tear down the whole session; nothing is
retried.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol

import aiohttp
from aiohttp import ClientSession, web
from aiohttp.typedefs import Handler
from yarl import URL

from voxrelay.audit.logger import AuditLogger
from voxrelay.config.schema import Settings
from voxrelay.proxy.gateway import path_remainder

UPSTREAM_ERROR_CODE = aiohttp.WSCloseCode.INTERNAL_ERROR  # 1011
UPSTREAM_ERROR_REASON = "Upstream error"
CLIENT_ERROR_CODE = aiohttp.WSCloseCode.INTERNAL_ERROR
CLIENT_ERROR_REASON = "Client error"

# Close frames carry at most 123 bytes of reason text.
_MAX_CLOSE_REASON_BYTES = 123

Frame = str | bytes


class FrameSocket(Protocol):
    """The slice of the aiohttp WebSocket API a session relies on.

    Both ``web.WebSocketResponse`` and ``aiohttp.ClientWebSocketResponse``
    satisfy it.
    """

    @property
    def closed(self) -> bool: ...

    async def send_str(self, data: str) -> None: ...

    async def send_bytes(self, data: bytes) -> None: ...

    async def close(self, *, code: int = ..., message: bytes = ...) -> bool: ...


class TunnelState(str, Enum):
    """Lifecycle of a tunnel session."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def sendable_close_code(code: int | None) -> int:
    """Map an observed close code to one that may be sent in a close frame.

    1005/1006/1015 are reserved for local reporting and must never go on the
    wire. A missing status becomes a normal closure, an abnormal one becomes
    an internal error.
    """
    if code is None or code == 1005:
        return aiohttp.WSCloseCode.OK
    if 1000 <= code <= 1003 or 1007 <= code <= 1014 or 3000 <= code <= 4999:
        return code
    return aiohttp.WSCloseCode.INTERNAL_ERROR


def _close_message(reason: str) -> bytes:
    encoded = reason.encode("utf-8")
    if len(encoded) <= _MAX_CLOSE_REASON_BYTES:
        return encoded
    return encoded[:_MAX_CLOSE_REASON_BYTES].decode("utf-8", errors="ignore").encode("utf-8")


class TunnelSession:
    """One client socket bridged to one lazily-opened upstream socket.

    The session owns both sockets and the pending-frame queue. All methods
    are called from the event loop; state changes happen synchronously
    before any await, so concurrent callbacks always see a consistent state.

    Args:
        client: The accepted client WebSocket.
    """

    def __init__(self, client: FrameSocket) -> None:
        self._client = client
        self._upstream: FrameSocket | None = None
        self._queue: deque[Frame] = deque()
        self.state = TunnelState.CONNECTING
        self.close_code: int | None = None
        self.close_reason = ""

    @property
    def closed(self) -> bool:
        return self.state is TunnelState.CLOSED

    @property
    def pending(self) -> int:
        """Number of client frames waiting for the upstream socket."""
        return len(self._queue)

    @property
    def upstream(self) -> FrameSocket | None:
        return self._upstream

    # ------------------------------------------------------------------
    # Client leg
    # ------------------------------------------------------------------

    async def client_message(self, data: Frame) -> None:
        """Relay a client frame upstream, or queue it until upstream is open."""
        if self.closed:
            return
        upstream = self._upstream
        if self.state is TunnelState.OPEN and upstream is not None and not upstream.closed:
            if not await _send(upstream, data):
                await self.upstream_error()
            return
        self._queue.append(data)

    async def client_closed(self, code: int | None, reason: str = "") -> None:
        """The client closed; close upstream with the same code and reason."""
        if self.closed:
            return
        self._mark_closed(code, reason)
        await _close(self._upstream, sendable_close_code(code), reason)

    async def client_error(self) -> None:
        """The client leg failed; close upstream with a generic client error."""
        if self.closed:
            return
        self._mark_closed(CLIENT_ERROR_CODE, CLIENT_ERROR_REASON)
        await _close(self._upstream, CLIENT_ERROR_CODE, CLIENT_ERROR_REASON)
        await _close(self._client, CLIENT_ERROR_CODE, CLIENT_ERROR_REASON)

    # ------------------------------------------------------------------
    # Upstream leg
    # ------------------------------------------------------------------

    async def upstream_opened(self, upstream: FrameSocket) -> None:
        """Attach the freshly opened upstream socket and flush the queue.

        The session stays CONNECTING while draining, so frames the client
        sends in the meantime join the back of the queue instead of
        overtaking it.
        """
        if self.closed:
            # The client left while we were still connecting.
            await _close(upstream, aiohttp.WSCloseCode.GOING_AWAY, "Client gone")
            return

        self._upstream = upstream
        while self._queue and self.state is TunnelState.CONNECTING:
            data = self._queue.popleft()
            if not await _send(upstream, data):
                await self.upstream_error()
                return

        if self.state is TunnelState.CONNECTING:
            self.state = TunnelState.OPEN

    async def upstream_message(self, data: Frame) -> None:
        """Relay an upstream frame to the client if it is still open."""
        if self.closed or self._client.closed:
            return
        if not await _send(self._client, data):
            await self.client_error()

    async def upstream_closed(self, code: int | None, reason: str = "") -> None:
        """Upstream closed; close the client with the same code and reason."""
        if self.closed:
            return
        self._mark_closed(code, reason)
        await _close(self._client, sendable_close_code(code), reason)

    async def upstream_error(self) -> None:
        """Upstream failed (or never connected); close the client generically."""
        if self.closed:
            return
        self._mark_closed(UPSTREAM_ERROR_CODE, UPSTREAM_ERROR_REASON)
        await _close(self._client, UPSTREAM_ERROR_CODE, UPSTREAM_ERROR_REASON)
        await _close(self._upstream, UPSTREAM_ERROR_CODE, UPSTREAM_ERROR_REASON)

    def _mark_closed(self, code: int | None, reason: str) -> None:
        self.state = TunnelState.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._queue.clear()


async def _send(ws: FrameSocket, data: Frame) -> bool:
    """Send one frame. Returns False if the socket turned out to be gone."""
    if ws.closed:
        return False
    try:
        if isinstance(data, str):
            await ws.send_str(data)
        else:
            await ws.send_bytes(data)
    except ConnectionError:
        return False
    return True


async def _close(ws: FrameSocket | None, code: int, reason: str) -> None:
    if ws is None or ws.closed:
        return
    with contextlib.suppress(ConnectionError):
        await ws.close(code=code, message=_close_message(reason))


# ----------------------------------------------------------------------
# aiohttp integration
# ----------------------------------------------------------------------


def is_websocket_upgrade(request: web.Request) -> bool:
    return request.headers.get("Upgrade", "").lower() == "websocket"


def requested_protocols(request: web.Request) -> tuple[str, ...]:
    """Subprotocols offered by the client in ``Sec-WebSocket-Protocol``."""
    header = request.headers.get("Sec-WebSocket-Protocol", "")
    return tuple(p.strip() for p in header.split(",") if p.strip())


def refuse_upgrade(request: web.Request) -> web.Response:
    """Drop the connection without completing the WebSocket handshake."""
    if request.transport is not None:
        request.transport.close()
    # Never reaches the client: the transport is already closing.
    return web.Response(status=403)


def upgrade_guard_middleware(
    settings: Settings,
    audit_logger: AuditLogger,
) -> Callable[[web.Request, Handler], Awaitable[web.StreamResponse]]:
    """Build a middleware dropping upgrade requests outside the mount path.

    Middlewares also wrap the 404/405 handlers routing falls back to, so
    methods and paths no route accepts are covered too.
    """

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if is_websocket_upgrade(request) and not settings.owns_path(request.path):
            audit_logger.log_tunnel_refused(request.path, "outside mount path")
            return refuse_upgrade(request)
        return await handler(request)

    return middleware


class TunnelManager:
    """Accepts upgrade requests under the mount prefix and runs their sessions.

    Args:
        settings: Frozen process settings (remote WS base, credential, prefix).
        audit_logger: Structured audit logger.
        session: Shared outbound ClientSession used for upstream handshakes.
    """

    def __init__(
        self,
        settings: Settings,
        audit_logger: AuditLogger,
        session: ClientSession,
    ) -> None:
        self._settings = settings
        self._audit_logger = audit_logger
        self._session = session
        self._active: set[TunnelSession] = set()

    @property
    def active_sessions(self) -> int:
        return len(self._active)

    def upstream_url(self, raw_path: str) -> URL:
        """Remote WebSocket URL for a local raw path, with the credential appended.

        The client's query string is kept; a client-supplied credential
        parameter is replaced by the server's.
        """
        remainder = path_remainder(raw_path, self._settings.mount_prefix)
        url = URL(self._settings.remote_ws_base + remainder, encoded=True)
        credential = self._settings.credential
        if credential is not None:
            url = url.update_query({self._settings.credential_query_param: credential})
        return url

    async def handle(self, request: web.Request) -> web.StreamResponse:
        if not self._settings.has_credential:
            self._audit_logger.log_tunnel_refused(request.path, "no credential configured")
            return refuse_upgrade(request)

        protocols = requested_protocols(request)
        client_ws = web.WebSocketResponse(
            protocols=protocols,
            max_msg_size=self._settings.max_ws_message_bytes,
        )
        await client_ws.prepare(request)

        tunnel = TunnelSession(client_ws)
        self._active.add(tunnel)
        self._audit_logger.log_tunnel_open(request.path, request.get("client_id"))

        upstream_task = asyncio.create_task(
            self._run_upstream(tunnel, self.upstream_url(request.raw_path), protocols, request.path),
        )
        try:
            await self._run_client(tunnel, client_ws, request.path)
        finally:
            if not upstream_task.done():
                upstream_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await upstream_task
            self._active.discard(tunnel)
            self._audit_logger.log_tunnel_close(
                request.path, tunnel.close_code, tunnel.close_reason,
            )

        return client_ws

    async def _run_client(
        self,
        tunnel: TunnelSession,
        client_ws: web.WebSocketResponse,
        path: str,
    ) -> None:
        """Read client frames until the client leg ends."""
        while True:
            msg = await client_ws.receive()
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                await tunnel.client_message(msg.data)
            elif msg.type == aiohttp.WSMsgType.CLOSE:
                await tunnel.client_closed(msg.data, msg.extra or "")
                return
            elif msg.type == aiohttp.WSMsgType.ERROR:
                if not tunnel.closed:
                    self._audit_logger.log_tunnel_error(path, "client", msg.data)
                await tunnel.client_error()
                return
            elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                await tunnel.client_closed(client_ws.close_code, "")
                return

    async def _run_upstream(
        self,
        tunnel: TunnelSession,
        url: URL,
        protocols: tuple[str, ...],
        path: str,
    ) -> None:
        """Open the upstream socket, then read upstream frames until it ends."""
        try:
            upstream = await self._session.ws_connect(
                url,
                protocols=protocols,
                max_msg_size=self._settings.max_ws_message_bytes,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            if not tunnel.closed:
                self._audit_logger.log_tunnel_error(path, "upstream", e)
            await tunnel.upstream_error()
            return

        try:
            await tunnel.upstream_opened(upstream)
            while not tunnel.closed:
                msg = await upstream.receive()
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await tunnel.upstream_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.CLOSE:
                    await tunnel.upstream_closed(msg.data, msg.extra or "")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    if not tunnel.closed:
                        self._audit_logger.log_tunnel_error(path, "upstream", msg.data)
                    await tunnel.upstream_error()
                elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    await tunnel.upstream_closed(upstream.close_code, "")
        finally:
            # A close mirrored from the client leg waits for this receive() to
            # return before it can send, so the frame goes out from here.
            await _close(upstream, sendable_close_code(tunnel.close_code), tunnel.close_reason)
