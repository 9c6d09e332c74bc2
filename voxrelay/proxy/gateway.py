"""HTTP forwarding gateway.

Forwards every non-upgrade request under the mount prefix to the remote API
host. The server-held credential is injected as a header, connection
management headers are stripped, and the upstream response is piped back to
the client chunk by chunk with its status code untouched.

Architecture:
  Browser UI
    ↕ HTTP  /api-proxy/<rest>?<query>
  GatewayHandler
    ↕ HTTPS <remote_http_base>/<rest>?<query>   (+ X-Goog-Api-Key)
  Remote generative-AI API
"""

from __future__ import annotations

import asyncio

import aiohttp
from aiohttp import ClientSession, web
from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

from voxrelay.audit.logger import AuditLogger
from voxrelay.config.schema import Settings

# Headers never forwarded from client to upstream. Kept as a named deny-list
# so the filtering does not depend on client library defaults.
EXCLUDED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "connection",
        "content-length",
        "transfer-encoding",
        "upgrade",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
    }
)

# Upstream response headers describing the upstream connection's framing.
# aiohttp frames the client connection itself.
EXCLUDED_RESPONSE_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "transfer-encoding",
    }
)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
    "Access-Control-Max-Age": "86400",
}

_CHUNK_SIZE = 64 * 1024


def path_remainder(raw_path: str, mount_prefix: str) -> str:
    """Strip the mount prefix from a raw (still percent-encoded) path + query.

    ``/api-proxy/v1beta/models?key=`` → ``/v1beta/models?key=``.
    The result always starts with ``/``.
    """
    remainder = raw_path[len(mount_prefix):] if raw_path.startswith(mount_prefix) else raw_path
    if not remainder.startswith("/"):
        remainder = "/" + remainder
    return remainder


def build_upstream_url(settings: Settings, raw_path: str) -> URL:
    """Map a local raw path under the mount prefix to the remote HTTP URL."""
    remainder = path_remainder(raw_path, settings.mount_prefix)
    return URL(settings.remote_http_base + remainder, encoded=True)


def build_outgoing_headers(
    incoming: CIMultiDictProxy[str] | CIMultiDict[str],
    method: str,
    settings: Settings,
) -> CIMultiDict[str]:
    """Derive the header set sent upstream from the client's headers.

    - drops ``EXCLUDED_REQUEST_HEADERS`` and any client-supplied credential header
    - injects the configured credential (when there is one)
    - keeps/defaults ``Content-Type`` only for body-carrying methods
    - defaults ``Accept`` to ``*/*``
    """
    credential_header = settings.credential_header.lower()
    outgoing: CIMultiDict[str] = CIMultiDict()
    for key, value in incoming.items():
        lower = key.lower()
        if lower in EXCLUDED_REQUEST_HEADERS or lower == credential_header:
            continue
        outgoing.add(key, value)

    credential = settings.credential
    if credential is not None:
        outgoing[settings.credential_header] = credential

    if method.upper() in BODY_METHODS:
        outgoing["Content-Type"] = incoming.get("Content-Type") or "application/json"
    else:
        outgoing.popall("Content-Type", None)

    if "Accept" not in outgoing:
        outgoing["Accept"] = "*/*"

    return outgoing


def preflight_response(settings: Settings) -> web.Response:
    """200 answer to a CORS preflight; upstream is never contacted."""
    headers = dict(CORS_PREFLIGHT_HEADERS)
    headers["Access-Control-Allow-Headers"] = (
        f"Content-Type, Authorization, {settings.credential_header}"
    )
    return web.Response(status=200, headers=headers)


def proxy_error_response(error: BaseException) -> web.Response:
    """The structured 500 body returned when upstream could not be reached."""
    return web.json_response(
        {"error": "Proxy error", "message": str(error) or type(error).__name__},
        status=500,
    )


class GatewayHandler:
    """Streams HTTP requests under the mount prefix to the remote API.

    Args:
        settings: Frozen process settings (remote base, credential, prefix).
        audit_logger: Structured audit logger.
        session: Shared outbound ClientSession. It must be created with
            ``auto_decompress=False`` so bytes are relayed exactly as sent.
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

    async def handle(self, request: web.Request) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return preflight_response(self._settings)

        client_id = request.get("client_id")
        target_url = build_upstream_url(self._settings, request.raw_path)
        headers = build_outgoing_headers(request.headers, request.method, self._settings)

        body: bytes | None = None
        if request.method.upper() in BODY_METHODS:
            body = await request.read()

        try:
            upstream = await self._session.request(
                request.method,
                target_url,
                headers=headers,
                data=body,
                allow_redirects=False,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            self._audit_logger.log_proxy_error(client_id, request.path, e)
            return proxy_error_response(e)

        async with upstream:
            response = web.StreamResponse(status=upstream.status, reason=upstream.reason)
            for key, value in upstream.headers.items():
                if key.lower() not in EXCLUDED_RESPONSE_HEADERS:
                    response.headers.add(key, value)

            try:
                await response.prepare(request)
            except ConnectionError as e:
                # Client went away before we could answer.
                self._audit_logger.log_stream_aborted(client_id, request.path, e)
                return response

            self._audit_logger.log_http_request(
                request.method, request.path, upstream.status, client=client_id,
            )

            try:
                async for chunk in upstream.content.iter_chunked(_CHUNK_SIZE):
                    await response.write(chunk)
                await response.write_eof()
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                # Headers are already on the wire; the only honest signal left
                # is to drop the connection without a terminating chunk.
                self._audit_logger.log_stream_aborted(client_id, request.path, e)
                if request.transport is not None:
                    request.transport.close()

        return response
