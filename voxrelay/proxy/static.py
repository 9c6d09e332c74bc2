"""Static file serving and client bootstrap injection.

Serves the built single-page UI from ``dist/`` and helper assets from
``public/``. When an upstream credential is configured, ``index.html`` gets
the WebSocket interceptor and service-worker registration scripts inserted
right after its opening ``<head>`` tag before it leaves the process.
"""

from __future__ import annotations

from pathlib import Path

from aiohttp import web

from voxrelay.config.schema import Settings

WEBSOCKET_INTERCEPTOR_TAG = '<script src="/public/websocket-interceptor.js" defer></script>'

SERVICE_WORKER_REGISTRATION = """
<script>
(function() {
  if ('serviceWorker' in navigator) {
    window.addEventListener('load', function() {
      navigator.serviceWorker.register('./service-worker.js')
        .then(function(reg) { console.log('SW scope:', reg.scope); })
        .catch(function(err) { console.error('SW failed:', err); });
    });
  }
})();
</script>"""

_HEAD_TAG = "<head>"


def inject_bootstrap(html: str) -> str:
    """Insert the bootstrap scripts after the first ``<head>`` tag.

    Documents without a literal ``<head>`` are returned unchanged.
    """
    before, sep, after = html.partition(_HEAD_TAG)
    if not sep:
        return html
    return before + _HEAD_TAG + WEBSOCKET_INTERCEPTOR_TAG + SERVICE_WORKER_REGISTRATION + after


def resolve_under(root: Path, relative: str) -> Path | None:
    """Resolve *relative* inside *root*, or None if it escapes or is not a file."""
    root = root.resolve()
    candidate = (root / relative.lstrip("/")).resolve()
    if not candidate.is_relative_to(root) or not candidate.is_file():
        return None
    return candidate


class StaticSite:
    """Handlers for everything outside the proxy mount path."""

    def __init__(self, settings: Settings, base_dir: Path | None = None) -> None:
        base = base_dir if base_dir is not None else Path.cwd()
        self._settings = settings
        self._static_dir = base / settings.static_dir
        self._public_dir = base / settings.public_dir

    async def index(self, request: web.Request) -> web.StreamResponse:
        index_path = self._static_dir / "index.html"
        try:
            html = index_path.read_text(encoding="utf-8")
        except OSError:
            placeholder = resolve_under(self._public_dir, "placeholder.html")
            if placeholder is None:
                raise web.HTTPNotFound(text="index.html not found") from None
            return web.FileResponse(placeholder)

        if self._settings.has_credential:
            html = inject_bootstrap(html)
        return web.Response(text=html, content_type="text/html")

    async def service_worker(self, request: web.Request) -> web.StreamResponse:
        return self._file(self._public_dir, "service-worker.js")

    async def public_file(self, request: web.Request) -> web.StreamResponse:
        return self._file(self._public_dir, request.match_info["filename"])

    async def static_file(self, request: web.Request) -> web.StreamResponse:
        return self._file(self._static_dir, request.match_info["filename"])

    @staticmethod
    def _file(root: Path, relative: str) -> web.FileResponse:
        path = resolve_under(root, relative)
        if path is None:
            raise web.HTTPNotFound()
        return web.FileResponse(path)
