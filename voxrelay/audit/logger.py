"""Structured audit logging for voxrelay.

Logs proxy traffic, rate-limit rejections, upstream failures and tunnel
lifecycle events. Writes to stderr (via rich) for human-readable output, and
optionally to a JSON Lines file for machine consumption.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

from rich.console import Console

from voxrelay.config.schema import Settings

_console = Console(stderr=True)


class AuditLogger:
    """Logs proxy decisions and server lifecycle events.

    Nothing logged here ever contains the upstream credential.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """Initialize the audit logger.

        Args:
            log_path: Optional path to write structured JSON Lines audit log.
                      If None, only logs to stderr via rich console.
        """
        self._log_file: IO[str] | None = None
        self._log_path = log_path
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = open(log_path, "a", encoding="utf-8")  # noqa: SIM115

    def close(self) -> None:
        """Flush and close the log file if open."""
        if self._log_file is not None:
            self._log_file.flush()
            self._log_file.close()
            self._log_file = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def log_startup(self, settings: Settings) -> None:
        """Log server startup with the effective (non-secret) settings."""
        entry = {
            "timestamp": _now_iso(),
            "event": "startup",
            "listen": f"{settings.listen_host}:{settings.listen_port}",
            "mount_prefix": settings.mount_prefix,
            "remote_http_base": settings.remote_http_base,
            "remote_ws_base": settings.remote_ws_base,
            "credential": settings.has_credential,
        }
        self._write_entry(entry)

        _console.print("[bold #00ff88]voxrelay started[/bold #00ff88]")
        _console.print(f"  Proxy:  {settings.mount_prefix} → {settings.remote_http_base}")
        _console.print(f"  Tunnel: {settings.mount_prefix} → {settings.remote_ws_base}")
        if settings.has_credential:
            _console.print("  Credential: [#00ff88]configured[/#00ff88]")

    def log_credential_missing(self) -> None:
        """Warn that no API key is configured (tunnel disabled, no auth injection)."""
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "credential_missing",
        })
        _console.print(
            "[bold #ffcc00]Warning:[/bold #ffcc00] API_KEY is not set. "
            "WebSocket tunnel is disabled and HTTP requests are forwarded without credentials.",
            highlight=False,
        )

    def log_shutdown(self, reason: str) -> None:
        """Log server shutdown."""
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "shutdown",
            "reason": reason,
        })
        _console.print(f"[bold]voxrelay stopped:[/bold] {reason}")

    # ------------------------------------------------------------------
    # HTTP gateway
    # ------------------------------------------------------------------

    def log_http_request(
        self,
        method: str,
        path: str,
        status: int,
        *,
        client: str | None = None,
    ) -> None:
        """Log a proxied HTTP request.

        Args:
            method: HTTP method (GET, POST, etc.).
            path: Local request path (never the upstream URL).
            status: Status code relayed to the client.
            client: Rate-limit identifier of the caller.
        """
        entry: dict[str, Any] = {
            "timestamp": _now_iso(),
            "event": "http_request",
            "method": method,
            "path": path,
            "status": status,
        }
        if client is not None:
            entry["client"] = client
        self._write_entry(entry)

        if 200 <= status < 300:
            status_style = "#00ff88"
        elif 300 <= status < 400:
            status_style = "#ffcc00"
        else:
            status_style = "red"
        _console.print(
            f"  [dim]{method:4s} {path} → [{status_style}]{status}[/{status_style}][/dim]",
            highlight=False,
        )

    def log_rate_limited(self, client: str, path: str) -> None:
        """Log a request rejected by the rate limiter."""
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "rate_limited",
            "client": client,
            "path": path,
        })
        _console.print(
            f"  [bold #ffcc00]Rate limit exceeded[/bold #ffcc00] for {client}. Path: {path}",
            highlight=False,
        )

    def log_proxy_error(self, client: str | None, path: str, error: BaseException) -> None:
        """Log an upstream failure that happened before any response was sent."""
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "proxy_error",
            "client": client,
            "path": path,
            "error": _describe(error),
        })
        _console.print(
            f"  [bold red]Proxy error[/bold red] {path}: {_describe(error)}",
            highlight=False,
        )

    def log_stream_aborted(self, client: str | None, path: str, error: BaseException) -> None:
        """Log a failure after the response had started streaming."""
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "stream_aborted",
            "client": client,
            "path": path,
            "error": _describe(error),
        })
        _console.print(
            f"  [red]Stream aborted[/red] {path}: {_describe(error)}",
            highlight=False,
        )

    # ------------------------------------------------------------------
    # WebSocket tunnel
    # ------------------------------------------------------------------

    def log_tunnel_open(self, path: str, client: str | None = None) -> None:
        entry: dict[str, Any] = {
            "timestamp": _now_iso(),
            "event": "tunnel_open",
            "path": path,
        }
        if client is not None:
            entry["client"] = client
        self._write_entry(entry)
        _console.print(f"  [dim]WS  {path} → upgraded[/dim]", highlight=False)

    def log_tunnel_close(self, path: str, code: int | None, reason: str) -> None:
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "tunnel_close",
            "path": path,
            "code": code,
            "reason": reason,
        })
        _console.print(f"  [dim]WS  {path} → closed ({code})[/dim]", highlight=False)

    def log_tunnel_error(self, path: str, side: str, error: BaseException | str) -> None:
        """Log a tunnel leg failure.

        Args:
            path: Local WebSocket path.
            side: ``"upstream"`` or ``"client"``.
            error: The exception or a short description.
        """
        description = error if isinstance(error, str) else _describe(error)
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "tunnel_error",
            "path": path,
            "side": side,
            "error": description,
        })
        _console.print(
            f"  [bold red]WS {side} error[/bold red] {path}: {description}",
            highlight=False,
        )

    def log_tunnel_refused(self, path: str, reason: str) -> None:
        """Log an upgrade request that was dropped before the handshake."""
        self._write_entry({
            "timestamp": _now_iso(),
            "event": "tunnel_refused",
            "path": path,
            "reason": reason,
        })
        _console.print(f"  [dim]WS  {path} → refused ({reason})[/dim]", highlight=False)

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Write a structured JSON entry to the log file.

        If the write fails (disk full, permission error, etc.), logs the
        failure to stderr and continues; audit I/O never takes the proxy down.
        """
        if self._log_file is not None:
            try:
                self._log_file.write(json.dumps(entry, default=str) + "\n")
                self._log_file.flush()
            except (OSError, ValueError) as e:
                # ValueError: I/O operation on closed file
                _console.print(
                    f"[bold red]Audit log write failed:[/bold red] {e}",
                    highlight=False,
                )
                try:
                    self._log_file.close()
                except (OSError, ValueError):
                    pass
                self._log_file = None


def _now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _describe(error: BaseException) -> str:
    """Short, single-line description of an exception for logs."""
    text = str(error)
    return f"{type(error).__name__}: {text}" if text else type(error).__name__
