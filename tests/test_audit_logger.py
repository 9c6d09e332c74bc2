"""Tests for the JSON Lines audit log."""

from __future__ import annotations

import json
from pathlib import Path

from voxrelay.audit.logger import AuditLogger
from voxrelay.config.schema import Settings


def _entries(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestAuditLogger:
    def test_startup_entry_omits_secret(self, tmp_path: Path) -> None:
        log_path = tmp_path / "audit.jsonl"
        logger = AuditLogger(log_path)
        logger.log_startup(Settings(api_key="do-not-log-me", listen_port=3100))
        logger.close()

        (entry,) = _entries(log_path)
        assert entry["event"] == "startup"
        assert entry["listen"] == "0.0.0.0:3100"
        assert entry["credential"] is True
        assert "do-not-log-me" not in log_path.read_text(encoding="utf-8")

    def test_one_line_per_event(self, tmp_path: Path) -> None:
        log_path = tmp_path / "audit.jsonl"
        logger = AuditLogger(log_path)
        logger.log_http_request("POST", "/api-proxy/v1beta/models", 200, client="1.2.3.4")
        logger.log_rate_limited("1.2.3.4", "/api-proxy/v1beta/models")
        logger.log_proxy_error("1.2.3.4", "/api-proxy/x", ConnectionRefusedError("refused"))
        logger.log_tunnel_open("/api-proxy/ws", "1.2.3.4")
        logger.log_tunnel_error("/api-proxy/ws", "upstream", "boom")
        logger.log_tunnel_close("/api-proxy/ws", 1011, "Upstream error")
        logger.log_tunnel_refused("/elsewhere", "outside mount path")
        logger.log_shutdown("signal received")
        logger.close()

        entries = _entries(log_path)
        assert [e["event"] for e in entries] == [
            "http_request",
            "rate_limited",
            "proxy_error",
            "tunnel_open",
            "tunnel_error",
            "tunnel_close",
            "tunnel_refused",
            "shutdown",
        ]
        assert entries[0]["status"] == 200
        assert entries[2]["error"] == "ConnectionRefusedError: refused"
        assert entries[5]["code"] == 1011
        assert all("timestamp" in e for e in entries)

    def test_client_omitted_when_unknown(self, tmp_path: Path) -> None:
        log_path = tmp_path / "audit.jsonl"
        logger = AuditLogger(log_path)
        logger.log_http_request("GET", "/api-proxy/x", 404)
        logger.close()

        (entry,) = _entries(log_path)
        assert "client" not in entry

    def test_appends_to_existing_file(self, tmp_path: Path) -> None:
        log_path = tmp_path / "nested" / "audit.jsonl"
        for _ in range(2):
            logger = AuditLogger(log_path)
            logger.log_credential_missing()
            logger.close()
        assert len(_entries(log_path)) == 2

    def test_write_after_close_is_harmless(self, tmp_path: Path) -> None:
        log_path = tmp_path / "audit.jsonl"
        logger = AuditLogger(log_path)
        logger.close()
        logger.log_shutdown("late")
        assert log_path.read_text(encoding="utf-8") == ""

    def test_console_only(self) -> None:
        logger = AuditLogger()
        logger.log_rate_limited("1.2.3.4", "/api-proxy/x")
        logger.close()
