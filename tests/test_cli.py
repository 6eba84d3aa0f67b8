from __future__ import annotations

import socket
import sys
from pathlib import Path

import pytest

from health_monitor import cli


@pytest.fixture(autouse=True)
def _quiet(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    monkeypatch.setenv("MONITOR_DB_PATH", str(tmp_path / "cli.db"))
    for name in ("MONITOR_CONFIG", "WEBHOOK_URL", "EMAIL_TO", "CHECK_INTERVAL_SECONDS"):
        monkeypatch.delenv(name, raising=False)


def _run(monkeypatch: pytest.MonkeyPatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["health-monitor", *argv])
    return cli.main()


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_invalid_config_exits_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("tenants:\n  - id: Not Valid\n    base_url: https://a.example.com\n", encoding="utf-8")
    assert _run(monkeypatch, "--config", str(bad)) == 2


def test_no_tenants_exits_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    assert _run(monkeypatch, "--config", str(tmp_path / "missing.yaml")) == 2


def test_once_reports_down_endpoints(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = tmp_path / "monitor.yaml"
    cfg.write_text(
        "probe_timeout_seconds: 2\n"
        "tenants:\n"
        "  - id: acme\n"
        f"    base_url: http://127.0.0.1:{_free_port()}\n"
        "    checks:\n"
        "      web: {path: /}\n",
        encoding="utf-8",
    )
    assert _run(monkeypatch, "--config", str(cfg), "--once", "--log-level", "warning") == 1
