"""
Shared pytest fixtures for engine tests.
"""
import os
import stat
import sys
import time
from pathlib import Path

import pytest

from xui_engine import supervisor as supervisor_module
from xui_engine.models import Inbound
from xui_engine.monitor import Monitor
from xui_engine.settings import Settings
from xui_engine.store import InboundStore
from xui_engine.supervisor import ProcessKiller, Supervisor

STATS_REPLY = """{
    "stat": [
        {
            "name": "outbound>>>blocked>>>traffic>>>downlink"
        },
        {
            "name": "inbound>>>api>>>traffic>>>uplink",
            "value": 4832
        },
        {
            "name": "inbound>>>inbound-2a80a671>>>traffic>>>uplink",
            "value": 362637
        }
    ]
}
"""

unix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as the xray binary")


def make_binary(path: Path, *, stats: str = STATS_REPLY, exit_code: int = 0) -> Path:
    """Write a shell script that answers the xray subcommands the engine uses."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"""#!/bin/sh
case "$1" in
  api)
    cat <<'REPLY'
{stats}
REPLY
    exit {exit_code}
    ;;
  -version)
    echo "Xray 1.8.4 (Xray, Penetrates Everything.) Custom (go1.21.0 linux/amd64)"
    ;;
  x25519)
    echo "PrivateKey: cHJpdmF0ZQ"
    echo "Password: cHVibGlj"
    ;;
  *)
    exit 3
    ;;
esac
""")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class RecordingKiller(ProcessKiller):
    """Records terminate calls instead of killing anything."""

    def __init__(self, monitor: Monitor | None = None) -> None:
        self.monitor = monitor
        self.calls: list[str] = []
        self.events: list[tuple[str, float, bool | None]] = []

    def terminate(self, name: str) -> None:
        self.calls.append(name)
        running = self.monitor.is_running() if self.monitor else None
        self.events.append(("stop", time.monotonic(), running))


class FakePopen:
    """Stands in for subprocess.Popen inside the supervisor."""
    instances: list["FakePopen"] = []

    def __init__(self, args, **kwargs) -> None:
        self.args = args
        self.kwargs = kwargs
        self.started_at = time.monotonic()
        FakePopen.instances.append(self)

    def poll(self):
        return None


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=tmp_path / "data" / "x-ui.db",
        xray_bin_path=tmp_path / "bin" / "xray",
        xray_config_path=tmp_path / "data" / "xray.json",
        work_dir=tmp_path,
        api_port=10085,
        poll_interval=0.01,
        restart_delay=0.05,
    )


@pytest.fixture
def monitor() -> Monitor:
    return Monitor()


@pytest.fixture
def killer(monitor: Monitor) -> RecordingKiller:
    return RecordingKiller(monitor)


@pytest.fixture
def fake_popen(monkeypatch) -> list[FakePopen]:
    FakePopen.instances = []
    monkeypatch.setattr(supervisor_module.subprocess, "Popen", FakePopen)
    return FakePopen.instances


@pytest.fixture
def supervisor(settings: Settings, monitor: Monitor, killer: RecordingKiller) -> Supervisor:
    sup = Supervisor(settings, monitor, killer=killer, machine="x86_64")
    yield sup
    sup._close_logs()


@pytest.fixture
async def store(settings: Settings) -> InboundStore:
    """A migrated store on a fresh database file."""
    inbound_store = InboundStore(settings.database_path, retry_delay=0)
    await inbound_store.connect()
    await inbound_store.run_migrations()
    yield inbound_store
    await inbound_store.disconnect()


def new_inbound(inbound_id: str, **overrides) -> Inbound:
    values = {
        "id": inbound_id,
        "remark": f"node {inbound_id}",
        "protocol": "vless",
        "port": 40000 + sum(ord(c) for c in inbound_id) % 10000,
        "settings": {"clients": [], "decryption": "none"},
        "stream_settings": {"network": "tcp", "security": "none"},
        "sniffing": {"enabled": True, "destOverride": ["http", "tls"]},
    }
    values.update(overrides)
    return Inbound(**values)
