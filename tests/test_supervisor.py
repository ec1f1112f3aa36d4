"""Unit tests for the xray process supervisor."""
import io
import os
import time
import zipfile

import httpx
import pytest

from conftest import FakePopen, RecordingKiller, make_binary, unix_only
from xui_engine.api import ReleaseClient, build_download_url, normalize_tag, resolve_arch
from xui_engine.supervisor import Supervisor, parse_keypair, parse_version
from xui_engine.util import SupervisorError, UpdateError

DOWNLOAD_URL = "https://github.com/XTLS/Xray-core/releases/download/v1.8.4/Xray-linux-64.zip"


def make_archive(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def release_factory(handler):
    def factory() -> ReleaseClient:
        client = ReleaseClient(transport=httpx.MockTransport(handler))
        client.retry_delay = 0
        return client
    return factory


class TestStartStop:
    """Run state and process handling."""

    @pytest.mark.asyncio
    async def test_start_spawns_with_config(self, supervisor: Supervisor, settings, monitor,
                                            fake_popen: list[FakePopen]):
        await supervisor.start()
        assert monitor.is_running() is True
        assert len(fake_popen) == 1
        assert fake_popen[0].args == [str(settings.xray_bin_path), "-c", str(settings.xray_config_path)]
        assert settings.access_log_path.exists()
        assert settings.error_log_path.exists()
        assert str(fake_popen[0].kwargs["stdout"].name) == str(settings.access_log_path)

    @pytest.mark.asyncio
    async def test_start_truncates_logs(self, supervisor: Supervisor, settings, fake_popen):
        settings.log_dir.mkdir(parents=True)
        settings.error_log_path.write_text("old run\n")
        await supervisor.start()
        assert settings.error_log_path.read_text() == ""

    @pytest.mark.asyncio
    async def test_start_twice_spawns_twice(self, supervisor: Supervisor, fake_popen):
        await supervisor.start()
        await supervisor.start()
        assert len(fake_popen) == 2

    @pytest.mark.asyncio
    async def test_failed_spawn_still_marks_running(self, supervisor: Supervisor, monitor):
        """The run state is set before the spawn is attempted."""
        with pytest.raises(SupervisorError):
            await supervisor.start()
        assert monitor.is_running() is True

    @pytest.mark.asyncio
    async def test_stop_marks_stopped_before_killing(self, supervisor: Supervisor, monitor,
                                                    killer: RecordingKiller, fake_popen):
        await supervisor.start()
        await supervisor.stop()
        assert monitor.is_running() is False
        assert killer.calls == ["xray"]
        assert killer.events[0][2] is False

    @pytest.mark.asyncio
    async def test_restart_stops_then_starts_after_delay(self, supervisor: Supervisor, settings,
                                                         monitor, killer: RecordingKiller, fake_popen):
        await supervisor.restart()

        assert len(killer.events) == 1 and len(fake_popen) == 1
        _, stopped_at, running_at_stop = killer.events[0]
        assert running_at_stop is False
        assert fake_popen[0].started_at - stopped_at >= settings.restart_delay * 0.9
        assert monitor.is_running() is True


class TestUpdate:
    """Installing a new core from a release archive."""

    @pytest.mark.asyncio
    async def test_update_replaces_binary_and_restarts(self, settings, monitor, killer, fake_popen):
        requested = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, content=make_archive({"xray": b"new core", "geoip.dat": b""}))

        settings.xray_bin_path.parent.mkdir(parents=True)
        settings.xray_bin_path.write_bytes(b"old core")
        sup = Supervisor(settings, monitor, killer=killer, machine="x86_64",
                         release_factory=release_factory(handler))
        await sup.update("1.8.4")
        sup._close_logs()

        assert requested == [DOWNLOAD_URL]
        assert settings.xray_bin_path.read_bytes() == b"new core"
        assert os.access(settings.xray_bin_path, os.X_OK)
        assert not settings.xray_bin_path.with_name("xray.tmp").exists()
        assert killer.calls == ["xray"]
        assert len(fake_popen) == 1

    @pytest.mark.asyncio
    async def test_missing_entry_keeps_old_binary(self, settings, monitor, killer, fake_popen):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=make_archive({"README.md": b"hello"}))

        settings.xray_bin_path.parent.mkdir(parents=True)
        settings.xray_bin_path.write_bytes(b"old core")
        sup = Supervisor(settings, monitor, killer=killer, machine="x86_64",
                         release_factory=release_factory(handler))
        with pytest.raises(UpdateError, match="not found"):
            await sup.update("v1.8.4")

        assert settings.xray_bin_path.read_bytes() == b"old core"
        assert not settings.xray_bin_path.with_name("xray.tmp").exists()
        assert killer.calls == []
        assert fake_popen == []

    @pytest.mark.asyncio
    async def test_bad_archive(self, settings, monitor, killer):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>not a zip</html>")

        sup = Supervisor(settings, monitor, killer=killer, machine="aarch64",
                         release_factory=release_factory(handler))
        with pytest.raises(UpdateError):
            await sup.update("v1.8.4")
        assert not settings.xray_bin_path.exists()

    @pytest.mark.asyncio
    async def test_download_failure(self, settings, monitor, killer):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        sup = Supervisor(settings, monitor, killer=killer, machine="x86_64",
                         release_factory=release_factory(handler))
        with pytest.raises(UpdateError, match="404"):
            await sup.update("v9.9.9")
        assert killer.calls == []

    @pytest.mark.asyncio
    async def test_unsupported_architecture(self, settings, monitor, killer):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("nothing should be downloaded")

        sup = Supervisor(settings, monitor, killer=killer, machine="riscv64",
                         release_factory=release_factory(handler))
        with pytest.raises(UpdateError, match="Unsupported architecture"):
            await sup.update("v1.8.4")


class TestReleaseClient:

    @pytest.mark.asyncio
    async def test_list_releases(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"tag_name": "v1.8.6"}, {"tag_name": "v1.8.4"}, "v1.8.3"])

        async with release_factory(handler)() as client:
            assert await client.list_releases() == ["v1.8.6", "v1.8.4", "v1.8.3"]

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        statuses = [502, 503, 200]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(statuses.pop(0), json=[])

        async with release_factory(handler)() as client:
            assert await client.list_releases() == []
        assert statuses == []

    @pytest.mark.asyncio
    async def test_gives_up_on_transport_errors(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("unreachable", request=request)

        async with release_factory(handler)() as client:
            with pytest.raises(UpdateError):
                await client.list_releases()
        assert len(calls) == 5

    @pytest.mark.asyncio
    async def test_rejects_non_list_index(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"message": "API rate limit exceeded"})

        async with release_factory(handler)() as client:
            with pytest.raises(UpdateError):
                await client.list_releases()

    def test_download_url(self):
        assert build_download_url("1.8.4", "x86_64") == DOWNLOAD_URL
        assert build_download_url("v1.8.4", "aarch64").endswith("/v1.8.4/Xray-linux-arm64-v8a.zip")
        assert normalize_tag(" v25.1.1 ") == "v25.1.1"
        with pytest.raises(UpdateError):
            resolve_arch("mips")


class TestBinaryQueries:

    def test_parse_version(self):
        assert parse_version("Xray 1.8.4 (Xray, Penetrates Everything.)\nA unified platform") == "v1.8.4"
        assert parse_version("Xray v25.1.1") == "v25.1.1"
        assert parse_version("") is None
        assert parse_version("Xray") is None

    def test_parse_keypair_formats(self):
        new = parse_keypair("PrivateKey: priv\nPassword: pub\nHash32: xyz\n")
        old = parse_keypair("Private key: priv\nPublic key: pub\n")
        assert new == old
        assert new.private_key == "priv" and new.public_key == "pub"
        assert parse_keypair("PrivateKey: priv\n") is None

    @unix_only
    @pytest.mark.asyncio
    async def test_version_and_keypair_from_binary(self, supervisor: Supervisor, settings):
        make_binary(settings.xray_bin_path)
        assert await supervisor.version() == "v1.8.4"
        keys = await supervisor.generate_keypair()
        assert keys.dump() == {"privateKey": "cHJpdmF0ZQ", "publicKey": "cHVibGlj"}

    @pytest.mark.asyncio
    async def test_missing_binary(self, supervisor: Supervisor):
        assert await supervisor.version() is None
        with pytest.raises(SupervisorError):
            await supervisor.generate_keypair()


class TestReadLogs:

    @pytest.mark.asyncio
    async def test_error_log_then_access_tail(self, supervisor: Supervisor, settings):
        settings.log_dir.mkdir(parents=True)
        settings.error_log_path.write_text("boom\n")
        settings.access_log_path.write_text("".join(f"line {i}\n" for i in range(80)))

        logs = await supervisor.read_logs()
        assert logs[0] == "[ErrorLog] boom"
        assert logs[1] == "[AccessLog] line 30"
        assert logs[-1] == "[AccessLog] line 79"
        assert len(logs) == 51

    @pytest.mark.asyncio
    async def test_caps_at_200_lines(self, supervisor: Supervisor, settings):
        settings.log_dir.mkdir(parents=True)
        settings.error_log_path.write_text("".join(f"err {i}\n" for i in range(300)))

        logs = await supervisor.read_logs()
        assert len(logs) == 200
        assert logs[-1] == "[ErrorLog] err 299"
