"""Lifecycle of the xray process.

The supervisor starts the core with the generated config, stops it, restarts
it and swaps in new releases. The observed run state lives in the shared
:class:`~xui_engine.monitor.Monitor`; it is set optimistically, before the
spawn (on start) and before the kill (on stop) are attempted.
"""

import abc
import asyncio
import contextlib
import io
import logging
import os
import platform
import shutil
import subprocess
import zipfile
import zlib
from pathlib import Path
from typing import IO, Callable, List, Optional, Tuple

from xui_engine import util
from xui_engine.api import ReleaseClient, build_download_url
from xui_engine.models import RealityKeys
from xui_engine.monitor import Monitor
from xui_engine.settings import Settings
from xui_engine.util import SupervisorError, UpdateError

logger = logging.getLogger(__name__)

BINARY_ENTRY = "xray"
ACCESS_LOG_TAIL = 50
LOG_TAIL = 200
JOURNAL_COMMAND = ("journalctl", "-u", "x-ui", "-n", "100", "--no-pager")


class ProcessKiller(abc.ABC):
    """Terminates running instances of the core."""

    @abc.abstractmethod
    def terminate(self, name: str) -> None:
        ...


class PatternKiller(ProcessKiller):
    """Kills every process whose command line matches ``name``.

    Not PID-tracked: any same-named process on the host is hit.
    """
    COMMANDS: Tuple[Tuple[str, ...], ...] = (("pkill", "-f"), ("killall",))

    def terminate(self, name: str) -> None:
        for command in self.COMMANDS:
            try:
                subprocess.run([*command, name], capture_output=True, check=False)
            except OSError as e:
                logger.debug("%s is not available: %s", command[0], e)


async def _run(*args: str) -> Tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
    stdout, stderr = await proc.communicate()
    return (proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"))


def parse_version(output: str) -> Optional[str]:
    """Pull the version out of ``xray -version`` output.

    Examples:
        >>> parse_version("Xray 1.8.4 (Xray, Penetrates Everything.) Custom (go1.21.0 linux/amd64)")
        'v1.8.4'
    """
    lines = output.splitlines()
    if not lines:
        return None
    parts = lines[0].split()
    if len(parts) < 2:
        return None
    version = parts[1]
    return version if version.startswith("v") else f"v{version}"


def parse_keypair(output: str) -> Optional[RealityKeys]:
    """Parse ``xray x25519`` output.

    Newer cores print ``PrivateKey:``/``Password:``, older ones
    ``Private key:``/``Public key:``.
    """
    private_key = public_key = ""
    for line in output.splitlines():
        label, sep, value = line.partition(":")
        if not sep:
            continue
        label = label.strip().replace(" ", "").lower()
        if label == "privatekey":
            private_key = value.strip()
        elif label in ("password", "publickey"):
            public_key = value.strip()
    if not private_key or not public_key:
        return None
    return RealityKeys(private_key=private_key, public_key=public_key)


class Supervisor:
    def __init__(self, settings: Settings, monitor: Monitor, *,
                 killer: Optional[ProcessKiller] = None,
                 release_factory: Optional[Callable[[], ReleaseClient]] = None,
                 machine: Optional[str] = None) -> None:
        self.settings = settings
        self.monitor = monitor
        self.killer: ProcessKiller = killer or PatternKiller()
        self.release_factory = release_factory or (lambda: ReleaseClient(settings.release_index_url))
        self.machine: str = machine or platform.machine()
        self.process: Optional[subprocess.Popen] = None
        self._log_handles: List[IO[bytes]] = []

    def _close_logs(self) -> None:
        for handle in self._log_handles:
            handle.close()
        self._log_handles = []

    def _open_logs(self) -> Tuple[IO[bytes], IO[bytes]]:
        self._close_logs()
        self.settings.log_dir.mkdir(parents=True, exist_ok=True)
        stdout = open(self.settings.access_log_path, "wb")
        try:
            stderr = open(self.settings.error_log_path, "wb")
        except OSError:
            stdout.close()
            raise
        self._log_handles = [stdout, stderr]
        return stdout, stderr

    def command(self) -> List[str]:
        return [str(self.settings.xray_bin_path), "-c", str(self.settings.xray_config_path)]

    async def start(self) -> None:
        """Spawn the core with the configured binary and config file.

        Raises:
            SupervisorError: If the log files cannot be opened or the spawn fails.
        """
        logger.info("Starting Xray...")
        self.monitor.set_running(True)

        try:
            stdout, stderr = self._open_logs()
        except OSError as e:
            raise SupervisorError(f"Failed to create log files: {e}") from e

        args = self.command()
        try:
            self.process = subprocess.Popen(args, stdin=subprocess.DEVNULL, stdout=stdout,
                                            stderr=stderr, start_new_session=True)
        except OSError as e:
            logger.error("Failed to start xray process: %s", e)
            raise SupervisorError(f"Failed to start xray: {e}") from e
        logger.info("Xray process started: %s", " ".join(args))

    async def stop(self) -> None:
        logger.info("Stopping Xray...")
        self.monitor.set_running(False)
        await asyncio.to_thread(self.killer.terminate, self.settings.binary_name)
        if self.process is not None:
            self.process.poll()
            self.process = None
        self._close_logs()

    async def restart(self) -> None:
        await self.stop()
        # give the OS a moment to release the listening ports
        await asyncio.sleep(self.settings.restart_delay)
        await self.start()

    async def update(self, version: str) -> None:
        """Download ``version`` of the core, install it and restart.

        The current binary is untouched unless the new one was fully written.

        Raises:
            UpdateError: On an unsupported architecture, download failure or
                a bad archive.
        """
        logger.info("Start updating Xray to version: %s", version)
        url = build_download_url(version, self.machine, self.settings.release_download_url)
        async with self.release_factory() as client:
            content = await client.download(url)
        await asyncio.to_thread(self._install, content)
        logger.info("Xray binary updated successfully to %s", version)
        await self.restart()

    def _install(self, content: bytes) -> None:
        bin_path = self.settings.xray_bin_path
        tmp_path = bin_path.with_name(bin_path.name + ".tmp")
        try:
            with zipfile.ZipFile(io.BytesIO(content)) as archive:
                try:
                    entry = archive.getinfo(BINARY_ENTRY)
                except KeyError:
                    raise UpdateError("xray binary not found in archive") from None
                bin_path.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(entry) as src, open(tmp_path, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            os.chmod(tmp_path, 0o755)
            os.replace(tmp_path, bin_path)
        except (zipfile.BadZipFile, zlib.error) as e:
            raise UpdateError(f"Failed to open archive: {e}") from e
        except OSError as e:
            raise UpdateError(f"Failed to install binary: {e}") from e
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_path.unlink()

    async def list_releases(self) -> List[str]:
        async with self.release_factory() as client:
            return await client.list_releases()

    async def version(self) -> Optional[str]:
        """The installed core version, or None if it cannot be determined."""
        try:
            code, stdout, _ = await _run(str(self.settings.xray_bin_path), "-version")
        except OSError:
            return None
        if code != 0:
            return None
        return parse_version(stdout)

    async def generate_keypair(self) -> RealityKeys:
        try:
            code, stdout, stderr = await _run(str(self.settings.xray_bin_path), "x25519")
        except OSError as e:
            raise SupervisorError(f"Failed to execute xray x25519: {e}") from e
        if code != 0:
            raise SupervisorError(f"xray x25519 failed: {stderr.strip()}")
        keys = parse_keypair(stdout)
        if keys is None:
            raise SupervisorError(f"Failed to parse xray x25519 output: {stdout!r}")
        return keys

    async def read_logs(self) -> List[str]:
        """Recent core output, newest last.

        The whole error log plus the tail of the access log; when neither has
        anything, the panel's journal entries.
        """
        logs = []
        error_log: Path = self.settings.error_log_path
        access_log: Path = self.settings.access_log_path
        if error_log.exists():
            content = error_log.read_text(encoding="utf-8", errors="replace")
            logs.extend(f"[ErrorLog] {line}" for line in content.splitlines())
        if access_log.exists():
            content = access_log.read_text(encoding="utf-8", errors="replace")
            logs.extend(f"[AccessLog] {line}"
                        for line in util.tail(content.splitlines(), ACCESS_LOG_TAIL))
        if logs:
            return util.tail(logs, LOG_TAIL)

        try:
            code, stdout, _ = await _run(*JOURNAL_COMMAND)
        except OSError:
            return []
        journal = stdout.splitlines()
        if code != 0 or (len(journal) == 1 and "-- No entries --" in journal[0]):
            return []
        return journal
