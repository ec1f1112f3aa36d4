"""Shared run state and host metrics.

One :class:`Monitor` is owned by the application and handed to the
supervisor (which writes the run state) and to status readers. The lock
only ever guards in-memory field access; psutil sampling and anything else
that may block happens before the lock is taken.
"""

import logging
import os
import threading
import time
from typing import Optional

import psutil

from xui_engine.models import HostMetrics, SysStats, XrayStatus

logger = logging.getLogger(__name__)


def _connection_counts() -> tuple[int, int]:
    try:
        tcp = sum(1 for c in psutil.net_connections(kind="tcp") if c.status == psutil.CONN_ESTABLISHED)
        udp = len(psutil.net_connections(kind="udp"))
    except (psutil.AccessDenied, OSError) as e:
        logger.debug("Cannot list connections: %s", e)
        return 0, 0
    return tcp, udp


def process_running(name: str) -> bool:
    """Whether any process on the host is called ``name``.

    Only used to seed the run state of a short-lived CLI invocation, which
    has no supervisor history of its own.
    """
    for proc in psutil.process_iter(["name"]):
        if proc.info.get("name") == name:
            return True
    return False


def _load_average() -> list[float]:
    try:
        return [round(x, 2) for x in os.getloadavg()]
    except (AttributeError, OSError):
        return [0.0, 0.0, 0.0]


class Monitor:
    def __init__(self, running: bool = False) -> None:
        self._lock = threading.Lock()
        self._running: bool = running
        self._metrics: HostMetrics = HostMetrics()
        self._last_net: Optional[tuple[float, int, int]] = None
        # the first non-blocking reading is always 0.0; later ones measure from here
        psutil.cpu_percent(interval=None)

    def set_running(self, running: bool) -> None:
        with self._lock:
            self._running = running

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def metrics(self) -> HostMetrics:
        with self._lock:
            return self._metrics

    def sample_host(self, cpu_interval: Optional[float] = None) -> HostMetrics:
        """Take a fresh psutil sample without touching shared state.

        Args:
            cpu_interval: Seconds to block measuring CPU usage. None measures
                since the previous call, which suits periodic sampling.
        """
        cpu = psutil.cpu_percent(interval=cpu_interval)
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        disk = psutil.disk_usage("/")
        net = psutil.net_io_counters()
        tcp_count, udp_count = _connection_counts()

        now = time.monotonic()
        net_up = net_down = 0
        with self._lock:
            last = self._last_net
            self._last_net = (now, net.bytes_sent, net.bytes_recv)
        if last is not None and now > last[0]:
            elapsed = now - last[0]
            net_up = int((net.bytes_sent - last[1]) / elapsed)
            net_down = int((net.bytes_recv - last[2]) / elapsed)

        return HostMetrics(
            cpu=cpu,
            mem_current=mem.used,
            mem_total=mem.total,
            swap_current=swap.used,
            swap_total=swap.total,
            disk_current=disk.used,
            disk_total=disk.total,
            uptime=int(time.time() - psutil.boot_time()),
            load=_load_average(),
            tcp_count=tcp_count,
            udp_count=udp_count,
            net_sent=net.bytes_sent,
            net_recv=net.bytes_recv,
            net_up=max(net_up, 0),
            net_down=max(net_down, 0),
        )

    def refresh_host_metrics(self, cpu_interval: Optional[float] = None) -> HostMetrics:
        metrics = self.sample_host(cpu_interval)
        with self._lock:
            self._metrics = metrics
        return metrics

    def snapshot(self, version: Optional[str] = None) -> SysStats:
        """Current run state plus the last host sample.

        ``version`` is looked up by the caller (it runs the xray binary), so
        it is passed in rather than fetched under the lock.
        """
        with self._lock:
            running = self._running
            metrics = self._metrics
        return SysStats(
            host=metrics,
            xray=XrayStatus(state="running" if running else "stopped", version=version or "Unknown"),
        )
