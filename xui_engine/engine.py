"""Reconciliation loop.

``apply_config`` turns the stored inbounds into a config file and asks for a
background restart. ``run_forever`` polls the stats API on a fixed interval,
hands each snapshot to the quota accountant and lets it re-apply when an
inbound gets disabled.
"""

import asyncio
import logging
from typing import Optional

from xui_engine.accountant import AccountingReport, QuotaAccountant
from xui_engine.config_builder import build_config, write_config
from xui_engine.models import XrayConfig
from xui_engine.settings import Settings
from xui_engine.stats import StatsCollector
from xui_engine.store import InboundStore
from xui_engine.supervisor import Supervisor
from xui_engine.util import EngineError

logger = logging.getLogger(__name__)


class RestartCoordinator:
    """Runs background restarts one at a time.

    Requests made while a restart is in flight collapse into a single
    follow-up restart, which picks up whatever config was written last.
    """

    def __init__(self, supervisor: Supervisor) -> None:
        self.supervisor = supervisor
        self._pending: bool = False
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def request(self) -> asyncio.Task:
        self._pending = True
        if not self.busy:
            self._task = asyncio.create_task(self._drain())
        return self._task

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _drain(self) -> None:
        while self._pending:
            self._pending = False
            try:
                await self.supervisor.restart()
            except EngineError as e:
                logger.error("Background Xray restart failed: %s", e)
            except Exception:
                logger.exception("Background Xray restart failed unexpectedly")
            else:
                logger.info("Background Xray restart successful")


class Engine:
    def __init__(self, settings: Settings, store: InboundStore, supervisor: Supervisor,
                 collector: Optional[StatsCollector] = None) -> None:
        self.settings = settings
        self.store = store
        self.supervisor = supervisor
        self.collector = collector or StatsCollector(settings)
        self.restarts = RestartCoordinator(supervisor)
        self.accountant = QuotaAccountant(store, self.apply_config)
        self._traffic_task: Optional[asyncio.Task] = None

    async def apply_config(self) -> XrayConfig:
        """Regenerate the config from the enabled inbounds and restart the core.

        The restart runs in the background; this returns once the file is
        written.

        Raises:
            ConfigBuildError: If the config could not be written. The running
                core keeps its previous config.
        """
        inbounds = await self.store.list_enabled()
        config = build_config(inbounds, api_port=self.settings.api_port,
                              log_dir=self.settings.log_dir)
        await asyncio.to_thread(write_config, config, self.settings.xray_config_path,
                                self.settings.log_dir)
        self.restarts.request()
        return config

    async def poll_once(self) -> AccountingReport:
        snapshot = await self.collector.query()
        if not snapshot:
            logger.debug("No stats retrieved from Xray API")
        return await self.accountant.account(snapshot)

    async def run_forever(self) -> None:
        """Poll, account and reconcile until the process exits."""
        logger.info("Traffic stats task started (polling Xray every %ss)",
                    self.settings.poll_interval)
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logger.warning("Failed to update traffic stats: %r", e)
            await asyncio.sleep(self.settings.poll_interval)

    def start_traffic_task(self) -> asyncio.Task:
        if self._traffic_task is None or self._traffic_task.done():
            self._traffic_task = asyncio.create_task(self.run_forever())
        return self._traffic_task
