"""Adds metered traffic to the stored totals and enforces quotas."""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Mapping

from xui_engine.models import Inbound
from xui_engine.store import InboundStore
from xui_engine.util import EngineError, stat_name

logger = logging.getLogger(__name__)


@dataclass
class AccountingReport:
    updated: List[str] = field(default_factory=list)
    disabled: List[str] = field(default_factory=list)
    reapplied: bool = False


def traffic_deltas(inbound: Inbound, snapshot: Mapping[str, int]) -> tuple[int, int]:
    """Uplink and downlink bytes the snapshot holds for ``inbound``."""
    tag = inbound.effective_tag
    up = snapshot.get(stat_name("inbound", tag, "traffic", "uplink"), 0)
    down = snapshot.get(stat_name("inbound", tag, "traffic", "downlink"), 0)
    return up, down


class QuotaAccountant:
    """Accumulates one snapshot into the store.

    Args:
        store: Where the totals live.
        apply: Rebuilds the config and restarts the core. Called at most once
            per :meth:`account` pass, and only when an inbound was disabled.
    """

    def __init__(self, store: InboundStore, apply: Callable[[], Awaitable[object]]) -> None:
        self.store = store
        self.apply = apply

    async def account(self, snapshot: Dict[str, int]) -> AccountingReport:
        report = AccountingReport()
        for inbound in await self.store.list_enabled():
            delta_up, delta_down = traffic_deltas(inbound, snapshot)
            if delta_up == 0 and delta_down == 0:
                continue

            new_up = inbound.up + delta_up
            new_down = inbound.down + delta_down
            enable = True
            if inbound.has_quota and new_up + new_down >= inbound.total:
                enable = False
                report.disabled.append(inbound.id)
                logger.info("Inbound %s (%s) reached its traffic quota, disabling.",
                            inbound.remark or inbound.id, inbound.effective_tag)

            await self.store.accumulate_traffic(inbound.id, delta_up, delta_down, enable)
            report.updated.append(inbound.id)
            logger.debug("Inbound %s (%s): up=%d, down=%d, total=%d",
                         inbound.remark or inbound.id, inbound.effective_tag,
                         new_up, new_down, inbound.total)

        if report.disabled:
            try:
                await self.apply()
                report.reapplied = True
            except EngineError as e:
                logger.error("Failed to reapply config after quota reached: %s", e)
        return report
