"""Builds the Xray configuration document from the enabled inbounds.

:func:`build_config` is a pure transform; :func:`write_config` is the separate
persistence step. The document is always regenerated in full.
"""

import logging
import os
from collections import Counter
from pathlib import Path
from typing import Iterable

from xui_engine.models import (
    ApiConfig,
    Inbound,
    InboundConfig,
    LevelPolicy,
    LogConfig,
    OutboundConfig,
    PolicyConfig,
    RoutingConfig,
    RoutingRule,
    StatsConfig,
    SystemPolicy,
    XrayConfig,
)
from xui_engine.util import ConfigBuildError, parse_json_field

logger = logging.getLogger(__name__)

API_TAG = "api"
API_LISTEN = "127.0.0.1"
DEFAULT_API_PORT = 10085
API_SERVICES = ["HandlerService", "LoggerService", "StatsService"]


def api_inbound(api_port: int = DEFAULT_API_PORT) -> InboundConfig:
    """The loopback listener the stats query reaches the core through."""
    return InboundConfig(
        tag=API_TAG,
        port=api_port,
        protocol="dokodemo-door",
        listen=API_LISTEN,
        settings={"address": API_LISTEN},
    )


def inbound_config(inbound: Inbound) -> InboundConfig:
    return InboundConfig(
        tag=inbound.effective_tag,
        port=inbound.port,
        protocol=inbound.protocol,
        listen=inbound.listen,
        allocate=parse_json_field(inbound.allocate),
        settings=parse_json_field(inbound.settings),
        stream_settings=parse_json_field(inbound.stream_settings),
        sniffing=parse_json_field(inbound.sniffing),
    )


def default_policy() -> PolicyConfig:
    return PolicyConfig(
        levels={
            "0": LevelPolicy(
                handshake=4,
                conn_idle=300,
                uplink_only=2,
                downlink_only=5,
                stats_user_uplink=True,
                stats_user_downlink=True,
                buffer_size=512,
            )
        },
        system=SystemPolicy(
            stats_inbound_uplink=True,
            stats_inbound_downlink=True,
            stats_outbound_uplink=True,
            stats_outbound_downlink=True,
        ),
    )


def default_routing() -> RoutingConfig:
    # The api rule must stay first, or stats queries loop back into the data plane
    return RoutingConfig(
        domain_strategy="IPIfNonMatch",
        rules=[RoutingRule(inbound_tag=[API_TAG], outbound_tag=API_TAG)],
    )


def build_config(inbounds: Iterable[Inbound], *, api_port: int = DEFAULT_API_PORT,
                 log_dir: str | os.PathLike = "logs") -> XrayConfig:
    """Build the configuration for a set of enabled inbounds.

    Args:
        inbounds: The inbounds to expose, in the order they should be listed.
        api_port: Loopback port of the synthetic ``api`` listener.
        log_dir: Directory the access and error logs are written to.

    Returns:
        An XrayConfig with the ``api`` listener first, followed by one
        listener per inbound.
    """
    log_dir = Path(log_dir).absolute()
    listeners = [inbound_config(inbound) for inbound in inbounds]

    duplicated = [tag for tag, seen in Counter(listener.tag for listener in listeners).items() if seen > 1]
    for tag in duplicated:
        logger.warning("Tag %s is used by more than one inbound", tag)

    return XrayConfig(
        log=LogConfig(
            loglevel="error",
            access=str(log_dir / "access.log"),
            error=str(log_dir / "error.log"),
        ),
        api=ApiConfig(tag=API_TAG, services=list(API_SERVICES)),
        inbounds=[api_inbound(api_port), *listeners],
        outbounds=[
            OutboundConfig(tag="direct", protocol="freedom"),
            OutboundConfig(tag="blocked", protocol="blackhole"),
        ],
        stats=StatsConfig(),
        policy=default_policy(),
        routing=default_routing(),
    )


def write_config(config: XrayConfig, path: str | os.PathLike,
                 log_dir: str | os.PathLike | None = None) -> Path:
    """Serialize ``config`` and overwrite the file at ``path``.

    Creates the parent directory of ``path`` and, when given, ``log_dir``.

    Raises:
        ConfigBuildError: If serialization or any filesystem step fails.
    """
    path = Path(path)
    try:
        content = config.to_json()
    except (TypeError, ValueError) as e:
        raise ConfigBuildError(f"Failed to serialize config: {e}") from e

    try:
        if log_dir is not None:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        raise ConfigBuildError(f"Failed to write config file {path}: {e}") from e

    logger.info("Xray config generated at: %s", path)
    return path
