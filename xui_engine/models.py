import json
from typing import Annotated, Any, Dict, List, Literal, Optional, TypeAlias

from pydantic import Field, field_validator

from xui_engine import base_model
from xui_engine.util import JsonType, default_tag

timestamp: TypeAlias = int
ip_address: TypeAlias = str
json_string: TypeAlias = str


class Inbound(base_model.BaseModel):
    """Represents a stored inbound, one proxy listener exposed to clients.

    Rows come straight from the ``inbounds`` table, so the structured blobs
    are kept as JSON text here and only parsed when the Xray config is built.

    Attributes:
        id: Stable unique identifier.
        remark: Human-readable name for the inbound.
        protocol: The Xray protocol (vless, vmess, trojan, shadowsocks, ...).
        port: The port number the inbound listens on.
        enable: Whether the inbound takes part in the generated config.
        tag: Routing tag, or None to fall back to ``inbound-<id>``.
        listen: The address the inbound listens on, None for Xray's default.
        allocate: Port allocation policy (JSON text).
        settings: Protocol settings (JSON text).
        stream_settings: Transport settings (JSON text).
        sniffing: Sniffing settings (JSON text).
        up: Total uploaded bytes.
        down: Total downloaded bytes.
        total: Traffic quota in bytes, 0 or negative for unlimited.
        expiry: Expiry time as UNIX timestamp (not enforced by the engine).
    """
    id: str
    remark: str = ""
    protocol: str
    port: int
    enable: bool = True
    tag: Optional[str] = None
    listen: Optional[ip_address] = None
    allocate: Optional[json_string] = None
    settings: Optional[json_string] = None
    stream_settings: Annotated[Optional[json_string], Field(alias="streamSettings")] = None
    sniffing: Optional[json_string] = None
    up: int = 0  # bytes
    down: int = 0  # bytes
    total: int = 0  # bytes
    expiry: timestamp = 0  # UNIX timestamp
    created_at: Annotated[Optional[str], Field(alias="createdAt")] = None
    updated_at: Annotated[Optional[str], Field(alias="updatedAt")] = None

    # noinspection PyNestedDecorators
    @field_validator("allocate", "settings", "stream_settings", "sniffing", mode="before")
    @classmethod
    def stringify_json_fields(cls, value: Any) -> Any:
        """Store dict/list blobs as JSON text, the way the table keeps them."""
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return value

    @property
    def effective_tag(self) -> str:
        """The tag used both in the generated config and for stats lookups."""
        if self.tag:
            return self.tag
        return default_tag(self.id)

    @property
    def has_quota(self) -> bool:
        return self.total > 0


# Xray configuration document

class LogConfig(base_model.BaseModel):
    loglevel: str = "error"
    access: Optional[str] = None
    error: Optional[str] = None


class ApiConfig(base_model.BaseModel):
    tag: str
    services: List[str]


class InboundConfig(base_model.BaseModel):
    tag: str
    port: int
    protocol: str
    listen: Optional[str] = None
    allocate: Optional[JsonType] = None
    settings: Optional[JsonType] = None
    stream_settings: Annotated[Optional[JsonType], Field(alias="streamSettings")] = None
    sniffing: Optional[JsonType] = None


class OutboundConfig(base_model.BaseModel):
    tag: str
    protocol: str
    settings: Optional[JsonType] = None
    stream_settings: Annotated[Optional[JsonType], Field(alias="streamSettings")] = None


class StatsConfig(base_model.BaseModel):
    pass


class LevelPolicy(base_model.BaseModel):
    handshake: int
    conn_idle: Annotated[int, Field(alias="connIdle")]
    uplink_only: Annotated[int, Field(alias="uplinkOnly")]
    downlink_only: Annotated[int, Field(alias="downlinkOnly")]
    stats_user_uplink: Annotated[bool, Field(alias="statsUserUplink")]
    stats_user_downlink: Annotated[bool, Field(alias="statsUserDownlink")]
    buffer_size: Annotated[int, Field(alias="bufferSize")]


class SystemPolicy(base_model.BaseModel):
    stats_inbound_uplink: Annotated[bool, Field(alias="statsInboundUplink")]
    stats_inbound_downlink: Annotated[bool, Field(alias="statsInboundDownlink")]
    stats_outbound_uplink: Annotated[bool, Field(alias="statsOutboundUplink")]
    stats_outbound_downlink: Annotated[bool, Field(alias="statsOutboundDownlink")]


class PolicyConfig(base_model.BaseModel):
    levels: Dict[str, LevelPolicy]
    system: Optional[SystemPolicy] = None


class RoutingRule(base_model.BaseModel):
    type: str = "field"
    inbound_tag: Annotated[Optional[List[str]], Field(alias="inboundTag")] = None
    outbound_tag: Annotated[Optional[str], Field(alias="outboundTag")] = None
    port: Optional[str] = None
    ip: Optional[List[str]] = None
    domain: Optional[List[str]] = None
    protocol: Optional[List[str]] = None


class RoutingConfig(base_model.BaseModel):
    domain_strategy: Annotated[str, Field(alias="domainStrategy")]
    rules: List[RoutingRule]


class XrayConfig(base_model.BaseModel):
    """The full document handed to ``xray -c``.

    Field order is the serialization order, so identical input always yields
    an identical file.
    """
    log: LogConfig = Field(default_factory=LogConfig)
    api: Optional[ApiConfig] = None
    inbounds: List[InboundConfig] = Field(default_factory=list)
    outbounds: List[OutboundConfig] = Field(default_factory=list)
    stats: Optional[StatsConfig] = None
    policy: Optional[PolicyConfig] = None
    routing: Optional[RoutingConfig] = None

    def to_json(self) -> str:
        return json.dumps(self.dump(), indent=2, ensure_ascii=False)


# Status snapshots

class HostMetrics(base_model.BaseModel):
    """Host resource usage, sampled with psutil.

    Memory, swap, disk and network figures are in bytes.
    """
    cpu: float = 0.0
    mem_current: int = 0
    mem_total: int = 0
    swap_current: int = 0
    swap_total: int = 0
    disk_current: int = 0
    disk_total: int = 0
    uptime: int = 0  # seconds
    load: List[float] = Field(default_factory=lambda: [0.0, 0.0, 0.0])
    tcp_count: int = 0
    udp_count: int = 0
    net_sent: int = 0
    net_recv: int = 0
    net_up: int = 0  # bytes/s since the previous sample
    net_down: int = 0


class XrayStatus(base_model.BaseModel):
    state: Literal["running", "stopped"]
    version: str = "Unknown"


class SysStats(base_model.BaseModel):
    host: HostMetrics
    xray: XrayStatus


class RealityKeys(base_model.BaseModel):
    private_key: Annotated[str, Field(alias="privateKey")]
    public_key: Annotated[str, Field(alias="publicKey")]
