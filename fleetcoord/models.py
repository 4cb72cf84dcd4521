"""
Fleet Coordinator — Data Models
Pydantic v2 models for worker records, upstreams, snapshots and the
message shapes exchanged with workers.
"""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from fleetcoord.config import DEFAULT_GROUP
from fleetcoord.errors import MalformedMessageError


# ── Enums ────────────────────────────────────────────────

class WorkerStatus(str, Enum):
    online = "online"
    idle = "idle"
    offline = "offline"


class HealthClass(str, Enum):
    healthy = "healthy"
    warning = "warning"
    critical = "critical"


class FailoverPhase(str, Enum):
    connected = "connected"
    degraded = "degraded"
    rotating_cooldown = "rotating_cooldown"


# ── Worker Records ───────────────────────────────────────

class HostInfo(BaseModel):
    """Opaque host metadata; only the identity fields are typed.

    os/cpu/memory/gpu arrive as strings or nested objects depending on the
    client, so they pass through untouched, as do unknown keys.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    hostname: Optional[str] = None
    hardware_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("hardware_id", "hardwareId", "mac"))
    os: Optional[Any] = None
    cpu: Optional[Any] = None
    memory: Optional[Any] = None
    gpu: Optional[Any] = None


class WorkerMetrics(BaseModel):
    throughput: float = 0.0
    accepted: int = 0
    rejected: int = 0
    temperature: Optional[float] = None
    power: Optional[float] = None


class HealthResult(BaseModel):
    score: int = 100
    classification: HealthClass = HealthClass.healthy
    issues: list[str] = Field(default_factory=list)
    last_evaluated_at: float = 0.0


class WorkerRecord(BaseModel):
    id: str
    display_name: str
    host_info: HostInfo = Field(default_factory=HostInfo)
    source_address: str = ""
    status: WorkerStatus = WorkerStatus.online
    health: HealthResult = Field(default_factory=HealthResult)
    metrics: WorkerMetrics = Field(default_factory=WorkerMetrics)
    first_seen_at: float
    last_seen_at: float
    group: str = DEFAULT_GROUP
    tags: list[str] = Field(default_factory=list)
    config: dict = Field(default_factory=dict)
    connected: bool = False
    # Worker-local cumulative baseline: last statusUpdate plus units counted since
    reported_accepted: int = 0
    reported_rejected: int = 0


class GroupRecord(BaseModel):
    name: str
    description: str = ""
    created_at: float = 0.0
    members: list[str] = Field(default_factory=list)


# ── Upstreams / Failover ─────────────────────────────────

class UpstreamEndpoint(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    address: str
    priority: int = 0
    credential_ref: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("credential_ref", "credentialRef"))


class FailoverState(BaseModel):
    phase: FailoverPhase = FailoverPhase.connected
    active_upstream_index: int = 0
    consecutive_failures: int = 0
    last_rotation_at: Optional[float] = None
    last_success_at: Optional[float] = None
    rotations_since_success: int = 0
    exhausted: bool = False


# ── Fleet Snapshot ───────────────────────────────────────

class FleetSnapshot(BaseModel):
    total_workers: int = 0
    connected: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_health: dict[str, int] = Field(default_factory=dict)
    total_throughput: float = 0.0
    total_accepted: int = 0
    total_rejected: int = 0
    total_power: float = 0.0
    average_temperature: float = 0.0
    groups: dict[str, int] = Field(default_factory=dict)
    generated_at: float = 0.0


# ── Inbound Messages (worker → coordinator) ──────────────

class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class MetricsReport(_Inbound):
    """Partial metrics; absent fields leave the stored value untouched."""
    throughput: Optional[float] = Field(
        default=None, ge=0, validation_alias=AliasChoices("throughput", "hashrate"))
    accepted: Optional[int] = Field(default=None, ge=0)
    rejected: Optional[int] = Field(default=None, ge=0)
    temperature: Optional[float] = None
    power: Optional[float] = Field(default=None, ge=0)


class RegisterMessage(_Inbound):
    type: Literal["register"]
    host_info: HostInfo = Field(alias="hostInfo")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    group: Optional[str] = None
    tags: Optional[list[str]] = None


class StatusUpdateMessage(_Inbound):
    type: Literal["statusUpdate"]
    metrics: MetricsReport


class UnitFoundMessage(_Inbound):
    type: Literal["unitFound"]
    accepted: bool


class HeartbeatMessage(_Inbound):
    type: Literal["heartbeat"]


InboundMessage = Annotated[
    Union[RegisterMessage, StatusUpdateMessage, UnitFoundMessage, HeartbeatMessage],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundMessage)


def parse_inbound(raw):
    """Validate a raw frame (str, bytes or dict) into a typed inbound message.

    Raises MalformedMessageError for bad JSON, non-object payloads, unknown
    types and missing required fields. Unknown extra fields are ignored.
    """
    payload = raw
    if isinstance(raw, (bytes, bytearray)):
        try:
            payload = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessageError(f"not utf-8: {e}", raw) from e
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise MalformedMessageError(f"invalid JSON: {e.msg}", raw) from e
    if not isinstance(payload, dict):
        raise MalformedMessageError("payload is not an object", raw)
    try:
        return _inbound_adapter.validate_python(payload)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first.get("loc", ())) or "message"
        raise MalformedMessageError(f"{where}: {first.get('msg', 'invalid')}", raw) from e


# ── Outbound Commands (coordinator → worker) ─────────────

class StartCommand(BaseModel):
    type: Literal["start"] = "start"
    params: dict = Field(default_factory=dict)


class StopCommand(BaseModel):
    type: Literal["stop"] = "stop"


class ConfigureCommand(BaseModel):
    type: Literal["configure"] = "configure"
    settings: dict = Field(default_factory=dict)


class RestartCommand(BaseModel):
    type: Literal["restart"] = "restart"


class RequestStatusCommand(BaseModel):
    type: Literal["requestStatus"] = "requestStatus"


Command = Union[StartCommand, StopCommand, ConfigureCommand, RestartCommand, RequestStatusCommand]

_COMMANDS = {
    "start": StartCommand,
    "stop": StopCommand,
    "configure": ConfigureCommand,
    "restart": RestartCommand,
    "requestStatus": RequestStatusCommand,
}


def build_command(command_type: str, **fields) -> Command:
    """Build an outbound command by wire type name."""
    cls = _COMMANDS.get(command_type)
    if cls is None:
        raise ValueError(f"Unknown command type: {command_type}")
    return cls(**fields)
