"""
Shepherd Types - Shared data structures for agents and the controller.

These types cross the wire between the agent HTTP endpoint and the
controller, so every one of them knows how to render itself as JSON.
Wire keys are camelCase; Python attributes are snake_case.
"""

import sys
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Classification of a failed administrative action."""
    PERMISSION_DENIED = "PermissionDenied"   # Needs elevation
    NOT_FOUND = "NotFound"                   # Program/adapter/process absent
    TIMEOUT = "Timeout"                      # OS call exceeded its bound
    UNKNOWN = "Unknown"                      # Anything else, message passed through


class AgentState(str, Enum):
    """Liveness of an agent as seen by the controller."""
    UNKNOWN = "unknown"   # Never probed
    ONLINE = "online"
    OFFLINE = "offline"


# Executable suffix the OS expects on a process image name
EXECUTABLE_SUFFIX = ".exe" if sys.platform == "win32" else ""


def normalize_image_name(name: str, suffix: str = EXECUTABLE_SUFFIX) -> str:
    """Append the platform executable suffix if it is not already there."""
    name = name.strip()
    if suffix and not name.lower().endswith(suffix.lower()):
        return f"{name}{suffix}"
    return name


@dataclass
class CommandOutcome:
    """Normalized result of one administrative action."""
    success: bool
    message: str
    error_kind: Optional[ErrorKind] = None

    def __post_init__(self):
        if self.success and self.error_kind is not None:
            raise ValueError("A successful outcome cannot carry an error kind")
        if not self.success and self.error_kind is None:
            self.error_kind = ErrorKind.UNKNOWN

    @classmethod
    def ok(cls, message: str) -> "CommandOutcome":
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str) -> "CommandOutcome":
        return cls(success=False, message=message, error_kind=kind)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.error_kind is not None:
            data["errorKind"] = self.error_kind.value
        return data


@dataclass
class ProgramDescriptor:
    """A program to launch or stop."""
    short_name: str
    resolved_path: Optional[str] = None
    process_image_name: str = ""
    suffix: str = EXECUTABLE_SUFFIX

    def __post_init__(self):
        self.process_image_name = normalize_image_name(
            self.process_image_name or self.short_name, self.suffix
        )

    @property
    def launch_target(self) -> str:
        """Path if known, otherwise the bare name for the OS to resolve."""
        return self.resolved_path or self.short_name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shortName": self.short_name,
            "resolvedPath": self.resolved_path,
            "processImageName": self.process_image_name,
        }


@dataclass
class NetworkAdapter:
    """One network interface as reported by the OS."""
    name: str
    is_up: bool
    is_disabled: bool = False   # Administratively disabled (not just unplugged)
    is_virtual: bool = False
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "isUp": self.is_up,
            "isDisabled": self.is_disabled,
            "isVirtual": self.is_virtual,
            "description": self.description,
        }


@dataclass
class StatusSnapshot:
    """Point-in-time system status of an agent host. Unavailable fields are None."""
    hostname: Optional[str]
    platform: Optional[str]
    arch: Optional[str]
    uptime_seconds: Optional[float]
    total_memory: Optional[int]
    free_memory: Optional[int]
    load_average: Optional[List[float]]
    network_interfaces: Optional[Dict[str, List[Dict[str, Any]]]]
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    status: str = "online"

    @property
    def memory_used_pct(self) -> Optional[float]:
        if not self.total_memory or self.free_memory is None:
            return None
        return (self.total_memory - self.free_memory) / self.total_memory * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hostname": self.hostname,
            "platform": self.platform,
            "arch": self.arch,
            "uptime": self.uptime_seconds,
            "totalMemory": self.total_memory,
            "freeMemory": self.free_memory,
            "loadAverage": self.load_average,
            "networkInterfaces": self.network_interfaces,
            "timestamp": self.timestamp,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatusSnapshot":
        return cls(
            hostname=data.get("hostname"),
            platform=data.get("platform"),
            arch=data.get("arch"),
            uptime_seconds=data.get("uptime"),
            total_memory=data.get("totalMemory"),
            free_memory=data.get("freeMemory"),
            load_average=data.get("loadAverage"),
            network_interfaces=data.get("networkInterfaces"),
            timestamp=data.get("timestamp", datetime.now().isoformat()),
            status=data.get("status", "online"),
        )


@dataclass
class IdentitySnapshot:
    """Stable identity of an agent host."""
    pc_name: str
    agent_id: str
    display_name: str
    platform: str
    architecture: str
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pcName": self.pc_name,
            "agentId": self.agent_id,
            "displayName": self.display_name,
            "platform": self.platform,
            "architecture": self.architecture,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdentitySnapshot":
        return cls(
            pc_name=data.get("pcName", ""),
            agent_id=data.get("agentId", ""),
            display_name=data.get("displayName", data.get("pcName", "")),
            platform=data.get("platform", ""),
            architecture=data.get("architecture", ""),
            timestamp=data.get("timestamp", datetime.now().isoformat()),
        )


@dataclass
class AgentRecord:
    """
    Controller-side record of one agent.

    `address` ("host:port") is the identity key and never changes. Records are
    treated as values: the registry swaps in an updated copy instead of
    mutating one in place, so readers never see a half-updated record.
    """
    id: str
    display_name: str
    address: str
    state: AgentState = AgentState.UNKNOWN
    last_seen_at: Optional[str] = None
    reported_machine_name: Optional[str] = None
    reported_agent_id: Optional[str] = None
    fleet_label: Optional[str] = None
    added_via: str = "manual"   # "manual", "discovery", or "config"

    @property
    def url(self) -> str:
        return f"http://{self.address}"

    @property
    def is_online(self) -> bool:
        return self.state == AgentState.ONLINE

    def copy(self, **changes) -> "AgentRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "address": self.address,
            "state": self.state.value,
            "lastSeenAt": self.last_seen_at,
            "reportedMachineName": self.reported_machine_name,
            "reportedAgentId": self.reported_agent_id,
            "fleetLabel": self.fleet_label,
            "addedVia": self.added_via,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentRecord":
        return cls(
            id=str(data["id"]),
            display_name=data.get("displayName", data["address"]),
            address=data["address"],
            state=AgentState(data.get("state", "unknown")),
            last_seen_at=data.get("lastSeenAt"),
            reported_machine_name=data.get("reportedMachineName"),
            reported_agent_id=data.get("reportedAgentId"),
            fleet_label=data.get("fleetLabel"),
            added_via=data.get("addedVia", "manual"),
        )


@dataclass
class FleetStatus:
    """Aggregate view of the registry at one moment."""
    timestamp: str
    agents: List[AgentRecord]
    duplicates: Dict[str, List[str]] = field(default_factory=dict)  # label -> addresses

    @property
    def total(self) -> int:
        return len(self.agents)

    @property
    def online(self) -> int:
        return sum(1 for a in self.agents if a.state == AgentState.ONLINE)

    @property
    def offline(self) -> int:
        return sum(1 for a in self.agents if a.state == AgentState.OFFLINE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "summary": {
                "total": self.total,
                "online": self.online,
                "offline": self.offline,
                "unknown": self.total - self.online - self.offline,
            },
            "duplicates": self.duplicates,
            "agents": [a.to_dict() for a in self.agents],
        }
