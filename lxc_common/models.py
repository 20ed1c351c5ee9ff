"""
Data models for the console engine.

These models represent the domain objects used throughout the application,
independent of the remote API's wire format. ``from_api``/``from_lxd``
constructors are the only places that know LXD's JSON shape.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

ContainerStatusName = Literal["Stopped", "Running", "Frozen", "Error", "Unknown"]
OperationKind = Literal[
    "start", "stop", "restart", "delete", "create", "clone", "exec"
]
OperationState = Literal[
    "submitted", "sent", "polling", "succeeded", "failed", "cancelled"
]
StatusState = Literal["running", "succeeded", "failed", "cancelled"]

CONTAINER_STATUSES = ("Stopped", "Running", "Frozen", "Error", "Unknown")
OPERATION_KINDS = ("start", "stop", "restart", "delete", "create", "clone", "exec")
MUTATING_KINDS = frozenset(("start", "stop", "restart", "delete", "clone", "exec"))
TERMINAL_STATES = frozenset(("succeeded", "failed", "cancelled"))

DEFAULT_IMAGE = "ubuntu:24.04"
DEFAULT_LIMITS = {"limits.cpu": "2", "limits.memory": "2GB"}

_PERCENT_RE = re.compile(r"(\d{1,3})%")
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_timestamp(value: str | None) -> datetime | None:
    """
    Parse an LXD timestamp.

    LXD reports nanosecond precision and uses the zero time
    (``0001-01-01T00:00:00Z``) for "never".
    """
    if not value or value.startswith("0001-01-01"):
        return None
    try:
        text = _FRACTION_RE.sub(r".\1", value.replace("Z", "+00:00"))
        return datetime.fromisoformat(text)
    except (ValueError, AttributeError):
        return None


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Container:
    """
    A container as known to the console.

    Resource usage is a best-effort snapshot taken at the last refresh.
    """

    name: str
    status: ContainerStatusName = "Unknown"
    instance_type: str = "container"  # "container" or "virtual-machine"
    image: str | None = None
    created_at: datetime | None = None
    cpu_usage: int | None = None  # nanoseconds of CPU time
    memory_usage: int | None = None  # bytes
    ipv4: list[str] = field(default_factory=list)
    ipv6: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert container to dictionary format (for API responses)."""
        return {
            "name": self.name,
            "status": self.status,
            "type": self.instance_type,
            "image": self.image,
            "created_at": _format_time(self.created_at),
            "cpu_usage": self.cpu_usage,
            "memory_usage": self.memory_usage,
            "ipv4": list(self.ipv4),
            "ipv6": list(self.ipv6),
        }

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Container":
        """
        Create a container from an LXD instance object.

        Args:
            data: Instance JSON, ideally fetched with recursion=2 so that
                  ``state`` (network, cpu, memory) is embedded

        Raises:
            KeyError: If the object has no name
        """
        status = data.get("status") or "Unknown"
        if status not in CONTAINER_STATUSES:
            status = "Unknown"

        config = data.get("config") or {}
        image = config.get("image.description")
        if not image and config.get("image.os"):
            image = f"{config['image.os']} {config.get('image.release', '')}".strip()

        container = cls(
            name=data["name"],
            status=status,
            instance_type=data.get("type") or "container",
            image=image,
            created_at=parse_timestamp(data.get("created_at")),
        )

        state = data.get("state") or {}
        cpu = state.get("cpu") or {}
        memory = state.get("memory") or {}
        container.cpu_usage = cpu.get("usage")
        container.memory_usage = memory.get("usage")

        for iface_name, iface in sorted((state.get("network") or {}).items()):
            if iface_name == "lo":
                continue
            for addr in iface.get("addresses") or []:
                address = addr.get("address")
                if not address:
                    continue
                if addr.get("family") == "inet" and address != "127.0.0.1":
                    container.ipv4.append(address)
                elif addr.get("family") == "inet6" and addr.get("scope") == "global":
                    container.ipv6.append(address)

        return container


@dataclass
class ContainerDiff:
    """Names added, removed and changed by a registry update."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed or self.changed)

    @property
    def names(self) -> list[str]:
        return sorted(set(self.added) | set(self.removed) | set(self.changed))

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "changed": list(self.changed),
        }


@dataclass
class CreateSpec:
    """Parameters of a create request."""

    name: str
    image: str = DEFAULT_IMAGE
    instance_type: str = "container"
    config: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_LIMITS))
    start: bool = True  # start the instance once it exists

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "image": self.image,
            "type": self.instance_type,
            "config": dict(self.config),
            "start": self.start,
        }


@dataclass
class Operation:
    """
    A locally tracked user action and its lifecycle.

    States progress: submitted -> sent -> polling -> succeeded
    Terminal states: succeeded, failed, cancelled
    """

    id: str
    kind: OperationKind
    target: str | None  # container name, None for create
    state: OperationState = "submitted"
    description: str = ""
    params: dict[str, Any] = field(default_factory=dict)
    remote_id: str | None = None  # LXD operation id, once accepted
    progress: int | None = None  # 0-100, None when indeterminate
    error: str | None = None
    error_kind: str | None = None
    retry_count: int = 0
    result: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_mutating(self) -> bool:
        return self.kind in MUTATING_KINDS

    def to_dict(self) -> dict[str, Any]:
        """Convert operation to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "kind": self.kind,
            "target": self.target,
            "state": self.state,
            "description": self.description,
            "remote_id": self.remote_id,
            "progress": self.progress,
            "error": self.error,
            "error_kind": self.error_kind,
            "retry_count": self.retry_count,
            "result": self.result,
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
            "finished_at": _format_time(self.finished_at),
        }


def _parse_progress(metadata: Any) -> int | None:
    """Extract a 0-100 progress value from LXD operation metadata."""
    if not isinstance(metadata, dict):
        return None

    progress = metadata.get("progress")
    if isinstance(progress, dict):
        progress = progress.get("percent")
    if progress is not None:
        try:
            return max(0, min(100, int(float(progress))))
        except (TypeError, ValueError):
            pass

    # Image transfers report e.g. {"download_progress": "rootfs: 45% (12MB/s)"}
    for key, value in metadata.items():
        if key.endswith("_progress") and isinstance(value, str):
            match = _PERCENT_RE.search(value)
            if match:
                return min(100, int(match.group(1)))
    return None


@dataclass(frozen=True)
class OperationStatus:
    """
    Normalized status update for one operation.

    Polling, long-poll subscription and synchronous results are all
    converted to this shape before they reach the operation registry.
    """

    state: StatusState
    progress: int | None = None
    error: str | None = None
    error_kind: str | None = None
    remote_id: str | None = None
    result: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @classmethod
    def from_lxd(cls, data: dict[str, Any]) -> "OperationStatus":
        """
        Create a status from an LXD operation object.

        Raises:
            KeyError: If the object has no status_code
        """
        code = int(data["status_code"])
        remote_id = data.get("id")
        metadata = data.get("metadata")

        if code == 200:
            return cls(
                state="succeeded",
                progress=100,
                remote_id=remote_id,
                result=metadata if isinstance(metadata, dict) else None,
            )
        if code == 401:
            return cls(state="cancelled", remote_id=remote_id)
        if code >= 400:
            return cls(
                state="failed",
                error=data.get("err") or "Operation failed",
                error_kind="remote_4xx",
                remote_id=remote_id,
            )
        return cls(
            state="running", progress=_parse_progress(metadata), remote_id=remote_id
        )


@dataclass(frozen=True)
class Notification:
    """
    A change signal for the presentation layer.

    ``kind`` is "containers", "operations" or "connectivity"; ``keys``
    holds the affected container names or operation ids.
    """

    kind: Literal["containers", "operations", "connectivity"]
    keys: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "keys": list(self.keys),
            "timestamp": self.timestamp.isoformat(),
        }
