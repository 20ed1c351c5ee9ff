"""
LXC Common module.

This module contains the shared domain models, error taxonomy and
configuration used across the console components (client, engine,
server, cli).

The common module has no dependencies on other lxc_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .config import EngineConfig, RetryConfig
from .errors import (
    ConflictError,
    ConsoleError,
    InvalidStateError,
    NotFoundError,
    ProtocolError,
    RemoteClientError,
    RemoteServerError,
    TransportError,
    ValidationError,
)
from .models import (
    Container,
    ContainerDiff,
    CreateSpec,
    Notification,
    Operation,
    OperationStatus,
)

__all__ = [
    "ConflictError",
    "ConsoleError",
    "Container",
    "ContainerDiff",
    "CreateSpec",
    "EngineConfig",
    "InvalidStateError",
    "Notification",
    "NotFoundError",
    "Operation",
    "OperationStatus",
    "ProtocolError",
    "RemoteClientError",
    "RemoteServerError",
    "RetryConfig",
    "TransportError",
    "ValidationError",
]
