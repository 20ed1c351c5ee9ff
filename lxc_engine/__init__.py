"""
LXC Engine module.

This module contains the coordination core: the operation and container
registries, the change notification channel, and the reconciler that
drives operations and merges their outcomes.
"""

from .containers import ContainerRegistry
from .notifications import ChangeChannel, Subscription
from .operations import OperationRegistry
from .reconciler import Reconciler, validate_name

__all__ = [
    "ChangeChannel",
    "ContainerRegistry",
    "OperationRegistry",
    "Reconciler",
    "Subscription",
    "validate_name",
]
