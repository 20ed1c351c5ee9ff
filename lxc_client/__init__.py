"""
LXC Client module.

This module contains everything that talks to the LXD daemon: the REST
client, its unix socket transport, the retry policy wrapped around every
call, and the status producers that follow background operations.
"""

from .client import ApiRequest, LxdApiClient, SubmitResult, build_request
from .retry import GiveUp, RetryAfter, RetryPolicy, call_with_retry
from .watchers import poll_status, status_stream, wait_status

__all__ = [
    "ApiRequest",
    "GiveUp",
    "LxdApiClient",
    "RetryAfter",
    "RetryPolicy",
    "SubmitResult",
    "build_request",
    "call_with_retry",
    "poll_status",
    "status_stream",
    "wait_status",
]
