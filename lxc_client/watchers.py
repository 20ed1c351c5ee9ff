"""
Status producers for background LXD operations.

Two interchangeable async generators yield ``OperationStatus`` updates for
one remote operation until it reaches a terminal state:

- ``poll_status`` asks ``GET /1.0/operations/{id}`` at a fixed interval
- ``wait_status`` long-polls ``GET /1.0/operations/{id}/wait`` so LXD pushes
  the final state as soon as it is known

Both end with a synthetic ``failed`` update when the operation outlives
its timeout. Errors that survive the retry policy propagate to the caller.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable

from lxc_common.models import OperationStatus

from .client import LxdApiClient
from .retry import RetryPolicy, call_with_retry

WAIT_CHUNK = 10.0  # seconds per long-poll request


def _timed_out(remote_id: str, timeout: float) -> OperationStatus:
    return OperationStatus(
        state="failed",
        error=f"Operation {remote_id} timed out after {timeout:.0f}s",
        error_kind="timeout",
        remote_id=remote_id,
    )


async def poll_status(
    client: LxdApiClient,
    remote_id: str,
    *,
    policy: RetryPolicy,
    interval: float,
    timeout: float,
    on_retry: Callable | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> AsyncIterator[OperationStatus]:
    """Yield the operation's status every ``interval`` seconds until terminal."""
    started = clock()
    while True:
        status = await call_with_retry(
            client.get_operation, remote_id, policy=policy, on_retry=on_retry
        )
        yield status
        if status.is_terminal:
            return
        if clock() - started >= timeout:
            yield _timed_out(remote_id, timeout)
            return
        await asyncio.sleep(interval)


async def wait_status(
    client: LxdApiClient,
    remote_id: str,
    *,
    policy: RetryPolicy,
    timeout: float,
    chunk: float = WAIT_CHUNK,
    on_retry: Callable | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> AsyncIterator[OperationStatus]:
    """Yield the operation's status each time a long-poll returns, until terminal."""
    started = clock()
    while True:
        remaining = timeout - (clock() - started)
        if remaining <= 0:
            yield _timed_out(remote_id, timeout)
            return
        status = await call_with_retry(
            client.wait_operation,
            remote_id,
            min(chunk, remaining),
            policy=policy,
            on_retry=on_retry,
        )
        yield status
        if status.is_terminal:
            return


def status_stream(
    source: str,
    client: LxdApiClient,
    remote_id: str,
    *,
    policy: RetryPolicy,
    interval: float,
    timeout: float,
    on_retry: Callable | None = None,
) -> AsyncIterator[OperationStatus]:
    """
    Select the producer for ``source`` ("poll" or "wait").

    Raises:
        ValueError: If the source is unknown
    """
    if source == "poll":
        return poll_status(
            client,
            remote_id,
            policy=policy,
            interval=interval,
            timeout=timeout,
            on_retry=on_retry,
        )
    if source == "wait":
        return wait_status(
            client, remote_id, policy=policy, timeout=timeout, on_retry=on_retry
        )
    raise ValueError(f"Unknown status source: {source}")
