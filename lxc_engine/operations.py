"""
Operation registry.

The authoritative set of in-flight and recently finished operations, and
the only place that knows whether a container is mid-mutation.

State machine::

    submitted -> sent -> polling -> succeeded | failed | cancelled
                 sent -> succeeded | failed          (synchronous result)
    any non-terminal -> cancelled                     (user cancel)

Terminal states are never left; late or duplicate updates are discarded.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any

from lxc_common.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from lxc_common.models import (
    MUTATING_KINDS,
    OPERATION_KINDS,
    Operation,
    OperationStatus,
)

logger = logging.getLogger(__name__)


def _snapshot(operation: Operation) -> Operation:
    return replace(
        operation,
        params=dict(operation.params),
        result=dict(operation.result) if operation.result is not None else None,
    )


class OperationRegistry:
    """
    Tracks operations through their lifecycle.

    Mutated only from the coordination loop (and the intent handlers that
    run on it); readers get copies.
    """

    def __init__(
        self,
        history_limit: int = 50,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Initialize the registry.

        Args:
            history_limit: Maximum number of finished operations kept
            clock: Returns the current UTC time (replaceable in tests)
        """
        self.history_limit = history_limit
        self._clock = clock or (lambda: datetime.now(UTC))
        self._operations: dict[str, Operation] = {}
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0
        self._locks: dict[str, str] = {}  # container name -> operation id

    def __len__(self) -> int:
        return len(self._operations)

    def __contains__(self, operation_id: str) -> bool:
        return operation_id in self._operations

    def begin(
        self,
        kind: str,
        target: str | None,
        params: dict[str, Any] | None = None,
        description: str = "",
    ) -> str:
        """
        Record a new operation in the ``submitted`` state.

        Args:
            kind: Operation kind ("start", "stop", ..., "create", "exec")
            target: Container name, or None for create
            params: Kind-specific parameters (new_name, command, spec)
            description: Human-readable summary

        Returns:
            The new operation id

        Raises:
            ConflictError: If ``target`` already has an active mutating operation
            ValidationError: If the kind is unknown or a mutating kind has no target
        """
        if kind not in OPERATION_KINDS:
            raise ValidationError(f"Unknown operation kind: {kind}")

        mutating = kind in MUTATING_KINDS
        if mutating:
            if not target:
                raise ValidationError(f"A {kind} operation needs a target container")
            active_id = self._locks.get(target)
            if active_id is not None:
                active = self._operations[active_id]
                raise ConflictError(
                    f"Container '{target}' already has an active {active.kind} "
                    f"operation ({active_id})"
                )

        now = self._clock()
        operation = Operation(
            id=str(uuid.uuid4()),
            kind=kind,
            target=target,
            description=description or f"{kind} {target or ''}".strip(),
            params=dict(params or {}),
            created_at=now,
            updated_at=now,
        )
        self._operations[operation.id] = operation
        self._sequence[operation.id] = self._next_sequence
        self._next_sequence += 1
        if mutating:
            self._locks[target] = operation.id

        logger.info(f"Operation {operation.id} submitted: {operation.description}")
        return operation.id

    def get(self, operation_id: str) -> Operation:
        """
        Return a copy of one operation.

        Raises:
            NotFoundError: If the id is unknown
        """
        return _snapshot(self._get(operation_id))

    def _get(self, operation_id: str) -> Operation:
        operation = self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError(f"Unknown operation: {operation_id}")
        return operation

    def active_for(self, name: str) -> Operation | None:
        """Return the active mutating operation for a container, if any."""
        operation_id = self._locks.get(name)
        if operation_id is None:
            return None
        return _snapshot(self._operations[operation_id])

    def locked_names(self) -> set[str]:
        """Names of containers with an active mutating operation."""
        return set(self._locks)

    def active(self) -> list[Operation]:
        """Non-terminal operations, most recent first."""
        return [op for op in self.list() if not op.is_terminal]

    def mark_sent(self, operation_id: str) -> Operation | None:
        """
        Move a submitted operation to ``sent``.

        Returns:
            The updated operation, or None if it was no longer submitted
            (for example cancelled before dispatch)
        """
        operation = self._operations.get(operation_id)
        if operation is None or operation.state != "submitted":
            return None
        self._set_state(operation, "sent")
        return _snapshot(operation)

    def record_retry(
        self, operation_id: str, retry_count: int, error: str | None = None
    ) -> Operation | None:
        """Record that a request for the operation is being retried."""
        operation = self._operations.get(operation_id)
        if operation is None or operation.is_terminal:
            return None
        operation.retry_count = max(operation.retry_count, retry_count)
        operation.error = error
        operation.updated_at = self._clock()
        return _snapshot(operation)

    def apply_status(
        self, operation_id: str, status: OperationStatus
    ) -> Operation | None:
        """
        Feed a status update into the state machine.

        Returns:
            The updated operation, or None if the update was discarded
            (unknown id, terminal operation, or not valid in the current state)
        """
        operation = self._operations.get(operation_id)
        if operation is None:
            logger.debug(f"Discarding update for unknown operation {operation_id}")
            return None
        if operation.is_terminal:
            logger.debug(
                f"Discarding {status.state} update for {operation.state} "
                f"operation {operation_id}"
            )
            return None
        if operation.state == "submitted":
            logger.warning(
                f"Discarding {status.state} update for undispatched operation "
                f"{operation_id}"
            )
            return None

        if status.remote_id:
            operation.remote_id = status.remote_id
        if status.progress is not None:
            operation.progress = status.progress

        if status.state == "running":
            if operation.state == "sent" and not operation.remote_id:
                logger.warning(
                    f"Discarding running update without remote handle for "
                    f"{operation_id}"
                )
                return None
            self._set_state(operation, "polling")
        elif status.state == "succeeded":
            operation.error = None
            operation.result = status.result
            self._set_state(operation, "succeeded")
        elif status.state == "failed":
            operation.error = status.error or "Operation failed"
            operation.error_kind = status.error_kind
            self._set_state(operation, "failed")
        elif status.state == "cancelled":
            operation.error = status.error or "Cancelled remotely"
            operation.error_kind = "cancelled"
            self._set_state(operation, "cancelled")

        return _snapshot(operation)

    def cancel(self, operation_id: str) -> Operation:
        """
        Cancel an operation locally.

        The per-container lock is released immediately. Remote abort is the
        caller's concern.

        Raises:
            NotFoundError: If the id is unknown
            InvalidStateError: If the operation already finished
        """
        operation = self._get(operation_id)
        if operation.is_terminal:
            raise InvalidStateError(
                f"Operation {operation_id} is already {operation.state}"
            )
        operation.error_kind = "cancelled"
        self._set_state(operation, "cancelled")
        logger.info(f"Operation {operation_id} cancelled: {operation.description}")
        return _snapshot(operation)

    def prune(
        self, older_than: float | timedelta, now: datetime | None = None
    ) -> list[str]:
        """
        Remove finished operations older than the given age.

        Also drops the oldest finished operations beyond ``history_limit``.

        Args:
            older_than: Age in seconds (or a timedelta) since completion
            now: Reference time (default: the registry clock)

        Returns:
            Ids of the removed operations
        """
        if not isinstance(older_than, timedelta):
            older_than = timedelta(seconds=older_than)
        cutoff = (now or self._clock()) - older_than

        removed = [
            op.id
            for op in self._operations.values()
            if op.is_terminal and op.finished_at is not None and op.finished_at <= cutoff
        ]

        finished = [
            op
            for op in self._operations.values()
            if op.is_terminal and op.id not in removed
        ]
        if len(finished) > self.history_limit:
            finished.sort(key=lambda op: (op.finished_at, self._sequence[op.id]))
            removed.extend(op.id for op in finished[: len(finished) - self.history_limit])

        for operation_id in removed:
            del self._operations[operation_id]
            del self._sequence[operation_id]

        if removed:
            logger.debug(f"Pruned {len(removed)} finished operations")
        return removed

    def _set_state(self, operation: Operation, state: str) -> None:
        operation.state = state
        now = self._clock()
        operation.updated_at = now
        if operation.is_terminal:
            operation.finished_at = now
            if operation.target and self._locks.get(operation.target) == operation.id:
                del self._locks[operation.target]

    def list(self) -> list[Operation]:
        """
        Snapshot of all operations, most recent first.

        Never mutates registry state.
        """
        ordered = sorted(
            self._operations.values(),
            key=lambda op: (op.created_at, self._sequence[op.id]),
            reverse=True,
        )
        return [_snapshot(op) for op in ordered]
