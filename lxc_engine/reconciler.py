"""
Reconciler: the console's coordination loop.

A single asyncio task owns the operation and container registries. It
multiplexes three kinds of events:

1. User intents (``request_*`` methods, called on the loop's thread)
2. Operation status updates posted by worker tasks
3. Heartbeat and prune timers

Network calls happen only in worker tasks, which run the blocking API
client on threads via ``call_with_retry`` and post their results back on
an ``asyncio.Queue``. Workers never touch the registries.
"""

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from lxc_client.client import ApiRequest, LxdApiClient, build_request, state_request
from lxc_client.retry import RetryPolicy, call_with_retry
from lxc_client.watchers import status_stream
from lxc_common.config import EngineConfig
from lxc_common.errors import ConflictError, ConsoleError, ValidationError
from lxc_common.models import (
    Container,
    CreateSpec,
    Notification,
    Operation,
    OperationStatus,
)

from .containers import ContainerRegistry
from .notifications import ChangeChannel
from .operations import OperationRegistry

logger = logging.getLogger(__name__)

NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]{0,62}$")
INSTANCE_TYPES = ("container", "virtual-machine")


def validate_name(name: str) -> None:
    """
    Check an instance name against LXD's naming rules.

    Raises:
        ValidationError: If the name is not a valid instance name
    """
    if not name or not NAME_RE.match(name) or name.endswith("-"):
        raise ValidationError(
            f"Invalid container name '{name}': use 1-63 letters, digits or "
            "hyphens, starting with a letter and not ending with a hyphen"
        )


# Events posted to the coordination loop


@dataclass
class _Dispatch:
    operation_id: str


@dataclass
class _StatusReport:
    operation_id: str
    status: OperationStatus


@dataclass
class _RetryReport:
    operation_id: str
    retry_count: int
    error: str


@dataclass
class _RefreshResult:
    sequence: int
    containers: list[Container] | None = None
    error: ConsoleError | None = None


@dataclass
class _Wake:
    pass


class Reconciler:
    """
    Coordination core of the console.

    Drives pending operations, merges their outcomes into the container
    registry, keeps a heartbeat refresh, prunes finished operations and
    publishes change notifications.
    """

    def __init__(
        self,
        client: LxdApiClient,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the reconciler.

        Args:
            client: API client used by worker tasks
            config: Engine configuration (default: EngineConfig())
            clock: Monotonic clock for timers (replaceable in tests)
        """
        self.client = client
        self.config = config or EngineConfig()
        self.config.validate()
        self.policy = RetryPolicy(self.config.retry)
        self.operations = OperationRegistry(history_limit=self.config.history_limit)
        self.containers = ContainerRegistry()
        self.channel = ChangeChannel()
        self.connectivity_error: str | None = None

        self._clock = clock
        self._events: asyncio.Queue = asyncio.Queue()
        self._workers: dict[str, asyncio.Task] = {}
        self._handles: dict[str, str] = {}  # operation id -> remote id
        self._aborts: set[asyncio.Task] = set()
        self._refresh_task: asyncio.Task | None = None
        self._refresh_pending = False
        self._sequence = 0
        self._optimistic: dict[str, int] = {}  # container name -> sequence
        self._next_refresh = 0.0
        self._next_prune = 0.0
        self._changed_containers: set[str] = set()
        self._changed_operations: set[str] = set()
        self._connectivity_changed = False
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the coordination loop and the first refresh."""
        if self._running:
            logger.warning("Reconciler already running")
            return

        self._running = True
        now = self._clock()
        self._next_refresh = now
        self._next_prune = now + self.config.prune_interval
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Reconciler started")

    async def stop(self) -> None:
        """Stop the loop and all worker tasks. The client is left open."""
        if not self._running:
            return

        logger.info("Stopping reconciler...")
        self._running = False

        tasks = [t for t in (self._task, self._refresh_task) if t is not None]
        tasks.extend(self._workers.values())
        tasks.extend(self._aborts)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._workers.clear()
        self._aborts.clear()
        self._refresh_task = None
        self._task = None
        self.channel.close()
        logger.info("Reconciler stopped")

    async def _run_loop(self) -> None:
        """Main coordination loop."""
        while self._running:
            try:
                timeout = max(0.0, self._next_timer() - self._clock())
                try:
                    event = await asyncio.wait_for(self._events.get(), timeout)
                except asyncio.TimeoutError:
                    event = None
                self.tick(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in coordination loop: {e}", exc_info=True)
                await asyncio.sleep(self.config.poll_interval)

    def _next_timer(self) -> float:
        return min(self._next_refresh, self._next_prune)

    def tick(self, event: object | None = None) -> None:
        """
        Run one coordination step.

        Handles ``event`` and everything already queued, then fires due
        timers and publishes the resulting notifications.
        """
        events = [] if event is None else [event]
        while True:
            try:
                events.append(self._events.get_nowait())
            except asyncio.QueueEmpty:
                break

        for item in events:
            try:
                self._handle(item)
            except Exception as e:
                logger.error(f"Error handling {type(item).__name__}: {e}", exc_info=True)

        self._run_timers()
        self._flush_notifications()

    def _handle(self, event: object) -> None:
        if isinstance(event, _Dispatch):
            self._dispatch(event.operation_id)
        elif isinstance(event, _StatusReport):
            self._apply_status(event.operation_id, event.status)
        elif isinstance(event, _RetryReport):
            if self.operations.record_retry(
                event.operation_id, event.retry_count, event.error
            ):
                self._changed_operations.add(event.operation_id)
        elif isinstance(event, _RefreshResult):
            self._apply_refresh(event)
        elif isinstance(event, _Wake):
            pass
        else:
            logger.warning(f"Ignoring unknown event {event!r}")

    def _run_timers(self) -> None:
        now = self._clock()

        if now >= self._next_refresh:
            self._refresh_pending = True
        if self._refresh_pending and self._refresh_task is None:
            self._start_refresh(now)

        if now >= self._next_prune:
            self._next_prune = now + self.config.prune_interval
            removed = self.operations.prune(self.config.operation_retention)
            self._changed_operations.update(removed)

    def _flush_notifications(self) -> None:
        if self._changed_containers:
            self.channel.publish(
                Notification("containers", tuple(sorted(self._changed_containers)))
            )
            self._changed_containers.clear()
        if self._changed_operations:
            self.channel.publish(
                Notification("operations", tuple(sorted(self._changed_operations)))
            )
            self._changed_operations.clear()
        if self._connectivity_changed:
            self.channel.publish(Notification("connectivity"))
            self._connectivity_changed = False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _dispatch(self, operation_id: str) -> None:
        operation = self.operations.mark_sent(operation_id)
        if operation is None:
            # Cancelled before it was dispatched
            return
        self._changed_operations.add(operation_id)
        self._workers[operation_id] = asyncio.create_task(self._drive(operation))

    def _apply_status(self, operation_id: str, status: OperationStatus) -> None:
        operation = self.operations.apply_status(operation_id, status)
        if operation is None:
            return
        self._changed_operations.add(operation_id)
        if operation.is_terminal:
            self._finish(operation)

    def _finish(self, operation: Operation) -> None:
        self._workers.pop(operation.id, None)
        self._handles.pop(operation.id, None)

        if operation.state == "succeeded":
            logger.info(f"Operation {operation.id} succeeded: {operation.description}")
            diff = self.containers.apply_operation_result(operation)
            self._sequence += 1
            for name in diff.names:
                self._optimistic[name] = self._sequence
            self._changed_containers.update(diff.names)
            # Coalesced: one refresh per tick however many operations finished
            self._refresh_pending = True
        elif operation.state == "failed":
            logger.error(
                f"Operation {operation.id} failed: {operation.description}: "
                f"{operation.error}"
            )
        else:
            logger.info(f"Operation {operation.id} {operation.state}")

    def _requests_for(self, operation: Operation) -> list[ApiRequest]:
        requests = [build_request(operation)]
        if operation.kind == "create" and operation.params["spec"].start:
            requests.append(state_request(operation.params["spec"].name, "start"))
        return requests

    async def _drive(self, operation: Operation) -> None:
        """Worker task: perform an operation and report its progress."""
        operation_id = operation.id
        retries = 0

        def on_retry(attempt: int, error: ConsoleError, delay: float) -> None:
            nonlocal retries
            retries += 1
            self._report_retry(operation_id, retries, error)

        try:
            status = OperationStatus(state="succeeded")
            for request in self._requests_for(operation):
                status = await self._perform(operation_id, request, on_retry)
                if status.state != "succeeded":
                    break
            self._report(operation_id, status)
        except asyncio.CancelledError:
            raise
        except ConsoleError as e:
            self._report(
                operation_id,
                OperationStatus(state="failed", error=e.message, error_kind=e.kind),
            )
        except Exception as e:
            logger.error(f"Unexpected error in operation {operation_id}: {e}", exc_info=True)
            self._report(
                operation_id,
                OperationStatus(state="failed", error=str(e), error_kind="internal"),
            )

    async def _perform(
        self, operation_id: str, request: ApiRequest, on_retry: Callable
    ) -> OperationStatus:
        result = await call_with_retry(
            self.client.submit, request, policy=self.policy, on_retry=on_retry
        )
        if not result.is_async:
            return OperationStatus(state="succeeded", result=result.metadata or None)

        self._handles[operation_id] = result.remote_id
        self._report(
            operation_id, OperationStatus(state="running", remote_id=result.remote_id)
        )

        final: OperationStatus | None = None
        async for status in status_stream(
            self.config.status_source,
            self.client,
            result.remote_id,
            policy=self.policy,
            interval=self.config.poll_interval,
            timeout=self.config.operation_timeout,
            on_retry=on_retry,
        ):
            if status.is_terminal:
                final = status
            else:
                self._report(operation_id, status)
        if final is None:
            raise ConsoleError(f"Operation {result.remote_id} ended without a final status")
        return final

    def _report(self, operation_id: str, status: OperationStatus) -> None:
        self._events.put_nowait(_StatusReport(operation_id, status))

    def _report_retry(self, operation_id: str, retry_count: int, error: ConsoleError) -> None:
        self._events.put_nowait(
            _RetryReport(operation_id, retry_count, f"{error.kind}: {error.message}")
        )

    async def _abort_remote(self, operation_id: str, remote_id: str) -> None:
        """Best-effort, single attempt at aborting a remote operation."""
        try:
            await asyncio.to_thread(self.client.cancel_operation, remote_id)
            logger.info(f"Remote operation {remote_id} aborted for {operation_id}")
        except ConsoleError as e:
            logger.warning(
                f"Could not abort remote operation {remote_id} for {operation_id}: {e}"
            )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _start_refresh(self, now: float) -> None:
        self._refresh_pending = False
        self._next_refresh = now + self.config.refresh_interval
        self._sequence += 1
        self._refresh_task = asyncio.create_task(self._refresh(self._sequence))

    async def _refresh(self, sequence: int) -> None:
        """Worker task: fetch the full container list."""
        try:
            containers = await call_with_retry(
                self.client.list_containers, policy=self.policy
            )
            self._events.put_nowait(_RefreshResult(sequence, containers=containers))
        except asyncio.CancelledError:
            raise
        except ConsoleError as e:
            self._events.put_nowait(_RefreshResult(sequence, error=e))
        except Exception as e:
            logger.error(f"Unexpected error refreshing containers: {e}", exc_info=True)
            self._events.put_nowait(_RefreshResult(sequence, error=ConsoleError(str(e))))

    def _apply_refresh(self, result: _RefreshResult) -> None:
        self._refresh_task = None

        if result.error is not None:
            message = f"{result.error.kind}: {result.error.message}"
            if message != self.connectivity_error:
                logger.warning(f"Container refresh failed: {message}")
                self.connectivity_error = message
                self._connectivity_changed = True
            return

        if self.connectivity_error is not None:
            logger.info("Connectivity to LXD restored")
            self.connectivity_error = None
            self._connectivity_changed = True

        # Optimistic updates newer than this list win: present names keep
        # their entry, absent ones were deleted and stay gone
        newer = {
            name for name, seq in self._optimistic.items() if seq > result.sequence
        }
        preserve = self.operations.locked_names()
        preserve.update(name for name in newer if name in self.containers)
        drop = {name for name in newer if name not in self.containers}
        diff = self.containers.refresh(result.containers, preserve=preserve, drop=drop)
        self._changed_containers.update(diff.names)

        self._optimistic = {
            name: seq for name, seq in self._optimistic.items() if seq > result.sequence
        }

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def request_start(self, name: str) -> str:
        return self._begin("start", name, description=f"Start container '{name}'")

    def request_stop(self, name: str, force: bool = False) -> str:
        return self._begin(
            "stop", name, {"force": force}, description=f"Stop container '{name}'"
        )

    def request_restart(self, name: str) -> str:
        return self._begin("restart", name, description=f"Restart container '{name}'")

    def request_delete(self, name: str) -> str:
        return self._begin("delete", name, description=f"Delete container '{name}'")

    def request_clone(self, name: str, new_name: str) -> str:
        return self._begin(
            "clone",
            name,
            {"new_name": new_name},
            description=f"Clone container '{name}' to '{new_name}'",
        )

    def request_exec(self, name: str, command: list[str]) -> str:
        return self._begin(
            "exec",
            name,
            {"command": list(command or [])},
            description=f"Exec '{' '.join(command or [])}' in '{name}'",
        )

    def request_create(self, spec: CreateSpec) -> str:
        """
        Create a container (and start it, unless ``spec.start`` is false).

        Raises:
            ValidationError: Invalid name, type or image, or name already taken
        """
        validate_name(spec.name)
        if spec.instance_type not in INSTANCE_TYPES:
            raise ValidationError(f"Unknown instance type '{spec.instance_type}'")
        if not spec.image:
            raise ValidationError("An image is required")
        self._check_name_free(spec.name)

        operation_id = self.operations.begin(
            "create",
            None,
            {"spec": spec},
            description=f"Create container '{spec.name}' from {spec.image}",
        )
        self._submit(operation_id)
        return operation_id

    def cancel_operation(self, operation_id: str) -> Operation:
        """
        Cancel an operation.

        The operation is ``cancelled`` locally and its container unlocked at
        once; any later update for it is discarded. If LXD already accepted
        the job, one abort request is sent, without any claim that the
        remote action was undone.

        Raises:
            NotFoundError: Unknown operation id
            InvalidStateError: Operation already finished
        """
        operation = self.operations.cancel(operation_id)
        self._changed_operations.add(operation_id)

        worker = self._workers.pop(operation_id, None)
        if worker is not None:
            worker.cancel()

        remote_id = self._handles.pop(operation_id, None) or operation.remote_id
        if remote_id:
            task = asyncio.create_task(self._abort_remote(operation_id, remote_id))
            self._aborts.add(task)
            task.add_done_callback(self._aborts.discard)

        self._flush_notifications()
        return operation

    def request_refresh(self) -> None:
        """Ask for a full refresh on the next loop step."""
        self._refresh_pending = True
        self._events.put_nowait(_Wake())

    def _begin(
        self,
        kind: str,
        name: str,
        params: dict | None = None,
        description: str = "",
    ) -> str:
        # Conflict check precedes preconditions
        active = self.operations.active_for(name)
        if active is not None:
            raise ConflictError(
                f"Container '{name}' already has an active {active.kind} "
                f"operation ({active.id})"
            )
        self._validate(kind, name, params or {})

        operation_id = self.operations.begin(kind, name, params, description)
        self._submit(operation_id)
        return operation_id

    def _submit(self, operation_id: str) -> None:
        self._events.put_nowait(_Dispatch(operation_id))
        self._changed_operations.add(operation_id)
        self._flush_notifications()

    def _validate(self, kind: str, name: str, params: dict) -> None:
        container = self.containers.get(name)
        if container is None:
            raise ValidationError(f"Unknown container '{name}'")

        status = container.status
        if kind == "start" and status == "Running":
            raise ValidationError(f"Container '{name}' is already running")
        if kind == "stop" and status == "Stopped":
            raise ValidationError(f"Container '{name}' is already stopped")
        if kind in ("restart", "exec") and status != "Running":
            raise ValidationError(
                f"Container '{name}' must be running to {kind} (status: {status})"
            )
        if kind == "delete" and status == "Running":
            raise ValidationError(
                f"Container '{name}' is running. Stop it before deleting."
            )
        if kind == "exec" and not params.get("command"):
            raise ValidationError("A command is required")
        if kind == "clone":
            new_name = params.get("new_name") or ""
            validate_name(new_name)
            self._check_name_free(new_name)

    def _check_name_free(self, name: str) -> None:
        if name in self.containers:
            raise ValidationError(f"Container '{name}' already exists")
        for operation in self.operations.active():
            if operation.kind == "create" and operation.params["spec"].name == name:
                raise ValidationError(f"Container '{name}' is already being created")
            if operation.kind == "clone" and operation.params["new_name"] == name:
                raise ValidationError(f"Container '{name}' is already being created")
