"""
Shared fixtures for unit tests.

Provides an in-memory stand-in for the LXD API client. It is called from
worker threads exactly like ``LxdApiClient`` and records every call.
"""

import asyncio
import threading
import time
from dataclasses import replace

import pytest
import pytest_asyncio

from lxc_client.client import ApiRequest, SubmitResult
from lxc_common.config import EngineConfig, RetryConfig
from lxc_common.models import Container, OperationStatus
from lxc_engine.reconciler import Reconciler

SUCCEEDED = OperationStatus(state="succeeded", progress=100)
RUNNING = OperationStatus(state="running", progress=10)


class FakeLxdClient:
    """
    In-memory LXD.

    Attributes:
        containers: Current containers by name (what the next list returns)
        submit_errors: Exceptions raised by the next submit calls, in order
        path_errors: Exception raised once by the next submit to a given path
        list_errors: Exceptions raised by the next list calls, in order
        script: Statuses (or exceptions) a new remote operation goes through;
                the last entry repeats
        sync: Answer submits synchronously instead of with a remote operation
        apply_effects: Apply a request's effect to ``containers`` on submit
        cancel_error: Exception raised by cancel_operation
        list_gate: Event a list call waits on after taking its snapshot
    """

    def __init__(self, containers=None):
        self.containers = {c.name: c for c in containers or []}
        self.submit_errors = []
        self.path_errors = {}
        self.list_errors = []
        self.list_gate = None
        self.script = [SUCCEEDED]
        self.sync = False
        self.apply_effects = True
        self.cancel_error = None
        self.calls = []
        self.submitted = []
        self.operations = {}
        self.closed = False
        self._next_id = 0
        self._lock = threading.Lock()

    def calls_to(self, method):
        return [call for call in list(self.calls) if call[0] == method]

    def list_containers(self):
        with self._lock:
            self.calls.append(("list_containers",))
            if self.list_errors:
                raise self.list_errors.pop(0)
            snapshot = [replace(c, ipv4=list(c.ipv4)) for c in self.containers.values()]
            gate = self.list_gate
        if gate is not None:
            gate.wait(5.0)
        return snapshot

    def submit(self, request: ApiRequest) -> SubmitResult:
        with self._lock:
            self.calls.append(("submit", request))
            if self.submit_errors:
                raise self.submit_errors.pop(0)
            if request.path in self.path_errors:
                raise self.path_errors.pop(request.path)
            self.submitted.append(request)
            if self.apply_effects:
                self._apply(request)
            if self.sync:
                return SubmitResult(metadata={"done": True})
            self._next_id += 1
            remote_id = f"op-{self._next_id}"
            self.operations[remote_id] = list(self.script)
            return SubmitResult(remote_id=remote_id)

    def _next_status(self, remote_id):
        steps = self.operations[remote_id]
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if isinstance(step, Exception):
            raise step
        return replace(step, remote_id=remote_id)

    def get_operation(self, remote_id):
        with self._lock:
            self.calls.append(("get_operation", remote_id))
            return self._next_status(remote_id)

    def wait_operation(self, remote_id, timeout):
        with self._lock:
            self.calls.append(("wait_operation", remote_id, timeout))
            return self._next_status(remote_id)

    def cancel_operation(self, remote_id):
        with self._lock:
            self.calls.append(("cancel_operation", remote_id))
            if self.cancel_error is not None:
                raise self.cancel_error

    def close(self):
        self.closed = True

    def _apply(self, request: ApiRequest) -> None:
        parts = request.path.split("/")
        body = request.body or {}
        if request.method == "PUT" and parts[-1] == "state":
            name = parts[3]
            status = "Stopped" if body["action"] == "stop" else "Running"
            self.containers[name] = replace(self.containers[name], status=status)
        elif request.method == "DELETE" and parts[2] == "instances":
            self.containers.pop(parts[3], None)
        elif request.method == "POST" and request.path == "/1.0/instances":
            name = body["name"]
            if body["source"]["type"] == "copy":
                source = self.containers[body["source"]["source"]]
                self.containers[name] = replace(source, name=name, status="Stopped")
            else:
                self.containers[name] = Container(
                    name=name, status="Stopped", instance_type=body["type"]
                )


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Wait until ``predicate()`` is true, failing the test after ``timeout``."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """Async helper polling a condition while the engine runs."""
    return wait_for


@pytest.fixture
def fake_client():
    """Fake LXD with one running and one stopped container."""
    return FakeLxdClient(
        [
            Container(name="web1", status="Running", ipv4=["10.0.0.2"]),
            Container(name="db1", status="Stopped"),
        ]
    )


@pytest.fixture
def engine_config():
    """Engine settings with short timings; heartbeat and prune effectively off."""
    return EngineConfig(
        refresh_interval=60.0,
        poll_interval=0.01,
        operation_timeout=5.0,
        operation_retention=60.0,
        prune_interval=60.0,
        retry=RetryConfig(base_delay=0.01, multiplier=2.0, max_delay=0.05, max_attempts=4),
    )


@pytest_asyncio.fixture
async def engine(fake_client, engine_config):
    """A started reconciler whose initial refresh has completed."""
    reconciler = Reconciler(fake_client, engine_config)
    await reconciler.start()
    await wait_for(
        lambda: fake_client.calls_to("list_containers")
        and reconciler._refresh_task is None
    )
    yield reconciler
    await reconciler.stop()
