"""
Unit tests for the FastAPI facade.

The engine is replaced with a Mock carrying real registries, so these
tests cover routing, request bodies and error mapping without running the
coordination loop.
"""

import asyncio
import json
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

import lxc_server.app as app_module
from lxc_common.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    RemoteServerError,
    TransportError,
    ValidationError,
)
from lxc_common.models import DEFAULT_IMAGE, DEFAULT_LIMITS, Container, Notification
from lxc_engine.containers import ContainerRegistry
from lxc_engine.notifications import ChangeChannel
from lxc_engine.operations import OperationRegistry
from lxc_server.app import app, get_engine, stream_notifications


@pytest.fixture
def mock_engine():
    """Create a mock engine with real registries."""
    engine = Mock()
    engine.running = True
    engine.connectivity_error = None
    engine.containers = ContainerRegistry()
    engine.containers.refresh(
        [
            Container(name="web1", status="Running", ipv4=["10.0.0.5"]),
            Container(name="db1", status="Stopped"),
        ]
    )
    engine.operations = OperationRegistry()
    engine.channel = ChangeChannel()
    for method in (
        "request_start",
        "request_stop",
        "request_restart",
        "request_delete",
        "request_clone",
        "request_exec",
        "request_create",
    ):
        getattr(engine, method).return_value = "op-1"
    return engine


@pytest.fixture
def client(mock_engine):
    """Create a test client bound to the mock engine (lifespan not run)."""
    app.dependency_overrides[get_engine] = lambda: mock_engine
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestReadRoutes:
    """Test the read-only endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_status(self, client, mock_engine):
        mock_engine.operations.begin("start", "db1")

        data = client.get("/status").json()

        assert data["running"] is True
        assert data["connectivity_error"] is None
        assert data["containers"] == 2
        assert data["active_operations"] == 1
        assert data["subscribers"] == 0

    def test_list_containers(self, client, mock_engine):
        operation_id = mock_engine.operations.begin("start", "db1")

        data = client.get("/containers").json()

        assert [c["name"] for c in data] == ["db1", "web1"]
        assert data[0]["operation_id"] == operation_id
        assert data[1]["operation_id"] is None
        assert data[1]["ipv4"] == ["10.0.0.5"]

    def test_get_container(self, client):
        data = client.get("/containers/web1").json()
        assert data["status"] == "Running"

    def test_get_unknown_container(self, client):
        assert client.get("/containers/ghost").status_code == 404

    def test_operations(self, client, mock_engine):
        operation_id = mock_engine.operations.begin("stop", "web1")

        listed = client.get("/operations").json()
        single = client.get(f"/operations/{operation_id}").json()

        assert [op["id"] for op in listed] == [operation_id]
        assert single["kind"] == "stop"
        assert single["state"] == "submitted"

    def test_unknown_operation(self, client):
        response = client.get("/operations/missing")

        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "not_found"


class TestIntentRoutes:
    """Test the endpoints that submit operations."""

    @pytest.mark.parametrize("action", ["start", "restart"])
    def test_state_actions(self, client, mock_engine, action):
        response = client.post(f"/containers/web1/{action}")

        assert response.status_code == 202
        assert response.json() == {"operation_id": "op-1"}
        getattr(mock_engine, f"request_{action}").assert_called_once_with("web1")

    def test_stop(self, client, mock_engine):
        client.post("/containers/web1/stop")
        mock_engine.request_stop.assert_called_once_with("web1", force=False)

    def test_stop_force(self, client, mock_engine):
        client.post("/containers/web1/stop", params={"force": "true"})
        mock_engine.request_stop.assert_called_once_with("web1", force=True)

    def test_unknown_action(self, client):
        assert client.post("/containers/web1/freeze").status_code == 404

    def test_delete(self, client, mock_engine):
        response = client.delete("/containers/db1")

        assert response.status_code == 202
        mock_engine.request_delete.assert_called_once_with("db1")

    def test_clone(self, client, mock_engine):
        response = client.post("/containers/web1/clone", json={"new_name": "web2"})

        assert response.status_code == 202
        mock_engine.request_clone.assert_called_once_with("web1", "web2")

    def test_exec(self, client, mock_engine):
        response = client.post("/containers/web1/exec", json={"command": ["ls", "-l"]})

        assert response.status_code == 202
        mock_engine.request_exec.assert_called_once_with("web1", ["ls", "-l"])

    def test_create_defaults(self, client, mock_engine):
        response = client.post("/containers", json={"name": "new1"})

        assert response.status_code == 202
        spec = mock_engine.request_create.call_args[0][0]
        assert spec.name == "new1"
        assert spec.image == DEFAULT_IMAGE
        assert spec.instance_type == "container"
        assert spec.config == DEFAULT_LIMITS
        assert spec.start is True

    def test_create_custom(self, client, mock_engine):
        client.post(
            "/containers",
            json={
                "name": "vm1",
                "image": "debian/12",
                "type": "virtual-machine",
                "config": {"limits.cpu": "4"},
                "start": False,
            },
        )

        spec = mock_engine.request_create.call_args[0][0]
        assert spec.instance_type == "virtual-machine"
        assert spec.config == {"limits.cpu": "4"}
        assert spec.start is False

    def test_create_requires_name(self, client):
        assert client.post("/containers", json={}).status_code == 422

    def test_refresh(self, client, mock_engine):
        response = client.post("/refresh")

        assert response.status_code == 202
        mock_engine.request_refresh.assert_called_once_with()

    def test_cancel(self, client, mock_engine):
        operation_id = mock_engine.operations.begin("start", "db1")
        mock_engine.cancel_operation.return_value = mock_engine.operations.cancel(
            operation_id
        )

        response = client.delete(f"/operations/{operation_id}")

        assert response.status_code == 200
        assert response.json()["state"] == "cancelled"

    def test_cancel_finished(self, client, mock_engine):
        mock_engine.cancel_operation.side_effect = InvalidStateError("already finished")

        response = client.delete("/operations/op-1")

        assert response.status_code == 409
        assert response.json()["detail"] == {
            "error": "already finished",
            "kind": "invalid_state",
        }


class TestErrorMapping:
    """Test that engine errors become the right HTTP status."""

    @pytest.mark.parametrize(
        "error, status_code",
        [
            (ConflictError("busy"), 409),
            (InvalidStateError("running"), 409),
            (NotFoundError("no such container"), 404),
            (ValidationError("bad name"), 400),
            (RemoteServerError("lxd broke"), 502),
            (TransportError("unreachable"), 502),
        ],
    )
    def test_status_codes(self, client, mock_engine, error, status_code):
        mock_engine.request_start.side_effect = error

        response = client.post("/containers/web1/start")

        assert response.status_code == status_code
        assert response.json()["detail"]["error"] == error.message


class TestStreamNotifications:
    """Test the SSE generator."""

    @pytest.mark.asyncio
    async def test_frames(self, mock_engine):
        stream = stream_notifications(mock_engine)
        pending = asyncio.create_task(stream.__anext__())
        await asyncio.sleep(0.01)

        mock_engine.channel.publish(Notification("containers", ("web1",)))
        frame = await asyncio.wait_for(pending, 1.0)

        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        data = json.loads(frame[6:])
        assert data["type"] == "containers"
        assert data["keys"] == ["web1"]
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_connectivity_frame_carries_error(self, mock_engine):
        mock_engine.connectivity_error = "unreachable"
        stream = stream_notifications(mock_engine)
        pending = asyncio.create_task(stream.__anext__())
        await asyncio.sleep(0.01)

        mock_engine.channel.publish(Notification("connectivity"))
        data = json.loads((await asyncio.wait_for(pending, 1.0))[6:])

        assert data["error"] == "unreachable"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_keepalive(self, mock_engine, monkeypatch):
        monkeypatch.setattr(app_module, "KEEPALIVE_INTERVAL", 0.01)
        stream = stream_notifications(mock_engine)

        frame = await asyncio.wait_for(stream.__anext__(), 1.0)

        assert frame == ": keepalive\n\n"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_ends_when_channel_closes(self, mock_engine):
        stream = stream_notifications(mock_engine)
        pending = asyncio.create_task(stream.__anext__())
        await asyncio.sleep(0.01)

        mock_engine.channel.close()

        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(pending, 1.0)
        assert mock_engine.channel.subscriber_count == 0
