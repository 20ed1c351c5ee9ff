import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from lxc_client.client import LxdApiClient
from lxc_common.config import EngineConfig
from lxc_common.errors import (
    ConflictError,
    ConsoleError,
    InvalidStateError,
    NotFoundError,
    RemoteClientError,
    RemoteServerError,
    TransportError,
    ValidationError,
)
from lxc_common.models import DEFAULT_IMAGE, DEFAULT_LIMITS, CreateSpec
from lxc_engine.reconciler import Reconciler

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL = 15.0  # seconds between SSE keep-alive comments

# Global instances (initialized at startup or by configure())
engine: Reconciler | None = None
client: LxdApiClient | None = None
_owns_client = False


def configure(new_engine: Reconciler, new_client: LxdApiClient | None = None) -> None:
    """
    Install an engine built by the caller (the process entrypoint or tests).

    Args:
        new_engine: Engine to serve
        new_client: API client to close on shutdown, if the app should own it
    """
    global engine, client, _owns_client
    engine = new_engine
    client = new_client
    _owns_client = new_client is not None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Handles startup and shutdown events:
    - Startup: Build the engine from LXC_CONSOLE_* variables unless one was
      installed with configure(), then start it
    - Shutdown: Stop the engine and close the API client if we own it
    """
    global engine, client, _owns_client

    if engine is None:
        config = EngineConfig.from_env()
        client = LxdApiClient(config.endpoint, timeout=config.request_timeout)
        engine = Reconciler(client, config)
        _owns_client = True

    await engine.start()

    yield

    await engine.stop()
    if _owns_client and client is not None:
        client.close()


app = FastAPI(lifespan=lifespan)


def get_engine() -> Reconciler:
    """
    Get the global engine instance.

    Returns:
        The initialized Reconciler

    Raises:
        RuntimeError: If the engine is not initialized
    """
    if engine is None:
        raise RuntimeError("Engine not initialized")
    return engine


def http_error(error: ConsoleError) -> HTTPException:
    """Map an engine error to the HTTP response the facade returns."""
    if isinstance(error, (ConflictError, InvalidStateError)):
        status_code = 409
    elif isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, ValidationError):
        status_code = 400
    elif isinstance(error, (RemoteClientError, RemoteServerError, TransportError)):
        status_code = 502
    else:
        status_code = 500
    return HTTPException(
        status_code=status_code, detail={"error": error.message, "kind": error.kind}
    )


class CreateBody(BaseModel):
    name: str
    image: str = DEFAULT_IMAGE
    type: str = "container"
    config: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_LIMITS))
    start: bool = True


class CloneBody(BaseModel):
    new_name: str


class ExecBody(BaseModel):
    command: list[str]


def _accepted(operation_id: str) -> dict[str, str]:
    return {"operation_id": operation_id}


@app.get("/health")
async def health_check() -> dict[str, str]:
    """
    Health check endpoint.

    Returns:
        Dictionary with status="ok" if server is running
    """
    return {"status": "ok"}


@app.get("/status")
async def engine_status(eng: Reconciler = Depends(get_engine)) -> dict[str, Any]:
    """Engine status: connectivity and counts."""
    return {
        "running": eng.running,
        "connectivity_error": eng.connectivity_error,
        "containers": len(eng.containers),
        "active_operations": len(eng.operations.active()),
        "subscribers": eng.channel.subscriber_count,
    }


@app.get("/containers")
async def list_containers(
    eng: Reconciler = Depends(get_engine),
) -> list[dict[str, Any]]:
    """
    List known containers, sorted by name.

    Each entry carries the id of its active operation, if any.
    """
    result = []
    for container in eng.containers.all():
        data = container.to_dict()
        active = eng.operations.active_for(container.name)
        data["operation_id"] = active.id if active else None
        result.append(data)
    return result


@app.get("/containers/{name}")
async def get_container(
    name: str, eng: Reconciler = Depends(get_engine)
) -> dict[str, Any]:
    """
    Get one container.

    Raises:
        HTTPException: 404 if the container is unknown
    """
    container = eng.containers.get(name)
    if container is None:
        raise HTTPException(status_code=404, detail="Container not found")
    data = container.to_dict()
    active = eng.operations.active_for(name)
    data["operation_id"] = active.id if active else None
    return data


@app.post("/containers", status_code=202)
async def create_container(
    body: CreateBody, eng: Reconciler = Depends(get_engine)
) -> dict[str, str]:
    """Create (and by default start) a container."""
    spec = CreateSpec(
        name=body.name,
        image=body.image,
        instance_type=body.type,
        config=dict(body.config),
        start=body.start,
    )
    try:
        return _accepted(eng.request_create(spec))
    except ConsoleError as e:
        raise http_error(e) from e


@app.post("/containers/{name}/clone", status_code=202)
async def clone_container(
    name: str, body: CloneBody, eng: Reconciler = Depends(get_engine)
) -> dict[str, str]:
    """Copy a container under a new name."""
    try:
        return _accepted(eng.request_clone(name, body.new_name))
    except ConsoleError as e:
        raise http_error(e) from e


@app.post("/containers/{name}/exec", status_code=202)
async def exec_in_container(
    name: str, body: ExecBody, eng: Reconciler = Depends(get_engine)
) -> dict[str, str]:
    """
    Run a command in a running container.

    The operation's result holds the exit code and output locations once
    it succeeds.
    """
    try:
        return _accepted(eng.request_exec(name, body.command))
    except ConsoleError as e:
        raise http_error(e) from e


@app.post("/containers/{name}/{action}", status_code=202)
async def change_state(
    name: str,
    action: str,
    force: bool = False,
    eng: Reconciler = Depends(get_engine),
) -> dict[str, str]:
    """
    Start, stop or restart a container.

    Raises:
        HTTPException: 404 for an unknown action
    """
    try:
        if action == "start":
            operation_id = eng.request_start(name)
        elif action == "stop":
            operation_id = eng.request_stop(name, force=force)
        elif action == "restart":
            operation_id = eng.request_restart(name)
        else:
            raise HTTPException(status_code=404, detail=f"Unknown action: {action}")
    except ConsoleError as e:
        raise http_error(e) from e
    return _accepted(operation_id)


@app.delete("/containers/{name}", status_code=202)
async def delete_container(
    name: str, eng: Reconciler = Depends(get_engine)
) -> dict[str, str]:
    """Delete a stopped container."""
    try:
        return _accepted(eng.request_delete(name))
    except ConsoleError as e:
        raise http_error(e) from e


@app.get("/operations")
async def list_operations(
    eng: Reconciler = Depends(get_engine),
) -> list[dict[str, Any]]:
    """List operations, most recent first."""
    return [operation.to_dict() for operation in eng.operations.list()]


@app.get("/operations/{operation_id}")
async def get_operation(
    operation_id: str, eng: Reconciler = Depends(get_engine)
) -> dict[str, Any]:
    """
    Get one operation.

    Raises:
        HTTPException: 404 if the operation is unknown (or already pruned)
    """
    try:
        return eng.operations.get(operation_id).to_dict()
    except ConsoleError as e:
        raise http_error(e) from e


@app.delete("/operations/{operation_id}")
async def cancel_operation(
    operation_id: str, eng: Reconciler = Depends(get_engine)
) -> dict[str, Any]:
    """
    Cancel an operation.

    Raises:
        HTTPException: 404 if unknown, 409 if already finished
    """
    try:
        return eng.cancel_operation(operation_id).to_dict()
    except ConsoleError as e:
        raise http_error(e) from e


@app.post("/refresh", status_code=202)
async def refresh(eng: Reconciler = Depends(get_engine)) -> dict[str, str]:
    """Ask the engine for a full container refresh."""
    eng.request_refresh()
    return {"status": "refresh requested"}


async def stream_notifications(
    eng: Reconciler, request: Request | None = None
) -> AsyncGenerator[str, None]:
    """
    Stream change notifications as SSE.

    Args:
        eng: Engine whose channel to subscribe to
        request: Optional FastAPI request to check for client disconnection

    Yields:
        SSE-formatted event strings
    """
    with eng.channel.subscribe() as subscription:
        while True:
            try:
                notification = await asyncio.wait_for(
                    subscription.get(), KEEPALIVE_INTERVAL
                )
            except asyncio.TimeoutError:
                if request and await request.is_disconnected():
                    return
                yield ": keepalive\n\n"
                continue

            if notification is None:
                # Channel closed (engine stopping)
                return

            data = notification.to_dict()
            if notification.kind == "connectivity":
                data["error"] = eng.connectivity_error
            yield f"data: {json.dumps(data)}\n\n"

            if request and await request.is_disconnected():
                return


@app.get("/events")
async def events(
    request: Request, eng: Reconciler = Depends(get_engine)
) -> StreamingResponse:
    """
    Stream change notifications via Server-Sent Events (SSE).

    Each frame is ``{"type": "containers"|"operations"|"connectivity",
    "keys": [...], "timestamp": ...}``; clients re-read the affected
    resources. A slow client loses its oldest notifications, never blocks
    the engine.
    """
    return StreamingResponse(
        stream_notifications(eng, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
