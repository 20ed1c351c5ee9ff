"""
LXD REST API client.

Low-level, synchronous client for the LXD daemon's ``/1.0`` API, over the
local unix socket or an HTTPS endpoint. Every call returns parsed data or
raises one of the ``lxc_common.errors`` transport/remote errors; callers
run it on worker threads so the coordination loop never blocks.
"""

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import requests

from lxc_common.errors import (
    ProtocolError,
    RemoteClientError,
    RemoteServerError,
    TransportError,
)
from lxc_common.models import Container, Operation, OperationStatus

from .transport import create_session, find_socket_path

logger = logging.getLogger(__name__)

API_PREFIX = "/1.0"
STATE_ACTION_TIMEOUT = 30  # seconds LXD waits for a clean start/stop


@dataclass
class ApiRequest:
    """A mutating call: HTTP method, path and JSON body."""

    method: str
    path: str
    body: dict[str, Any] | None = None


@dataclass
class SubmitResult:
    """
    Outcome of a submitted request.

    ``remote_id`` is set when LXD accepted the request as a background
    operation; otherwise the request completed synchronously and
    ``metadata`` holds its result.
    """

    remote_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_async(self) -> bool:
        return self.remote_id is not None


def _instance_path(name: str) -> str:
    return f"{API_PREFIX}/instances/{quote(name, safe='')}"


def _operation_path(remote_id: str) -> str:
    # Accept both bare ids and the "/1.0/operations/<id>" paths LXD returns
    return f"{API_PREFIX}/operations/{quote(remote_id.rsplit('/', 1)[-1], safe='')}"


def state_request(name: str, action: str, force: bool = False) -> ApiRequest:
    """Build the request changing an instance's state (start, stop, restart)."""
    body: dict[str, Any] = {"action": action, "timeout": STATE_ACTION_TIMEOUT}
    if action == "stop":
        body["force"] = force
    return ApiRequest("PUT", f"{_instance_path(name)}/state", body)


def build_request(operation: Operation) -> ApiRequest:
    """
    Translate an operation into the LXD call that performs it.

    Args:
        operation: Operation with its kind, target and params

    Returns:
        The request to submit

    Raises:
        ValueError: If the operation kind is unknown
    """
    kind = operation.kind
    name = operation.target
    params = operation.params

    if kind in ("start", "stop", "restart"):
        return state_request(name, kind, force=bool(params.get("force", False)))

    if kind == "delete":
        return ApiRequest("DELETE", _instance_path(name))

    if kind == "create":
        spec = params["spec"]
        return ApiRequest(
            "POST",
            f"{API_PREFIX}/instances",
            {
                "name": spec.name,
                "type": spec.instance_type,
                "source": {"type": "image", "alias": spec.image},
                "config": dict(spec.config),
            },
        )

    if kind == "clone":
        return ApiRequest(
            "POST",
            f"{API_PREFIX}/instances",
            {
                "name": params["new_name"],
                "source": {"type": "copy", "source": name},
            },
        )

    if kind == "exec":
        return ApiRequest(
            "POST",
            f"{_instance_path(name)}/exec",
            {
                "command": list(params["command"]),
                "environment": dict(params.get("environment") or {}),
                "wait-for-websocket": False,
                "record-output": True,
                "interactive": False,
            },
        )

    raise ValueError(f"Unknown operation kind: {kind}")


class LxdApiClient:
    """
    Client for one LXD endpoint.

    Stateless apart from the ``requests.Session`` it owns, which is
    released by ``close()``.
    """

    def __init__(
        self,
        endpoint: str | None = None,
        timeout: float = 30.0,
        cert: tuple[str, str] | None = None,
        verify: bool | str = True,
        session: requests.Session | None = None,
        base_url: str | None = None,
    ):
        """
        Initialize the client.

        Args:
            endpoint: Unix socket path or https:// URL (default: autodetect socket)
            timeout: Per-request timeout in seconds
            cert: Client certificate and key paths for HTTPS endpoints
            verify: CA bundle path or bool for HTTPS server verification
            session: Pre-built session (tests)
            base_url: Base URL to use with a pre-built session
        """
        self.timeout = timeout
        if session is not None:
            self.session = session
            self.base_url = base_url or "http://lxd"
        else:
            self.session, self.base_url = create_session(
                endpoint or find_socket_path(), timeout=timeout
            )
            if cert is not None:
                self.session.cert = cert
            self.session.verify = verify
        self.endpoint = endpoint

    def close(self) -> None:
        """Release the session and its pooled connections."""
        self.session.close()

    def __enter__(self) -> "LxdApiClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """
        Perform one HTTP call and return the parsed LXD envelope.

        Raises:
            TransportError: Connection or timeout failure
            ProtocolError: Body is not a valid LXD envelope
            RemoteClientError: LXD rejected the request (4xx)
            RemoteServerError: LXD failed to process the request (5xx)
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=body,
                params=params,
                timeout=timeout or self.timeout,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransportError(f"{method} {path}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProtocolError(f"{method} {path}: {e}") from e

        try:
            envelope = response.json()
        except ValueError as e:
            if response.status_code >= 500:
                raise RemoteServerError(
                    f"{method} {path}: HTTP {response.status_code}",
                    status_code=response.status_code,
                ) from e
            raise ProtocolError(
                f"{method} {path}: response is not JSON (HTTP {response.status_code})"
            ) from e

        if not isinstance(envelope, dict) or "type" not in envelope:
            raise ProtocolError(f"{method} {path}: unexpected response shape")

        status_code = envelope.get("error_code") or response.status_code
        if envelope["type"] == "error" or status_code >= 400:
            message = envelope.get("error") or f"HTTP {status_code}"
            if status_code >= 500:
                raise RemoteServerError(message, status_code=status_code)
            raise RemoteClientError(message, status_code=status_code)

        if envelope["type"] not in ("sync", "async"):
            raise ProtocolError(
                f"{method} {path}: unexpected response type {envelope['type']!r}"
            )

        return envelope

    def _metadata(self, envelope: dict[str, Any], expected: type) -> Any:
        metadata = envelope.get("metadata")
        if not isinstance(metadata, expected):
            raise ProtocolError(
                f"Expected {expected.__name__} metadata, got {type(metadata).__name__}"
            )
        return metadata

    def ping(self) -> dict[str, Any]:
        """Fetch server information (used as a health check)."""
        return self._metadata(self._request("GET", API_PREFIX), dict)

    def list_containers(self) -> list[Container]:
        """
        List all instances with their state.

        Returns:
            Containers built from ``GET /1.0/instances?recursion=2``
        """
        envelope = self._request(
            "GET", f"{API_PREFIX}/instances", params={"recursion": 2}
        )
        try:
            return [
                Container.from_api(item) for item in self._metadata(envelope, list)
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ProtocolError(f"Malformed instance list: {e}") from e

    def submit(self, request: ApiRequest) -> SubmitResult:
        """
        Issue a mutating request.

        Returns:
            SubmitResult with ``remote_id`` for background operations, or
            the synchronous result metadata
        """
        envelope = self._request(request.method, request.path, body=request.body)
        logger.debug(
            f"{request.method} {request.path} -> {envelope['type']} "
            f"{envelope.get('operation') or ''}"
        )

        if envelope["type"] == "async":
            operation = envelope.get("operation")
            metadata = envelope.get("metadata")
            remote_id = None
            if isinstance(metadata, dict) and metadata.get("id"):
                remote_id = metadata["id"]
            elif operation:
                remote_id = operation.rsplit("/", 1)[-1]
            if not remote_id:
                raise ProtocolError(
                    f"{request.method} {request.path}: async response without operation"
                )
            return SubmitResult(remote_id=remote_id)

        metadata = envelope.get("metadata")
        return SubmitResult(metadata=metadata if isinstance(metadata, dict) else {})

    def get_operation(self, remote_id: str) -> OperationStatus:
        """Poll a background operation once."""
        envelope = self._request("GET", _operation_path(remote_id))
        return self._status(envelope)

    def wait_operation(self, remote_id: str, timeout: float) -> OperationStatus:
        """
        Long-poll a background operation.

        LXD answers when the operation finishes or after ``timeout`` seconds,
        whichever comes first.
        """
        envelope = self._request(
            "GET",
            f"{_operation_path(remote_id)}/wait",
            params={"timeout": max(1, int(timeout))},
            timeout=timeout + self.timeout,
        )
        return self._status(envelope)

    def cancel_operation(self, remote_id: str) -> None:
        """Ask LXD to abort a background operation."""
        self._request("DELETE", _operation_path(remote_id))

    def _status(self, envelope: dict[str, Any]) -> OperationStatus:
        try:
            return OperationStatus.from_lxd(self._metadata(envelope, dict))
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed operation: {e}") from e
