"""
HTTP client for the console server.

Thin ``requests`` wrappers around the server's routes. Network and HTTP
errors are raised as ``RuntimeError`` with the server's message.
"""

import json
from collections.abc import Generator
from typing import Any

import requests

DEFAULT_SERVER_URL = "http://localhost:8000"


def _error_message(response: requests.Response) -> str:
    try:
        detail = response.json().get("detail")
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(detail, dict):
        return detail.get("error") or f"HTTP {response.status_code}"
    return str(detail or f"HTTP {response.status_code}")


def _call(
    method: str,
    path: str,
    server_url: str,
    body: dict[str, Any] | None = None,
    params: dict[str, Any] | None = None,
    timeout: float = 30,
) -> Any:
    try:
        response = requests.request(
            method, f"{server_url}{path}", json=body, params=params, timeout=timeout
        )
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error contacting console server: {e}")

    if response.status_code >= 400:
        raise RuntimeError(_error_message(response))
    return response.json()


def list_containers(server_url: str = DEFAULT_SERVER_URL) -> list[dict[str, Any]]:
    """List containers known to the server."""
    return _call("GET", "/containers", server_url)


def list_operations(server_url: str = DEFAULT_SERVER_URL) -> list[dict[str, Any]]:
    """List operations, most recent first."""
    return _call("GET", "/operations", server_url)


def get_operation(operation_id: str, server_url: str = DEFAULT_SERVER_URL) -> dict[str, Any]:
    return _call("GET", f"/operations/{operation_id}", server_url)


def get_status(server_url: str = DEFAULT_SERVER_URL) -> dict[str, Any]:
    return _call("GET", "/status", server_url)


def change_state(
    name: str, action: str, server_url: str = DEFAULT_SERVER_URL, force: bool = False
) -> str:
    """
    Request start, stop or restart of a container.

    Returns:
        str: Operation id
    """
    params = {"force": "true"} if force else None
    result = _call("POST", f"/containers/{name}/{action}", server_url, params=params)
    return result["operation_id"]


def delete_container(name: str, server_url: str = DEFAULT_SERVER_URL) -> str:
    return _call("DELETE", f"/containers/{name}", server_url)["operation_id"]


def clone_container(
    name: str, new_name: str, server_url: str = DEFAULT_SERVER_URL
) -> str:
    result = _call(
        "POST", f"/containers/{name}/clone", server_url, body={"new_name": new_name}
    )
    return result["operation_id"]


def create_container(
    spec: dict[str, Any], server_url: str = DEFAULT_SERVER_URL
) -> str:
    """
    Request creation of a container.

    Args:
        spec: Body for ``POST /containers`` (name, image, type, config, start)

    Returns:
        str: Operation id
    """
    return _call("POST", "/containers", server_url, body=spec)["operation_id"]


def exec_command(
    name: str, command: list[str], server_url: str = DEFAULT_SERVER_URL
) -> str:
    result = _call(
        "POST", f"/containers/{name}/exec", server_url, body={"command": command}
    )
    return result["operation_id"]


def cancel_operation(
    operation_id: str, server_url: str = DEFAULT_SERVER_URL
) -> dict[str, Any]:
    return _call("DELETE", f"/operations/{operation_id}", server_url)


def request_refresh(server_url: str = DEFAULT_SERVER_URL) -> None:
    _call("POST", "/refresh", server_url)


def watch_events(
    server_url: str = DEFAULT_SERVER_URL,
) -> Generator[dict, None, None]:
    """
    Stream change notifications via Server-Sent Events.

    Yields:
        dict: Notifications ``{"type", "keys", "timestamp"}``

    Raises:
        RuntimeError: If the stream cannot be opened or breaks
    """
    try:
        response = requests.get(f"{server_url}/events", stream=True, timeout=(10, None))
        response.raise_for_status()

        # Parse SSE format: "data: {...}\n\n"; ": ..." lines are keep-alives
        for line in response.iter_lines(decode_unicode=True):
            if line and line.startswith("data: "):
                yield json.loads(line[6:])
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error watching console server: {e}")
