"""
Unix socket transport for requests.

LXD listens on a local unix socket. This module provides a requests
``HTTPAdapter`` that sends every request mounted on the ``http+unix://``
prefix through that socket, and the lookup of the default socket path.
"""

import os
import socket
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool

from lxc_common.errors import TransportError

UNIX_BASE_URL = "http+unix://lxd"

SOCKET_PATHS = (
    "/var/snap/lxd/common/lxd/unix.socket",
    "/var/lib/lxd/unix.socket",
)


def find_socket_path() -> str:
    """
    Locate the LXD unix socket.

    Returns:
        The ``LXD_SOCKET`` environment value if set, otherwise the first
        standard location that exists

    Raises:
        TransportError: If no socket can be found
    """
    env_path = os.environ.get("LXD_SOCKET")
    if env_path:
        return env_path

    for path in SOCKET_PATHS:
        if Path(path).exists():
            return path

    raise TransportError(
        "LXD socket not found at standard locations: " + ", ".join(SOCKET_PATHS)
    )


class UnixHTTPConnection(HTTPConnection):
    """HTTP connection over a unix domain socket."""

    def __init__(self, socket_path: str, timeout: float | None = None):
        super().__init__("localhost", timeout=timeout)
        self.socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


class UnixHTTPConnectionPool(HTTPConnectionPool):
    """Connection pool whose connections all go to one unix socket."""

    def __init__(self, socket_path: str, timeout: float | None = None, maxsize: int = 10):
        super().__init__("localhost", timeout=timeout, maxsize=maxsize)
        self.socket_path = socket_path
        self.socket_timeout = timeout

    def _new_conn(self) -> UnixHTTPConnection:
        return UnixHTTPConnection(self.socket_path, timeout=self.socket_timeout)


class UnixSocketAdapter(HTTPAdapter):
    """
    requests adapter routing all requests to a unix socket.

    The host part of the URL is ignored; only the path and query are sent.
    """

    def __init__(self, socket_path: str, timeout: float | None = None, pool_size: int = 10):
        self.socket_path = socket_path
        self.timeout = timeout
        self.pool_size = pool_size
        self._pool: UnixHTTPConnectionPool | None = None
        super().__init__()

    def _get_pool(self) -> UnixHTTPConnectionPool:
        if self._pool is None:
            self._pool = UnixHTTPConnectionPool(
                self.socket_path, timeout=self.timeout, maxsize=self.pool_size
            )
        return self._pool

    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return self._get_pool()

    def get_connection(self, url, proxies=None):
        return self._get_pool()

    def close(self) -> None:
        if self._pool is not None:
            self._pool.close()
            self._pool = None
        super().close()


def create_session(
    endpoint: str, timeout: float | None = None
) -> tuple[requests.Session, str]:
    """
    Create a session for an LXD endpoint.

    Args:
        endpoint: Unix socket path, or an http(s):// base URL
        timeout: Socket timeout for unix connections

    Returns:
        Tuple of (session, base_url)
    """
    session = requests.Session()
    if endpoint.startswith(("http://", "https://")):
        return session, endpoint.rstrip("/")

    session.mount("http+unix://", UnixSocketAdapter(endpoint, timeout=timeout))
    return session, UNIX_BASE_URL

