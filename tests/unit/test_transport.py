"""
Unit tests for lxc_client.transport.

Includes a round trip through a real unix socket served by a throwaway
HTTP server thread.
"""

import json
import os
import socketserver
import tempfile
import threading
from http.server import BaseHTTPRequestHandler

import pytest

from lxc_client.client import LxdApiClient
from lxc_client.transport import (
    UNIX_BASE_URL,
    UnixSocketAdapter,
    create_session,
    find_socket_path,
)
from lxc_common.errors import TransportError


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = json.dumps(
            {
                "type": "sync",
                "status_code": 200,
                "metadata": {"api_version": "1.0", "path": self.path},
            }
        ).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


class _UnixHTTPServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    daemon_threads = True

    def get_request(self):
        request, _ = super().get_request()
        # BaseHTTPRequestHandler expects a (host, port) client address
        return request, ("local", 0)


@pytest.fixture
def unix_server():
    """Serve a minimal LXD-like API on a temporary unix socket."""
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "unix.socket")
        server = _UnixHTTPServer(path, _Handler)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            yield path
        finally:
            server.shutdown()
            server.server_close()


class TestFindSocketPath:
    """Test suite for socket path resolution."""

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("LXD_SOCKET", "/tmp/custom.socket")
        assert find_socket_path() == "/tmp/custom.socket"

    def test_first_existing_standard_path(self, monkeypatch, tmp_path):
        present = tmp_path / "lib.socket"
        present.touch()
        monkeypatch.delenv("LXD_SOCKET", raising=False)
        monkeypatch.setattr(
            "lxc_client.transport.SOCKET_PATHS",
            (str(tmp_path / "snap.socket"), str(present)),
        )

        assert find_socket_path() == str(present)

    def test_no_socket(self, monkeypatch, tmp_path):
        monkeypatch.delenv("LXD_SOCKET", raising=False)
        monkeypatch.setattr(
            "lxc_client.transport.SOCKET_PATHS", (str(tmp_path / "missing.socket"),)
        )

        with pytest.raises(TransportError):
            find_socket_path()


class TestCreateSession:
    """Test suite for create_session."""

    def test_https_endpoint(self):
        session, base_url = create_session("https://lxd.example.com:8443/")

        assert base_url == "https://lxd.example.com:8443"
        assert "http+unix://" not in session.adapters

    def test_socket_endpoint(self):
        session, base_url = create_session("/var/lib/lxd/unix.socket", timeout=3.0)

        assert base_url == UNIX_BASE_URL
        adapter = session.get_adapter(f"{UNIX_BASE_URL}/1.0")
        assert isinstance(adapter, UnixSocketAdapter)
        assert adapter.socket_path == "/var/lib/lxd/unix.socket"
        assert adapter.timeout == 3.0


class TestUnixSocketRoundTrip:
    """Test requests through a real unix socket."""

    def test_ping_over_socket(self, unix_server):
        with LxdApiClient(unix_server, timeout=5.0) as client:
            metadata = client.ping()

        assert metadata["api_version"] == "1.0"
        assert metadata["path"] == "/1.0"

    def test_query_string_forwarded(self, unix_server):
        with LxdApiClient(unix_server, timeout=5.0) as client:
            envelope = client._request("GET", "/1.0/instances", params={"recursion": 2})

        assert envelope["metadata"]["path"] == "/1.0/instances?recursion=2"

    def test_missing_socket_is_transport_error(self, tmp_path):
        with LxdApiClient(str(tmp_path / "nothing.socket"), timeout=1.0) as client:
            with pytest.raises(TransportError):
                client.ping()
