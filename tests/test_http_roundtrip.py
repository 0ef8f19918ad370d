"""Tests gegen einen echten HTTP-Server auf einem freien Port."""
import json
import os
import socket
import threading
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest import mock
from urllib.parse import parse_qs, urlparse

from registry_client_lib import Client, RegistryTransportError, StatusCodeError
from registry_models import ClientConfig, Registrant


def _bypass_proxies(test: unittest.TestCase) -> None:
    patcher = mock.patch.dict(os.environ, {"NO_PROXY": "127.0.0.1", "no_proxy": "127.0.0.1"})
    patcher.start()
    test.addCleanup(patcher.stop)


class FakeRegistry:
    """Minimale Registry mit dem Pfadschema /api/v1/..."""

    def __init__(self, token: str):
        self.token = token
        self.entries = {}
        self.pings = []
        self._lock = threading.Lock()


def _make_handler(registry: FakeRegistry):
    class RegistryHandler(BaseHTTPRequestHandler):
        def log_message(self, format, *args):
            pass

        def _reply(self, status: int, data=None):
            body = json.dumps(data).encode() if data is not None else b""
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _authorized(self) -> bool:
            length = int(self.headers.get("Content-Length", 0))
            self.body = self.rfile.read(length) if length else b""
            if self.headers.get("X-Registry-Token") != registry.token:
                self._reply(401, {"error": "unauthorized"})
                return False
            return True

        def _read_json(self):
            return json.loads(self.body)

        def do_POST(self):
            if not self._authorized():
                return
            if urlparse(self.path).path != "/api/v1/register":
                return self._reply(404, {"error": "not found"})
            data = self._read_json()
            with registry._lock:
                registry.entries[data["id"]] = data["address"]
            self._reply(200)

        def do_DELETE(self):
            if not self._authorized():
                return
            data = self._read_json()
            with registry._lock:
                registry.entries.pop(data["id"], None)
            self._reply(204)

        def do_PUT(self):
            if not self._authorized():
                return
            service_id = parse_qs(urlparse(self.path).query)["id"][0]
            with registry._lock:
                if service_id not in registry.entries:
                    return self._reply(404, {"error": "not registered"})
                registry.pings.append(service_id)
            self._reply(200)

        def do_GET(self):
            if not self._authorized():
                return
            service_id = parse_qs(urlparse(self.path).query)["id"][0]
            with registry._lock:
                address = registry.entries.get(service_id)
            if address is None:
                return self._reply(404, {"error": "not found"})
            self._reply(200, {"id": service_id, "address": address})

    return RegistryHandler


class TestHttpRoundtrip(unittest.TestCase):
    def setUp(self) -> None:
        _bypass_proxies(self)
        self.registry = FakeRegistry(token="secret")
        self.server = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(self.registry))
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        host, port = self.server.server_address
        self.base_url = f"http://{host}:{port}/"

    def tearDown(self) -> None:
        self.server.shutdown()
        self.server.server_close()
        self.thread.join(timeout=2)

    def test_lifecycle(self) -> None:
        svc_a = Client(self.base_url, "secret", "svc-a")
        svc_b = Client(self.base_url, "secret", "svc-b")

        svc_a.register("http://10.0.0.1:9000")
        svc_b.register("http://10.0.0.2:9000")
        svc_a.ping()

        self.assertEqual(svc_a.query("svc-b"), Registrant(id="svc-b", address="http://10.0.0.2:9000"))
        self.assertEqual(self.registry.pings, ["svc-a"])

        svc_a.deregister()
        self.assertNotIn("svc-a", self.registry.entries)
        with self.assertRaises(StatusCodeError) as ctx:
            svc_a.ping()
        self.assertEqual(ctx.exception.status_code, 404)

    def test_wrong_token_is_rejected(self) -> None:
        client = Client(self.base_url, "wrong", "svc-a")
        with self.assertRaises(StatusCodeError) as ctx:
            client.register("http://10.0.0.1:9000")
        self.assertEqual(ctx.exception.status_code, 401)

    def test_query_unknown_id(self) -> None:
        client = Client(self.base_url, "secret", "svc-a")
        with self.assertRaises(StatusCodeError) as ctx:
            client.query("nobody")
        self.assertEqual(ctx.exception.status_code, 404)


class TestConnectionRefused(unittest.TestCase):
    def test_unreachable_registry_is_transport_error(self) -> None:
        _bypass_proxies(self)
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        client = Client(f"http://127.0.0.1:{port}", "secret", "svc-a", config=ClientConfig(timeout=1))

        with self.assertRaises(RegistryTransportError):
            client.register("http://10.0.0.1:9000")


if __name__ == "__main__":
    unittest.main()
