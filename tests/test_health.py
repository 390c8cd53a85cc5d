import json
import re
import unittest

from fakes import build_request, fetch, http_exchange, parse_response, unused_port
from onion_proxy import (
    GatewayServer,
    HealthEndpoint,
    InboundRequest,
    ProxyConfig,
    ProxyTarget,
    SocksEndpoint,
)

TARGET = ProxyTarget.parse("http://example.onion")
ISO_MS_UTC = re.compile(r"^\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z$")


def request(method: str, target: str) -> InboundRequest:
    return InboundRequest(method, target, "HTTP/1.1", [], b"", "127.0.0.1")


class TestHealthEndpoint(unittest.TestCase):
    def setUp(self):
        self.health = HealthEndpoint(TARGET)

    def test_matches_health_path(self):
        self.assertTrue(self.health.matches(request("GET", "/health")))
        self.assertTrue(self.health.matches(request("HEAD", "/health")))
        self.assertTrue(self.health.matches(request("GET", "/health?check=k8s")))
        self.assertTrue(self.health.matches(request("GET", "/health/")))
        self.assertTrue(self.health.matches(request("GET", "/HEALTH")))
        self.assertFalse(self.health.matches(request("POST", "/health")))
        self.assertFalse(self.health.matches(request("GET", "/healthz")))
        self.assertFalse(self.health.matches(request("GET", "/health//")))

    def test_payload(self):
        response = self.health.respond(request("GET", "/health"))
        payload = json.loads(response.body)

        self.assertEqual(response.status, 200)
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["onionUrl"], "http://example.onion")
        self.assertEqual(payload["upstreamTarget"], "http://example.onion")
        self.assertRegex(payload["timestamp"], ISO_MS_UTC)


class TestHealthOverHttp(unittest.IsolatedAsyncioTestCase):
    """
    The health path is answered locally, so it reports ok even when the
    SOCKS port is down, while every other path fails with a 502.
    """

    async def asyncSetUp(self):
        self.server = GatewayServer(
            ProxyConfig(
                target=TARGET,
                socks=SocksEndpoint("127.0.0.1", unused_port()),
                health_path="/_status",
            ),
            host="127.0.0.1",
            port=0,
        )
        self.port = await self.server.start()

    async def asyncTearDown(self):
        await self.server.stop()

    async def test_health_is_ok_without_upstream(self):
        status, headers, body = await fetch(self.port, "GET", "/_status")

        self.assertEqual(status, 200)
        self.assertTrue(headers["content-type"].startswith("application/json"))
        payload = json.loads(body)
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["upstreamTarget"], "http://example.onion")

    async def test_trailing_slash_and_case_are_ignored(self):
        for path in ("/_status/", "/_STATUS"):
            with self.subTest(path=path):
                status, _, body = await fetch(self.port, "GET", path)
                self.assertEqual(status, 200)
                self.assertEqual(json.loads(body)["status"], "ok")

    async def test_head_returns_headers_only(self):
        status, headers, body = parse_response(
            await http_exchange(self.port, build_request("HEAD", "/_status"))
        )

        self.assertEqual(status, 200)
        self.assertGreater(int(headers["content-length"]), 0)
        self.assertEqual(body, b"")

    async def test_other_paths_are_forwarded(self):
        status, _, _ = await fetch(self.port, "GET", "/health")
        self.assertEqual(status, 502)

        status, _, _ = await fetch(self.port, "POST", "/_status", body=b"x")
        self.assertEqual(status, 502)


if __name__ == "__main__":
    unittest.main()
