"""
Shared pytest fixtures for Cyclops Link tests.

Provides:
- An isolated data directory (set before config is imported)
- FakeDevice: plays the device side of the HTTP contract via httpx.MockTransport
- Registry, verifier and HTTP client fixtures
"""

import base64
import os
import tempfile

os.environ.setdefault("CYCLOPS_LINK_HOME", tempfile.mkdtemp(prefix="cyclops-link-test-"))

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from config import GREETING, RELAY_KEY_COOKIE_NAME
from registry.registry import DeviceRegistry
from registry.store import JsonDeviceStore
from security.crypto import IdentityVerifier, compute_proof


def parse_cookie_header(header: str) -> dict[str, str]:
    pairs = (part.strip().split("=", 1) for part in header.split(";") if "=" in part)
    return {name: value for name, value in pairs}


class FakeDevice:
    """A Cyclops device as seen over HTTP, with call counters."""

    def __init__(self, hostname: str = "cyclops", session: str = "sess-valid",
                 bearer: str = "bearer-valid"):
        self.private_key = X25519PrivateKey.generate()
        raw = self.private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.public_key_raw = raw
        self.public_key = base64.b64encode(raw).decode("ascii")
        self.hostname = hostname
        self.valid_session = session
        self.bearer = bearer
        self.greeting = GREETING
        self.reachable = True
        self.renewed_session = "sess-renewed"
        self.calls: dict[str, int] = {}
        self.claimed_key_for_ping = None  # override publicKey in ping

    def count(self, path: str) -> int:
        return self.calls.get(path, 0)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] = self.calls.get(path, 0) + 1
        if not self.reachable:
            raise httpx.ConnectError("Connection refused", request=request)

        if path == "/api/ping":
            return httpx.Response(200, json={
                "greeting": self.greeting,
                "hostname": self.hostname,
                "time": 1700000000,
                "publicKey": self.claimed_key_for_ping or self.public_key,
            })
        if path == "/api/keys":
            client_pub = base64.b64decode(request.url.params["publicKey"])
            challenge = base64.b64decode(request.url.params["challenge"])
            shared = self.private_key.exchange(X25519PublicKey.from_public_bytes(client_pub))
            proof = compute_proof(shared, challenge)
            return httpx.Response(200, json={
                "publicKey": self.public_key,
                "proof": base64.b64encode(proof).decode("ascii"),
            })
        if path == "/api/auth/whoami":
            if request.headers.get("X-Session-Cookie") == self.valid_session:
                return httpx.Response(200, json={"username": "admin"})
            return httpx.Response(401, text="Unauthorized")
        if path == "/api/auth/login":
            if request.headers.get("Authorization") == f"Bearer {self.bearer}":
                self.valid_session = self.renewed_session
                return httpx.Response(
                    200,
                    headers={"Set-Cookie": f"session={self.renewed_session}; Path=/; HttpOnly"},
                )
            return httpx.Response(401, text="Invalid token")
        return httpx.Response(404)


class FakeNetwork:
    """
    Routes requests to FakeDevices by host; everything else is unreachable.

    With `key_cookie` set it behaves like the relay: a request is only
    forwarded to the device whose public key is in that cookie, and anything
    else gets the relay's own API, which has no ping endpoint.
    """

    def __init__(self, key_cookie: str | None = None):
        self.hosts: dict[str, FakeDevice] = {}
        self.requested_hosts: list[str] = []
        self.seen_cookies: list[dict[str, str]] = []
        self.key_cookie = key_cookie

    def add(self, host: str, device: FakeDevice) -> None:
        self.hosts[host] = device

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requested_hosts.append(request.url.host)
        device = self.hosts.get(request.url.host)
        if device is None:
            raise httpx.ConnectTimeout("timed out", request=request)
        cookies = parse_cookie_header(request.headers.get("cookie", ""))
        self.seen_cookies.append(cookies)
        if self.key_cookie and cookies.get(self.key_cookie) != device.public_key:
            return httpx.Response(404, text="404 page not found")
        return device.handle(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def lan() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def relay() -> FakeNetwork:
    return FakeNetwork(key_cookie=RELAY_KEY_COOKIE_NAME)


@pytest.fixture
def verifier() -> IdentityVerifier:
    return IdentityVerifier()


@pytest.fixture
def store(tmp_path) -> JsonDeviceStore:
    return JsonDeviceStore(tmp_path / "devices.json")


@pytest.fixture
def registry(store) -> DeviceRegistry:
    reg = DeviceRegistry(store)
    reg.load()
    return reg


@pytest.fixture
def make_device():
    """Factory for extra devices (e.g. an impostor with its own keypair)."""
    return FakeDevice
