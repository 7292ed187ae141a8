"""Tests for routing/router.py"""

import asyncio
import threading

import pytest

from config import RELAY_DOMAIN, RELAY_KEY_COOKIE_NAME, RELAY_PROXY_URL
from discovery.prober import LanProber
from errors import (
    ConnectivityError,
    CredentialError,
    InvalidModeError,
    UnknownDeviceError,
)
from routing.models import ConnectMode, RoutePath
from routing.router import ConnectionRouter
from security.crypto import short_id

LOCAL_IP = "192.168.1.50"
DEVICE_IP = "192.168.1.12"
OTHER_IP = "192.168.1.13"


def relay_host(device) -> str:
    return f"{short_id(device.public_key)}.{RELAY_DOMAIN}"


def register(registry, device, address=DEVICE_IP, name="cyclops"):
    registry.upsert(address, device.public_key, device.bearer, name, device.valid_session)
    return device.public_key


@pytest.fixture
def events():
    return []


@pytest.fixture
def conn_router(registry, verifier, lan, relay, events):
    r = ConnectionRouter(
        registry,
        LanProber(probe_timeout=0.2, preflight_timeout=1.0),
        verifier,
        local_address=lambda: LOCAL_IP,
        lan_client=lan.client(),
        relay_client=relay.client(),
    )

    async def record(event_type, data):
        events.append((event_type, data))

    r.on_event(record)
    return r


class TestConnect:
    @pytest.mark.asyncio
    async def test_lan_path(self, conn_router, registry, lan, relay, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)

        result = await conn_router.connect(device_id)

        assert result.navigate is True
        assert result.decision.path == RoutePath.LAN
        assert result.decision.origin == "http://192.168.1.12:8080"
        assert result.decision.session_cookie == "sess-valid"
        assert result.decision.cookies == {"session": "sess-valid"}
        assert result.decision.proxy is None
        assert conn_router.current_device_id == device_id
        assert conn_router.current_path == RoutePath.LAN
        assert registry.last_used_id == device_id
        assert relay.requested_hosts == []

    @pytest.mark.asyncio
    async def test_same_device_twice_does_not_navigate(self, conn_router, registry, lan, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)
        device.calls.clear()

        result = await conn_router.connect(device_id)

        assert result.navigate is False
        assert result.message == "Remaining on LAN"
        assert device.count("/api/keys") == 1
        assert conn_router.current_path == RoutePath.LAN

    @pytest.mark.asyncio
    async def test_expired_session_is_renewed(self, conn_router, registry, lan, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        device.valid_session = "expired-elsewhere"

        result = await conn_router.connect(device_id)

        assert result.decision.path == RoutePath.LAN
        assert result.decision.cookies == {"session": "sess-renewed"}
        assert device.count("/api/auth/login") == 1
        assert registry.get_by_id(device_id).session_cookie == "sess-renewed"

    @pytest.mark.asyncio
    async def test_falls_back_to_relay(self, conn_router, registry, lan, relay, device):
        relay.add(relay_host(device), device)
        device_id = register(registry, device)

        result = await conn_router.connect(device_id)

        sid = short_id(device_id)
        assert result.navigate is True
        assert result.decision.path == RoutePath.RELAY
        assert result.decision.origin == f"https://{sid}.{RELAY_DOMAIN}"
        assert result.decision.cookies == {
            RELAY_KEY_COOKIE_NAME: device_id,
            "session": "sess-valid",
        }
        assert result.decision.proxy == RELAY_PROXY_URL
        assert DEVICE_IP in lan.requested_hosts
        assert conn_router.current_path == RoutePath.RELAY
        # The relay only forwards requests that name the device by its key
        assert relay.seen_cookies[-1] == {
            RELAY_KEY_COOKIE_NAME: device_id,
            "session": "sess-valid",
        }

    @pytest.mark.asyncio
    async def test_other_subnet_goes_straight_to_relay(self, registry, verifier, lan, relay, device):
        lan.add("10.1.1.12", device)
        relay.add(relay_host(device), device)
        device_id = register(registry, device, address="10.1.1.12")
        r = ConnectionRouter(
            registry, LanProber(), verifier,
            local_address=lambda: LOCAL_IP,
            lan_client=lan.client(), relay_client=relay.client(),
        )

        result = await r.connect(device_id)

        assert result.decision.path == RoutePath.RELAY
        assert lan.requested_hosts == []

    @pytest.mark.asyncio
    async def test_force_relay(self, conn_router, registry, lan, relay, device):
        lan.add(DEVICE_IP, device)
        relay.add(relay_host(device), device)
        device_id = register(registry, device)
        conn_router.force_relay = True

        result = await conn_router.connect(device_id)

        assert result.decision.path == RoutePath.RELAY
        assert lan.requested_hosts == []

    @pytest.mark.asyncio
    async def test_nothing_reachable(self, conn_router, registry, device):
        device_id = register(registry, device)

        with pytest.raises(ConnectivityError):
            await conn_router.connect(device_id)

        assert conn_router.current_device_id is None
        # Remembered as soon as the user picked it
        assert registry.last_used_id == device_id

    @pytest.mark.asyncio
    async def test_relay_serving_wrong_key(self, conn_router, registry, relay, device, make_device):
        relay.key_cookie = None  # answers whatever the cookie says
        relay.add(relay_host(device), make_device())
        device_id = register(registry, device)

        with pytest.raises(ConnectivityError):
            await conn_router.connect(device_id)

    @pytest.mark.asyncio
    async def test_unknown_device(self, conn_router, registry):
        with pytest.raises(UnknownDeviceError):
            await conn_router.connect("not-registered")
        assert registry.last_used_id == ""

    @pytest.mark.asyncio
    async def test_revalidate_mode_needs_active_device(self, conn_router, registry, lan, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        with pytest.raises(InvalidModeError):
            await conn_router.connect(device_id, ConnectMode.REVALIDATE)
        assert lan.requested_hosts == []

    @pytest.mark.asyncio
    async def test_rejected_bearer_is_not_masked_by_relay(
        self, conn_router, registry, lan, relay, device
    ):
        lan.add(DEVICE_IP, device)
        relay.add(relay_host(device), device)
        device_id = register(registry, device)
        device.valid_session = "expired-elsewhere"
        device.bearer = "revoked"

        with pytest.raises(CredentialError):
            await conn_router.connect(device_id)

        rec = registry.get_by_id(device_id)
        assert rec.session_cookie == "sess-valid"
        assert rec.bearer_token == "bearer-valid"
        assert relay.requested_hosts == []

    @pytest.mark.asyncio
    async def test_concurrent_connects_are_serialised(self, conn_router, registry, lan, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)

        first, second = await asyncio.gather(
            conn_router.connect(device_id),
            conn_router.connect(device_id),
        )

        assert [first.navigate, second.navigate].count(True) == 1
        assert device.count("/api/keys") == 2

    @pytest.mark.asyncio
    async def test_events(self, conn_router, registry, lan, device, events):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)

        kinds = [e[0] for e in events]
        assert kinds == ["connect_status", "navigate"]
        navigate = events[-1][1]
        assert navigate["origin"] == "http://192.168.1.12:8080"
        assert navigate["path"] == "lan"
        assert navigate["device_id"] == device_id


class TestRevalidate:
    @pytest.mark.asyncio
    async def test_nothing_active(self, conn_router):
        assert await conn_router.revalidate() is None

    @pytest.mark.asyncio
    async def test_lan_lost_moves_to_relay(self, conn_router, registry, lan, relay, device):
        lan.add(DEVICE_IP, device)
        relay.add(relay_host(device), device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)

        lan.hosts.clear()
        result = await conn_router.revalidate()

        assert result.navigate is True
        assert result.decision.path == RoutePath.RELAY

    @pytest.mark.asyncio
    async def test_relay_to_lan_when_back_home(self, conn_router, registry, lan, relay, device):
        relay.add(relay_host(device), device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)
        assert conn_router.current_path == RoutePath.RELAY

        lan.add(DEVICE_IP, device)
        result = await conn_router.revalidate()

        assert result.navigate is True
        assert result.decision.path == RoutePath.LAN

    @pytest.mark.asyncio
    async def test_everything_lost(self, conn_router, registry, lan, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)

        lan.hosts.clear()
        with pytest.raises(ConnectivityError):
            await conn_router.revalidate()
        assert conn_router.current_device_id == device_id
        assert conn_router.current_path is None


class TestNetworkChange:
    @pytest.mark.asyncio
    async def test_first_signature_is_only_recorded(self, conn_router, registry, lan, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)
        device.calls.clear()

        assert await conn_router.on_network_change("wlan0,192.168.1.50") is None
        assert await conn_router.on_network_change("wlan0,192.168.1.50") is None
        assert device.calls == {}

        result = await conn_router.on_network_change("wlan0,192.168.1.50;eth0,10.0.0.3")
        assert result is not None
        assert result.navigate is False
        assert device.count("/api/keys") == 1

    @pytest.mark.asyncio
    async def test_failure_becomes_event(self, conn_router, registry, lan, device, events):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)
        await conn_router.on_network_change("a")

        lan.hosts.clear()
        assert await conn_router.on_network_change("b") is None
        assert events[-1][0] == "connect_error"
        assert events[-1][1]["code"] == "CONNECTIVITY_ERROR"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_resume_prefers_last_used(self, conn_router, registry, lan, device, make_device):
        other = make_device(hostname="other")
        lan.add(DEVICE_IP, device)
        lan.add(OTHER_IP, other)
        register(registry, device)
        other_id = register(registry, other, address=OTHER_IP, name="other")
        registry.set_last_used(other_id)

        result = await conn_router.resume()

        assert result.decision.device_id == other_id
        assert result.decision.origin == "http://192.168.1.13:8080"

    @pytest.mark.asyncio
    async def test_resume_without_devices(self, conn_router):
        assert await conn_router.resume() is None

    @pytest.mark.asyncio
    async def test_removing_active_device_switches(self, conn_router, registry, lan, device, make_device):
        other = make_device(hostname="other")
        lan.add(DEVICE_IP, device)
        lan.add(OTHER_IP, other)
        device_id = register(registry, device)
        other_id = register(registry, other, address=OTHER_IP, name="other")
        await conn_router.connect(device_id)

        assert await conn_router.device_removed(other_id) is None

        registry.remove(device_id)
        result = await conn_router.device_removed(device_id)

        assert result.decision.device_id == other_id
        assert conn_router.current_device_id == other_id
        assert registry.last_used_id == other_id

    @pytest.mark.asyncio
    async def test_removing_last_device(self, conn_router, registry, lan, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)

        registry.remove(device_id)
        assert await conn_router.device_removed(device_id) is None
        assert conn_router.current_device_id is None
        assert conn_router.current_path is None


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_unknown_ids_leave_no_lock_behind(self, conn_router):
        for i in range(5):
            with pytest.raises(UnknownDeviceError):
                await conn_router.connect(f"bogus-{i}")
        assert conn_router._device_locks == {}

    @pytest.mark.asyncio
    async def test_removed_device_lock_is_dropped(self, conn_router, registry, lan, device):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        await conn_router.connect(device_id)
        assert device_id in conn_router._device_locks

        registry.remove(device_id)
        await conn_router.device_removed(device_id)
        assert device_id not in conn_router._device_locks

    @pytest.mark.asyncio
    async def test_local_address_lookup_runs_off_the_event_loop(
        self, registry, verifier, lan, relay, device
    ):
        lan.add(DEVICE_IP, device)
        device_id = register(registry, device)
        loop_thread = threading.get_ident()
        lookup_threads = []

        def local_address():
            lookup_threads.append(threading.get_ident())
            return LOCAL_IP

        r = ConnectionRouter(
            registry, LanProber(probe_timeout=0.2, preflight_timeout=1.0), verifier,
            local_address=local_address,
            lan_client=lan.client(), relay_client=relay.client(),
        )
        result = await r.connect(device_id)

        assert result.decision.path == RoutePath.LAN
        assert lookup_threads
        assert loop_thread not in lookup_threads
