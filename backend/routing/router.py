"""
Connection router.

Decides, for one registered device at a time, whether the UI talks to it
directly on the LAN or through the cloud relay. The LAN path is only used
after a preflight check has proven the device's identity and a working
session. Anything short of that falls back to the relay.
"""

import asyncio
import logging
from typing import Callable, Optional

import httpx

from config import (
    FORCE_RELAY,
    RELAY_KEY_COOKIE_NAME,
    RELAY_PROXY_URL,
    SESSION_COOKIE_NAME,
    device_lan_origin,
    relay_origin,
)
from discovery.network import get_local_ipv4, same_subnet
from discovery.prober import LanProber, redact
from errors import (
    ConnectivityError,
    CyclopsLinkError,
    InvalidModeError,
    UnknownDeviceError,
)
from registry.models import DeviceRecord
from registry.registry import DeviceRegistry
from routing.models import ConnectMode, ConnectResult, RoutePath, RoutingDecision
from security.crypto import IdentityVerifier, short_id

logger = logging.getLogger(__name__)


class ConnectionRouter:
    """Tracks the active device and the path we reach it by."""

    def __init__(
        self,
        registry: DeviceRegistry,
        prober: LanProber,
        verifier: IdentityVerifier,
        local_address: Callable[[], Optional[str]] = get_local_ipv4,
        lan_client: httpx.AsyncClient | None = None,
        relay_client: httpx.AsyncClient | None = None,
        force_relay: bool = FORCE_RELAY,
    ) -> None:
        self._registry = registry
        self._prober = prober
        self._verifier = verifier
        self._local_address = local_address
        self._owns_clients = lan_client is None and relay_client is None
        self._lan_client = lan_client or httpx.AsyncClient()
        self._relay_client = relay_client or httpx.AsyncClient(proxy=RELAY_PROXY_URL)
        self.force_relay = force_relay

        self._current_id: str | None = None
        self._current_path: RoutePath | None = None
        self._device_locks: dict[str, asyncio.Lock] = {}
        self._network_signature: str | None = None
        self._event_callbacks: list = []  # async fn(event_type, data)

    @property
    def current_device_id(self) -> str | None:
        return self._current_id

    @property
    def current_path(self) -> RoutePath | None:
        return self._current_path

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def stop(self) -> None:
        if self._owns_clients:
            await self._lan_client.aclose()
            await self._relay_client.aclose()
        logger.info("Connection router stopped")

    # --- Entry points ---

    async def connect(
        self, device_id: str, mode: ConnectMode = ConnectMode.SWITCH
    ) -> ConnectResult:
        """
        Pick a path to `device_id` and tell the UI where to load it from.

        Raises UnknownDeviceError, InvalidModeError, CredentialError (the
        device rejected our bearer token) or ConnectivityError (neither LAN
        nor relay works).
        """
        if self._registry.get_by_id(device_id) is None:
            logger.error(f"Requested to switch to unknown device {device_id}")
            raise UnknownDeviceError(device_id)

        lock = self._device_locks.setdefault(device_id, asyncio.Lock())
        async with lock:
            # Re-read under the lock: a previous connect may have renewed it
            target = self._registry.get_by_id(device_id)
            if target is None:
                raise UnknownDeviceError(device_id)

            # Same device as now: only check whether the path is still right
            just_check = device_id == self._current_id
            if mode == ConnectMode.REVALIDATE and not just_check:
                raise InvalidModeError()
            if not just_check:
                self._registry.set_last_used(device_id)

            try:
                return await self._route(target, just_check)
            except ConnectivityError:
                if just_check:
                    self._current_path = None
                raise

    async def revalidate(self) -> Optional[ConnectResult]:
        """Re-check the active device, switching path only if needed."""
        if self._current_id is None:
            return None
        return await self.connect(self._current_id, ConnectMode.REVALIDATE)

    async def resume(self) -> Optional[ConnectResult]:
        """Reconnect at startup to the last used device, or any device."""
        device = self._registry.get_last_used() or self._registry.get_any()
        if device is None:
            logger.info("No registered devices to resume")
            return None
        return await self.connect(device.id)

    async def device_removed(self, device_id: str) -> Optional[ConnectResult]:
        """If the active device was deleted, move on to another one."""
        self._device_locks.pop(device_id, None)
        if device_id != self._current_id:
            return None
        self._current_id = None
        self._current_path = None
        other = self._registry.get_any()
        if other is None:
            return None
        return await self.connect(other.id)

    async def on_network_change(self, signature: str) -> Optional[ConnectResult]:
        """
        Revalidate when the network signature changes.

        The first signature seen is only recorded. Errors are reported as a
        `connect_error` event instead of being raised to the notifier.
        """
        if signature == self._network_signature:
            return None
        previous = self._network_signature
        self._network_signature = signature
        if previous is None:
            logger.debug(f"Initial network signature: {signature}")
            return None

        logger.info(f"Network changed from '{previous}' to '{signature}'")
        try:
            return await self.revalidate()
        except CyclopsLinkError as e:
            logger.warning(f"Revalidation after network change failed: {e.message}")
            await self._emit("connect_error", {"code": e.code, "message": e.message})
            return None

    # --- Routing ---

    async def _lan_available(self, device: DeviceRecord) -> bool:
        if self.force_relay or not device.lan_address:
            return False
        # The hostname fallback may block on DNS
        local_ip = await asyncio.to_thread(self._local_address)
        return bool(local_ip) and same_subnet(local_ip, device.lan_address)

    async def _route(self, device: DeviceRecord, just_check: bool) -> ConnectResult:
        lan_error = "Device is not on the local network"
        if await self._lan_available(device):
            await self._status(device, "Checking LAN connection")
            lan_error = await self._prober.preflight_check(
                device, self._verifier, self._lan_client, self._registry
            )
            if lan_error is None:
                # The preflight may have renewed the session cookie
                device = self._registry.get_by_id(device.id) or device
                decision = self.lan_decision(device)
                if just_check and self._current_path == RoutePath.LAN:
                    logger.info(f"Remaining on LAN {device.lan_address} for device {device.id}")
                    return ConnectResult(decision=decision, navigate=False, message="Remaining on LAN")
                logger.info(f"Connecting to LAN {device.lan_address} for device {device.id}")
                return await self._commit(decision, "Reconnecting on LAN")
            logger.info(
                f"Preflight check failed for LAN {device.lan_address} "
                f"for device {device.id}: {lan_error}"
            )

        decision = self.relay_decision(device)
        await self._status(device, "Checking relay connection")
        ping = await self._prober.probe_origin(
            self._relay_client,
            decision.origin,
            timeout=self._prober.preflight_timeout,
            cookies=decision.cookies,
        )
        if ping is None or (ping.public_key and ping.public_key != device.id):
            raise ConnectivityError(
                f"Cannot reach {device.name or device.id} on the LAN or via the relay",
                details={"device_id": device.id, "lan_error": lan_error},
            )
        if just_check and self._current_path == RoutePath.RELAY:
            logger.info(f"Remaining on relay for device {device.id}")
            return ConnectResult(decision=decision, navigate=False, message="Remaining on relay")
        logger.info(f"Falling back to relay {decision.origin} for device {device.id}")
        return await self._commit(decision, "Reconnecting via relay")

    def lan_decision(self, device: DeviceRecord) -> RoutingDecision:
        return RoutingDecision(
            device_id=device.id,
            path=RoutePath.LAN,
            origin=device_lan_origin(device.lan_address),
            session_cookie=device.session_cookie,
            cookies={SESSION_COOKIE_NAME: device.session_cookie},
        )

    def relay_decision(self, device: DeviceRecord) -> RoutingDecision:
        return RoutingDecision(
            device_id=device.id,
            path=RoutePath.RELAY,
            origin=relay_origin(short_id(device.id)),
            session_cookie=device.session_cookie,
            cookies={
                RELAY_KEY_COOKIE_NAME: device.id,
                SESSION_COOKIE_NAME: device.session_cookie,
            },
            proxy=RELAY_PROXY_URL,
        )

    async def _commit(self, decision: RoutingDecision, message: str) -> ConnectResult:
        self._current_id = decision.device_id
        self._current_path = decision.path
        logger.info(f"{message}: {decision.origin} session={redact(decision.session_cookie)}")
        await self._emit("navigate", {"message": message, **decision.model_dump(mode="json")})
        return ConnectResult(decision=decision, navigate=True, message=message)

    async def _status(self, device: DeviceRecord, message: str) -> None:
        await self._emit("connect_status", {"device_id": device.id, "message": message})
