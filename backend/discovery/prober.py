"""
Single-device checks against a device's HTTP API.

`probe` answers "is there a Cyclops device at this address?" and must stay
fast, because a scan calls it for every address in the subnet.
`preflight_check` answers "is this really the device we registered, and is
our session with it usable?", renewing the session if it has expired.
"""

import base64
import binascii
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from config import (
    GREETING,
    KEYS_PATH,
    LOGIN_PATH,
    PING_PATH,
    PREFLIGHT_TIMEOUT,
    PROBE_TIMEOUT,
    SESSION_HEADER,
    WHOAMI_PATH,
    device_lan_origin,
)
from discovery.models import DeviceIdentity
from errors import CredentialError, SessionError
from registry.models import DeviceRecord
from registry.registry import DeviceRegistry
from security.crypto import IdentityVerifier

logger = logging.getLogger(__name__)


def extract_session_from_cookie(cookie: str) -> str:
    """Extract 'xyz' from a Set-Cookie value like 'session=xyz; Path=/; HttpOnly'."""
    first = cookie.split(";", 1)[0]
    parts = first.split("=")
    if len(parts) != 2:
        return ""
    return parts[1].strip()


def redact(secret: str) -> str:
    """First few characters of a secret, for logs."""
    return f"{secret[:6]}..." if secret else "(empty)"


class LanProber:
    """Probes and preflight checks, all with explicit short timeouts."""

    def __init__(
        self,
        probe_timeout: float = PROBE_TIMEOUT,
        preflight_timeout: float = PREFLIGHT_TIMEOUT,
    ) -> None:
        self.probe_timeout = probe_timeout
        self.preflight_timeout = preflight_timeout

    # --- Liveness / identity probe ---

    async def probe(
        self, client: httpx.AsyncClient, address: str
    ) -> Optional[DeviceIdentity]:
        """Return the device's ping payload, or None if nothing answers as Cyclops."""
        return await self.probe_origin(client, device_lan_origin(address))

    async def probe_origin(
        self,
        client: httpx.AsyncClient,
        origin: str,
        timeout: float | None = None,
        cookies: dict[str, str] | None = None,
    ) -> Optional[DeviceIdentity]:
        """
        Same as probe(), against any origin (e.g. a relay origin).

        The relay only forwards requests that carry the device key cookie,
        so relay callers must pass the decision's cookies.
        """
        url = origin + PING_PATH
        headers = {}
        if cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())
        try:
            resp = await client.get(
                url, headers=headers, timeout=timeout or self.probe_timeout
            )
            if resp.status_code != 200:
                return None
            ping = DeviceIdentity.model_validate(resp.json())
        except (httpx.HTTPError, ValueError, ValidationError):
            return None
        if ping.greeting != GREETING:
            return None
        return ping

    # --- Preflight ---

    async def preflight_check(
        self,
        device: DeviceRecord,
        verifier: IdentityVerifier,
        client: httpx.AsyncClient,
        registry: DeviceRegistry,
    ) -> Optional[str]:
        """
        Verify the device's key, then its session, renewing it if needed.

        Returns None on success, or an error message. Raises CredentialError
        if the device rejects our bearer token. The registry is only written
        after a fully successful renewal.
        """
        err = await self.check_public_key(device, verifier, client)
        if err is not None:
            return err
        return await self.check_session(device, client, registry)

    async def check_public_key(
        self,
        device: DeviceRecord,
        verifier: IdentityVerifier,
        client: httpx.AsyncClient,
    ) -> Optional[str]:
        """Challenge the device to prove it holds the key we pinned at registration."""
        logger.info(f"Checking public key of {device.lan_address} ({device.id})")
        challenge = verifier.create_challenge()
        params = {
            "publicKey": verifier.own_public_key_b64(),
            "challenge": base64.b64encode(challenge).decode("ascii"),
        }
        url = device_lan_origin(device.lan_address) + KEYS_PATH
        try:
            resp = await client.get(url, params=params, timeout=self.preflight_timeout)
        except httpx.HTTPError as e:
            logger.info(f"Failed to call {url}: {e}")
            return f"Failed to contact {device.lan_address}: {e}"

        if resp.status_code == 200:
            try:
                proof = base64.b64decode(resp.json()["proof"], validate=True)
            except (ValueError, KeyError, TypeError, binascii.Error):
                proof = b""
            # Verify against the pinned key, never the one in this response
            if verifier.verify(device.id, challenge, proof):
                logger.info("Preflight public key OK")
                return None
        logger.info(f"Device signature check failed for {device.lan_address}")
        return "Device signature check failed"

    async def check_session(
        self,
        device: DeviceRecord,
        client: httpx.AsyncClient,
        registry: DeviceRegistry,
    ) -> Optional[str]:
        try:
            await self._whoami(device, client)
        except httpx.HTTPError as e:
            logger.info(f"Preflight session error: {e}")
            return f"Failed to contact {device.lan_address}: {e}"
        except SessionError as e:
            logger.info(f"{e.message}, renewing")
            return await self.renew_session(device, client, registry)
        except ValueError as e:
            return str(e)
        logger.info("Preflight session OK")
        return None

    async def _whoami(self, device: DeviceRecord, client: httpx.AsyncClient) -> None:
        url = device_lan_origin(device.lan_address) + WHOAMI_PATH
        resp = await client.get(
            url,
            headers={SESSION_HEADER: device.session_cookie},
            timeout=self.preflight_timeout,
        )
        if resp.status_code in (401, 403):
            raise SessionError(
                f"Session rejected with {resp.status_code}",
                details={"device_id": device.id},
            )
        if resp.status_code != 200:
            raise ValueError(
                f"Preflight session: unexpected response code {resp.status_code}"
            )

    async def renew_session(
        self,
        device: DeviceRecord,
        client: httpx.AsyncClient,
        registry: DeviceRegistry,
    ) -> Optional[str]:
        """Trade the long-lived bearer token for a fresh session cookie."""
        logger.info(f"Recreating session cookie for {device.id}")
        url = device_lan_origin(device.lan_address) + LOGIN_PATH
        try:
            resp = await client.post(
                url,
                headers={"Authorization": f"Bearer {device.bearer_token}"},
                timeout=self.preflight_timeout,
            )
        except httpx.HTTPError as e:
            logger.info(f"Recreate session error: {e}")
            return f"Failed to contact {device.lan_address}: {e}"

        if resp.status_code in (401, 403):
            raise CredentialError(
                f"Device {device.name or device.id} rejected our bearer token",
                details={"device_id": device.id, "status": resp.status_code},
            )
        if resp.status_code != 200:
            err = resp.text or f"{resp.status_code} {resp.reason_phrase}"
            logger.info(f"Recreate session != 200: {err}")
            return err

        cookie = resp.headers.get("set-cookie")
        if not cookie:
            logger.info("Recreate session: no cookie")
            return "No session cookie in response"
        session = extract_session_from_cookie(cookie)
        if not session:
            return "Malformed session cookie in response"

        logger.info(f"Recreate session, new session is '{redact(session)}'")
        registry.set_field(device.id, "session_cookie", session)
        device.session_cookie = session
        return None
