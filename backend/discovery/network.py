"""
Local network helpers: our own IPv4 address, /24 subnet maths, and a
polling monitor that notices when the host moves to another network.
"""

import asyncio
import ipaddress
import logging
import socket
from typing import Awaitable, Callable, Optional

from config import NETWORK_POLL_INTERVAL

logger = logging.getLogger(__name__)

SUBNET_PREFIX = 24


def _usable(ip: str) -> bool:
    return bool(ip) and not ip.startswith("127.") and not ip.startswith("169.254.")


def get_local_ipv4() -> Optional[str]:
    """
    Return this host's LAN IPv4 address, or None if there isn't one.

    Never sends traffic: the UDP "connect" only asks the kernel which
    interface it would route through.
    """
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("224.0.0.1", 1))
            local_ip = s.getsockname()[0]
        finally:
            s.close()
        if _usable(local_ip):
            return local_ip
    except OSError as e:
        logger.debug(f"Route lookup failed: {e}")

    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        for ip in ips:
            if _usable(ip):
                return ip
    except (socket.gaierror, OSError) as e:
        logger.debug(f"gethostbyname_ex failed: {e}")

    return None


def subnet_hosts(local_ip: str) -> list[str]:
    """All host addresses of the /24 containing local_ip, except local_ip."""
    network = ipaddress.ip_network(f"{local_ip}/{SUBNET_PREFIX}", strict=False)
    return [str(host) for host in network.hosts() if str(host) != local_ip]


def same_subnet(a: str, b: str) -> bool:
    """True if both addresses are valid IPv4 and share a /24."""
    try:
        net_a = ipaddress.ip_network(f"{a}/{SUBNET_PREFIX}", strict=False)
        return ipaddress.ip_address(b) in net_a
    except ValueError:
        return False


def split_chunks(items: list, n: int) -> list[list]:
    """Split into n contiguous chunks whose sizes differ by at most one."""
    total = len(items)
    return [items[i * total // n:(i + 1) * total // n] for i in range(n)]


def network_signature() -> str:
    """A string that changes whenever the host's IPv4 setup changes."""
    addresses = set()
    primary = get_local_ipv4()
    if primary:
        addresses.add(primary)
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        addresses.update(ip for ip in ips if _usable(ip))
    except (socket.gaierror, OSError) as e:
        logger.debug(f"gethostbyname_ex failed: {e}")
    return ",".join(sorted(addresses))


class NetworkMonitor:
    """Polls the network signature and reports it to a callback."""

    def __init__(
        self,
        on_signature: Callable[[str], Awaitable[object]],
        signature_provider: Callable[[], str] = network_signature,
        interval: float = NETWORK_POLL_INTERVAL,
    ) -> None:
        self._on_signature = on_signature
        self._signature_provider = signature_provider
        self._interval = interval
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Network monitor started (interval: {self._interval}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Network monitor stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                signature = await asyncio.to_thread(self._signature_provider)
                await self._on_signature(signature)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Network check failed: {e}")
            await asyncio.sleep(self._interval)
