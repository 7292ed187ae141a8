"""
LAN scanner.

Probes every host address of the local /24 for a Cyclops device, using a
fixed number of concurrent workers that each walk one contiguous slice of
the subnet. Progress is exposed as a snapshot that can be polled while the
scan runs.
"""

import asyncio
import logging
from typing import Callable, Optional

import httpx

from config import SCAN_WORKERS
from discovery.models import CandidateDevice, ScanState, ScanStatus
from discovery.network import get_local_ipv4, split_chunks, subnet_hosts
from discovery.prober import LanProber
from errors import DiscoveryError

logger = logging.getLogger(__name__)


class Scanner:
    """At most one scan at a time; state is guarded by a single lock."""

    def __init__(
        self,
        prober: LanProber,
        local_address: Callable[[], Optional[str]] = get_local_ipv4,
        client_factory: Callable[[], httpx.AsyncClient] = httpx.AsyncClient,
        workers: int = SCAN_WORKERS,
    ) -> None:
        self._prober = prober
        self._local_address = local_address
        self._client_factory = client_factory
        self._workers = workers
        self._state = ScanState()
        self._lock = asyncio.Lock()
        self._scan_task: asyncio.Task | None = None
        self._on_finished: list = []  # callbacks: async def fn(state)

    def on_finished(self, callback) -> None:
        """Register a callback for the end of a scan."""
        self._on_finished.append(callback)

    async def start(self) -> bool:
        """Begin a scan in the background. Returns False if one is already busy."""
        async with self._lock:
            if self._state.status == ScanStatus.BUSY:
                return False
            self._state = ScanState(status=ScanStatus.BUSY)

        self._scan_task = asyncio.create_task(self._run_scan())
        return True

    async def wait(self) -> ScanState:
        """Wait for the current scan (if any) to finish, and return a snapshot."""
        if self._scan_task:
            await asyncio.shield(self._scan_task)
        return await self.get_snapshot()

    async def stop(self) -> None:
        """Shutdown hook: scans cannot be cancelled, so let one in flight finish."""
        if self._scan_task and not self._scan_task.done():
            logger.info("Waiting for LAN scan to finish before shutdown")
            await self._scan_task
        logger.info("Scanner stopped")

    async def get_snapshot(self) -> ScanState:
        """Deep copy of the scan state; safe to call while a scan runs."""
        async with self._lock:
            return self._state.model_copy(deep=True)

    async def get_candidate(self, public_key: str) -> Optional[CandidateDevice]:
        async with self._lock:
            for candidate in self._state.candidates:
                if candidate.public_key == public_key:
                    return candidate.model_copy()
            return None

    async def inject_candidate(self, candidate: CandidateDevice) -> bool:
        """Add a candidate unless one with the same public key is already listed."""
        async with self._lock:
            if any(c.public_key == candidate.public_key for c in self._state.candidates):
                return False
            self._state.candidates.append(candidate.model_copy())
            return True

    # --- Scan internals ---

    async def _set_error(self, message: str) -> None:
        async with self._lock:
            self._state.error = message
            self._state.status = ScanStatus.ERROR

    async def _run_scan(self) -> None:
        logger.info("Getting local IP address")
        # The hostname fallback may block on DNS
        local_ip = await asyncio.to_thread(self._local_address)
        if not local_ip:
            err = DiscoveryError("No local IPv4 address found")
            logger.warning(f"LAN scan aborted: {err.message}")
            await self._set_error(err.message)
            await self._emit_finished()
            return

        async with self._lock:
            self._state.self_address = local_ip
        logger.info(f"Local IP is {local_ip}")

        addresses = subnet_hosts(local_ip)
        logger.info(f"Scanning from {addresses[0]} to {addresses[-1]}")

        try:
            async with self._client_factory() as client:
                chunks = split_chunks(addresses, self._workers)
                results = await asyncio.gather(
                    *(self._scan_addresses(client, chunk) for chunk in chunks),
                    return_exceptions=True,
                )
        except Exception as e:
            logger.error(f"LAN scan failed: {e}", exc_info=True)
            await self._set_error(f"LAN scan failed: {e}")
            await self._emit_finished()
            return

        for i, result in enumerate(results):
            if isinstance(result, Exception):
                err = DiscoveryError(
                    f"Scan worker {i} failed: {result}",
                    details={"chunk": i},
                )
                logger.error(err.message)

        async with self._lock:
            self._state.status = ScanStatus.DONE
            found = len(self._state.candidates)
        logger.info(f"LAN scan finished, found {found} device(s)")
        await self._emit_finished()

    async def _scan_addresses(self, client: httpx.AsyncClient, addresses: list[str]) -> None:
        for address in addresses:
            ping = await self._prober.probe(client, address)
            async with self._lock:
                if ping is not None:
                    logger.info(f"Found Cyclops device at {address}")
                    self._state.candidates.append(
                        CandidateDevice(
                            address=address,
                            hostname=ping.hostname,
                            public_key=ping.public_key,
                        )
                    )
                self._state.scanned += 1

    async def _emit_finished(self) -> None:
        state = await self.get_snapshot()
        for cb in self._on_finished:
            try:
                await cb(state)
            except Exception as e:
                logger.error(f"Scan callback error: {e}")
