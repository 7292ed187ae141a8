"""Registry of devices the user has logged in to."""

import logging
import threading
from typing import Optional

from registry.models import MUTABLE_FIELDS, DeviceRecord, PersistenceState
from registry.store import JsonDeviceStore, apply_journal

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """
    Owns every DeviceRecord. Callers only ever receive deep copies, and all
    writes go through the methods below, serialised by one lock.
    """

    def __init__(self, store: JsonDeviceStore):
        self._store = store
        self._lock = threading.RLock()
        self._records: dict[str, DeviceRecord] = {}
        self._persisted: dict[str, dict] = {}
        self._last_used = ""

    def load(self) -> None:
        """Replace in-memory state with what is on disk."""
        with self._lock:
            devices, last_used = self._store.load()
            self._persisted = devices
            self._records = {}
            for device_id, row in devices.items():
                try:
                    record = DeviceRecord(**row)
                except ValueError as e:
                    logger.warning(f"Skipping unreadable device record {device_id}: {e}")
                    continue
                record.state = PersistenceState.UNMODIFIED
                self._records[record.id] = record
            self._last_used = last_used
            logger.info(f"Loaded {len(self._records)} devices.")

    def reset(self) -> None:
        """Forget every device and the last-used selection."""
        with self._lock:
            logger.info("Resetting all device state")
            self._store.clear()
            self._records = {}
            self._persisted = {}
            self._last_used = ""

    # --- Writes ---

    def upsert(
        self,
        lan_address: str,
        device_id: str,
        bearer_token: str,
        name: str,
        session_cookie: str,
    ) -> None:
        """Add a device after login, or refresh the credentials of a known one."""
        with self._lock:
            record = self._live(device_id)
            if record is None:
                logger.info(f"Adding new device {device_id} ({name})")
                record = DeviceRecord(id=device_id, name=name)
                self._records[device_id] = record
            elif record.state != PersistenceState.NEW:
                record.state = PersistenceState.MODIFIED
            record.lan_address = lan_address
            record.bearer_token = bearer_token
            record.session_cookie = session_cookie
            self.flush()

    def set_field(self, device_id: str, field: str, value: str) -> bool:
        """
        Change one of the narrow mutable fields of a device.

        Returns False if the device is unknown. Raises ValueError for a
        field name that may not be changed this way.
        """
        if field not in MUTABLE_FIELDS:
            raise ValueError(f"Unknown device field '{field}'")
        with self._lock:
            record = self._live(device_id)
            if record is None:
                return False
            logger.info(f"Setting {field} of device {device_id}")
            setattr(record, field, value)
            if record.state != PersistenceState.NEW:
                record.state = PersistenceState.MODIFIED
            self.flush()
            return True

    def remove(self, device_id: str) -> bool:
        """Delete a device. Clears the last-used selection if it pointed here."""
        with self._lock:
            record = self._live(device_id)
            if record is None:
                return False
            logger.info(f"Removing device {device_id}")
            record.state = PersistenceState.PENDING_DELETE
            if self._last_used == device_id:
                self.set_last_used("")
            self.flush()
            return True

    def set_last_used(self, device_id: str) -> None:
        with self._lock:
            logger.info(f"Last used device is now {device_id or '(none)'}")
            self._last_used = device_id
            try:
                self._store.save_last_used(device_id)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to save last used device: {e}")

    def flush(self) -> bool:
        """
        Write all pending changes in one pass.

        On failure the pending tags are left in place so that the next flush
        retries them. Returns True if the store was written.
        """
        with self._lock:
            records = list(self._records.values())
            if all(r.state == PersistenceState.UNMODIFIED for r in records):
                return True
            image = apply_journal(self._persisted, records)
            try:
                self._store.save_devices(image)
            except (OSError, ValueError) as e:
                logger.error(f"Failed to save devices: {e}")
                return False
            self._persisted = image
            for record in records:
                if record.state == PersistenceState.PENDING_DELETE:
                    del self._records[record.id]
                else:
                    record.state = PersistenceState.UNMODIFIED
            return True

    # --- Reads (always copies) ---

    def _live(self, device_id: str) -> Optional[DeviceRecord]:
        record = self._records.get(device_id)
        if record is None or record.state == PersistenceState.PENDING_DELETE:
            return None
        return record

    def get_by_id(self, device_id: str) -> Optional[DeviceRecord]:
        with self._lock:
            record = self._live(device_id)
            return record.model_copy(deep=True) if record else None

    def get_last_used(self) -> Optional[DeviceRecord]:
        with self._lock:
            if not self._last_used:
                return None
            return self.get_by_id(self._last_used)

    def get_any(self) -> Optional[DeviceRecord]:
        with self._lock:
            for record in self._records.values():
                if record.state != PersistenceState.PENDING_DELETE:
                    return record.model_copy(deep=True)
            return None

    def snapshot_all(self) -> list[DeviceRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._records.values()
                if r.state != PersistenceState.PENDING_DELETE
            ]

    @property
    def last_used_id(self) -> str:
        with self._lock:
            return self._last_used
