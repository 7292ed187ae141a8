"""
Durable storage for registered devices.

The registry keeps a per-record PersistenceState tag; `apply_journal` turns
those tags into the next stored image without touching the disk, and
`JsonDeviceStore` writes that image in one atomic file replace.
"""

import json
import logging
import os
from pathlib import Path
from typing import Iterable

from registry.models import PERSISTED_FIELDS, DeviceRecord, PersistenceState

logger = logging.getLogger(__name__)


def apply_journal(
    stored: dict[str, dict],
    records: Iterable[DeviceRecord],
) -> dict[str, dict]:
    """
    Return the stored image after applying every pending change.

    Pure: `stored` is not modified. Unmodified records are ignored, so
    applying the same journal twice gives the same result.
    """
    result = {device_id: dict(row) for device_id, row in stored.items()}
    for record in records:
        if record.state == PersistenceState.PENDING_DELETE:
            result.pop(record.id, None)
        elif record.state in (PersistenceState.NEW, PersistenceState.MODIFIED):
            result[record.id] = record.model_dump(include=set(PERSISTED_FIELDS))
    return result


class JsonDeviceStore:
    """Device records and the last-used device id in one JSON file."""

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict:
        if not self._path.exists():
            return {"devices": {}, "last_used": ""}
        data = json.loads(self._path.read_text())
        if not isinstance(data, dict):
            raise ValueError("top level is not an object")
        data.setdefault("devices", {})
        data.setdefault("last_used", "")
        return data

    def _read_for_update(self) -> dict:
        try:
            return self._read()
        except ValueError as e:
            # load() already started from an empty image; overwrite the bad file
            logger.warning(f"Replacing unreadable device store {self._path}: {e}")
            return {"devices": {}, "last_used": ""}

    def _write(self, data: dict) -> None:
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self._path)

    def load(self) -> tuple[dict[str, dict], str]:
        """Return (devices by id, last used id)."""
        try:
            data = self._read()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load device store {self._path}: {e}")
            return {}, ""
        return data["devices"], data["last_used"]

    def save_devices(self, devices: dict[str, dict]) -> None:
        """Replace all device records. Raises OSError on failure."""
        data = self._read_for_update()
        data["devices"] = devices
        self._write(data)

    def save_last_used(self, device_id: str) -> None:
        data = self._read_for_update()
        data["last_used"] = device_id
        self._write(data)

    def clear(self) -> None:
        self._write({"devices": {}, "last_used": ""})
