"""Registry of devices linked to the session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceRecord:
    """A device registered while the session is open."""

    id: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"id": self.id, "name": self.name}


class DeviceRegistry:
    """In-memory device registry keyed by device id.

    Listing preserves insertion order. An existing record is never
    renamed: the first name seen for an id wins.
    """

    def __init__(self) -> None:
        self._devices: dict[str, DeviceRecord] = {}

    def upsert(self, record: DeviceRecord) -> bool:
        """Insert a record if its id is not registered yet.

        Returns:
            True if the record was inserted, False if already present.
        """
        if record.id in self._devices:
            return False
        self._devices[record.id] = record
        logger.debug(f"Registered device {record.id}")
        return True

    def remove(self, device_id: str) -> bool:
        """Remove a device.

        Returns:
            True if device was removed, False if not found.
        """
        if device_id in self._devices:
            del self._devices[device_id]
            logger.debug(f"Removed device {device_id}")
            return True
        return False

    def remove_where(self, predicate: Callable[[DeviceRecord], bool]) -> int:
        """Remove every record matching predicate.

        Returns:
            Number of records removed.
        """
        doomed = [d.id for d in self._devices.values() if predicate(d)]
        for device_id in doomed:
            del self._devices[device_id]
        return len(doomed)

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        """Get device by ID."""
        return self._devices.get(device_id)

    def list(self) -> list[DeviceRecord]:
        """Get all devices in insertion order."""
        return list(self._devices.values())

    def to_list(self) -> list[dict[str, Any]]:
        """Get all devices as JSON-ready dicts."""
        return [d.to_dict() for d in self._devices.values()]

    def clear(self) -> None:
        """Remove all devices."""
        self._devices.clear()

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices
