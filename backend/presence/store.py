"""In-memory device table shared by the registry and the presence client."""

from presence.models import DeviceRecord


class DeviceTable:
    """Devices keyed by their stable id.

    One record per id; a re-announcement replaces the record. A session key
    is tracked alongside because reconnection issues a new one.
    """

    def __init__(self) -> None:
        self._records: dict[str, DeviceRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._records

    def get(self, device_id: str) -> DeviceRecord | None:
        return self._records.get(device_id)

    def values(self) -> list[DeviceRecord]:
        return list(self._records.values())

    def upsert(self, record: DeviceRecord) -> bool:
        """Insert or refresh a record. Returns True if the id was new."""
        existing = self._records.get(record.id)
        if existing is not None and record.session_key is None:
            record = record.model_copy(update={"session_key": existing.session_key})
        self._records[record.id] = record
        return existing is None

    def remove_session(self, session_key: str) -> list[DeviceRecord]:
        """Evict every record bound to a session key."""
        stale = [r for r in self._records.values() if r.session_key == session_key]
        for record in stale:
            del self._records[record.id]
        return stale

    def clear(self) -> None:
        self._records.clear()
