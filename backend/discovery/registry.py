"""Fingerprint-keyed registry of discovered peers."""

import threading

from discovery.models import PeerRecord


class PeerRegistry:
    """Holds at most one PeerRecord per fingerprint.

    Every upsert and snapshot runs under a single lock, so the listener and
    any caller inspecting the registry mid-session never see a half-written
    entry.
    """

    def __init__(self) -> None:
        self._peers: dict[str, PeerRecord] = {}
        self._lock = threading.Lock()

    def upsert(self, record: PeerRecord) -> tuple[PeerRecord, bool]:
        """Insert or refresh a peer. Returns (stored record, is_new)."""
        with self._lock:
            existing = self._peers.get(record.fingerprint)
            if existing is not None:
                record = record.model_copy(update={"first_seen": existing.first_seen})
            self._peers[record.fingerprint] = record
            return record, existing is None

    def get(self, fingerprint: str) -> PeerRecord | None:
        with self._lock:
            return self._peers.get(fingerprint)

    def snapshot(self) -> dict[str, PeerRecord]:
        with self._lock:
            return dict(self._peers)

    def clear(self) -> None:
        with self._lock:
            self._peers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    def __contains__(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._peers
