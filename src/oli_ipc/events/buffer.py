"""Thread-safe ordered store for notification payloads."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
import logging
import threading
from typing import Any

LOGGER = logging.getLogger(__name__)

DEFAULT_EVENT_TYPE = "general"


@dataclass(frozen=True)
class EventRecord:
    """One buffered notification.

    ``seq`` increases by one for every appended record and is never reused,
    so stream consumers can resume after the last record they saw.
    """

    seq: int
    type: str
    payload: Any


class EventBuffer:
    """Append-only list of :class:`EventRecord` guarded by a single lock.

    The lock is a ``threading.Lock`` held only while copying or appending,
    which makes :meth:`append` safe from worker threads as well as from
    coroutines on the event loop. When ``max_events`` is set the oldest
    records are evicted once the cap is reached.
    """

    def __init__(self, max_events: int | None = None) -> None:
        self._lock = threading.Lock()
        self._records: deque[EventRecord] = deque(maxlen=max_events or None)
        self._last_seq = 0
        self._dropped = 0

    @property
    def max_events(self) -> int | None:
        return self._records.maxlen

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._last_seq

    @property
    def dropped(self) -> int:
        """Number of records evicted because the buffer was full."""
        with self._lock:
            return self._dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def append(self, payload: Any, event_type: str = DEFAULT_EVENT_TYPE) -> EventRecord:
        with self._lock:
            self._last_seq += 1
            record = EventRecord(seq=self._last_seq, type=event_type, payload=payload)
            evicting = (
                self._records.maxlen is not None
                and len(self._records) == self._records.maxlen
            )
            if evicting:
                self._dropped += 1
            self._records.append(record)
        if evicting:
            LOGGER.debug(
                "event_bus.buffer.evicted",
                extra={"event": "event_bus.buffer.evicted", "seq": record.seq},
            )
        return record

    def snapshot(self, event_type: str | None = None, after: int = 0) -> list[EventRecord]:
        """Copy records in arrival order, optionally filtered by type and cursor."""
        with self._lock:
            records = list(self._records)
        return [
            record
            for record in records
            if record.seq > after and (event_type is None or record.type == event_type)
        ]

    def drain(self, event_type: str | None = None) -> list[EventRecord]:
        """Remove and return records, keeping those of other types when filtered."""
        with self._lock:
            if event_type is None:
                taken = list(self._records)
                self._records.clear()
                return taken
            taken = [record for record in self._records if record.type == event_type]
            kept = [record for record in self._records if record.type != event_type]
            self._records.clear()
            self._records.extend(kept)
            return taken

    def discard(self, seqs: Iterable[int]) -> int:
        """Remove the records with the given sequence numbers; return how many went."""
        doomed = set(seqs)
        if not doomed:
            return 0
        with self._lock:
            kept = [record for record in self._records if record.seq not in doomed]
            removed = len(self._records) - len(kept)
            self._records.clear()
            self._records.extend(kept)
        return removed
