"""In-memory, append-only log of every dispatched record.

One instance is built at app start and handed to the router and the HTTP
handlers. Nothing survives a restart.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from beacon.records import DeviceRecord, utc_now_iso

Json = Dict[str, Any]

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class StoredRecord:
    record: Json
    stored_at: str
    is_anonymous: bool
    path: Optional[str]  # "ledger" | "relay" | None when no path was chosen
    status: str
    error_code: Optional[str] = None

    @property
    def record_id(self) -> str:
        return str(self.record.get("_id") or "")

    def to_json(self) -> Json:
        out: Json = dict(self.record)
        out["storedAt"] = self.stored_at
        out["isAnonymous"] = bool(self.is_anonymous)
        out["path"] = self.path
        out["status"] = self.status
        if self.error_code:
            out["errorCode"] = self.error_code
        return out


class RecordLog:
    """Append-only store keyed by record id, plus an anonymous-only index.

    A single lock covers both structures. Reads return deep copies.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: Dict[str, List[StoredRecord]] = {}
        self._order: List[StoredRecord] = []
        self._anonymous: List[StoredRecord] = []

    def append(
        self,
        record: DeviceRecord,
        *,
        is_anonymous: bool,
        path: Optional[str],
        status: str,
        error_code: Optional[str] = None,
    ) -> StoredRecord:
        entry = StoredRecord(
            record=record.to_json(),
            stored_at=utc_now_iso(),
            is_anonymous=bool(is_anonymous),
            path=path,
            status=status,
            error_code=error_code,
        )
        with self._lock:
            # Same id again: history grows, earlier entries stay untouched.
            self._by_id.setdefault(entry.record_id, []).append(entry)
            self._order.append(entry)
            if entry.is_anonymous:
                self._anonymous.append(entry)
        return copy.deepcopy(entry)

    def list_records(self) -> List[StoredRecord]:
        with self._lock:
            return copy.deepcopy(self._order)

    def list_anonymous(self) -> List[StoredRecord]:
        with self._lock:
            return copy.deepcopy(self._anonymous)

    def get(self, record_id: str) -> List[StoredRecord]:
        with self._lock:
            return copy.deepcopy(self._by_id.get(str(record_id), []))

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)
