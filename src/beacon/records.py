"""Record and outcome types shared by the dispatch core.

Device records arrive as loosely-filled JSON from edge devices. They are
validated by `DeviceRecordInput` (every field optional) and completed into a
`DeviceRecord` with generated ids/timestamps before anything is dispatched.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Json = Dict[str, Any]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def random_suffix() -> str:
    return uuid.uuid4().hex


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Location(_CamelModel):
    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)


class StorageInfo(_CamelModel):
    free_bytes: int = Field(..., ge=0)
    quota: int = Field(..., ge=0)


class DeviceRecordInput(_CamelModel):
    """What a caller may send. Unknown keys are ignored."""

    id: Optional[str] = Field(default=None, alias="_id")
    node_id: Optional[str] = None
    device_pub: Optional[str] = None
    location: Optional[Location] = None
    last_seen: Optional[str] = None
    storage: Optional[StorageInfo] = None
    tags: Optional[List[str]] = None
    text: Optional[str] = None

    def complete(self, *, device_pub_fallback: str) -> "DeviceRecord":
        """Fill generated defaults.

        devicePub precedence: caller value, then `device_pub_fallback`
        (verified device address, or an anonymous/unverified placeholder).
        """
        record_id = self.id or f"node_{uuid.uuid4()}"
        return DeviceRecord(
            id=record_id,
            node_id=self.node_id or record_id,
            device_pub=self.device_pub or device_pub_fallback,
            location=self.location,
            last_seen=self.last_seen or utc_now_iso(),
            storage=self.storage,
            tags=list(self.tags or []),
            text=self.text or "",
        )


class DeviceRecord(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)

    id: str = Field(..., alias="_id")
    node_id: str
    device_pub: str
    location: Optional[Location] = None
    last_seen: str
    storage: Optional[StorageInfo] = None
    tags: List[str] = Field(default_factory=list)
    text: str = ""
    content_id: Optional[str] = None

    def with_content_id(self, content_id: Optional[str]) -> "DeviceRecord":
        if not content_id:
            return self
        return self.model_copy(update={"content_id": content_id})

    def to_json(self) -> Json:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class Attestation:
    message: str
    signature: str


@dataclass(frozen=True)
class LedgerOutcome:
    entity_key: str
    tx_hash: str
    content_id: Optional[str] = None
    custodial_address: Optional[str] = None

    def to_json(self) -> Json:
        out: Json = {"entityKey": self.entity_key, "txHash": self.tx_hash}
        if self.content_id:
            out["contentId"] = self.content_id
        return out


@dataclass
class RelayOutcome:
    """Fields recovered from a relay transcript."""

    peer_pub_key: Optional[str] = None
    peer_token: Optional[str] = None
    recv_pub_key: Optional[str] = None
    recv_token: Optional[str] = None
    reception_id: Optional[str] = None
    # None until the relay reports a network status line
    network_up: Optional[bool] = None
    sent_message_ids: List[str] = field(default_factory=list)
    round_ids: List[int] = field(default_factory=list)
    received_count: int = 0

    def has_usable_data(self) -> bool:
        return bool(self.peer_pub_key or self.sent_message_ids or self.reception_id)

    def to_json(self) -> Json:
        return {
            "peerPubKey": self.peer_pub_key,
            "peerToken": self.peer_token,
            "recvPubKey": self.recv_pub_key,
            "recvToken": self.recv_token,
            "receptionId": self.reception_id,
            "networkUp": self.network_up,
            "sentMessageIds": list(self.sent_message_ids),
            "roundIds": list(self.round_ids),
            "receivedCount": int(self.received_count),
        }


DispatchOutcome = Union[LedgerOutcome, RelayOutcome]
