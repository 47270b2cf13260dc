from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from beacon.config import ONE_YEAR_S
from beacon.core_logging import log_event
from beacon.crypto.derivation import DerivedIdentity
from beacon.errors import BeaconError, LedgerInsufficientFunds, LedgerSubmissionError
from beacon.ledger.backend import Attribute, Entity, LedgerBackend
from beacon.records import DeviceRecord, LedgerOutcome

Json = Dict[str, Any]

ENTITY_TYPE = "device-beacon"
CONTENT_TYPE = "application/json"

_INSUFFICIENT_FUNDS_PHRASES = (
    "insufficient funds",
    "exceeds the balance",
    "balance of the account",
)

log = logging.getLogger("beacon.ledger")


def build_attributes(record: DeviceRecord) -> List[Attribute]:
    """Queryable attributes for a device entity, in a stable order."""
    attrs = [
        Attribute("type", ENTITY_TYPE),
        Attribute("devicePub", record.device_pub),
        Attribute("nodeId", record.node_id),
    ]
    if record.location is not None:
        attrs.append(Attribute("lat", str(record.location.lat)))
        attrs.append(Attribute("lon", str(record.location.lon)))
    if record.tags:
        attrs.append(Attribute("tags", ",".join(record.tags)))
    if record.content_id:
        attrs.append(Attribute("contentId", record.content_id))
    return attrs


def encode_payload(record: DeviceRecord) -> bytes:
    return json.dumps(record.to_json(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode_entity_payload(entity: Entity) -> Json:
    obj = json.loads(entity.payload.decode("utf-8"))
    return obj if isinstance(obj, dict) else {}


def is_insufficient_funds(message: str) -> bool:
    m = (message or "").lower()
    return any(p in m for p in _INSUFFICIENT_FUNDS_PHRASES)


def classify_ledger_failure(exc: BaseException, *, wallet_address: str, faucet_url: Optional[str] = None) -> BeaconError:
    msg = str(exc) or exc.__class__.__name__
    if is_insufficient_funds(msg):
        details: Json = {"wallet_address": wallet_address}
        if faucet_url:
            details["faucet_url"] = faucet_url
        return LedgerInsufficientFunds(
            "Insufficient funds: The server wallet does not have enough funds to execute this transaction.",
            details,
        )
    return LedgerSubmissionError(f"Ledger upload failed: {msg}", {"wallet_address": wallet_address})


def publish_record(
    backend: LedgerBackend,
    record: DeviceRecord,
    identity: DerivedIdentity,
    *,
    content_id: Optional[str] = None,
    ttl_s: int = ONE_YEAR_S,
    faucet_url: Optional[str] = None,
) -> LedgerOutcome:
    """Publish `record` as a ledger entity signed by the custodial key.

    One attempt only. Backend failures come back classified as
    LedgerInsufficientFunds or LedgerSubmissionError.
    """
    record = record.with_content_id(content_id)
    wallet = identity.custodial_address

    log_event(
        log,
        "ledger_publish_started",
        node_id=record.node_id,
        device_pub=record.device_pub,
        wallet_address=wallet,
        has_content_id=bool(record.content_id),
    )
    try:
        receipt = backend.create_entity(
            payload=encode_payload(record),
            content_type=CONTENT_TYPE,
            attributes=build_attributes(record),
            ttl_s=int(ttl_s),
            signing_key=identity.custodial_private_key,
        )
    except Exception as e:
        err = classify_ledger_failure(e, wallet_address=wallet, faucet_url=faucet_url)
        log_event(
            log,
            "ledger_publish_failed",
            level=logging.WARNING,
            code=err.code,
            error=str(e),
            node_id=record.node_id,
            wallet_address=wallet,
        )
        raise err from e

    log_event(
        log,
        "ledger_publish_completed",
        node_id=record.node_id,
        entity_key=receipt.entity_key,
        tx_hash=receipt.tx_hash,
        wallet_address=wallet,
    )
    return LedgerOutcome(
        entity_key=receipt.entity_key,
        tx_hash=receipt.tx_hash,
        content_id=record.content_id,
        custodial_address=wallet,
    )
