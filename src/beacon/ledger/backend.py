"""Ledger backends: where device entities are published.

The ledger is an external collaborator. Everything the publisher needs from
it is the `LedgerBackend` protocol:

  create_entity(payload, content_type, attributes, ttl_s, signing_key) -> EntityReceipt
  get_entity(key) -> Entity | None
  query(predicates) -> [Entity]

`Web3LedgerBackend` talks to a JSON-RPC node; `InMemoryLedgerBackend` is a
thread-safe stand-in for dev mode and tests.
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from eth_account import Account
from web3 import Web3
from web3.types import RPCEndpoint

Json = Dict[str, Any]
Predicate = Tuple[str, str]


@dataclass(frozen=True)
class Attribute:
    key: str
    value: str


@dataclass(frozen=True)
class EntityReceipt:
    entity_key: str
    tx_hash: str


@dataclass(frozen=True)
class Entity:
    key: str
    payload: bytes
    content_type: str
    attributes: Tuple[Attribute, ...]
    owner: str
    expires_at: int

    def attribute(self, name: str) -> Optional[str]:
        for a in self.attributes:
            if a.key == name:
                return a.value
        return None

    def matches(self, predicates: Sequence[Predicate]) -> bool:
        return all(self.attribute(k) == v for k, v in predicates)


class LedgerBackend(Protocol):
    def create_entity(
        self,
        *,
        payload: bytes,
        content_type: str,
        attributes: Sequence[Attribute],
        ttl_s: int,
        signing_key: bytes,
    ) -> EntityReceipt:
        ...

    def get_entity(self, key: str) -> Optional[Entity]:
        ...

    def query(self, predicates: Sequence[Predicate]) -> List[Entity]:
        ...


def _sha256_hex(*parts: bytes) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(len(p).to_bytes(4, "big"))
        h.update(p)
    return "0x" + h.hexdigest()


class InMemoryLedgerBackend:
    """Process-local ledger.

    require_funding=True makes create_entity fail with the same
    "insufficient funds" phrasing a real node uses, unless the signing
    wallet was funded via fund().
    """

    def __init__(self, *, require_funding: bool = False, clock: Callable[[], float] = time.time) -> None:
        self._lock = threading.Lock()
        self._entities: Dict[str, Entity] = {}
        self._nonces: Dict[str, int] = {}
        self._funded: set[str] = set()
        self._require_funding = bool(require_funding)
        self._clock = clock

    def fund(self, address: str) -> None:
        with self._lock:
            self._funded.add(str(address).lower())

    def create_entity(
        self,
        *,
        payload: bytes,
        content_type: str,
        attributes: Sequence[Attribute],
        ttl_s: int,
        signing_key: bytes,
    ) -> EntityReceipt:
        owner = str(Account.from_key(signing_key).address)
        with self._lock:
            if self._require_funding and owner.lower() not in self._funded:
                raise ValueError(f"insufficient funds for gas * price + value: address {owner} have 0")

            nonce = self._nonces.get(owner, 0)
            self._nonces[owner] = nonce + 1

            tx_hash = _sha256_hex(owner.encode("ascii"), nonce.to_bytes(8, "big"), payload)
            key = _sha256_hex(tx_hash.encode("ascii"), hashlib.sha256(payload).digest(), (0).to_bytes(4, "big"))
            self._entities[key] = Entity(
                key=key,
                payload=bytes(payload),
                content_type=str(content_type),
                attributes=tuple(attributes),
                owner=owner,
                expires_at=int(self._clock()) + int(ttl_s),
            )
        return EntityReceipt(entity_key=key, tx_hash=tx_hash)

    def get_entity(self, key: str) -> Optional[Entity]:
        with self._lock:
            ent = self._entities.get(str(key))
        if ent is None or ent.expires_at <= int(self._clock()):
            return None
        return ent

    def query(self, predicates: Sequence[Predicate]) -> List[Entity]:
        now = int(self._clock())
        with self._lock:
            ents = list(self._entities.values())
        return [e for e in ents if e.expires_at > now and e.matches(predicates)]


def _query_string(predicates: Sequence[Predicate]) -> str:
    return " && ".join(f"{k} = {json.dumps(str(v))}" for k, v in predicates)


class Web3LedgerBackend:
    """JSON-RPC ledger node.

    A create is an ordinary signed transaction addressed to the storage
    processor; its data is the canonical JSON create operation. The entity
    key is keccak(tx_hash || keccak(payload) || op_index).
    """

    GET_ENTITY_METHOD = "arkiv_getEntity"
    QUERY_METHOD = "arkiv_query"

    def __init__(
        self,
        *,
        rpc_url: str,
        storage_address: str,
        request_timeout_s: float = 30.0,
        receipt_timeout_s: float = 120.0,
    ) -> None:
        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": float(request_timeout_s)}))
        self._storage_address = Web3.to_checksum_address(storage_address)
        self._receipt_timeout_s = float(receipt_timeout_s)

    def create_entity(
        self,
        *,
        payload: bytes,
        content_type: str,
        attributes: Sequence[Attribute],
        ttl_s: int,
        signing_key: bytes,
    ) -> EntityReceipt:
        acct = Account.from_key(signing_key)
        op = {
            "creates": [
                {
                    "payload": Web3.to_hex(payload),
                    "contentType": str(content_type),
                    "expiresIn": int(ttl_s),
                    "stringAttributes": [{"key": a.key, "value": a.value} for a in attributes],
                }
            ]
        }
        data = json.dumps(op, sort_keys=True, separators=(",", ":")).encode("utf-8")

        eth = self._w3.eth
        tx: Json = {
            "to": self._storage_address,
            "value": 0,
            "data": Web3.to_hex(data),
            "nonce": eth.get_transaction_count(acct.address, "pending"),
            "chainId": eth.chain_id,
            "gasPrice": eth.gas_price,
        }
        tx["gas"] = eth.estimate_gas({**tx, "from": acct.address})

        signed = acct.sign_transaction(tx)
        tx_hash = eth.send_raw_transaction(signed.raw_transaction)
        receipt = eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout_s)
        if int(receipt.get("status", 0)) != 1:
            raise RuntimeError(f"create transaction reverted: {Web3.to_hex(tx_hash)}")

        key = Web3.keccak(bytes(tx_hash) + bytes(Web3.keccak(payload)) + (0).to_bytes(32, "big"))
        return EntityReceipt(entity_key=Web3.to_hex(key), tx_hash=Web3.to_hex(tx_hash))

    def _call(self, method: str, params: List[Any]) -> Any:
        resp = self._w3.provider.make_request(RPCEndpoint(method), params)
        err = resp.get("error") if isinstance(resp, dict) else None
        if err:
            msg = err.get("message") if isinstance(err, dict) else err
            raise RuntimeError(f"{method} failed: {msg}")
        return resp.get("result") if isinstance(resp, dict) else None

    @staticmethod
    def _entity_from_rpc(obj: Any) -> Optional[Entity]:
        if not isinstance(obj, dict):
            return None
        attrs = []
        for a in obj.get("stringAttributes") or obj.get("attributes") or []:
            if isinstance(a, dict) and "key" in a:
                attrs.append(Attribute(key=str(a["key"]), value=str(a.get("value", ""))))
        raw = obj.get("value") or obj.get("payload") or "0x"
        return Entity(
            key=str(obj.get("key") or ""),
            payload=bytes(Web3.to_bytes(hexstr=str(raw))),
            content_type=str(obj.get("contentType") or ""),
            attributes=tuple(attrs),
            owner=str(obj.get("owner") or ""),
            expires_at=int(obj.get("expiresAt") or 0),
        )

    def get_entity(self, key: str) -> Optional[Entity]:
        return self._entity_from_rpc(self._call(self.GET_ENTITY_METHOD, [str(key)]))

    def query(self, predicates: Sequence[Predicate]) -> List[Entity]:
        result = self._call(self.QUERY_METHOD, [_query_string(predicates)])
        out: List[Entity] = []
        for obj in result or []:
            ent = self._entity_from_rpc(obj)
            if ent is not None:
                out.append(ent)
        return out
