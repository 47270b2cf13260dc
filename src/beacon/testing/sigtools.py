from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Tuple

from eth_account import Account
from eth_account.messages import encode_defunct

from beacon.crypto.derivation import SECP256K1_ORDER

Json = Dict[str, Any]


def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def deterministic_device_key(*, label: str) -> Tuple[str, bytes]:
    """Deterministically derive a secp256k1 device key from a stable label.

    TEST ONLY.

    Returns:
      (checksummed_address, private_key_bytes)
    """
    n = int.from_bytes(_sha256(("beacon-test-device:" + (label or "")).encode("utf-8")), "big")
    key = ((n % (SECP256K1_ORDER - 1)) + 1).to_bytes(32, "big")
    return str(Account.from_key(key).address), key


def sign_attestation(private_key: bytes, message: str) -> str:
    """Personal-message signature as a 0x-prefixed 130-hex-char string."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def signed_attestation(*, label: str, message: str = "") -> Tuple[str, Json]:
    """(device_address, {"message", "signature"}) for a label's device key."""
    address, key = deterministic_device_key(label=label)
    msg = message or json.dumps({"device": label, "purpose": "beacon-test"}, sort_keys=True)
    return address, {"message": msg, "signature": sign_attestation(key, msg)}
