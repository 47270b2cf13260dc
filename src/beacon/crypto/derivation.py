"""Deterministic custodial keys.

The server never receives a device's private key. Instead it holds one
custodial secp256k1 key per device, stretched from the device address and a
process-wide secret salt:

    key = PBKDF2-HMAC-SHA256(password=lower(address), salt=server_salt,
                             iterations=100_000, length=32)

The function is pure: same (address, salt) -> same key, on every call and
across restarts. Nothing is cached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from eth_account import Account

from beacon.core_logging import log_event
from beacon.errors import ConfigurationError, KeyDerivationError

PBKDF2_ITERATIONS = 100_000
KEY_BYTES = 32
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

# Dev/demo device key. Only reachable when signature bypass is enabled.
PLACEHOLDER_DEVICE_KEY = "0xa8d3aacecac70fe98fbc8ca7f76fb703c30c44eae2fd0d57c06123a7e69e0621"

log = logging.getLogger("beacon.derivation")


@dataclass(frozen=True)
class DerivedIdentity:
    device_address: str
    custodial_private_key: bytes = field(repr=False)
    custodial_address: str


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


def _stretch(password: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(password)


def _check_scalar(key: bytes) -> None:
    """Reject byte strings that are not a valid secp256k1 private scalar (1 <= k < n)."""
    k = int.from_bytes(key, "big")
    if not 0 < k < SECP256K1_ORDER:
        raise KeyDerivationError("derived bytes are not a valid secp256k1 key: scalar out of range")
    try:
        ec.derive_private_key(k, ec.SECP256K1())
    except ValueError as e:
        raise KeyDerivationError(f"derived bytes are not a valid secp256k1 key: {e}") from e


def derive_identity(device_address: str, server_salt: str) -> DerivedIdentity:
    """Derive the custodial identity for a device.

    Raises:
      ConfigurationError: server salt is missing
      KeyDerivationError: empty address, or the stretched bytes are not a valid key
    """
    if not server_salt:
        raise ConfigurationError("Server configuration error: BEACON_SERVER_SALT not set")

    addr = normalize_address(device_address)
    if not addr:
        raise KeyDerivationError("device address is empty")

    key = _stretch(addr.encode("utf-8"), server_salt.encode("utf-8"))
    _check_scalar(key)

    try:
        custodial_address = Account.from_key(key).address
    except Exception as e:
        raise KeyDerivationError(f"Failed to generate valid wallet from address: {e}") from e

    log_event(log, "custodial_identity_derived", device_address=addr, custodial_address=custodial_address)
    return DerivedIdentity(device_address=addr, custodial_private_key=key, custodial_address=str(custodial_address))


def placeholder_device_address() -> str:
    """Address of the fixed dev placeholder device."""
    return str(Account.from_key(PLACEHOLDER_DEVICE_KEY).address)
