"""Device attestation: recover the signer of an Ethereum personal message.

A device proves control of its key by signing an arbitrary message with the
standard personal-message scheme ("\\x19Ethereum Signed Message:\\n" + len +
message). The signature is 65 bytes (r || s || v), sent as hex.
"""

from __future__ import annotations

import logging
import string

from eth_account import Account
from eth_account.messages import encode_defunct

from beacon.core_logging import log_event, preview
from beacon.errors import SignatureFormatError, SignatureVerificationError

SIGNATURE_BYTES = 65
SIGNATURE_HEX_CHARS = SIGNATURE_BYTES * 2

_HEX = frozenset(string.hexdigits)

log = logging.getLogger("beacon.attestation")


def normalize_signature(signature: str) -> str:
    """Return the signature as "0x" + 130 hex chars or raise SignatureFormatError."""
    sig = (signature or "").strip()
    if not sig:
        raise SignatureFormatError("Signature is empty")

    body = sig[2:] if sig[:2] in {"0x", "0X"} else sig
    if len(body) != SIGNATURE_HEX_CHARS:
        raise SignatureFormatError(
            f"Expected {SIGNATURE_HEX_CHARS} hex characters, got {len(body)}",
            {"expected": SIGNATURE_HEX_CHARS, "actual": len(body)},
        )
    if not all(c in _HEX for c in body):
        raise SignatureFormatError("Signature contains non-hex characters")

    return "0x" + body.lower()


def verify_attestation(message: str, signature: str) -> str:
    """Recover the checksummed address that signed `message`.

    Raises:
      SignatureFormatError: signature is not 65 bytes of hex
      SignatureVerificationError: public-key recovery failed
    """
    sig = normalize_signature(signature)

    try:
        address = Account.recover_message(encode_defunct(text=message), signature=bytes.fromhex(sig[2:]))
    except Exception as e:
        log_event(
            log,
            "attestation_recover_failed",
            level=logging.WARNING,
            error=str(e),
            message_len=len(message or ""),
            message_preview=preview(message or "", 100),
        )
        raise SignatureVerificationError(f"Invalid signature: {e}") from e

    log_event(log, "attestation_verified", device_address=address, message_len=len(message or ""))
    return str(address)
