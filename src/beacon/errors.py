"""Error taxonomy for the dispatch core.

Every failure a request can hit is one of the classes below. They are plain
domain errors: the HTTP layer (beacon.api.errors) decides status codes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict


@dataclass(eq=False)
class BeaconError(Exception):
    """Base error. `code` is stable and safe to show to callers."""

    reason: str
    details: Dict[str, Any] = field(default_factory=dict)

    code: ClassVar[str] = "beacon_error"

    def __str__(self) -> str:
        return f"{self.code}:{self.reason}"


# --- input validation ---


@dataclass(eq=False)
class MalformedRequest(BeaconError):
    code: ClassVar[str] = "malformed_request"


@dataclass(eq=False)
class SignatureFormatError(BeaconError):
    code: ClassVar[str] = "signature_format"


@dataclass(eq=False)
class SignatureVerificationError(BeaconError):
    code: ClassVar[str] = "signature_invalid"


@dataclass(eq=False)
class MissingSignature(BeaconError):
    code: ClassVar[str] = "missing_signature"


# --- server side ---


@dataclass(eq=False)
class ConfigurationError(BeaconError):
    code: ClassVar[str] = "configuration_error"


@dataclass(eq=False)
class KeyDerivationError(BeaconError):
    code: ClassVar[str] = "key_derivation_failed"


@dataclass(eq=False)
class InternalUnexpectedError(BeaconError):
    code: ClassVar[str] = "internal_error"


# --- backends ---


@dataclass(eq=False)
class PinningServiceError(BeaconError):
    code: ClassVar[str] = "pinning_failed"


@dataclass(eq=False)
class LedgerInsufficientFunds(BeaconError):
    """The custodial wallet cannot pay for the create call.

    details["wallet_address"] names the wallet an operator has to fund.
    """

    code: ClassVar[str] = "insufficient_funds"

    @property
    def wallet_address(self) -> str:
        return str(self.details.get("wallet_address") or "")


@dataclass(eq=False)
class LedgerSubmissionError(BeaconError):
    code: ClassVar[str] = "ledger_submission_failed"


@dataclass(eq=False)
class RelayTimeoutNoData(BeaconError):
    code: ClassVar[str] = "relay_timeout_no_data"


@dataclass(eq=False)
class RelayProcessError(BeaconError):
    code: ClassVar[str] = "relay_process_failed"
