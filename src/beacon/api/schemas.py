"""Pydantic request schemas for the device API.

Multipart uploads carry `entity` and `signature` as JSON strings; JSON bodies
carry them as objects. Both shapes are accepted by the same models.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from beacon.records import Attestation, DeviceRecordInput


def as_flag(v: Any) -> bool:
    """Form fields arrive as strings; only an explicit true-ish value counts."""
    if isinstance(v, bool):
        return v
    if v is None:
        return False
    if isinstance(v, (int, float)):
        return bool(v)
    return str(v).strip().lower() in {"1", "true", "yes", "y", "on"}


def _maybe_json(v: Any, *, field: str) -> Any:
    if isinstance(v, (bytes, bytearray)):
        v = v.decode("utf-8", errors="replace")
    if isinstance(v, str):
        try:
            return json.loads(v)
        except ValueError as e:
            raise ValueError(f"Invalid JSON in {field} field") from e
    return v


def first_error(e: ValidationError) -> str:
    errs = e.errors()
    if not errs:
        return "invalid request"
    first = errs[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    msg = str(first.get("msg") or "invalid value")
    return f"{where}: {msg}" if where else msg


class AttestationIn(BaseModel):
    message: str = Field(..., min_length=1, description="The exact text the device signed")
    signature: str = Field(..., description="65-byte r||s||v signature, hex")

    model_config = ConfigDict(extra="ignore")

    def to_attestation(self) -> Attestation:
        return Attestation(message=self.message, signature=self.signature)


class SubmitRequest(BaseModel):
    entity: DeviceRecordInput
    signature: Optional[AttestationIn] = None
    whistleblow: bool = False
    bypass_signature: bool = Field(default=False, alias="bypassSignature")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _decode_form_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        out["whistleblow"] = as_flag(out.get("whistleblow"))
        out["bypassSignature"] = as_flag(out.pop("bypassSignature", out.pop("bypass_signature", None)))

        if out.get("entity") is not None:
            out["entity"] = _maybe_json(out["entity"], field="entity")

        sig = out.get("signature")
        if out["whistleblow"] or sig is None or sig == "":
            # The relay path never looks at signatures, even broken ones.
            out.pop("signature", None)
        else:
            out["signature"] = _maybe_json(sig, field="signature")
        return out

    def attestation(self) -> Optional[Attestation]:
        return self.signature.to_attestation() if self.signature is not None else None


class VerifyRequest(BaseModel):
    signature: AttestationIn
    bypass_signature: bool = Field(default=False, alias="bypassSignature")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("bypass_signature", mode="before")
    @classmethod
    def _flag(cls, v: Any) -> bool:
        return as_flag(v)
