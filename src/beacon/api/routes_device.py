from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from beacon.api.errors import ApiError
from beacon.api.schemas import SubmitRequest, VerifyRequest, first_error
from beacon.api.structured_logging import annotate_request
from beacon.config import BeaconConfig
from beacon.core_logging import log_event, preview
from beacon.crypto.attestation import verify_attestation
from beacon.crypto.derivation import placeholder_device_address
from beacon.dispatch import DispatchRequest, DispatchRouter, Route
from beacon.errors import (
    InternalUnexpectedError,
    MalformedRequest,
    SignatureFormatError,
    SignatureVerificationError,
)
from beacon.record_log import RecordLog
from beacon.records import LedgerOutcome, RelayOutcome
from beacon.storage.pinning import PendingUpload, spool_upload

Json = Dict[str, Any]

router = APIRouter(prefix="/api/device", tags=["device"])

log = logging.getLogger("beacon.http")

_FORM_FIELDS = ("entity", "signature", "whistleblow", "bypassSignature")


def _cfg(request: Request) -> BeaconConfig:
    return request.app.state.cfg


def _dispatcher(request: Request) -> DispatchRouter:
    return request.app.state.dispatcher


def _record_log(request: Request) -> RecordLog:
    return request.app.state.record_log


def _is_form(request: Request) -> bool:
    ctype = (request.headers.get("content-type") or "").lower()
    return ctype.startswith("multipart/form-data") or ctype.startswith("application/x-www-form-urlencoded")


async def _read_form(request: Request, cfg: BeaconConfig) -> Tuple[Json, Optional[PendingUpload]]:
    form = await request.form()
    try:
        raw: Json = {k: form.get(k) for k in _FORM_FIELDS if form.get(k) is not None}
        upload: Optional[PendingUpload] = None
        file = form.get("file")
        if isinstance(file, UploadFile) and file.filename:
            upload = await run_in_threadpool(
                spool_upload,
                file.file,
                filename=file.filename,
                content_type=file.content_type or "",
                tmp_dir=cfg.upload_tmp_dir,
                max_bytes=cfg.max_upload_bytes,
            )
        return raw, upload
    finally:
        await form.close()


async def _read_json(request: Request) -> Json:
    try:
        raw = await request.json()
    except ValueError as e:
        raise MalformedRequest("Invalid JSON body") from e
    if not isinstance(raw, dict):
        raise MalformedRequest("Request body must be a JSON object")
    return raw


async def _read_submission(request: Request, cfg: BeaconConfig) -> Tuple[SubmitRequest, Optional[PendingUpload]]:
    upload: Optional[PendingUpload] = None
    if _is_form(request):
        raw, upload = await _read_form(request, cfg)
    else:
        raw = await _read_json(request)

    try:
        return SubmitRequest.model_validate(raw), upload
    except ValidationError as e:
        if upload is not None:
            upload.discard()
        raise MalformedRequest(first_error(e)) from e


@router.post("/upload")
async def upload_device_record(request: Request):
    """Submit one device record.

    Ledger path: `{success, data: {entityKey, txHash, contentId?}}`.
    Relay path: `{success, message, data: {nodeId, whistleblow, relay}}`.
    """
    cfg = _cfg(request)
    sub, upload = await _read_submission(request, cfg)
    annotate_request(request, anonymous=sub.whistleblow, record_id=sub.entity.id)

    log_event(
        log,
        "device_upload_received",
        request_id=getattr(request.state, "request_id", None),
        whistleblow=sub.whistleblow,
        bypass_signature=sub.bypass_signature,
        has_signature=sub.signature is not None,
        has_file=upload is not None,
    )

    ctx = await _dispatcher(request).run(
        DispatchRequest(
            record=sub.entity,
            attestation=sub.attestation(),
            whistleblow=sub.whistleblow,
            bypass_signature=sub.bypass_signature,
            upload=upload,
        )
    )

    if ctx.record is None or ctx.route is None:
        raise InternalUnexpectedError("dispatch completed without a record")
    annotate_request(request, route=ctx.route.value, record_id=ctx.record.id)

    if ctx.route is Route.RELAY and isinstance(ctx.outcome, RelayOutcome):
        return {
            "success": True,
            "message": "Message sent to relay network",
            "data": {"nodeId": ctx.record.node_id, "whistleblow": True, "relay": ctx.outcome.to_json()},
        }

    if ctx.route is Route.LEDGER and isinstance(ctx.outcome, LedgerOutcome):
        return {"success": True, "data": ctx.outcome.to_json()}

    raise InternalUnexpectedError(f"unexpected {ctx.route.value} outcome: {type(ctx.outcome).__name__}")


@router.post("/verify")
async def verify_device(request: Request, body: VerifyRequest):
    """Check a device signature without submitting anything."""
    cfg = _cfg(request)
    att = body.signature
    try:
        address = await run_in_threadpool(verify_attestation, att.message, att.signature)
    except (SignatureFormatError, SignatureVerificationError) as e:
        if body.bypass_signature and cfg.allow_signature_bypass:
            address = placeholder_device_address()
            log_event(
                log,
                "signature_verify_bypassed",
                level=logging.WARNING,
                code=e.code,
                error=e.reason,
                message_preview=preview(att.message, 100),
                device_address=address,
            )
            return {
                "success": True,
                "deviceAddress": address,
                "bypassed": True,
                "message": "Signature verification bypassed using the dev placeholder key",
            }
        raise

    return {"success": True, "deviceAddress": address}


@router.get("/records")
async def list_records(request: Request):
    items = _record_log(request).list_records()
    return {"success": True, "count": len(items), "data": [r.to_json() for r in items]}


@router.get("/records/anonymous")
async def list_anonymous_records(request: Request):
    items = _record_log(request).list_anonymous()
    return {"success": True, "count": len(items), "data": [r.to_json() for r in items]}


@router.get("/records/{record_id}")
async def get_record_history(request: Request, record_id: str):
    """Every stored entry for one record id, oldest first."""
    items = _record_log(request).get(record_id)
    if not items:
        raise ApiError.not_found("not_found", f"No record with id {record_id}")
    return {"success": True, "count": len(items), "data": [r.to_json() for r in items]}


# Older clients still call the chat-era paths.
router.add_api_route("/chats", list_records, methods=["GET"], include_in_schema=False)
router.add_api_route("/whistleblow", list_anonymous_records, methods=["GET"], include_in_schema=False)
