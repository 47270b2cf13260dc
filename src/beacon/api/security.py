"""Request size cap for the device routes.

The cap is the configured file limit plus room for the multipart framing,
the entity JSON and the signature, so a request that passes here can still
be rejected by the per-file check in `spool_upload` but never the reverse.
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import ClientDisconnect

from beacon.api.errors import ApiError, error_response
from beacon.api.structured_logging import annotate_request
from beacon.config import BeaconConfig
from beacon.core_logging import log_event
from beacon.errors import MalformedRequest

log = logging.getLogger("beacon.http")

FORM_OVERHEAD_BYTES = 256 * 1024


def max_request_bytes(cfg: BeaconConfig) -> int:
    return int(cfg.max_upload_bytes) + FORM_OVERHEAD_BYTES


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """413 `request_too_large` for POSTs under /api/device/ over `max_bytes`.

    Content-Length is checked first; bodies without one (chunked) are
    buffered once and measured.
    """

    def __init__(self, app, *, max_bytes: int, guarded_prefix: str = "/api/device/") -> None:
        super().__init__(app)
        self._max_bytes = int(max_bytes)
        self._prefix = guarded_prefix

    def _too_large(self, request: Request, size: int):
        annotate_request(request, error_code="request_too_large")
        log_event(
            log,
            "request_too_large",
            level=logging.WARNING,
            path=str(request.url.path or ""),
            size=size,
            limit=self._max_bytes,
        )
        return error_response(
            ApiError(413, "request_too_large", f"Request body too large (max {self._max_bytes} bytes)", {})
        )

    async def dispatch(self, request: Request, call_next):
        path = request.url.path or ""
        if (request.method or "").upper() != "POST" or not path.startswith(self._prefix):
            return await call_next(request)

        declared = _declared_length(request)
        if declared is not None:
            if declared > self._max_bytes:
                return self._too_large(request, declared)
            return await call_next(request)

        try:
            body = await request.body()
        except ClientDisconnect:
            return error_response(ApiError.bad_request(MalformedRequest.code, "Unable to read request body"))
        if len(body) > self._max_bytes:
            return self._too_large(request, len(body))

        return await call_next(request)
