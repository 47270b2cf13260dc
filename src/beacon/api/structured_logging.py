# src/beacon/api/structured_logging.py
"""JSONL logging setup and the per-request access event.

Route handlers tag the request with what dispatch decided
(`annotate_request`); `RequestLogMiddleware` folds those tags into one
`http_request` event. Whistleblow requests never carry the client address.
"""
from __future__ import annotations

import logging
import os
import time
import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from beacon.core_logging import log_event

Json = Dict[str, Any]

log = logging.getLogger("beacon.http")


def configure_structured_logging(level_name: Optional[str] = None) -> None:
    """Send every logger to stdout as bare JSONL messages.

    Level comes from `level_name`, then BEACON_LOG_LEVEL, then INFO. Calling
    again only updates the level.
    """
    name = (level_name or os.environ.get("BEACON_LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, name, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    if not getattr(root, "_beacon_configured", False):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.handlers = [handler]
        setattr(root, "_beacon_configured", True)  # type: ignore[attr-defined]
    root.setLevel(level)

    # http_request replaces uvicorn's own access line.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def annotate_request(request: Request, **fields: Any) -> None:
    """Attach dispatch details (route, record id, error code...) to the access event."""
    tags = getattr(request.state, "log_fields", None)
    if tags is None:
        tags = {}
        request.state.log_fields = tags
    tags.update({k: v for k, v in fields.items() if v is not None})


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Assign `x-request-id` and emit one `http_request` event per request.

    BEACON_LOG_REQUESTS=0 drops the event; the request id is still assigned
    and echoed.
    """

    def __init__(self, app, *, enabled: Optional[bool] = None) -> None:
        super().__init__(app)
        if enabled is None:
            raw = (os.environ.get("BEACON_LOG_REQUESTS") or "1").strip().lower()
            enabled = raw not in {"0", "false", "no", "n", "off"}
        self._enabled = enabled

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.monotonic()
        status = 500

        try:
            response = await call_next(request)
            status = int(response.status_code)
            response.headers.setdefault("x-request-id", request_id)
            return response
        finally:
            if self._enabled:
                self._emit(request, request_id=request_id, status=status, started=started)

    def _emit(self, request: Request, *, request_id: str, status: int, started: float) -> None:
        fields: Json = dict(getattr(request.state, "log_fields", None) or {})
        if not fields.get("anonymous") and request.client:
            fields["client"] = request.client.host
        log_event(
            log,
            "http_request",
            level=logging.WARNING if status >= 500 else logging.INFO,
            request_id=request_id,
            method=request.method,
            path=str(request.url.path or ""),
            status=status,
            duration_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
