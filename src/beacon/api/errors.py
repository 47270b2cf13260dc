from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from beacon.api.structured_logging import annotate_request
from beacon.core_logging import log_event
from beacon.errors import (
    BeaconError,
    LedgerInsufficientFunds,
    MalformedRequest,
    MissingSignature,
    SignatureFormatError,
    SignatureVerificationError,
)

Json = Dict[str, Any]

log = logging.getLogger("beacon.http")

_STATUS_BY_ERROR = (
    (MalformedRequest, 400),
    (MissingSignature, 400),
    (SignatureFormatError, 401),
    (SignatureVerificationError, 401),
    (LedgerInsufficientFunds, 402),
)


@dataclass(eq=False)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    @staticmethod
    def from_beacon(err: BeaconError) -> "ApiError":
        status = 500
        for cls, code in _STATUS_BY_ERROR:
            if isinstance(err, cls):
                status = code
                break
        return ApiError(status, err.code, err.reason, dict(err.details or {}))

    def to_json(self) -> Json:
        body: Json = {"success": False, "error": {"code": self.code, "message": self.message}}
        wallet = self.details.get("wallet_address")
        if wallet:
            body["walletAddress"] = wallet
        if self.status_code == 402:
            if wallet:
                body["fundingHint"] = f"Please fund the wallet address: {wallet}"
            faucet = self.details.get("faucet_url")
            if faucet:
                body["faucetUrl"] = faucet
        return body


def error_response(err: ApiError) -> JSONResponse:
    return JSONResponse(status_code=err.status_code, content=err.to_json())


def install_error_handlers(app: FastAPI) -> None:
    """Render every failure as the `{success: false, error: {...}}` envelope."""

    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        annotate_request(request, error_code=exc.code)
        return error_response(exc)

    @app.exception_handler(BeaconError)
    async def _beacon_error(request: Request, exc: BeaconError):
        annotate_request(request, error_code=exc.code)
        return error_response(ApiError.from_beacon(exc))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = str(first.get("msg") or "invalid request")
        return error_response(ApiError.bad_request(MalformedRequest.code, f"{where}: {msg}" if where else msg))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        code = "not_found" if exc.status_code == 404 else "http_error"
        return error_response(ApiError(exc.status_code, code, str(exc.detail), {}))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log_event(
            log,
            "unhandled_error",
            level=logging.ERROR,
            request_id=getattr(request.state, "request_id", None),
            path=str(request.url.path or ""),
            error=str(exc),
        )
        return error_response(ApiError.internal("internal_error", f"Internal server error: {exc}"))
