from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from beacon.api.errors import install_error_handlers
from beacon.api.routes_device import router as device_router
from beacon.api.routes_health import router as health_router
from beacon.api.security import RequestSizeLimitMiddleware, max_request_bytes
from beacon.api.structured_logging import RequestLogMiddleware, configure_structured_logging
from beacon.config import BeaconConfig, load_config
from beacon.dispatch import DispatchRouter
from beacon.ledger.backend import InMemoryLedgerBackend, LedgerBackend, Web3LedgerBackend
from beacon.record_log import RecordLog
from beacon.relay.invoker import Relay, RelayInvoker
from beacon.storage.pinning import PinataClient, PinningBackend


def build_ledger_backend(cfg: BeaconConfig) -> LedgerBackend:
    if cfg.ledger_backend == "memory":
        return InMemoryLedgerBackend()
    return Web3LedgerBackend(rpc_url=cfg.ledger_rpc_url, storage_address=cfg.ledger_storage_address)


def create_app(
    cfg: Optional[BeaconConfig] = None,
    *,
    ledger_backend: Optional[LedgerBackend] = None,
    pinning_backend: Optional[PinningBackend] = None,
    relay: Optional[Relay] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Backends default to the ones named by `cfg`; tests pass fakes instead.
    One RecordLog is created per app and shared by the router and the
    listing routes through app.state.
    """
    configure_structured_logging()
    cfg = cfg or load_config()

    # Disable docs in production.
    if cfg.is_prod:
        app = FastAPI(title="Beacon Dispatch API", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="Beacon Dispatch API")

    record_log = RecordLog()
    app.state.cfg = cfg
    app.state.record_log = record_log
    app.state.dispatcher = DispatchRouter(
        cfg=cfg,
        record_log=record_log,
        ledger=ledger_backend if ledger_backend is not None else build_ledger_backend(cfg),
        pinning=pinning_backend if pinning_backend is not None else PinataClient.from_config(cfg),
        relay=relay if relay is not None else RelayInvoker.from_config(cfg),
    )

    install_error_handlers(app)

    # --- Middleware ---
    # Added last runs first: request logging wraps the size limiter.
    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=max_request_bytes(cfg))
    app.add_middleware(RequestLogMiddleware)

    # CORS (explicit allowlist only).
    if cfg.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_origins),
            allow_credentials="*" not in cfg.cors_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "X-Request-Id"],
        )

    # --- Routers ---
    app.include_router(health_router)
    app.include_router(device_router)

    return app


# Module-level app for `uvicorn beacon.api.app:app`.
app = create_app()
