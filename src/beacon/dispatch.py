"""Dispatch router: one request in, one backend out.

    received -> validating -> routed_ledger | routed_relay -> completed | failed

Route choice on entry to `validating`:

    whistleblow  signature  bypass honoured  ->
    true         any        any              relay (signature never checked)
    false        present    any              verify -> derive -> ledger
    false        absent     true             placeholder -> derive -> ledger
    false        absent     false            failed: MissingSignature

"Bypass honoured" needs both the request flag and the process-wide
allow_signature_bypass switch, which load_config() refuses in prod.

Every terminal outcome is appended to the record log before dispatch()
returns or raises.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from beacon.config import BeaconConfig
from beacon.core_logging import log_event
from beacon.crypto.attestation import verify_attestation
from beacon.crypto.derivation import DerivedIdentity, derive_identity, placeholder_device_address
from beacon.errors import BeaconError, InternalUnexpectedError, MissingSignature
from beacon.ledger.backend import LedgerBackend
from beacon.ledger.publisher import publish_record
from beacon.record_log import STATUS_COMPLETED, STATUS_FAILED, RecordLog
from beacon.records import (
    Attestation,
    DeviceRecord,
    DeviceRecordInput,
    DispatchOutcome,
    random_suffix,
)
from beacon.relay.invoker import Relay
from beacon.storage.pinning import PendingUpload, PinningBackend, pin_upload

log = logging.getLogger("beacon.dispatch")


class DispatchState(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    ROUTED_LEDGER = "routed_ledger"
    ROUTED_RELAY = "routed_relay"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    DispatchState.RECEIVED: {DispatchState.VALIDATING, DispatchState.FAILED},
    DispatchState.VALIDATING: {DispatchState.ROUTED_LEDGER, DispatchState.ROUTED_RELAY, DispatchState.FAILED},
    DispatchState.ROUTED_LEDGER: {DispatchState.COMPLETED, DispatchState.FAILED},
    DispatchState.ROUTED_RELAY: {DispatchState.COMPLETED, DispatchState.FAILED},
    DispatchState.COMPLETED: set(),
    DispatchState.FAILED: set(),
}


class Route(str, Enum):
    LEDGER = "ledger"
    RELAY = "relay"


@dataclass(frozen=True)
class RouteDecision:
    route: Route
    verify_signature: bool = False
    use_placeholder: bool = False


def choose_route(*, whistleblow: bool, has_signature: bool, bypass_honoured: bool) -> RouteDecision:
    if whistleblow:
        return RouteDecision(Route.RELAY)
    if has_signature:
        return RouteDecision(Route.LEDGER, verify_signature=True)
    if bypass_honoured:
        return RouteDecision(Route.LEDGER, use_placeholder=True)
    raise MissingSignature(
        "Missing required field: signature is required for ledger uploads "
        "(or enable the dev signature bypass)"
    )


@dataclass
class DispatchRequest:
    record: DeviceRecordInput
    attestation: Optional[Attestation] = None
    whistleblow: bool = False
    bypass_signature: bool = False
    upload: Optional[PendingUpload] = None


@dataclass
class DispatchContext:
    request: DispatchRequest
    state: DispatchState = DispatchState.RECEIVED
    route: Optional[Route] = None
    record: Optional[DeviceRecord] = None
    identity: Optional[DerivedIdentity] = None
    outcome: Optional[DispatchOutcome] = None
    error: Optional[BeaconError] = None
    transitions: List[DispatchState] = field(default_factory=lambda: [DispatchState.RECEIVED])


class DispatchRouter:
    def __init__(
        self,
        *,
        cfg: BeaconConfig,
        record_log: RecordLog,
        ledger: LedgerBackend,
        pinning: PinningBackend,
        relay: Relay,
    ) -> None:
        self._cfg = cfg
        self._record_log = record_log
        self._ledger = ledger
        self._pinning = pinning
        self._relay = relay

    @property
    def record_log(self) -> RecordLog:
        return self._record_log

    async def dispatch(self, request: DispatchRequest) -> DispatchOutcome:
        """Route one record. Raises a BeaconError subclass on failure."""
        ctx = await self.run(request)
        if ctx.outcome is None:
            raise InternalUnexpectedError("dispatch finished without an outcome")
        return ctx.outcome

    async def run(self, request: DispatchRequest) -> DispatchContext:
        """Like dispatch(), but hands back the whole context (completed record included)."""
        ctx = DispatchContext(request=request)
        try:
            await self._run(ctx)
            return ctx
        except BeaconError as e:
            self._fail(ctx, e)
            raise
        except Exception as e:
            err = InternalUnexpectedError(f"Internal server error: {e}")
            self._fail(ctx, err, exc=e)
            raise err from e
        finally:
            if request.upload is not None:
                request.upload.discard()

    def _advance(self, ctx: DispatchContext, new: DispatchState) -> None:
        if new not in _TRANSITIONS[ctx.state]:
            raise InternalUnexpectedError(f"illegal dispatch transition {ctx.state.value} -> {new.value}")
        ctx.state = new
        ctx.transitions.append(new)
        log.debug("dispatch state %s", new.value)

    def _bypass_honoured(self, request: DispatchRequest) -> bool:
        if not request.bypass_signature:
            return False
        if not self._cfg.allow_signature_bypass:
            log_event(log, "signature_bypass_ignored", level=logging.WARNING, mode=self._cfg.mode)
            return False
        return True

    async def _run(self, ctx: DispatchContext) -> DispatchOutcome:
        req = ctx.request
        self._advance(ctx, DispatchState.VALIDATING)

        decision = choose_route(
            whistleblow=req.whistleblow,
            has_signature=req.attestation is not None,
            bypass_honoured=False if req.whistleblow or req.attestation is not None else self._bypass_honoured(req),
        )
        ctx.route = decision.route

        if decision.route is Route.RELAY:
            ctx.record = req.record.complete(device_pub_fallback=f"anonymous_{random_suffix()}")
            self._advance(ctx, DispatchState.ROUTED_RELAY)
            log_event(log, "dispatch_routed", route="relay", record_id=ctx.record.id, node_id=ctx.record.node_id)
            ctx.outcome = await self._relay.invoke(ctx.record)
        else:
            if decision.use_placeholder:
                device_address = placeholder_device_address()
                log_event(log, "signature_bypassed", level=logging.WARNING, device_address=device_address)
            else:
                if req.attestation is None:
                    raise InternalUnexpectedError("signature verification chosen without an attestation")
                device_address = await run_in_threadpool(
                    verify_attestation, req.attestation.message, req.attestation.signature
                )

            ctx.identity = await run_in_threadpool(derive_identity, device_address, self._cfg.server_salt or "")
            ctx.record = req.record.complete(device_pub_fallback=device_address)
            self._advance(ctx, DispatchState.ROUTED_LEDGER)
            log_event(
                log,
                "dispatch_routed",
                route="ledger",
                record_id=ctx.record.id,
                node_id=ctx.record.node_id,
                wallet_address=ctx.identity.custodial_address,
            )

            content_id: Optional[str] = None
            if req.upload is not None:
                content_id = await run_in_threadpool(
                    pin_upload,
                    self._pinning,
                    req.upload,
                    metadata={
                        "name": req.upload.filename,
                        "devicePub": ctx.record.device_pub,
                        "nodeId": ctx.record.node_id,
                    },
                )
                ctx.record = ctx.record.with_content_id(content_id)

            ctx.outcome = await run_in_threadpool(
                publish_record,
                self._ledger,
                ctx.record,
                ctx.identity,
                content_id=content_id,
                ttl_s=self._cfg.ledger_ttl_s,
                faucet_url=self._cfg.ledger_faucet_url,
            )

        self._advance(ctx, DispatchState.COMPLETED)
        self._record_log.append(
            ctx.record,
            is_anonymous=req.whistleblow,
            path=ctx.route.value,
            status=STATUS_COMPLETED,
        )
        log_event(log, "dispatch_completed", route=ctx.route.value, record_id=ctx.record.id)
        return ctx.outcome

    def _fail(self, ctx: DispatchContext, err: BeaconError, *, exc: Optional[BaseException] = None) -> None:
        ctx.error = err
        if ctx.state not in (DispatchState.COMPLETED, DispatchState.FAILED):
            ctx.state = DispatchState.FAILED
            ctx.transitions.append(DispatchState.FAILED)

        req = ctx.request
        record = ctx.record
        if record is None:
            prefix = "anonymous" if ctx.route is Route.RELAY else "unverified"
            record = req.record.complete(device_pub_fallback=f"{prefix}_{random_suffix()}")

        self._record_log.append(
            record,
            is_anonymous=req.whistleblow,
            path=ctx.route.value if ctx.route is not None else None,
            status=STATUS_FAILED,
            error_code=err.code,
        )
        log_event(
            log,
            "dispatch_failed",
            level=logging.ERROR if exc is not None else logging.WARNING,
            code=err.code,
            error=err.reason,
            route=ctx.route.value if ctx.route is not None else None,
            record_id=record.id,
            failed_in=ctx.transitions[-2].value if len(ctx.transitions) > 1 else None,
        )
        if exc is not None:
            log.exception("unexpected dispatch failure", exc_info=exc)
