from __future__ import annotations

import json

from fastapi.testclient import TestClient

import beacon.api.structured_logging as structured_logging
from beacon.api.app import create_app
from beacon.api.security import max_request_bytes
from beacon.config import MENDOZA_FAUCET_URL
from beacon.crypto.derivation import derive_identity, placeholder_device_address
from beacon.dispatch import DispatchContext
from beacon.ledger.backend import InMemoryLedgerBackend
from beacon.testing.sigtools import signed_attestation


def _client(cfg, *, ledger=None, pinning=None, relay=None) -> TestClient:
    app = create_app(
        cfg,
        ledger_backend=ledger if ledger is not None else InMemoryLedgerBackend(),
        pinning_backend=pinning,
        relay=relay,
    )
    return TestClient(app)


def test_health(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)

    r = c.get("/health")
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "ok"
    assert j["timestamp"].endswith("Z")


def test_signed_json_upload_publishes(make_cfg, fake_pinning, fake_relay) -> None:
    ledger = InMemoryLedgerBackend()
    c = _client(make_cfg(), ledger=ledger, pinning=fake_pinning, relay=fake_relay)
    _, sig = signed_attestation(label="api-dev-1")

    r = c.post("/api/device/upload", json={"entity": {"nodeId": "n1", "tags": ["t"]}, "signature": sig})

    assert r.status_code == 200, r.text
    j = r.json()
    assert j["success"] is True
    assert set(j["data"]) == {"entityKey", "txHash"}
    assert ledger.get_entity(j["data"]["entityKey"]) is not None
    assert r.headers.get("x-request-id")


def test_multipart_upload_with_file_pins_first(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)
    device, sig = signed_attestation(label="api-dev-2")

    r = c.post(
        "/api/device/upload",
        data={"entity": json.dumps({"_id": "rec-file", "nodeId": "cam-1"}), "signature": json.dumps(sig)},
        files={"file": ("frame.jpg", b"\xff\xd8jpeg", "image/jpeg")},
    )

    assert r.status_code == 200, r.text
    assert r.json()["data"]["contentId"] == fake_pinning.cid
    call = fake_pinning.calls[0]
    assert call["data"] == b"\xff\xd8jpeg"
    assert call["metadata"] == {"name": "frame.jpg", "devicePub": device, "nodeId": "cam-1"}

    hist = c.get("/api/device/records/rec-file").json()
    assert hist["count"] == 1
    assert hist["data"][0]["contentId"] == fake_pinning.cid


def test_whistleblow_form_goes_to_relay(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)

    r = c.post(
        "/api/device/upload",
        data={"entity": json.dumps({"nodeId": "wb-1", "text": "report"}), "whistleblow": "true", "signature": "{not json"},
    )

    assert r.status_code == 200, r.text
    j = r.json()
    assert j["success"] is True
    assert j["data"]["nodeId"] == "wb-1"
    assert j["data"]["whistleblow"] is True
    assert j["data"]["relay"]["peerPubKey"] == "peer-pub"
    assert j["data"]["relay"]["sentMessageIds"] == ["msg-1"]

    anon = c.get("/api/device/records/anonymous").json()
    assert anon["count"] == 1
    assert anon["data"][0]["isAnonymous"] is True
    assert anon["data"][0]["devicePub"].startswith("anonymous_")


def test_missing_signature_is_400(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)

    r = c.post("/api/device/upload", json={"entity": {"_id": "r-nosig"}})

    assert r.status_code == 400
    assert r.json() == {
        "success": False,
        "error": {"code": "missing_signature", "message": r.json()["error"]["message"]},
    }
    stored = c.get("/api/device/records").json()["data"]
    assert stored[0]["_id"] == "r-nosig"
    assert stored[0]["path"] is None
    assert stored[0]["status"] == "failed"


def test_bad_json_and_missing_entity_are_400(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)

    r = c.post("/api/device/upload", data={"entity": "{broken"})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "malformed_request"
    assert "Invalid JSON in entity field" in r.json()["error"]["message"]

    r = c.post("/api/device/upload", json={"whistleblow": True})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "malformed_request"

    r = c.post("/api/device/upload", content=b"[1,2]", headers={"content-type": "application/json"})
    assert r.status_code == 400

    r = c.post("/api/device/upload", json={"entity": {"location": {"lat": 123, "lon": 0}}, "whistleblow": True})
    assert r.status_code == 400


def test_short_signature_is_401(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)

    r = c.post(
        "/api/device/upload",
        json={"entity": {}, "signature": {"message": "m", "signature": "0x" + "ab" * 64}},
    )

    assert r.status_code == 401
    err = r.json()["error"]
    assert err["code"] == "signature_format"
    assert "Expected 130 hex characters, got 128" in err["message"]


def test_unfunded_wallet_is_402_with_funding_hint(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), ledger=InMemoryLedgerBackend(require_funding=True), pinning=fake_pinning, relay=fake_relay)
    device, sig = signed_attestation(label="api-dev-3")
    wallet = derive_identity(device, "test-server-salt").custodial_address

    r = c.post("/api/device/upload", json={"entity": {}, "signature": sig})

    assert r.status_code == 402
    j = r.json()
    assert j["success"] is False
    assert j["error"]["code"] == "insufficient_funds"
    assert j["walletAddress"] == wallet
    assert wallet in j["fundingHint"]
    assert j["faucetUrl"] == MENDOZA_FAUCET_URL


def test_pinning_failure_is_500(make_cfg, fake_pinning, fake_relay) -> None:
    fake_pinning.exc = OSError("pinata unreachable")
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)
    _, sig = signed_attestation(label="api-dev-4")

    r = c.post(
        "/api/device/upload",
        data={"entity": "{}", "signature": json.dumps(sig)},
        files={"file": ("a.bin", b"abc", "application/octet-stream")},
    )

    assert r.status_code == 500
    assert r.json()["error"]["code"] == "pinning_failed"


def test_bypass_requires_server_switch(make_cfg, fake_pinning, fake_relay) -> None:
    off = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)
    r = off.post("/api/device/upload", data={"entity": "{}", "bypassSignature": "true"})
    assert r.status_code == 400

    on = _client(make_cfg(allow_signature_bypass=True), pinning=fake_pinning, relay=fake_relay)
    r = on.post("/api/device/upload", data={"entity": "{}", "bypassSignature": "true"})
    assert r.status_code == 200, r.text
    assert on.get("/api/device/records").json()["data"][0]["devicePub"] == placeholder_device_address()


def test_verify_endpoint(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)
    device, sig = signed_attestation(label="api-dev-5")

    r = c.post("/api/device/verify", json={"signature": sig})
    assert r.status_code == 200
    assert r.json() == {"success": True, "deviceAddress": device}

    r = c.post("/api/device/verify", json={"signature": {"message": "m", "signature": "0xdead"}})
    assert r.status_code == 401

    r = c.post("/api/device/verify", json={"signature": {"message": "m"}})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "malformed_request"


def test_verify_bypass_returns_placeholder(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(allow_signature_bypass=True), pinning=fake_pinning, relay=fake_relay)

    r = c.post(
        "/api/device/verify",
        json={"signature": {"message": "m", "signature": "0xdead"}, "bypassSignature": "true"},
    )

    assert r.status_code == 200
    j = r.json()
    assert j["bypassed"] is True
    assert j["deviceAddress"] == placeholder_device_address()


def test_listing_routes_and_aliases(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)
    _, sig = signed_attestation(label="api-dev-6")

    c.post("/api/device/upload", json={"entity": {"_id": "same"}, "signature": sig})
    c.post("/api/device/upload", json={"entity": {"_id": "same"}, "signature": sig})
    c.post("/api/device/upload", json={"entity": {"_id": "anon"}, "whistleblow": True})

    all_records = c.get("/api/device/records").json()
    assert all_records["success"] is True
    assert all_records["count"] == 3
    assert c.get("/api/device/chats").json()["count"] == 3
    assert c.get("/api/device/whistleblow").json()["count"] == 1
    assert c.get("/api/device/records/same").json()["count"] == 2

    r = c.get("/api/device/records/unknown")
    assert r.status_code == 404
    assert r.json()["success"] is False


def test_request_size_limit_follows_upload_cap(make_cfg, fake_pinning, fake_relay) -> None:
    cfg = make_cfg(max_upload_bytes=1024)
    c = _client(cfg, pinning=fake_pinning, relay=fake_relay)
    limit = max_request_bytes(cfg)

    r = c.post("/api/device/upload", json={"entity": {"text": "x" * limit}, "whistleblow": True})

    assert r.status_code == 413
    assert r.json()["error"]["code"] == "request_too_large"
    assert str(limit) in r.json()["error"]["message"]
    assert fake_relay.records == []

    r = c.post("/api/device/upload", json={"entity": {"text": "x" * 4096}, "whistleblow": True})
    assert r.status_code == 200, r.text


def test_docs_disabled_in_prod(make_cfg, fake_pinning, fake_relay) -> None:
    assert _client(make_cfg(mode="prod"), pinning=fake_pinning, relay=fake_relay).get("/openapi.json").status_code == 404
    assert _client(make_cfg(mode="dev"), pinning=fake_pinning, relay=fake_relay).get("/openapi.json").status_code == 200


class _RejectingLedger(InMemoryLedgerBackend):
    def create_entity(self, **kwargs):
        raise RuntimeError("nonce too low")


def test_ledger_submission_failure_reports_wallet(make_cfg, fake_pinning, fake_relay) -> None:
    c = _client(make_cfg(), ledger=_RejectingLedger(), pinning=fake_pinning, relay=fake_relay)
    device, sig = signed_attestation(label="api-dev-7")
    wallet = derive_identity(device, "test-server-salt").custodial_address

    r = c.post("/api/device/upload", json={"entity": {}, "signature": sig})

    assert r.status_code == 500
    j = r.json()
    assert j["error"]["code"] == "ledger_submission_failed"
    assert j["walletAddress"] == wallet
    assert "fundingHint" not in j
    assert "faucetUrl" not in j


def test_dispatch_without_record_is_500(make_cfg, fake_pinning, fake_relay) -> None:
    class _EmptyDispatcher:
        async def run(self, request):
            return DispatchContext(request=request)

    app = create_app(make_cfg(), ledger_backend=InMemoryLedgerBackend(), pinning_backend=fake_pinning, relay=fake_relay)
    app.state.dispatcher = _EmptyDispatcher()
    c = TestClient(app)

    r = c.post("/api/device/upload", json={"entity": {}, "whistleblow": True})

    assert r.status_code == 500
    assert r.json()["error"]["code"] == "internal_error"


def _capture_access_events(monkeypatch):
    events = []

    def record(logger, event, **fields):
        if event == "http_request":
            events.append(fields)

    monkeypatch.setattr(structured_logging, "log_event", record)
    return events


def test_access_event_carries_dispatch_route(monkeypatch, make_cfg, fake_pinning, fake_relay) -> None:
    events = _capture_access_events(monkeypatch)
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)
    _, sig = signed_attestation(label="api-dev-8")

    r = c.post("/api/device/upload", json={"entity": {"_id": "rec-log"}, "signature": sig}, headers={"x-request-id": "rid-1"})

    assert r.status_code == 200, r.text
    assert r.headers["x-request-id"] == "rid-1"
    [ev] = events
    assert ev["request_id"] == "rid-1"
    assert ev["status"] == 200
    assert ev["route"] == "ledger"
    assert ev["record_id"] == "rec-log"
    assert ev["client"]


def test_access_event_for_whistleblow_has_no_client(monkeypatch, make_cfg, fake_pinning, fake_relay) -> None:
    events = _capture_access_events(monkeypatch)
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)

    r = c.post("/api/device/upload", json={"entity": {"_id": "rec-anon"}, "whistleblow": True})

    assert r.status_code == 200, r.text
    [ev] = events
    assert ev["route"] == "relay"
    assert ev["anonymous"] is True
    assert "client" not in ev


def test_access_event_carries_error_code(monkeypatch, make_cfg, fake_pinning, fake_relay) -> None:
    events = _capture_access_events(monkeypatch)
    c = _client(make_cfg(), pinning=fake_pinning, relay=fake_relay)

    r = c.post("/api/device/upload", json={"entity": {"_id": "rec-nosig"}})

    assert r.status_code == 400
    [ev] = events
    assert ev["error_code"] == "missing_signature"
    assert ev["record_id"] == "rec-nosig"
    assert "route" not in ev
