from __future__ import annotations

import dataclasses
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure local "src/" takes precedence over any globally-installed "beacon" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from beacon.config import (  # noqa: E402
    DEFAULT_LEDGER_RPC_URL,
    DEFAULT_STORAGE_ADDRESS,
    MENDOZA_FAUCET_URL,
    ONE_YEAR_S,
    BeaconConfig,
)
from beacon.records import DeviceRecord, RelayOutcome  # noqa: E402

TEST_CID = "bafkreihdwdcefgh4dqkjv67uzcmw7ojee6xedzdetojuzjevtenxquvyku"


class FakePinning:
    """Pinning backend that reads the whole file and hands back a fixed CID."""

    def __init__(self, cid: str = TEST_CID) -> None:
        self.cid = cid
        self.exc: Optional[BaseException] = None
        self.calls: List[Dict[str, Any]] = []

    def pin(self, *, fileobj, filename: str, content_type: str, metadata: Dict[str, Any]) -> str:
        self.calls.append(
            {"data": fileobj.read(), "filename": filename, "content_type": content_type, "metadata": dict(metadata)}
        )
        if self.exc is not None:
            raise self.exc
        return self.cid


class FakeRelay:
    def __init__(self) -> None:
        self.outcome = RelayOutcome(peer_pub_key="peer-pub", sent_message_ids=["msg-1"], round_ids=[7], network_up=True)
        self.exc: Optional[BaseException] = None
        self.records: List[DeviceRecord] = []

    async def invoke(self, record: DeviceRecord) -> RelayOutcome:
        self.records.append(record)
        if self.exc is not None:
            raise self.exc
        return self.outcome


@pytest.fixture
def make_cfg(tmp_path):
    def _make(**overrides: Any) -> BeaconConfig:
        base = BeaconConfig(
            mode="dev",
            server_salt="test-server-salt",
            allow_signature_bypass=False,
            pinata_api_key="test-key",
            pinata_secret_key="test-secret",
            pinata_api_base="https://api.pinata.cloud",
            pinning_timeout_s=5.0,
            ledger_backend="memory",
            ledger_rpc_url=DEFAULT_LEDGER_RPC_URL,
            ledger_storage_address=DEFAULT_STORAGE_ADDRESS,
            ledger_ttl_s=ONE_YEAR_S,
            ledger_faucet_url=MENDOZA_FAUCET_URL,
            relay_command="true",
            relay_workdir=str(tmp_path),
            relay_timeout_s=5.0,
            max_upload_bytes=1024 * 1024,
            upload_tmp_dir=str(tmp_path),
        )
        return dataclasses.replace(base, **overrides)

    return _make


@pytest.fixture
def fake_pinning() -> FakePinning:
    return FakePinning()


@pytest.fixture
def fake_relay() -> FakeRelay:
    return FakeRelay()
