from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import pytest

from beacon.errors import RelayProcessError, RelayTimeoutNoData
from beacon.records import DeviceRecordInput
from beacon.relay.invoker import RelayInvoker


def _script(tmp_path: Path, name: str, body: str) -> str:
    p = tmp_path / name
    p.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    return f"sh {p.name}"


def _record(**kw):
    return DeviceRecordInput(**kw).complete(device_pub_fallback="anonymous_test")


def test_message_is_passed_as_single_argument(tmp_path: Path) -> None:
    cmd = _script(tmp_path, "echo_relay.sh", 'printf "User ReceptionID: %s\\n" "$2"\n')
    inv = RelayInvoker(command=cmd, workdir=str(tmp_path), timeout_s=10)

    rec = _record(node_id="node-7", text="it's \"quoted\" & $dollar")
    out = asyncio.run(inv.invoke(rec))

    assert json.loads(out.reception_id or "") == rec.to_json()


def test_partial_output_survives_timeout(tmp_path: Path) -> None:
    cmd = _script(
        tmp_path,
        "hanging_relay.sh",
        'echo "DMPUBKEY: pk-1"\necho "DM Send: id1, 7, now"\nsleep 30\n',
    )
    inv = RelayInvoker(command=cmd, workdir=str(tmp_path), timeout_s=1)

    started = time.monotonic()
    out = asyncio.run(inv.invoke(_record(node_id="n1")))

    assert time.monotonic() - started < 10
    assert out.peer_pub_key == "pk-1"
    assert out.sent_message_ids == ["id1"]
    assert out.round_ids == [7]


def test_capture_reports_timeout(tmp_path: Path) -> None:
    cmd = _script(tmp_path, "slow.sh", "echo starting\nsleep 30\n")
    inv = RelayInvoker(command=cmd, workdir=str(tmp_path), timeout_s=0.5)

    t = asyncio.run(inv.capture("{}"))

    assert t.timed_out is True
    assert "starting" in t.stdout


def test_timeout_without_data_fails(tmp_path: Path) -> None:
    cmd = _script(tmp_path, "silent.sh", "sleep 30\n")
    inv = RelayInvoker(command=cmd, workdir=str(tmp_path), timeout_s=0.5)

    with pytest.raises(RelayTimeoutNoData):
        asyncio.run(inv.invoke(_record()))


def test_silent_exit_fails(tmp_path: Path) -> None:
    cmd = _script(tmp_path, "noop.sh", "exit 0\n")
    inv = RelayInvoker(command=cmd, workdir=str(tmp_path), timeout_s=5)

    with pytest.raises(RelayProcessError):
        asyncio.run(inv.invoke(_record()))


def test_missing_command_fails(tmp_path: Path) -> None:
    inv = RelayInvoker(command="beacon-relay-does-not-exist", workdir=str(tmp_path), timeout_s=5)

    with pytest.raises(RelayProcessError):
        asyncio.run(inv.invoke(_record()))


def test_missing_workdir_fails(tmp_path: Path) -> None:
    inv = RelayInvoker(command="true", workdir=str(tmp_path / "nope"), timeout_s=5)

    with pytest.raises(RelayProcessError):
        asyncio.run(inv.invoke(_record()))


def test_noisy_failure_is_empty_success(tmp_path: Path) -> None:
    cmd = _script(tmp_path, "noisy.sh", 'echo "panic: no network" 1>&2\nexit 2\n')
    inv = RelayInvoker(command=cmd, workdir=str(tmp_path), timeout_s=5)

    out = asyncio.run(inv.invoke(_record()))

    assert out.has_usable_data() is False
    assert out.received_count == 0
