from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shlex
import signal
import time
from typing import List, Optional, Protocol

from beacon.config import BeaconConfig
from beacon.core_logging import log_event, preview
from beacon.errors import BeaconError, RelayProcessError
from beacon.records import DeviceRecord, RelayOutcome
from beacon.relay.transcript import RelayTranscript, classify_transcript

log = logging.getLogger("beacon.relay")

_READ_CHUNK = 4096
_FINAL_DRAIN_S = 2.0


class Relay(Protocol):
    async def invoke(self, record: DeviceRecord) -> RelayOutcome:
        ...


async def _drain(stream: Optional[asyncio.StreamReader], sink: List[bytes]) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            return
        sink.append(chunk)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # The relay runs in its own session, so its pid is also its process group id.
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)


class RelayInvoker:
    """Runs the external relay once per record.

    The command gets a single argument pair `-m <json>`; it is expected to
    keep running after sending, so every run ends either on its own or on
    `timeout_s`, and output captured up to that point is kept either way.
    """

    def __init__(self, *, command: str, workdir: Optional[str], timeout_s: float) -> None:
        self._command = command
        self._workdir = workdir or None
        self._timeout_s = float(timeout_s)

    @classmethod
    def from_config(cls, cfg: BeaconConfig) -> "RelayInvoker":
        return cls(command=cfg.relay_command, workdir=cfg.relay_workdir, timeout_s=cfg.relay_timeout_s)

    async def capture(self, message: str) -> RelayTranscript:
        cmd = f"{self._command} -m {shlex.quote(message)}"
        log_event(
            log,
            "relay_started",
            workdir=self._workdir,
            timeout_s=self._timeout_s,
            message_len=len(message),
            message_preview=preview(message),
        )

        try:
            proc = await asyncio.create_subprocess_shell(
                cmd,
                cwd=self._workdir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise RelayProcessError(f"Failed to execute relay command: {e}") from e

        out: List[bytes] = []
        err: List[bytes] = []
        timed_out = False
        started = time.monotonic()

        try:
            await asyncio.wait_for(
                asyncio.gather(_drain(proc.stdout, out), _drain(proc.stderr, err), proc.wait()),
                timeout=self._timeout_s,
            )
        except asyncio.TimeoutError:
            timed_out = True
            _kill_group(proc)
            # Pick up whatever was still sitting in the pipes.
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    asyncio.gather(_drain(proc.stdout, out), _drain(proc.stderr, err)),
                    timeout=_FINAL_DRAIN_S,
                )
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=_FINAL_DRAIN_S)
        except BaseException:
            _kill_group(proc)
            raise

        transcript = RelayTranscript(
            stdout=b"".join(out).decode("utf-8", errors="replace"),
            stderr=b"".join(err).decode("utf-8", errors="replace"),
            timed_out=timed_out,
            exit_code=proc.returncode,
        )
        log_event(
            log,
            "relay_finished",
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=timed_out,
            exit_code=proc.returncode,
            stdout_bytes=len(transcript.stdout),
            stderr_bytes=len(transcript.stderr),
            output_preview=preview(transcript.combined, 500),
        )
        return transcript

    async def invoke(self, record: DeviceRecord) -> RelayOutcome:
        message = json.dumps(record.to_json(), separators=(",", ":"), ensure_ascii=False)
        transcript = await self.capture(message)

        try:
            outcome = classify_transcript(transcript)
        except BeaconError as e:
            log_event(log, "relay_failed", level=logging.WARNING, code=e.code, node_id=record.node_id, error=e.reason)
            raise

        log_event(
            log,
            "relay_completed",
            node_id=record.node_id,
            timed_out=transcript.timed_out,
            exit_code=transcript.exit_code,
            has_peer_pub_key=bool(outcome.peer_pub_key),
            sent_messages=len(outcome.sent_message_ids),
            received_count=outcome.received_count,
        )
        return outcome
