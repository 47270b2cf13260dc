"""Relay transcript parsing and the outcome policy.

The relay prints a line-oriented, labeled-field protocol on stdout and
stderr. It never exits on its own after a send, and it may exit non-zero even
when the send went through, so the call is judged by what could be read from
its output, not by how it ended.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from beacon.errors import RelayProcessError, RelayTimeoutNoData
from beacon.records import RelayOutcome

_SCALAR_LABELS = (
    ("DMPUBKEY:", "peer_pub_key"),
    ("DMTOKEN:", "peer_token"),
    ("DMRECVPUBKEY:", "recv_pub_key"),
    ("DMRECVTOKEN:", "recv_token"),
    ("User ReceptionID:", "reception_id"),
)

_DM_SEND_RE = re.compile(r"DM Send:\s*([^,]+),\s*(\d+),")
_RECEIVED_SUMMARY_RE = re.compile(r"Received (\d+)/\d+ messages")

# sh: 126 = found but not executable, 127 = command not found
_SHELL_CANNOT_RUN = frozenset({126, 127})


@dataclass(frozen=True)
class RelayTranscript:
    """Everything captured from one relay run."""

    stdout: str
    stderr: str
    timed_out: bool
    exit_code: Optional[int]

    @property
    def combined(self) -> str:
        return (self.stdout or "") + "\n" + (self.stderr or "")

    @property
    def is_empty(self) -> bool:
        return not (self.stdout or self.stderr)


def parse_transcript(text: str) -> RelayOutcome:
    out = RelayOutcome()

    for raw in (text or "").splitlines():
        line = raw.rstrip("\r")

        for label, attr in _SCALAR_LABELS:
            if line.startswith(label):
                setattr(out, attr, line[len(label):].strip())
                break
        else:
            if line.startswith("Network Status:"):
                up = line[len("Network Status:"):].strip() == "true"
                # once the network was reported up, later "false" lines don't undo it
                if up or out.network_up is None:
                    out.network_up = up
            elif line.startswith("DM Send:"):
                m = _DM_SEND_RE.match(line)
                if m:
                    out.sent_message_ids.append(m.group(1).strip())
                    out.round_ids.append(int(m.group(2)))
            elif "Message received" in line:
                out.received_count += 1
            else:
                m = _RECEIVED_SUMMARY_RE.search(line)
                if m:
                    out.received_count = int(m.group(1))

    return out


def classify_transcript(transcript: RelayTranscript) -> RelayOutcome:
    """Partial-output-is-success policy.

    1. a peer pub key, a sent message id or a reception id was read -> success,
       whatever the exit status and even after a timeout
    2. otherwise a timeout -> RelayTimeoutNoData
    3. otherwise nothing captured at all, or the shell could not start the
       command (exit 126/127) -> RelayProcessError
    4. otherwise (exited, said something, nothing usable) -> empty success
    """
    outcome = parse_transcript(transcript.combined)

    if outcome.has_usable_data():
        return outcome

    if transcript.timed_out:
        raise RelayTimeoutNoData(
            "relay command timed out without receiving any data",
            {"exit_code": transcript.exit_code},
        )

    if transcript.is_empty:
        raise RelayProcessError(
            "Failed to execute relay command: no output captured",
            {"exit_code": transcript.exit_code},
        )

    if transcript.exit_code in _SHELL_CANNOT_RUN:
        raise RelayProcessError(
            f"Failed to execute relay command: {transcript.stderr.strip()[:200]}",
            {"exit_code": transcript.exit_code},
        )

    return outcome
