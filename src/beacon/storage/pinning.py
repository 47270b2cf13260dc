# src/beacon/storage/pinning.py
from __future__ import annotations

import http.client
import json
import logging
import os
import re
import tempfile
import urllib.parse
import uuid
from dataclasses import dataclass
from io import BytesIO
from typing import Any, BinaryIO, Dict, Optional, Protocol

from beacon.config import BeaconConfig
from beacon.core_logging import log_event
from beacon.errors import BeaconError, ConfigurationError, MalformedRequest, PinningServiceError

Json = Dict[str, Any]

log = logging.getLogger("beacon.pinning")

_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")  # base58btc (no 0,O,I,l)
_CIDV1_BASE32_RE = re.compile(r"^b[a-z2-7]{10,}$")  # base32 lowercase (bafy..., bafk...)

_CHUNK = 1024 * 256


def looks_like_cid(cid: str) -> bool:
    """Cheap shape check for CIDv0 / base32 CIDv1. Not a multiformats parser."""
    c = (cid or "").strip()
    if not c or len(c) > 128:
        return False
    return bool(_CIDV0_RE.match(c) or _CIDV1_BASE32_RE.match(c))


def sanitize_filename(name: str) -> str:
    name = (name or "").strip()
    if not name:
        return "upload"
    name = re.sub(r"[^a-zA-Z0-9._-]+", "_", name)
    return name[:128] or "upload"


@dataclass
class PendingUpload:
    """A file that came in with a request and may be pinned.

    Either `data` holds the bytes, or `path` points at a temp copy written by
    the HTTP layer. Whoever ends up owning the upload must call discard().
    """

    filename: str
    content_type: str
    path: Optional[str] = None
    data: Optional[bytes] = None
    size: int = 0

    def open(self) -> BinaryIO:
        if self.path is not None:
            return open(self.path, "rb")
        return BytesIO(self.data or b"")

    def discard(self) -> None:
        p = self.path
        self.path = None
        if p and os.path.exists(p):
            try:
                os.unlink(p)
            except OSError as e:
                log_event(log, "upload_cleanup_failed", level=logging.ERROR, path=p, error=str(e))


def spool_upload(
    src: BinaryIO,
    *,
    filename: str,
    content_type: str,
    tmp_dir: str,
    max_bytes: int,
) -> PendingUpload:
    """Copy an incoming file to a private temp file, enforcing the size cap.

    The temp file is removed before raising if the upload is empty or too big.
    """
    fd, path = tempfile.mkstemp(prefix="beacon-upload-", dir=tmp_dir)
    size = 0
    try:
        with os.fdopen(fd, "wb") as dst:
            while True:
                chunk = src.read(_CHUNK)
                if not chunk:
                    break
                size += len(chunk)
                if size > max_bytes:
                    raise MalformedRequest(f"file_too_large (max {max_bytes} bytes)")
                dst.write(chunk)
        if size == 0:
            raise MalformedRequest("empty_file")
    except BaseException:
        try:
            os.unlink(path)
        except OSError:
            pass
        raise

    return PendingUpload(
        filename=sanitize_filename(filename),
        content_type=(content_type or "").strip() or "application/octet-stream",
        path=path,
        size=size,
    )


class PinningBackend(Protocol):
    def pin(self, *, fileobj: BinaryIO, filename: str, content_type: str, metadata: Json) -> str:
        ...


def _send_chunk(conn: http.client.HTTPConnection, data: bytes) -> None:
    if not data:
        return
    conn.send(f"{len(data):X}\r\n".encode("ascii"))
    conn.send(data)
    conn.send(b"\r\n")


def _finish_chunks(conn: http.client.HTTPConnection) -> None:
    conn.send(b"0\r\n\r\n")


def _form_field(boundary: str, name: str, value: str) -> bytes:
    return (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{name}"\r\n'
        f"\r\n"
        f"{value}\r\n"
    ).encode("utf-8")


def _error_message(status: int, raw: bytes) -> str:
    """Pull the service's own message out of an error body.

    Pinata answers {"error": "..."} or {"error": {"reason": ..., "details": ...}}.
    """
    txt = raw.decode("utf-8", errors="replace").strip()
    try:
        obj = json.loads(txt)
    except Exception:
        return txt[:300] or f"http_{status}"
    err = obj.get("error") if isinstance(obj, dict) else None
    if isinstance(err, dict):
        reason = str(err.get("reason") or "").strip()
        details = str(err.get("details") or "").strip()
        return ": ".join(p for p in (reason, details) if p) or f"http_{status}"
    if isinstance(err, str) and err.strip():
        return err.strip()
    return txt[:300] or f"http_{status}"


def _parse_pin_response(raw: bytes) -> str:
    txt = raw.decode("utf-8", errors="replace").strip()
    if not txt:
        raise PinningServiceError("Pinata upload failed: empty response")
    try:
        obj = json.loads(txt)
    except Exception as e:
        raise PinningServiceError(f"Pinata upload failed: bad response: {txt[:200]}") from e

    cid = str((obj.get("IpfsHash") if isinstance(obj, dict) else "") or "").strip()
    if not cid:
        raise PinningServiceError(f"Pinata upload failed: missing IpfsHash: {txt[:200]}")
    return cid


class PinataClient:
    """Pins files through Pinata's pinFileToIPFS endpoint.

    The multipart body is streamed with chunked transfer encoding so large
    uploads are never fully buffered.
    """

    PIN_PATH = "/pinning/pinFileToIPFS"

    def __init__(self, *, api_key: Optional[str], secret_key: Optional[str], api_base: str, timeout_s: float = 60.0):
        self._api_key = api_key
        self._secret_key = secret_key
        self._api_base = (api_base or "").rstrip("/")
        self._timeout_s = float(timeout_s)

    @classmethod
    def from_config(cls, cfg: BeaconConfig) -> "PinataClient":
        return cls(
            api_key=cfg.pinata_api_key,
            secret_key=cfg.pinata_secret_key,
            api_base=cfg.pinata_api_base,
            timeout_s=cfg.pinning_timeout_s,
        )

    def _connect(self) -> tuple[http.client.HTTPConnection, str, str]:
        u = urllib.parse.urlparse(self._api_base)
        scheme = (u.scheme or "https").lower()
        host = u.hostname or ""
        if not host:
            raise ConfigurationError(f"invalid pinning API base: {self._api_base!r}")
        port = int(u.port or (443 if scheme == "https" else 80))
        prefix = (u.path or "").rstrip("/")

        conn: http.client.HTTPConnection
        if scheme == "https":
            conn = http.client.HTTPSConnection(host, port, timeout=self._timeout_s)
        else:
            conn = http.client.HTTPConnection(host, port, timeout=self._timeout_s)
        return conn, host, prefix + self.PIN_PATH

    def pin(self, *, fileobj: BinaryIO, filename: str, content_type: str, metadata: Json) -> str:
        if not self._api_key or not self._secret_key:
            raise ConfigurationError("Pinata API credentials not configured")

        conn, _host, path = self._connect()
        boundary = f"----beacon-pin-{uuid.uuid4().hex}"
        filename = sanitize_filename(filename)

        pinata_metadata = {"name": filename, "keyvalues": {k: str(v) for k, v in (metadata or {}).items()}}

        preamble = (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
            f"Content-Type: {content_type or 'application/octet-stream'}\r\n"
            f"\r\n"
        ).encode("utf-8")

        epilogue = (
            b"\r\n"
            + _form_field(boundary, "pinataMetadata", json.dumps(pinata_metadata, sort_keys=True))
            + _form_field(boundary, "pinataOptions", json.dumps({"cidVersion": 1}))
            + f"--{boundary}--\r\n".encode("utf-8")
        )

        try:
            conn.putrequest("POST", path)
            conn.putheader("Content-Type", f"multipart/form-data; boundary={boundary}")
            conn.putheader("Transfer-Encoding", "chunked")
            conn.putheader("pinata_api_key", self._api_key)
            conn.putheader("pinata_secret_api_key", self._secret_key)
            conn.endheaders()

            _send_chunk(conn, preamble)
            while True:
                chunk = fileobj.read(_CHUNK)
                if not chunk:
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode("utf-8")
                _send_chunk(conn, chunk)
            _send_chunk(conn, epilogue)
            _finish_chunks(conn)

            resp = conn.getresponse()
            body = resp.read()

            if resp.status < 200 or resp.status >= 300:
                raise PinningServiceError(
                    f"Pinata upload failed: {_error_message(resp.status, body)}",
                    {"http_status": int(resp.status)},
                )

            return _parse_pin_response(body)
        finally:
            try:
                conn.close()
            except Exception:
                pass


def pin_upload(backend: PinningBackend, upload: PendingUpload, *, metadata: Json) -> str:
    """Pin `upload` and return its CID.

    The temp copy (if any) is removed on every exit path.
    """
    log_event(log, "pin_started", filename=upload.filename, size=upload.size, content_type=upload.content_type)
    try:
        with upload.open() as fileobj:
            cid = backend.pin(
                fileobj=fileobj,
                filename=upload.filename,
                content_type=upload.content_type,
                metadata=dict(metadata or {}),
            )
    except BeaconError:
        raise
    except Exception as e:
        raise PinningServiceError(f"Pinata upload failed: {e}") from e
    finally:
        upload.discard()

    if not looks_like_cid(cid):
        raise PinningServiceError(f"pinning service returned an invalid content id: {cid!r}")

    log_event(log, "pin_completed", filename=upload.filename, content_id=cid)
    return cid
