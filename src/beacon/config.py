from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import List, Optional

from beacon.errors import ConfigurationError

DEFAULT_LEDGER_RPC_URL = "https://mendoza.hoodi.arkiv.network/rpc"
MENDOZA_FAUCET_URL = "https://mendoza.hoodi.arkiv.network/faucet/"
# Create operations are addressed to the storage processor, not to a contract.
DEFAULT_STORAGE_ADDRESS = "0x0000000000000000000000000000000060138453"
ONE_YEAR_S = 31_536_000


@dataclass(frozen=True, slots=True)
class BeaconConfig:
    mode: str  # "prod" | "dev"

    # Custodial key derivation
    server_salt: Optional[str]
    allow_signature_bypass: bool

    # Pinning
    pinata_api_key: Optional[str]
    pinata_secret_key: Optional[str]
    pinata_api_base: str
    pinning_timeout_s: float

    # Ledger
    ledger_backend: str  # "rpc" | "memory"
    ledger_rpc_url: str
    ledger_storage_address: str
    ledger_ttl_s: int
    ledger_faucet_url: Optional[str]

    # Relay
    relay_command: str
    relay_workdir: str
    relay_timeout_s: float

    # Uploads
    max_upload_bytes: int
    upload_tmp_dir: str

    cors_origins: tuple[str, ...] = ()

    @property
    def is_prod(self) -> bool:
        return self.mode == "prod"


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_str(name: str) -> Optional[str]:
    v = (os.environ.get(name) or "").strip()
    return v or None


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, str(default)))
    except Exception:
        return float(default)


def parse_cors_origins(raw: str | None, *, mode: str) -> List[str]:
    """Parse CORS origins.

    Policy:
      - unset/empty -> CORS disabled
      - wildcard "*" is rejected in prod
    """
    raw = (raw or "").strip()
    if not raw:
        return []

    origins = [o.strip() for o in raw.split(",") if o.strip()]

    if "*" in origins:
        if mode == "prod":
            raise ConfigurationError(
                "Unsafe CORS configuration: wildcard '*' not allowed in production. "
                "Set explicit origins in BEACON_CORS_ORIGINS."
            )
        return ["*"]

    return origins


def _faucet_for(rpc_url: str) -> Optional[str]:
    explicit = _env_str("BEACON_LEDGER_FAUCET_URL")
    if explicit:
        return explicit
    if "mendoza" in rpc_url:
        return MENDOZA_FAUCET_URL
    return None


def load_config() -> BeaconConfig:
    """Read BeaconConfig from BEACON_* environment variables.

    Raises ConfigurationError for settings that are unsafe in the current
    mode. Missing credentials are NOT an error here: they only matter for the
    request paths that need them, so they are checked at use time.
    """
    mode = (os.environ.get("BEACON_MODE") or "prod").strip().lower()

    allow_bypass = _truthy(os.environ.get("BEACON_ALLOW_SIGNATURE_BYPASS"))
    if allow_bypass and mode == "prod":
        raise ConfigurationError(
            "BEACON_ALLOW_SIGNATURE_BYPASS is a dev-only switch and cannot be enabled with BEACON_MODE=prod"
        )

    ledger_backend = (os.environ.get("BEACON_LEDGER_BACKEND") or "rpc").strip().lower()
    if ledger_backend not in {"rpc", "memory"}:
        raise ConfigurationError(f"unknown BEACON_LEDGER_BACKEND: {ledger_backend}")

    rpc_url = _env_str("BEACON_LEDGER_RPC_URL") or DEFAULT_LEDGER_RPC_URL

    relay_timeout_s = _env_float("BEACON_RELAY_TIMEOUT_S", 120.0)
    relay_timeout_s = min(600.0, max(1.0, relay_timeout_s))

    return BeaconConfig(
        mode=mode,
        server_salt=_env_str("BEACON_SERVER_SALT"),
        allow_signature_bypass=allow_bypass,
        pinata_api_key=_env_str("BEACON_PINATA_API_KEY"),
        pinata_secret_key=_env_str("BEACON_PINATA_SECRET_KEY"),
        pinata_api_base=(_env_str("BEACON_PINATA_API_BASE") or "https://api.pinata.cloud").rstrip("/"),
        pinning_timeout_s=max(1.0, _env_float("BEACON_PINNING_TIMEOUT_S", 60.0)),
        ledger_backend=ledger_backend,
        ledger_rpc_url=rpc_url,
        ledger_storage_address=_env_str("BEACON_LEDGER_STORAGE_ADDRESS") or DEFAULT_STORAGE_ADDRESS,
        ledger_ttl_s=max(1, _env_int("BEACON_LEDGER_TTL_S", ONE_YEAR_S)),
        ledger_faucet_url=_faucet_for(rpc_url),
        relay_command=_env_str("BEACON_RELAY_COMMAND") or "go run main.go",
        relay_workdir=_env_str("BEACON_RELAY_WORKDIR") or "xx-network",
        relay_timeout_s=relay_timeout_s,
        max_upload_bytes=max(1, _env_int("BEACON_MAX_UPLOAD_BYTES", 10 * 1024 * 1024)),
        upload_tmp_dir=_env_str("BEACON_UPLOAD_TMP_DIR") or tempfile.gettempdir(),
        cors_origins=tuple(parse_cors_origins(os.environ.get("BEACON_CORS_ORIGINS"), mode=mode)),
    )
