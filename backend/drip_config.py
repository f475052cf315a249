"""
Configuration for the Tapper drip faucet.

Values come from the process environment, with a `.env` next to this file
loaded first. Everything that shapes settlement (amounts, intervals, the
failure policy, timeouts) is an explicit named parameter here.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parent
load_dotenv(BACKEND_DIR / ".env")

# Settlement period: 20 seconds, not "every minute" as older console docs claimed.
DEFAULT_SETTLEMENT_INTERVAL_SEC = 20.0
DEFAULT_MONITOR_INTERVAL_SEC = 5.0
DEFAULT_DRIP_AMOUNT = 1
DEFAULT_ISSUE_TIMEOUT_SEC = 60.0
DEFAULT_TOKEN_DECIMALS = 18
DEFAULT_GAS_MULT = 1.15
DEFAULT_PORT = 3010
DEFAULT_CORS_ORIGINS = "http://localhost:5173"

FAILURE_POLICIES = ("abort", "requeue", "isolate")


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = _env_str(name, "1" if default else "0").lower()
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = _env_str(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise SystemExit(f"[fatal] {name} must be an integer (got '{raw}')")
    if value < minimum:
        raise SystemExit(f"[fatal] {name} must be >= {minimum} (got {value})")
    return value


def _env_float(name: str, default: float) -> float:
    raw = _env_str(name, str(default))
    try:
        value = float(raw)
    except ValueError:
        raise SystemExit(f"[fatal] {name} must be a number (got '{raw}')")
    if value <= 0:
        raise SystemExit(f"[fatal] {name} must be positive (got {value})")
    return value


@dataclass
class FaucetConfig:
    provider_url: str = ""
    private_key: str = ""
    token_contract: str = ""
    chain_id: Optional[int] = None
    token_decimals: int = DEFAULT_TOKEN_DECIMALS
    gas_mult: float = DEFAULT_GAS_MULT

    drip_amount: int = DEFAULT_DRIP_AMOUNT
    settlement_interval_sec: float = DEFAULT_SETTLEMENT_INTERVAL_SEC
    monitor_interval_sec: float = DEFAULT_MONITOR_INTERVAL_SEC
    monitor_enabled: bool = True
    failure_policy: str = "abort"
    issue_timeout_sec: float = DEFAULT_ISSUE_TIMEOUT_SEC
    settlement_history: int = 50

    dry_run: bool = False
    admin_token: str = ""
    cors_origins: List[str] = field(default_factory=lambda: [DEFAULT_CORS_ORIGINS])
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "FaucetConfig":
        chain_id_raw = _env_str("FAUCET_CHAIN_ID")
        chain_id: Optional[int] = None
        if chain_id_raw:
            try:
                chain_id = int(chain_id_raw)
            except ValueError:
                raise SystemExit(f"[fatal] invalid FAUCET_CHAIN_ID '{chain_id_raw}'")

        policy = _env_str("SETTLEMENT_FAILURE_POLICY", "abort").lower()
        if policy not in FAILURE_POLICIES:
            raise SystemExit(
                f"[fatal] SETTLEMENT_FAILURE_POLICY must be one of {', '.join(FAILURE_POLICIES)} (got '{policy}')"
            )

        origins = [o.strip() for o in _env_str("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",") if o.strip()]

        return cls(
            provider_url=_env_str("FAUCET_PROVIDER_URL"),
            private_key=_env_str("FAUCET_PRIVATE_KEY"),
            token_contract=_env_str("TOKEN_CONTRACT_ADDRESS"),
            chain_id=chain_id,
            token_decimals=_env_int("TOKEN_DECIMALS", DEFAULT_TOKEN_DECIMALS, minimum=0),
            gas_mult=_env_float("PAYOUT_GAS_MULT", DEFAULT_GAS_MULT),
            drip_amount=_env_int("DRIP_AMOUNT", DEFAULT_DRIP_AMOUNT),
            settlement_interval_sec=_env_float("SETTLEMENT_INTERVAL_SEC", DEFAULT_SETTLEMENT_INTERVAL_SEC),
            monitor_interval_sec=_env_float("MONITOR_INTERVAL_SEC", DEFAULT_MONITOR_INTERVAL_SEC),
            monitor_enabled=_env_flag("MONITOR_ENABLED", True),
            failure_policy=policy,
            issue_timeout_sec=_env_float("ISSUE_TIMEOUT_SEC", DEFAULT_ISSUE_TIMEOUT_SEC),
            settlement_history=_env_int("SETTLEMENT_HISTORY", 50),
            dry_run=_env_flag("FAUCET_DRY_RUN"),
            admin_token=_env_str("FAUCET_ADMIN_TOKEN"),
            cors_origins=origins,
            host=_env_str("HOST", "0.0.0.0"),
            port=_env_int("PORT", DEFAULT_PORT),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )

    def require_chain_credentials(self) -> None:
        """Fail fast when a live (non dry-run) faucet lacks its chain settings."""
        if self.dry_run:
            return
        missing = [
            name
            for name, value in (
                ("FAUCET_PROVIDER_URL", self.provider_url),
                ("FAUCET_PRIVATE_KEY", self.private_key),
                ("TOKEN_CONTRACT_ADDRESS", self.token_contract),
            )
            if not value
        ]
        if missing:
            raise SystemExit(f"[fatal] missing environment variables: {', '.join(missing)} (or set FAUCET_DRY_RUN=1)")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
