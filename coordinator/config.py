"""Configuration for the compute coordinator.

Settings are plain dataclass fields so tests and embedders can build them
directly; ``CoordinatorConfig.from_env()`` reads the deployment environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_VERIFIER = "hash-only"

# Environment variable names (shared with the original node deployment)
ENV_RPC_URL = "CHAIN_RPC"
ENV_ESCROW_ADDRESS = "ESCROW_ADDRESS"
ENV_SIGNER_KEY = "REQUESTER_PRIVKEY"
ENV_CHAIN_ID = "CHAIN_ID"
ENV_DB_PATH = "COORDINATOR_DB"
ENV_VERIFY_FUNDING = "COORDINATOR_VERIFY_FUNDING"
ENV_CONFIRMATION_TIMEOUT = "COORDINATOR_CONFIRMATION_TIMEOUT"
ENV_LOCK_TIMEOUT = "COORDINATOR_LOCK_TIMEOUT"
ENV_RECONCILE_MIN_AGE = "COORDINATOR_RECONCILE_MIN_AGE"

# Added to the confirmation timeout when no reconcile age is configured
RECONCILE_SLACK_SEC = 30.0

_TRUTHY = {"1", "true", "yes", "on"}


def _get_coordinator_home() -> Path:
    return Path(os.environ.get("COORDINATOR_HOME", Path.home() / ".coordinator"))


@dataclass
class CoordinatorConfig:
    """Engine and ledger settings."""

    # Ledger connection
    rpc_url: Optional[str] = None
    escrow_address: Optional[str] = None
    signer_key: Optional[str] = field(default=None, repr=False)
    chain_id: Optional[int] = None

    # Seconds to wait for a release/cancel receipt before giving up
    confirmation_timeout_sec: float = 180.0
    # Seconds a transition waits for another in-flight transition on the same job
    transition_lock_timeout_sec: float = 30.0
    # Seconds a pending marker must age before reconcile touches it
    # (default: confirmation timeout plus RECONCILE_SLACK_SEC)
    reconcile_min_age_sec: Optional[float] = None

    # Check escrowAmount/requesterOf on-chain when a job is marked funded
    verify_funding: bool = False

    default_verifier: str = DEFAULT_VERIFIER
    db_path: Path = field(default_factory=lambda: _get_coordinator_home() / "coord.db")

    def __post_init__(self):
        if self.confirmation_timeout_sec <= 0:
            raise ValueError("confirmation_timeout_sec must be positive")
        if self.transition_lock_timeout_sec <= 0:
            raise ValueError("transition_lock_timeout_sec must be positive")
        if self.reconcile_min_age_sec is None:
            self.reconcile_min_age_sec = self.confirmation_timeout_sec + RECONCILE_SLACK_SEC
        elif self.reconcile_min_age_sec < 0:
            raise ValueError("reconcile_min_age_sec cannot be negative")
        if self.chain_id is not None and self.chain_id <= 0:
            raise ValueError("chain_id must be positive")
        if not self.default_verifier:
            raise ValueError("default_verifier cannot be empty")
        self.db_path = Path(self.db_path)

    @property
    def escrow_configured(self) -> bool:
        """True when every setting needed to sign escrow calls is present."""
        return bool(self.rpc_url and self.escrow_address and self.signer_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CoordinatorConfig":
        """Build a config from environment variables."""
        env = os.environ if environ is None else environ

        kwargs = {
            "rpc_url": env.get(ENV_RPC_URL) or None,
            "escrow_address": env.get(ENV_ESCROW_ADDRESS) or None,
            "signer_key": env.get(ENV_SIGNER_KEY) or None,
            "verify_funding": env.get(ENV_VERIFY_FUNDING, "").strip().lower() in _TRUTHY,
        }
        if env.get(ENV_CHAIN_ID):
            kwargs["chain_id"] = int(env[ENV_CHAIN_ID])
        if env.get(ENV_DB_PATH):
            kwargs["db_path"] = Path(env[ENV_DB_PATH])
        if env.get(ENV_CONFIRMATION_TIMEOUT):
            kwargs["confirmation_timeout_sec"] = float(env[ENV_CONFIRMATION_TIMEOUT])
        if env.get(ENV_LOCK_TIMEOUT):
            kwargs["transition_lock_timeout_sec"] = float(env[ENV_LOCK_TIMEOUT])
        if env.get(ENV_RECONCILE_MIN_AGE):
            kwargs["reconcile_min_age_sec"] = float(env[ENV_RECONCILE_MIN_AGE])

        return cls(**kwargs)
