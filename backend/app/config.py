"""Configuration settings for the coordinator API."""

from functools import lru_cache
from pathlib import Path

from coordinator.config import DEFAULT_VERIFIER, CoordinatorConfig
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Ledger
    chain_rpc: str | None = None
    escrow_address: str | None = None
    requester_privkey: str | None = None
    chain_id: int | None = None

    # Engine
    coordinator_db: Path | None = None
    verify_funding: bool = False
    confirmation_timeout_sec: float = 180.0
    transition_lock_timeout_sec: float = 30.0
    reconcile_min_age_sec: float | None = None
    # Threads for accept/cancel, which block until ledger confirmation
    settlement_workers: int = Field(default=4, ge=1)
    default_verifier: str = DEFAULT_VERIFIER
    # Repair half-finished settlements before serving requests
    reconcile_on_startup: bool = True

    # App
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    rate_limit_enabled: bool = True
    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model

    def coordinator_config(self) -> CoordinatorConfig:
        """Engine configuration derived from these settings."""
        kwargs = {
            "rpc_url": self.chain_rpc,
            "escrow_address": self.escrow_address,
            "signer_key": self.requester_privkey,
            "chain_id": self.chain_id,
            "confirmation_timeout_sec": self.confirmation_timeout_sec,
            "transition_lock_timeout_sec": self.transition_lock_timeout_sec,
            "reconcile_min_age_sec": self.reconcile_min_age_sec,
            "verify_funding": self.verify_funding,
            "default_verifier": self.default_verifier,
        }
        if self.coordinator_db:
            kwargs["db_path"] = self.coordinator_db
        return CoordinatorConfig(**kwargs)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
