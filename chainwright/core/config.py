"""Core configuration for chainwright."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class VerificationStrategy(str, Enum):
    """When deployed contracts are submitted for source verification."""

    NONE = "none"
    EAGER = "eager"  # verify right after construction
    LAZY = "lazy"  # store verify-args, verify later via verify_contracts()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CHAINWRIGHT_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # ── Persistent store ─────────────────────────────────────────────────
    deployments_dir: str = "deployments"
    write_cache_to_disk: bool = False

    # ── Explorer import ──────────────────────────────────────────────────
    import_retries: int = 4
    import_retry_delay: float = 5.0
    explorer_timeout_seconds: float = 30.0
    etherscan_api_key: str = ""
    polygonscan_api_key: str = ""
    arbiscan_api_key: str = ""
    optimism_api_key: str = ""
    basescan_api_key: str = ""

    # ── Deployment transactions ──────────────────────────────────────────
    deploy_retries: int = 5
    deploy_retry_wait: float = 0.25
    deploy_time_limit: float | None = None
    verification_strategy: VerificationStrategy = VerificationStrategy.NONE
    raise_on_verification_failure: bool = False

    # ── Scenarios ────────────────────────────────────────────────────────
    include_empty_migration_set: bool = True
    scenario_concurrency: int = 4


class DeploymentManagerConfig(BaseModel):
    """Per-coordinator overrides. Unset fields fall back to ``Settings``."""

    base_dir: str | None = None
    import_retries: int | None = None
    import_retry_delay: float | None = None
    write_cache_to_disk: bool | None = None
    verification_strategy: VerificationStrategy | None = None

    def resolved(self, settings: Settings | None = None) -> "DeploymentManagerConfig":
        """Return a copy with every unset field taken from settings."""
        settings = settings or get_settings()
        return DeploymentManagerConfig(
            base_dir=self.base_dir if self.base_dir is not None else settings.deployments_dir,
            import_retries=(
                self.import_retries if self.import_retries is not None else settings.import_retries
            ),
            import_retry_delay=(
                self.import_retry_delay
                if self.import_retry_delay is not None
                else settings.import_retry_delay
            ),
            write_cache_to_disk=(
                self.write_cache_to_disk
                if self.write_cache_to_disk is not None
                else settings.write_cache_to_disk
            ),
            verification_strategy=(
                self.verification_strategy
                if self.verification_strategy is not None
                else settings.verification_strategy
            ),
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
