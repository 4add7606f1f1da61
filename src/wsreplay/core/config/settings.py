from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """
    Global application-level configuration.

    This class is the single source of truth for:
    - environment selection
    - logging behavior
    - server bind address
    - replay data location and session timing
    """

    model_config = SettingsConfigDict(
        env_prefix="WSREPLAY_",
        env_file=".env",
        extra="ignore",
    )

    # ---- Environment -------------------------------------------------

    env: Literal["local", "staging", "prod"] = "local"

    # ---- Logging -----------------------------------------------------

    log_level: str = "INFO"

    # Console renderer is easier to read locally
    log_json: bool = True

    # ---- Server ------------------------------------------------------

    host: str = "0.0.0.0"
    port: int = 8000

    # ---- Replay ------------------------------------------------------

    # Root directory holding one {exchange}.jsonl file per exchange
    data_dir: Path = Field(
        default=Path("data"),
        description="Root directory for historical replay data",
    )

    session_start_delay_ms: int = Field(
        default=5000,
        ge=0,
        description="Consolidation window before a replay session locks",
    )

    backpressure_poll_ms: int = Field(
        default=1,
        ge=0,
        description="Poll interval while waiting for a socket buffer to drain during delivery",
    )

    drain_poll_ms: int = Field(
        default=100,
        ge=0,
        description="Poll interval while waiting for a socket buffer to drain before close",
    )


# Singleton settings object
settings = AppSettings()
