"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")
    log_destinations: str = Field(
        default="console",
        description="Comma separated list of log sinks: console, file.",
    )
    log_file: Path = Field(default=Path("./data/controlplane.log"))

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/controlplane.db",
        description="SQLAlchemy connection string.",
    )

    # Migrations / schema
    auto_create_db_schema: bool = Field(
        default=True,
        description="If true, creates tables automatically on startup (useful for local/dev).",
    )
    lookup_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="Default deadline for a single registry/whitelist lookup.",
    )

    # Gossip membership
    gossip_enabled: bool = Field(
        default=True,
        description="If false, the control plane only learns about nodes via the push endpoint.",
    )
    gossip_host: str = Field(default="0.0.0.0", description="UDP bind address for gossip.")
    gossip_port: int = Field(default=7946, description="UDP port used by every fleet member.")
    gossip_advertise_host: str = Field(
        default="127.0.0.1",
        description="Address other members use to reach this process.",
    )
    control_node_id: int = Field(default=1, ge=0)
    probe_interval_seconds: float = Field(default=1.0, gt=0.0)
    probe_timeout_seconds: float = Field(default=0.5, gt=0.0)
    indirect_probe_count: int = Field(default=3, ge=0)
    suspect_after_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Alive members not heard from for this long become suspect.",
    )
    suspicion_timeout_seconds: float = Field(default=5.0, gt=0.0)
    staleness_window_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Live metrics older than this are never used for placement.",
    )
    dead_retention_seconds: float = Field(default=300.0, gt=0.0)
    gossip_retransmit_multiplier: int = Field(default=3, ge=1)
    live_stats_flush_seconds: float = Field(
        default=15.0,
        ge=0.0,
        description="How often live stats are mirrored to the node tables (0 disables).",
    )

    # Caller identity
    default_number_region: str = Field(
        default="US",
        description="Region hint used to parse numbers without a country code.",
    )
    validate_caller_id: bool = Field(
        default=True,
        description="Global switch for caller-ID ownership verification.",
    )

    data_dir: Path = Field(default=Path("./data"))

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir(cls, value: Path) -> Path:
        value.mkdir(parents=True, exist_ok=True)
        return value

    @field_validator("default_number_region")
    @classmethod
    def upper_region(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def check_probe_timing(self) -> Settings:
        if self.probe_timeout_seconds >= self.probe_interval_seconds:
            raise ValueError("probe_timeout_seconds must be shorter than probe_interval_seconds")
        return self

    @property
    def log_sinks(self) -> list[str]:
        return [sink.strip().lower() for sink in self.log_destinations.split(",") if sink.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
