from __future__ import annotations
from dotenv import load_dotenv, find_dotenv; load_dotenv(find_dotenv(usecwd=True), override=False)

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # General
    TZ: str = Field(default="UTC", description="IANA zone for night-of and anchor-time rules")
    LOG_LEVEL: str = Field(default="INFO")

    # Storage (CLI)
    STORE_PATH: str = Field(default="./state/health_store.json")
    USER_ID: str = Field(default="local-user")

    # Data quality
    OUTLIER_THRESHOLD: float = Field(default=3.5, description="Robust z-score threshold")
    MIN_BASELINE_SAMPLES: int = Field(
        default=7,
        description="Stored sessions needed before a personal baseline is used on import",
    )

    # Streaming XML
    XML_CHUNK_SIZE: int = Field(default=64 * 1024, description="Bytes read per chunk")
    XML_TAIL_MARGIN: int = Field(default=50_000, description="Characters kept across chunk boundaries")

    # Payloads that must be decoded fully in memory (JSON / CSV)
    SOFT_LIMIT_BYTES: int = Field(default=100 * 1024 * 1024)
    HARD_LIMIT_BYTES: int = Field(default=500 * 1024 * 1024)

    # CSV workouts carry no time of day
    WORKOUT_ANCHOR_HOUR: int = Field(default=9, ge=0, le=23)


def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
