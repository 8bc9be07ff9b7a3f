from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LogFormat = Literal["json", "console"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="IMGFLOW_",
        env_file=".env",
        extra="ignore",
    )

    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="console")

    # Default in-flight bound for wave-parallel runs; None means unbounded.
    concurrency: Optional[int] = Field(default=None, ge=1)

    output_dir: Path = Field(default=Path("data/images"))
    events_dir: Optional[Path] = Field(default=None)

    # Block a step when the content gate itself fails instead of letting it through.
    gate_strict: bool = Field(default=False)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
