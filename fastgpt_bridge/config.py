"""
Application configuration using Pydantic Settings.
"""
import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    fastgpt_api_url: str = ""
    fastgpt_auth_token: Optional[str] = None
    fastgpt_concurrency_limit: int = Field(default=5, ge=1)
    fastgpt_stream: bool = True
    fastgpt_answer_merge: Literal["concat", "prefer_answer"] = "concat"
    request_timeout: float = 300.0

    data_dir: Path = Path("data")
    session_expiry_days: int = Field(default=2, ge=0)
    cleanup_interval_hours: float = Field(default=6, gt=0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def image_output_dir(self) -> Path:
        return self.data_dir / "pic"


def init_directories(config: Settings) -> None:
    """Create the data directories the bridge writes into."""
    for directory in (
        config.data_dir,
        config.image_output_dir,
        config.image_output_dir / "temp",
        config.sessions_dir,
        config.data_dir / "logs",
    ):
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            logger.info("Created directory %s", directory)


# Global settings instance
settings = Settings()
