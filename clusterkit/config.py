"""
Package configuration and logging setup.

Settings are read from environment variables with the CLUSTERKIT_ prefix.
Logging is silent by default (NullHandler on the package logger) until
configure_logging() is called.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logging.getLogger("clusterkit").addHandler(logging.NullHandler())


class Settings(BaseSettings):
    """Runtime settings for clusterkit."""

    model_config = SettingsConfigDict(env_prefix="CLUSTERKIT_")

    verbose: bool = Field(
        default_factory=lambda: os.environ.get("DEBUG", "").lower() == "true",
        description="Let the embedding solver report progress",
    )
    log_level: str = Field(default="WARNING", description="Level used by configure_logging")
    default_m: int = Field(default=16, ge=2, description="Default HNSW connectivity")
    default_ef_construction: int = Field(
        default=200, ge=1, description="Default HNSW construction breadth"
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Settings in effect: the last configure() result, else the environment."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure(**overrides: Any) -> Settings:
    """Replace the active settings, applying keyword overrides on top of the environment."""
    global _settings
    _settings = Settings(**overrides)
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        if record.funcName:
            log_data["function"] = record.funcName
        return json.dumps(log_data, default=str, ensure_ascii=False)


class DevFormatter(logging.Formatter):
    FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

    def __init__(self) -> None:
        super().__init__(fmt=self.FORMAT, datefmt=self.DATE_FORMAT)


def configure_logging(
    level: Optional[str] = None,
    json_output: bool = False,
) -> logging.Logger:
    """Attach a stderr handler to the clusterkit logger.

    Args:
        level: Log level override (default from settings).
        json_output: Emit JSON lines instead of the human-readable format.

    Returns:
        The clusterkit package logger.
    """
    settings = get_settings()
    log_level = level or ("DEBUG" if settings.verbose else settings.log_level)
    numeric_level = getattr(logging, log_level.upper(), logging.WARNING)

    logger = logging.getLogger("clusterkit")
    logger.setLevel(numeric_level)
    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if json_output else DevFormatter())
    logger.addHandler(handler)

    # numba (pulled in by umap-learn) is chatty at DEBUG
    logging.getLogger("numba").setLevel(logging.WARNING)

    return logger
