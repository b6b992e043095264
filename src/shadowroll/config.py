"""
Configuration model for the shadowroll resolver and its tool server.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigError

logger = logging.getLogger("shadowroll")

ENV_PREFIX = "SHADOWROLL_"


class ResolverConfig(BaseModel):
    """Settings for table resolution, document retrieval and logging."""

    # Resolution
    default_formula: str = Field(
        default="1d1",
        description="Roll formula used when a table has none or it cannot be parsed"
    )
    max_depth: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Maximum nesting of tables-of-tables before resolution gives up"
    )
    seed: int | None = Field(
        default=None,
        description="Optional dice seed for reproducible runs"
    )

    # Document retrieval
    document_base_url: str | None = Field(
        default=None,
        description="Root URL of the HTTP content store (e.g. 'http://localhost:3000/api/foundry')"
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Seconds before a document request times out"
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per document request"
    )
    retry_backoff: float = Field(
        default=2.0,
        ge=1.0,
        description="Exponential backoff base between retries"
    )
    pack_dir: Path | None = Field(
        default=None,
        description="Directory of JSON/YAML content packs to serve documents from"
    )

    log_level: str = Field(default="INFO")

    @field_validator("default_formula")
    @classmethod
    def validate_default_formula(cls, v: str) -> str:
        """A blank default would make every formula-less table unrollable."""
        v = v.strip()
        if not v:
            raise ValueError("default_formula must not be empty")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("document_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.rstrip("/") or None

    @classmethod
    def from_env(cls) -> "ResolverConfig":
        """Build a config from ``SHADOWROLL_*`` environment variables.

        A ``.env`` file in the working directory is loaded first, if present.

        Raises:
            ConfigError: If any variable holds an invalid value.
        """
        if not load_dotenv(find_dotenv(usecwd=True)):
            logger.debug("No .env file found, using process environment only")

        values: dict[str, str] = {}
        for field_name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is not None and raw != "":
                values[field_name] = raw

        try:
            return cls.model_validate(values)
        except ValidationError as e:
            raise ConfigError(
                f"Invalid shadowroll configuration: {e.error_count()} error(s)",
                details={"errors": e.errors(include_url=False)},
            ) from e
