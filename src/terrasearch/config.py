"""Centralized configuration for terrasearch using Pydantic Settings."""

from functools import lru_cache
import re
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")


class Settings(BaseSettings):
    """Strictly typed configuration loaded from ``TERRASEARCH_*`` environment variables.

    Every component accepts explicit keyword arguments as well; the settings
    object only supplies defaults when the embedding application does not.
    """

    model_config = SettingsConfigDict(
        env_prefix="TERRASEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_default=True,
        extra="ignore",
    )

    # Storage settings
    db_path: str = Field(default=":memory:", description="SQLite database file, or :memory:")
    external_content: bool = Field(
        default=True,
        description="Create new indices with an external-content FTS table backed by the document table",
    )
    ranking_mode: Literal["weighted", "boosted"] = Field(
        default="weighted",
        description=(
            "weighted: one FTS column per indexed field ranked with bm25 column weights; "
            "boosted: one searchable-text column built from boost-repeated analyzed tokens"
        ),
    )
    busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite busy timeout in milliseconds")

    # Query cache settings
    cache_enabled: bool = Field(default=True, description="Enable the persistent query result cache")
    cache_ttl: int = Field(default=300, ge=1, description="Default cache entry lifetime in seconds")
    cache_max_size: int = Field(default=1000, ge=1, description="Maximum number of cached query results")
    cache_table_name: str = Field(default="_query_cache", description="Table holding cached query results")
    cache_cleanup_probability: float = Field(
        default=0.01,
        ge=0.0,
        le=1.0,
        description="Probability that a cache read also purges expired entries",
    )

    # Indexer settings
    batch_size: int = Field(default=100, ge=1, description="Documents buffered before an automatic flush")
    auto_flush: bool = Field(default=True, description="Write documents immediately instead of buffering")
    chunk_size: int = Field(default=1000, ge=50, description="Maximum characters per content chunk")
    chunk_overlap: int = Field(default=100, ge=0, description="Characters repeated from the previous chunk")

    # Query settings
    default_limit: int = Field(default=20, ge=1, description="Results returned when no limit is given")
    max_limit: int = Field(default=1000, ge=1, description="Upper bound for a requested page size")
    distance_weight: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Share of the final score taken from geographic proximity (0 disables blending)",
    )
    distance_decay_k: float = Field(
        default=0.0001,
        gt=0.0,
        description="Decay constant per meter for proximity = 1 / (1 + k * distance)",
    )
    highlight_length: int = Field(default=200, ge=20, description="Maximum characters per highlight snippet")
    fuzzy_min_frequency: int = Field(default=1, ge=1, description="Minimum document frequency for fuzzy candidates")

    # Logging settings
    log_level: str = Field(default="info", description="Root log level")
    log_json: bool = Field(default=True, description="Emit JSON log lines instead of plain text")

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        """Validate cross-field constraints."""
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if not _IDENTIFIER_RE.match(self.cache_table_name):
            raise ValueError(f"cache_table_name is not a valid identifier: {self.cache_table_name!r}")
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit cannot exceed max_limit")
        return self

    def get_log_level(self) -> str:
        return self.log_level.upper()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
