"""Engine configuration loading and validation.

Reads ``memoria.toml``, resolves ``${VAR}`` references from the environment,
and validates every section into pydantic models.  Missing sections take
their defaults, so an empty file (or no file at all) yields a working config.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from memoria.models import MAX_IMPORTANCE, MIN_IMPORTANCE

# Matches ${VAR_NAME}; names are alphanumeric plus underscore.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

CONFIG_FILENAME = "memoria.toml"


class ConfigError(Exception):
    """Raised when engine configuration is missing, malformed, or invalid."""


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class CacheConfig(BaseModel):
    """Two-tier cache sizing and expiry."""

    max_size: int = Field(default=100, ge=1)
    important_max_size: int = Field(default=50, ge=1)
    important_threshold: int = Field(default=8, ge=MIN_IMPORTANCE, le=MAX_IMPORTANCE)
    default_ttl_ms: int = Field(default=300_000, gt=0)
    enable_cleanup: bool = True
    cleanup_interval_ms: int = Field(default=60_000, gt=0)


class RankingConfig(BaseModel):
    min_relevance_score: float = Field(default=0.3, ge=0.0, le=1.0)
    max_results: int = Field(default=10, ge=1)
    include_reasons: bool = False
    recency_boost: bool = True
    feedback_boost: bool = True


class TemporalConfig(BaseModel):
    update_interval_ms: int = Field(default=900_000, gt=0)
    timezone: str = "UTC"


class BatchConfig(BaseModel):
    """Defaults merged into every item of a bulk store."""

    default_source: str | None = None
    default_context: str | None = None
    default_importance: int = Field(default=5, ge=MIN_IMPORTANCE, le=MAX_IMPORTANCE)
    default_metadata: dict[str, Any] = Field(default_factory=dict)
    generate_embeddings: bool = True
    embedding_batch_size: int = Field(default=10, ge=1)
    write_batch_size: int = Field(default=50, ge=1)


class RetrievalConfig(BaseModel):
    default_limit: int = Field(default=5, ge=1)
    min_similarity: float = Field(default=0.5, ge=0.0, le=1.0)
    candidate_multiplier: int = Field(default=2, ge=1)
    history_size: int = Field(default=100, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)


class EmbeddingConfig(BaseModel):
    enabled: bool = True
    model: str = "all-MiniLM-L6-v2"
    dimension: int = Field(default=384, ge=1)


class FeedbackConfig(BaseModel):
    max_per_memory: int = Field(default=50, ge=1)


class LearningConfig(BaseModel):
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    reinforcement_step: float = Field(default=0.1, gt=0.0, le=1.0)
    max_interactions: int = Field(default=1000, ge=1)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    log_root: str | None = None

    @field_validator("level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


class DatabaseConfig(BaseModel):
    """Connection settings; unset fields fall back to the environment."""

    name: str = "memoria"
    schema_name: str | None = Field(default=None, alias="schema")
    min_pool_size: int = Field(default=2, ge=1)
    max_pool_size: int = Field(default=10, ge=1)

    model_config = {"populate_by_name": True}

    @model_validator(mode="after")
    def _check_pool_sizes(self) -> DatabaseConfig:
        if self.min_pool_size > self.max_pool_size:
            raise ValueError(
                f"min_pool_size ({self.min_pool_size}) exceeds max_pool_size "
                f"({self.max_pool_size})"
            )
        return self


class MemoriaConfig(BaseModel):
    """Top-level engine configuration."""

    agent_name: str = "memoria"
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    temporal: TemporalConfig = Field(default_factory=TemporalConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    feedback: FeedbackConfig = Field(default_factory=FeedbackConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float) are returned unchanged.

    Raises:
        ConfigError: If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing one."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)} "
            f"(original: {s!r})"
        )
    return result


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def parse_config(data: dict[str, Any]) -> MemoriaConfig:
    """Validate an already-parsed mapping into a :class:`MemoriaConfig`.

    Raises:
        ConfigError: If any section fails validation.
    """
    data = resolve_env_vars(data)
    section = data.get("memoria", data)
    if not isinstance(section, dict):
        raise ConfigError("[memoria] must be a table")
    try:
        return MemoriaConfig.model_validate(section)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"Invalid memoria configuration: {problems}") from exc


def load_config(path: Path | None = None) -> MemoriaConfig:
    """Load and validate configuration from *path*.

    *path* may be a TOML file or a directory containing ``memoria.toml``.
    When *path* is ``None`` the defaults are returned.

    Raises:
        ConfigError: If the file is missing, contains invalid TOML, or fails
            validation.
    """
    if path is None:
        return MemoriaConfig()

    toml_path = Path(path)
    if toml_path.is_dir():
        toml_path = toml_path / CONFIG_FILENAME
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
