"""Tests for memoria.toml loading, env-var resolution and section validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from memoria.config import ConfigError, MemoriaConfig, load_config, parse_config, resolve_env_vars

pytestmark = pytest.mark.unit


def _write_toml(tmp_path: Path, content: str) -> Path:
    """Write *content* to memoria.toml inside *tmp_path* and return the directory."""
    (tmp_path / "memoria.toml").write_text(content)
    return tmp_path


# ---------------------------------------------------------------------------
# resolve_env_vars
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_partial_string(self, monkeypatch):
        monkeypatch.setenv("HOST", "db.example.com")
        monkeypatch.setenv("PORT", "5432")
        assert resolve_env_vars("postgresql://${HOST}:${PORT}/db") == (
            "postgresql://db.example.com:5432/db"
        )

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("ITEM", "alpha")
        data = {"outer": {"items": ["${ITEM}", "literal", 3, True]}}
        assert resolve_env_vars(data) == {"outer": {"items": ["alpha", "literal", 3, True]}}

    def test_missing_variables_all_reported(self, monkeypatch):
        monkeypatch.delenv("NOPE_ONE", raising=False)
        monkeypatch.delenv("NOPE_TWO", raising=False)
        with pytest.raises(ConfigError, match="NOPE_ONE, NOPE_TWO"):
            resolve_env_vars("${NOPE_ONE}/${NOPE_TWO}")

    def test_dollar_without_braces_untouched(self):
        assert resolve_env_vars("$HOME and $") == "$HOME and $"


# ---------------------------------------------------------------------------
# Defaults and sections
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_defaults(self):
        config = MemoriaConfig()
        assert config.agent_name == "memoria"
        assert config.cache.max_size == 100
        assert config.cache.important_max_size == 50
        assert config.cache.important_threshold == 8
        assert config.cache.default_ttl_ms == 300_000
        assert config.ranking.min_relevance_score == 0.3
        assert config.temporal.update_interval_ms == 900_000
        assert config.batch.default_importance == 5
        assert config.retrieval.default_limit == 5
        assert config.retrieval.timeout_seconds is None
        assert config.feedback.max_per_memory == 50
        assert config.embedding.dimension == 384
        assert config.database.name == "memoria"

    def test_logging_level_uppercased(self):
        assert parse_config({"logging": {"level": "debug"}}).logging.level == "DEBUG"

    def test_schema_alias(self):
        config = parse_config({"database": {"schema": "agent_a"}})
        assert config.database.schema_name == "agent_a"


class TestParseConfig:
    def test_memoria_table_preferred(self):
        config = parse_config({"memoria": {"agent_name": "assistant"}, "other": {}})
        assert config.agent_name == "assistant"

    def test_top_level_mapping(self):
        assert parse_config({"cache": {"max_size": 7}}).cache.max_size == 7

    @pytest.mark.parametrize(
        ("data", "fragment"),
        [
            ({"cache": {"max_size": 0}}, "cache.max_size"),
            ({"cache": {"important_threshold": 11}}, "cache.important_threshold"),
            ({"retrieval": {"min_similarity": 1.5}}, "retrieval.min_similarity"),
            ({"logging": {"format": "xml"}}, "logging.format"),
            ({"database": {"min_pool_size": 5, "max_pool_size": 2}}, "exceeds max_pool_size"),
        ],
    )
    def test_invalid_sections(self, data, fragment):
        with pytest.raises(ConfigError, match="Invalid memoria configuration") as excinfo:
            parse_config(data)
        assert fragment in str(excinfo.value)

    def test_memoria_must_be_table(self):
        with pytest.raises(ConfigError, match="must be a table"):
            parse_config({"memoria": "nope"})


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_none_gives_defaults(self):
        assert load_config(None) == MemoriaConfig()

    def test_directory_and_file_paths(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENT", "assistant")
        _write_toml(
            tmp_path,
            """
[memoria]
agent_name = "${AGENT}"

[memoria.cache]
max_size = 20

[memoria.retrieval]
timeout_seconds = 2.5
""",
        )
        from_dir = load_config(tmp_path)
        from_file = load_config(tmp_path / "memoria.toml")
        assert from_dir == from_file
        assert from_dir.agent_name == "assistant"
        assert from_dir.cache.max_size == 20
        assert from_dir.retrieval.timeout_seconds == 2.5

    def test_empty_file_gives_defaults(self, tmp_path):
        assert load_config(_write_toml(tmp_path, "")) == MemoriaConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path)

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write_toml(tmp_path, "[memoria\nagent_name = "))

    def test_unresolved_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MISSING_AGENT", raising=False)
        _write_toml(tmp_path, '[memoria]\nagent_name = "${MISSING_AGENT}"\n')
        with pytest.raises(ConfigError, match="MISSING_AGENT"):
            load_config(tmp_path)
