from __future__ import annotations

import pytest
import yaml

from backend.app.config import (
    AppConfig,
    ArrangementConfig,
    ConfigError,
    ExtractionConfig,
    LayoutConfig,
    _parse_env_line,
    load_config,
)


def test_config_loads_expected_structure() -> None:
    load_config.cache_clear()
    try:
        config = load_config()
    finally:
        load_config.cache_clear()
    assert isinstance(config, AppConfig)
    assert config.app.name == "Historiflow"
    assert config.app.version == "1.0.0"
    assert config.extraction.model == "gemini-pro"
    assert config.extraction.base_url == "https://generativelanguage.googleapis.com/v1beta"
    assert config.extraction.max_text_length == 10_000
    assert config.extraction.max_retries == 3
    assert config.extraction.backoff_initial_seconds == 1.0
    assert config.extraction.retry_statuses == [503]
    assert config.node_context.model == "gpt-4o-mini"
    assert config.layout.direction == "LR"
    assert config.layout.node_spacing == 100
    assert config.layout.layer_spacing == 150
    assert config.arrangement.spacing == 200
    assert config.arrangement.jitter == 15
    assert config.export.padding == 50
    assert config.export.max_aspect_ratio == 2.0
    assert config.export.pdf_filename == "historical-flow.pdf"
    assert config.highlights.store_key == "highlights"
    assert config.ui.default_edge_type == "influences"


def test_config_matches_yaml_source() -> None:
    load_config.cache_clear()
    try:
        config = load_config()
    finally:
        load_config.cache_clear()
    with AppConfig.default_path().open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)
    assert config.extraction.prompt_version == raw["extraction"]["prompt_version"]
    assert config.ui.allowed_origins == raw["ui"]["allowed_origins"]
    assert config.highlights.store_path == raw["highlights"]["store_path"]


def test_extraction_base_url_env_override(monkeypatch) -> None:
    monkeypatch.setenv("HISTORIFLOW_EXTRACTION_BASE_URL", "http://localhost:9999/v1beta")
    load_config.cache_clear()
    try:
        config = load_config()
    finally:
        load_config.cache_clear()
    assert config.extraction.base_url == "http://localhost:9999/v1beta"


def test_service_settings_env_override(monkeypatch) -> None:
    monkeypatch.setenv("HISTORIFLOW_SERVICE_URL", "https://historiflow.example.org")
    monkeypatch.setenv("HISTORIFLOW_SERVICE_KEY", "secret-key")
    load_config.cache_clear()
    try:
        config = load_config()
    finally:
        load_config.cache_clear()
    assert config.service.public_url == "https://historiflow.example.org"
    assert config.service.api_key == "secret-key"


def test_env_file_values_are_loaded(monkeypatch, tmp_path) -> None:
    env_file = tmp_path / "custom.env"
    env_file.write_text(
        "# local overrides\n"
        "export HISTORIFLOW_SERVICE_KEY='from-file'\n"
        "HISTORIFLOW_SERVICE_URL=http://files.local  # inline comment\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("HISTORIFLOW_ENV_FILE", str(env_file))
    # Empty values are overwritten by the file; monkeypatch removes them afterwards.
    monkeypatch.setenv("HISTORIFLOW_SERVICE_KEY", "")
    monkeypatch.setenv("HISTORIFLOW_SERVICE_URL", "")
    load_config.cache_clear()
    try:
        config = load_config()
    finally:
        load_config.cache_clear()
    assert config.service.api_key == "from-file"
    assert config.service.public_url == "http://files.local"


def test_missing_config_file_raises(tmp_path) -> None:
    load_config.cache_clear()
    try:
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.yaml")
    finally:
        load_config.cache_clear()


def test_non_mapping_config_root_raises(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    load_config.cache_clear()
    try:
        with pytest.raises(ConfigError):
            load_config(path)
    finally:
        load_config.cache_clear()


def test_invalid_values_raise_config_error(tmp_path) -> None:
    with AppConfig.default_path().open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle)
    raw["extraction"]["max_retries"] = -1
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(raw), encoding="utf-8")
    load_config.cache_clear()
    try:
        with pytest.raises(ConfigError):
            load_config(path)
    finally:
        load_config.cache_clear()


def test_extraction_backoff_bounds_are_validated() -> None:
    with pytest.raises(ValueError):
        ExtractionConfig(
            model="gemini-pro",
            base_url="https://example.org",
            timeout_seconds=10,
            max_retries=1,
            backoff_initial_seconds=10,
            backoff_max_seconds=1,
            prompt_version="v1",
        )


def test_layout_direction_is_normalised() -> None:
    assert LayoutConfig(direction=" tb ").direction == "TB"
    with pytest.raises(ValueError):
        LayoutConfig(direction="diagonal")


def test_arrangement_columns_are_validated() -> None:
    with pytest.raises(ValueError):
        ArrangementConfig(min_columns=5, max_columns=2)


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("KEY=value", ("KEY", "value")),
        ("export KEY = spaced # note", ("KEY", "spaced")),
        ('KEY="keep # this"', ("KEY", "keep # this")),
        ("KEY=", ("KEY", "")),
        ("# comment", None),
        ("no assignment", None),
        ("=orphan", None),
    ],
)
def test_env_line_parsing(line, expected) -> None:
    assert _parse_env_line(line) == expected
