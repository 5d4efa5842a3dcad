"""Configuration loader for the Historiflow backend."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from typing_extensions import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

LOGGER = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = REPO_ROOT / ".env"

EXTRACTION_BASE_URL_ENV = "HISTORIFLOW_EXTRACTION_BASE_URL"
SERVICE_URL_ENV = "HISTORIFLOW_SERVICE_URL"
SERVICE_KEY_ENV = "HISTORIFLOW_SERVICE_KEY"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


class _FrozenModel(BaseModel):
    """Base model enforcing immutability for config sections."""

    model_config = ConfigDict(frozen=True)


class AppSection(_FrozenModel):
    """Application identity."""

    name: str = Field("Historiflow", min_length=1)
    version: str = Field(..., min_length=1)


class ExtractionConfig(_FrozenModel):
    """Settings for the entity/relationship extraction endpoint."""

    provider: Literal["gemini"] = "gemini"
    model: str = Field(..., min_length=1)
    base_url: str = Field(..., min_length=1)
    timeout_seconds: float = Field(..., gt=0)
    max_text_length: int = Field(10_000, ge=1)
    max_retries: int = Field(..., ge=0)
    backoff_initial_seconds: float = Field(..., gt=0)
    backoff_max_seconds: float = Field(..., gt=0)
    retry_statuses: List[int] = Field(default_factory=lambda: [503])
    prompt_version: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def _validate_backoff(self) -> "ExtractionConfig":
        if self.backoff_initial_seconds > self.backoff_max_seconds:
            msg = "extraction.backoff_initial_seconds cannot exceed extraction.backoff_max_seconds"
            raise ValueError(msg)
        return self


class NodeContextConfig(_FrozenModel):
    """Settings for the node context (historical background) endpoint."""

    model: str = Field(..., min_length=1)
    base_url: str = Field(..., min_length=1)
    timeout_seconds: float = Field(..., gt=0)
    temperature: float = Field(0.3, ge=0.0, le=2.0)


class LayoutConfig(_FrozenModel):
    """Layered auto-layout parameters."""

    direction: Literal["TB", "LR"] = "LR"
    node_spacing: float = Field(100.0, ge=0)
    layer_spacing: float = Field(150.0, ge=0)
    default_node_width: float = Field(240.0, gt=0)
    default_node_height: float = Field(120.0, gt=0)
    event_node_height: float = Field(160.0, gt=0)

    @field_validator("direction", mode="before")
    @classmethod
    def _normalise_direction(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


class ArrangementConfig(_FrozenModel):
    """Grid placement used right after entity extraction."""

    spacing: float = Field(200.0, gt=0)
    jitter: float = Field(15.0, ge=0)
    min_columns: int = Field(2, ge=1)
    max_columns: int = Field(4, ge=1)

    @model_validator(mode="after")
    def _validate_columns(self) -> "ArrangementConfig":
        if self.min_columns > self.max_columns:
            msg = "arrangement.min_columns cannot exceed arrangement.max_columns"
            raise ValueError(msg)
        return self


class ExportConfig(_FrozenModel):
    """Diagram export settings."""

    padding: float = Field(50.0, ge=0)
    max_aspect_ratio: float = Field(2.0, ge=1.0)
    background_color: str = Field("#ffffff", min_length=1)
    pdf_filename: str = Field("historical-flow.pdf", min_length=1)
    png_filename: str = Field("historical-flow.png", min_length=1)


class HighlightsConfig(_FrozenModel):
    """Local durable storage for text highlights."""

    store_path: str = Field(..., min_length=1)
    store_key: str = Field("highlights", min_length=1)


class UIConfig(_FrozenModel):
    """UI-specific configuration values."""

    default_edge_type: str = Field("influences", min_length=1)
    viewport_width: float = Field(1280.0, gt=0)
    viewport_height: float = Field(800.0, gt=0)
    allowed_origins: List[str] = Field(default_factory=list)


class ServiceConfig(_FrozenModel):
    """Public URL and API key protecting the backend service."""

    public_url: Optional[str] = Field(default=None, min_length=1)
    api_key: Optional[str] = Field(default=None, min_length=1)


class AppConfig(_FrozenModel):
    """Top-level application configuration composed from config.yaml."""

    app: AppSection
    extraction: ExtractionConfig
    node_context: NodeContextConfig
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    arrangement: ArrangementConfig = Field(default_factory=ArrangementConfig)
    export: ExportConfig = Field(default_factory=ExportConfig)
    highlights: HighlightsConfig
    ui: UIConfig = Field(default_factory=UIConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)

    @staticmethod
    def default_path() -> Path:
        """Return the default location of the configuration file.

        Returns:
            Path: Absolute path to config.yaml at the repository root.
        """
        return REPO_ROOT / "config.yaml"


def _determine_env_file_path() -> Optional[Path]:
    """Return the path to the environment file if one should be loaded."""

    override = os.getenv("HISTORIFLOW_ENV_FILE")
    if override:
        candidate = Path(override).expanduser()
        if candidate.exists():
            return candidate
        LOGGER.warning("Configured environment file override does not exist: %s", candidate)
        return None
    if DEFAULT_ENV_FILE.exists():
        return DEFAULT_ENV_FILE
    return None


def _parse_env_line(raw_line: str) -> Optional[Tuple[str, str]]:
    """Return ``(key, value)`` for an assignment line, ``None`` for anything else.

    Quoted values are taken literally; unquoted values lose a trailing
    ``# comment``.
    """

    line = raw_line.strip()
    if line.lower().startswith("export "):
        line = line[len("export ") :].lstrip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    key, _, value = line.partition("=")
    key = key.strip()
    if not key:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] in {'"', "'"} and value[-1] == value[0]:
        return key, value[1:-1]
    if "#" in value:
        value = value.split("#", 1)[0].rstrip()
    return key, value


def _load_env_file(path: Path) -> None:
    """Export assignments from a ``.env`` file without clobbering set variables."""

    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        LOGGER.warning("Unable to read environment file at %s", path)
        return
    loaded = 0
    for raw_line in lines:
        parsed = _parse_env_line(raw_line)
        if parsed is None:
            continue
        key, value = parsed
        if os.environ.get(key, "").strip():
            continue
        os.environ[key] = value
        loaded += 1
    LOGGER.debug("Loaded %d variable(s) from %s", loaded, path)


def _apply_environment_overrides(raw_content: Dict[str, Any]) -> Dict[str, Any]:
    """Merge environment-based overrides into the raw configuration mapping.

    Args:
        raw_content: Parsed YAML configuration prior to Pydantic validation.

    Returns:
        Dict[str, Any]: Configuration mapping with environment overrides applied.
    """

    env_file_path = _determine_env_file_path()
    if env_file_path is not None:
        _load_env_file(env_file_path)

    extraction_url = os.getenv(EXTRACTION_BASE_URL_ENV, "").strip()
    if extraction_url:
        extraction_section = raw_content.setdefault("extraction", {})
        extraction_section["base_url"] = extraction_url
        LOGGER.info("Extraction base URL overridden from environment")

    for env_key, field_name in ((SERVICE_URL_ENV, "public_url"), (SERVICE_KEY_ENV, "api_key")):
        value = os.getenv(env_key, "").strip()
        if not value:
            continue
        service_section = dict(raw_content.get("service") or {})
        service_section[field_name] = value
        raw_content["service"] = service_section
        LOGGER.info("Service %s overridden from environment", field_name)
    return raw_content


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read YAML content from disk.

    Args:
        path: Location of the YAML file.

    Returns:
        Dict[str, Any]: Parsed YAML content.

    Raises:
        ConfigError: If the file cannot be read or parsed.
    """
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        LOGGER.error("Configuration file missing at %s", path)
        raise ConfigError("Configuration file not found") from exc
    except yaml.YAMLError as exc:
        LOGGER.error("Invalid YAML syntax in %s", path)
        raise ConfigError("Invalid YAML syntax") from exc
    if not isinstance(data, dict):
        LOGGER.error("Configuration root must be a mapping: %s", path)
        raise ConfigError("Configuration root must be a mapping")
    return data


@lru_cache(maxsize=1)
def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from YAML.

    Args:
        path: Optional override path to the YAML file.

    Returns:
        AppConfig: Parsed configuration object.

    Raises:
        ConfigError: If the configuration cannot be loaded or validated.
    """
    config_path = path or AppConfig.default_path()
    raw_content = _read_yaml(config_path)
    raw_content = _apply_environment_overrides(raw_content)
    try:
        return AppConfig(**raw_content)
    except ValidationError as exc:
        LOGGER.error("Invalid configuration values: %s", exc)
        raise ConfigError("Configuration validation failed") from exc
