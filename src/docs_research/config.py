"""Configuration management using Pydantic settings layered over an optional JSON file."""

import json
import os
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Paths ---

APP_NAME = "docs-research"


def get_config_dir() -> Path:
    """Get the configuration directory (e.g. ~/.config/docs-research)."""
    if os.name == "nt":
        base = Path(os.environ.get("APPDATA", Path.home() / ".config")).expanduser()
    else:
        base = Path("~/.config").expanduser()

    path = base / APP_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_default_output_dir() -> Path:
    """Get the default root directory for research bundles."""
    base = Path("~/Documents").expanduser()
    if not base.exists():
        base = Path.home()

    return base / "docs-research-bundles"


CONFIG_FILE = get_config_dir() / "config.json"


def load_config_file() -> dict[str, Any]:
    """Load settings from the JSON config file if it exists."""
    if not CONFIG_FILE.exists():
        return {}

    try:
        text = CONFIG_FILE.read_text(encoding="utf-8")
        if not text.strip():
            return {}
        return json.loads(text)
    except (OSError, json.JSONDecodeError):
        return {}


class FetchSettings(BaseSettings):
    """HTTP fetching, concurrency and retry configuration."""

    model_config = SettingsConfigDict(env_prefix="DOCS_FETCH_")

    concurrency: int = Field(default=8, ge=1, description="Maximum concurrent fetches per run")
    per_host_limit: int = Field(default=2, ge=1, description="Maximum concurrent requests to a single host")
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_attempts: int = Field(default=3, ge=1, description="Attempts per target, including the first")
    backoff_base_seconds: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max_seconds: float = Field(default=8.0, ge=0)
    jitter_seconds: float = Field(default=0.25, ge=0, description="Upper bound of uniform jitter added to each backoff")
    user_agent: str = Field(default="docs-research-pipeline/0.1 (+reference documentation crawler)")


class CacheSettings(BaseSettings):
    """URL content cache configuration."""

    model_config = SettingsConfigDict(env_prefix="DOCS_CACHE_")

    enabled: bool = Field(default=True)
    ttl_seconds: int = Field(default=24 * 60 * 60, ge=0)
    path: Optional[str] = Field(default=None, description="SQLite cache file (default: ~/.config/docs-research/cache.db)")

    def get_path(self) -> Path:
        if self.path:
            return Path(self.path).expanduser()
        return get_config_dir() / "cache.db"


class ResolverSettings(BaseSettings):
    """Target resolution configuration."""

    model_config = SettingsConfigDict(env_prefix="DOCS_RESOLVER_")

    max_supplemental_passes: int = Field(default=2, ge=0)
    targets_file: Optional[str] = Field(default=None, description="YAML target table replacing the bundled one")


class ValidationSettings(BaseSettings):
    """Completeness gate configuration."""

    model_config = SettingsConfigDict(env_prefix="DOCS_VALIDATION_")

    completeness_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    critical_floor: float = Field(default=0.6, ge=0.0, le=1.0)


class PipelineSettings(BaseSettings):
    """Run-level configuration."""

    model_config = SettingsConfigDict(env_prefix="DOCS_PIPELINE_")

    run_timeout_seconds: float = Field(default=300.0, gt=0)
    output_directory: Optional[str] = Field(default=None, description="Root directory for bundles")


TransportType = Literal["streamable-http", "sse"]


class ServerSettings(BaseSettings):
    """Server configuration."""

    model_config = SettingsConfigDict(env_prefix="DOCS_SERVER_")

    logging_level: str = Field(default="INFO")
    transport: TransportType = Field(default="streamable-http", description="MCP transport: streamable-http or sse")
    host: str = Field(default="127.0.0.1", description="Host for HTTP transports")
    port: int = Field(default=8384, description="Port for HTTP transports")


class AppSettings(BaseSettings):
    """Root application settings.

    Priority: Environment Variables > Config File > Defaults
    """

    model_config = SettingsConfigDict(env_prefix="DOCS_", extra="ignore")

    fetch: FetchSettings = Field(default_factory=FetchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    def get_output_root(self) -> Path:
        """Get the root directory bundles are written under (not created here)."""
        if self.pipeline.output_directory:
            return Path(self.pipeline.output_directory).expanduser()
        return get_default_output_dir()


def _load_settings() -> AppSettings:
    """Load settings with file config as base, env vars overlay."""
    file_data = load_config_file()
    # Pydantic will overlay env vars on top
    return AppSettings(**file_data)


settings = _load_settings()
