"""Orchestrator settings: env-driven infrastructure configuration.

Reads from a .env file and LAYERFORGE_* environment variables.  Settings
only decide where things live and how hard to try; build flags are passed
explicitly to ``Orchestrator.build`` and never read from the environment.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export LAYERFORGE_CACHE_PATH=/var/cache/layerforge
        export LAYERFORGE_MAX_WORKERS=4
        export LAYERFORGE_FETCH_TIMEOUT_SECONDS=600
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LAYERFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    cache_path: Path = Path(".layerforge/cache")
    work_path: Path = Path(".layerforge/work")
    output_path: Path = Path(".layerforge/images")

    # Scheduling
    max_workers: int = 3

    # External fetches
    fetch_timeout_seconds: float = 300.0
    fetch_retries: int = 2
    retry_backoff_seconds: float = 1.0
    model_endpoint: str = "https://huggingface.co"
    runtime_install_url: str = ""

    # Cache
    verify_cache: bool = True
