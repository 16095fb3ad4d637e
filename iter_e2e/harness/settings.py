"""
Harness configuration.

Loads settings from environment variables (and an optional ``.env`` file)
with pydantic-settings. Every blocking phase takes its bound from
``Timeouts`` so no timeout is hard-coded at a call site.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from iter_e2e.harness import constants


class Timeouts(BaseModel):
    """Bounds (seconds) for every blocking operation the harness performs."""

    model_config = ConfigDict(frozen=True)

    readiness_timeout: float = Field(default=30.0, description="Local process readiness wait")
    external_readiness_timeout: float = Field(
        default=10.0, description="Single health probe window for an external service"
    )
    shutdown_grace: float = Field(default=5.0, description="Wait after SIGINT before SIGKILL")
    port_release_timeout: float = Field(
        default=5.0, description="Wait for the health endpoint to stop answering after stop"
    )
    container_startup_timeout: float = Field(
        default=60.0, description="Primary container health wait"
    )
    driver_startup_timeout: float = Field(default=30.0, description="Driver exec probe wait")
    suite_timeout: float = Field(
        default=600.0, description="Overall lifetime of a containerized suite"
    )
    browser_timeout: float = Field(default=60.0, description="Any single browser interaction")
    http_timeout: float = Field(default=30.0, description="HTTP request timeout")
    probe_timeout: float = Field(default=2.0, description="Single health probe request timeout")
    probe_interval: float = Field(default=0.1, description="Delay between readiness probes")
    exec_timeout: float = Field(default=300.0, description="Command executed in a container")


def find_project_root(start: Path | None = None) -> Path:
    """Walk up from ``start`` looking for the service's go.mod."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / "go.mod").exists():
            return candidate
    return current


class HarnessSettings(BaseSettings):
    """
    Settings for one harness run.

    ``ITER_BASE_URL``, ``TEST_DOCKER``, ``GOOGLE_GEMINI_API_KEY`` and
    ``ITER_SERVICE_BIN`` are honoured under their historical names; everything
    else uses the ``ITER_E2E_`` prefix (nested timeouts via ``__``).
    """

    base_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(constants.ENV_BASE_URL, "ITER_E2E_BASE_URL", "base_url"),
        description="Externally managed service URL; selects the External backend",
    )
    use_docker: bool = Field(
        default=False,
        validation_alias=AliasChoices(constants.ENV_DOCKER, "ITER_E2E_USE_DOCKER", "use_docker"),
        description="Select the Containerized backend",
    )
    api_credential: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(constants.ENV_API_CREDENTIAL, "api_credential"),
        description="Forwarded into spawned processes and containers when present",
    )
    service_binary: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices(constants.ENV_SERVICE_BIN, "service_binary"),
        description="Explicit path to the iter-service binary",
    )
    project_root: Path = Field(default_factory=find_project_root)
    results_root: Optional[Path] = Field(
        default=None, description="Defaults to <project_root>/tests/results"
    )
    credentials_file: Path = Field(
        default_factory=lambda: Path(os.environ.get("HOME", str(Path.home())))
        / ".claude"
        / ".credentials.json"
    )
    primary_image: str = constants.PRIMARY_IMAGE
    driver_image: str = constants.DRIVER_IMAGE
    port_base: int = constants.PORT_BASE
    timeouts: Timeouts = Field(default_factory=Timeouts)

    model_config = SettingsConfigDict(
        env_prefix="ITER_E2E_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("base_url", "api_credential", "service_binary", mode="before")
    @classmethod
    def _blank_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        return value.rstrip("/") if value else value

    @field_validator("use_docker", mode="before")
    @classmethod
    def _parse_flag(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return value

    @property
    def resolved_results_root(self) -> Path:
        if self.results_root is not None:
            return self.results_root
        return self.project_root / "tests" / constants.RESULTS_DIR_NAME

    def forwarded_env(self) -> dict[str, str]:
        """Variables passed through to processes and containers under test."""
        if self.api_credential:
            return {constants.ENV_API_CREDENTIAL: self.api_credential}
        return {}
