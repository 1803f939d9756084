"""Configuration controller for YAML-based settings."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Mapping

import yaml


# Environment variables set by the CI system, mapped onto config keys.
ENVIRONMENT_OVERRIDES: dict[str, tuple[str, ...]] = {
    "JOB_TYPE": ("job", "type"),
    "JOB_NAME": ("job", "name"),
    "BUILD_ID": ("job", "id"),
    "JOB_STARTED_AT": ("job", "started_at"),
    "REPORT_DIR": ("report_dir",),
    "CLUSTER_ID": ("cluster", "id"),
    "TEST_KUBECONFIG": ("kubeconfig", "path"),
    "PAGERDUTY_ROUTING_KEY": ("alerts", "pagerduty", "routing_key"),
    "PAGERDUTY_API_TOKEN": ("alerts", "pagerduty", "api_token"),
    "SLACK_WEBHOOK_URL": ("alerts", "slack", "webhook_url"),
}


@dataclass(frozen=True)
class ConfigPaths:
    """Filesystem paths for configuration files."""

    config_dir: Path
    config_file: Path
    override_file: Path


class ConfigController:
    """Singleton controller for loading configuration."""

    _instance: "ConfigController | None" = None

    def __init__(
        self,
        config_file: str = "default.yaml",
        *,
        config_dir: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        if ConfigController._instance is not None:
            raise RuntimeError("You cannot create another ConfigController class")

        if config_dir is None:
            config_dir = Path("config")
            if not (config_dir / config_file).exists():
                config_dir = Path(__file__).resolve().parent
        self.paths = ConfigPaths(
            config_dir=config_dir,
            config_file=config_dir / config_file,
            override_file=config_dir / "override.yaml",
        )
        self._environ = environ if environ is not None else os.environ
        self.config: dict[str, Any] = {}
        self.load_config()
        ConfigController._instance = self

    @classmethod
    def get_instance(cls, config_dir: Path | None = None) -> "ConfigController":
        """Return the singleton instance of the controller."""

        if cls._instance is None:
            cls._instance = cls(config_dir=config_dir)
        return cls._instance

    def load_config(self) -> None:
        """Load configuration from default and override YAML files, then the environment."""

        with self.paths.config_file.open("r", encoding="utf-8") as file:
            config = yaml.safe_load(file) or {}

        if self.paths.override_file.exists():
            with self.paths.override_file.open("r", encoding="utf-8") as file:
                override_config = yaml.safe_load(file) or {}
            if override_config:
                config = self._deep_merge(config, override_config)

        self.config = self._apply_environment(config)

    def get_config(self) -> dict[str, Any]:
        """Return the currently loaded configuration."""

        return dict(self.config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge dictionaries, overriding base values with override values."""

        merged = dict(base)
        for key, value in override.items():
            if (
                key in merged
                and isinstance(merged[key], dict)
                and isinstance(value, dict)
            ):
                merged[key] = self._deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _apply_environment(self, config: dict[str, Any]) -> dict[str, Any]:
        """Overlay non-empty CI environment variables onto the loaded config."""

        overlay: dict[str, Any] = {}
        for variable, key_path in ENVIRONMENT_OVERRIDES.items():
            value = self._environ.get(variable)
            if not value:
                continue
            node = overlay
            for key in key_path[:-1]:
                node = node.setdefault(key, {})
            node[key_path[-1]] = value
        if not overlay:
            return dict(config)
        return self._deep_merge(config, overlay)
