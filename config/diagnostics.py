"""Diagnostics routines for the configuration subsystem."""

from __future__ import annotations

from pathlib import Path

import yaml

from diagnostics.models import DiagnosticResult, DiagnosticStatus


def probe(config_dir: Path | None = None) -> DiagnosticResult:
    """Check that the configuration files exist and parse as YAML.

    Args:
        config_dir: Directory holding default.yaml; defaults to ./config.

    Returns:
        Diagnostic result indicating config readiness.
    """

    name = "config"
    config_dir = config_dir if config_dir is not None else Path("config")
    default_config = config_dir / "default.yaml"
    override_config = config_dir / "override.yaml"
    try:
        if not config_dir.exists():
            return DiagnosticResult(
                name=name,
                status=DiagnosticStatus.FAIL,
                details=f"Config directory missing at {config_dir}",
            )

        if not default_config.exists():
            return DiagnosticResult(
                name=name,
                status=DiagnosticStatus.FAIL,
                details=f"Missing default config at {default_config}",
            )

        yaml.safe_load(default_config.read_text(encoding="utf-8"))
        if override_config.exists():
            yaml.safe_load(override_config.read_text(encoding="utf-8"))
            return DiagnosticResult(
                name=name,
                status=DiagnosticStatus.PASS,
                details=f"Config files readable at {config_dir} (override present)",
            )

        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.PASS,
            details=f"Config files readable at {config_dir}",
        )
    except OSError as exc:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"Config access failed: {exc}",
        )
    except yaml.YAMLError as exc:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"Config is not valid YAML: {exc}",
        )
