"""Run metadata written alongside the report artifacts."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import json
from pathlib import Path
from typing import Any, Mapping

from core.models import PassRate


METADATA_FILENAME = "custom-metadata.json"


@dataclass
class RunMetadata:
    """Mutable per-run metadata; owned by a single run context."""

    cluster_id: str = ""
    cluster_name: str = ""
    cluster_version: str = ""
    upgrade_version: str = ""
    region: str = ""
    environment: str = ""
    job_name: str = ""
    job_id: str = ""
    report_dir: str = ""
    pass_rates: dict[str, float | None] = field(default_factory=dict)
    phase_counts: dict[str, dict[str, int]] = field(default_factory=dict)
    cluster_states: dict[str, str] = field(default_factory=dict)
    log_metrics: dict[str, int] = field(default_factory=dict)
    before_suite_metrics: dict[str, int] = field(default_factory=dict)
    route_monitors: dict[str, Any] = field(default_factory=dict)
    phase_errors: dict[str, str] = field(default_factory=dict)

    def set_pass_rate(self, phase: str, pass_rate: PassRate) -> None:
        self.pass_rates[phase] = pass_rate.value
        self.phase_counts[phase] = {
            "passing": pass_rate.passing,
            "total": pass_rate.total,
        }

    def undefined_pass_rates(self) -> list[str]:
        return sorted(phase for phase, value in self.pass_rates.items() if value is None)

    def reset_log_metrics(self, names: list[str] | None = None) -> None:
        self.log_metrics = {name: 0 for name in (names or self.log_metrics)}

    def reset_before_suite_metrics(self, names: list[str] | None = None) -> None:
        self.before_suite_metrics = {
            name: 0 for name in (names or self.before_suite_metrics)
        }

    def increment_log_metric(self, name: str, amount: int) -> None:
        self.log_metrics[name] = self.log_metrics.get(name, 0) + amount

    def increment_before_suite_metric(self, name: str, amount: int) -> None:
        self.before_suite_metrics[name] = self.before_suite_metrics.get(name, 0) + amount

    def record_log_metrics(
        self,
        log_counts: Mapping[str, int],
        before_suite_counts: Mapping[str, int],
    ) -> None:
        for name, count in log_counts.items():
            self.increment_log_metric(name, count)
        for name, count in before_suite_counts.items():
            self.increment_before_suite_metric(name, count)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["pass_rate_undefined"] = self.undefined_pass_rates()
        return payload

    def write_to_json(self, report_dir: Path) -> Path:
        """Write metadata to ``custom-metadata.json`` in the report directory."""

        path = report_dir / METADATA_FILENAME
        path.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
        return path
