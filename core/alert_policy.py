"""Escalation policy turning failing tests into a bounded set of incidents."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from core.models import Incident


_SEVERITY_ALIASES = {
    "critical": "critical",
    "high": "error",
    "error": "error",
    "warning": "warning",
    "normal": "info",
    "info": "info",
    "low": "info",
}

BULK_FAILURE_SUMMARY = "A lot of tests failed together"
BULK_FAILURE_HELP = (
    "This is likely a more complex problem, like a test harness or infrastructure issue."
)


def normalize_severity(severity: str) -> str:
    return _SEVERITY_ALIASES.get(severity.strip().lower(), "info")


@dataclass(frozen=True)
class EscalationPlan:
    """Incidents to fire for one batch of failing tests."""

    incidents: tuple[Incident, ...] = ()
    bulk: bool = False
    skipped_reason: str = ""
    excluded: tuple[str, ...] = ()


class EscalationPolicy:
    """Decide how many incidents a batch of failures deserves and how they group."""

    def __init__(
        self,
        *,
        bulk_failure_threshold: int = 10,
        informing_marker: str = "informing",
        addon_marker: str = "addon",
        severity: str = "info",
    ) -> None:
        self._bulk_failure_threshold = int(bulk_failure_threshold)
        self._informing_marker = informing_marker
        self._addon_marker = addon_marker.lower()
        self._severity = normalize_severity(severity)

    @classmethod
    def from_settings(cls, settings) -> "EscalationPolicy":
        return cls(
            bulk_failure_threshold=settings.bulk_failure_threshold,
            informing_marker=settings.informing_marker,
            addon_marker=settings.addon_marker,
            severity=settings.severity,
        )

    @property
    def bulk_failure_threshold(self) -> int:
        return self._bulk_failure_threshold

    def is_addon_job(self, job_name: str) -> bool:
        return bool(self._addon_marker) and self._addon_marker in job_name.lower()

    def is_informing(self, test_name: str) -> bool:
        return bool(self._informing_marker) and self._informing_marker in test_name

    def plan(
        self,
        failing_test_names: Iterable[str],
        *,
        source: str,
        details: Mapping[str, str] | None = None,
    ) -> EscalationPlan:
        if self.is_addon_job(source):
            return EscalationPlan(skipped_reason="addon job")

        failing: list[str] = []
        for name in failing_test_names:
            if name not in failing:
                failing.append(name)

        # informing failures still count toward the bulk threshold
        base_details = dict(details or {})
        if len(failing) > self._bulk_failure_threshold:
            bulk_details = {
                **base_details,
                "help": BULK_FAILURE_HELP,
                "failing_tests": str(len(failing)),
            }
            incident = Incident(
                summary=BULK_FAILURE_SUMMARY,
                source=source,
                severity=self._severity,
                group="",
                details=bulk_details,
            )
            return EscalationPlan(incidents=(incident,), bulk=True)

        excluded = tuple(name for name in failing if self.is_informing(name))
        distinct = [name for name in failing if name not in excluded]
        if not distinct:
            return EscalationPlan(skipped_reason="no escalating failures", excluded=excluded)

        incidents = tuple(
            Incident(
                summary=name,
                source=source,
                severity=self._severity,
                group=name,
                details=base_details,
            )
            for name in distinct
        )
        return EscalationPlan(incidents=incidents, excluded=excluded)
