"""Turns a phase's failing tests into a bounded set of incidents."""

from __future__ import annotations

from typing import Iterable, Mapping

from core.alert_policy import EscalationPolicy
from core.errors import AlertingError
from core.logging import logger as LOGGER
from core.models import Incident
from services.alerting import AlertingService, Notifier, NullAlertingService, NullNotifier


class AlertConsolidator:
    """Fire incidents for failing tests and merge duplicates afterwards."""

    def __init__(
        self,
        policy: EscalationPolicy | None = None,
        service: AlertingService | None = None,
        notifier: Notifier | None = None,
        channel: str = "",
    ) -> None:
        self._policy = policy or EscalationPolicy()
        self._service = service or NullAlertingService()
        self._notifier = notifier or NullNotifier()
        self._channel = channel

    @property
    def policy(self) -> EscalationPolicy:
        return self._policy

    def escalate(
        self,
        failing_test_names: Iterable[str],
        job_name: str,
        *,
        job_url: str | None = None,
        details: Mapping[str, str] | None = None,
    ) -> list[Incident]:
        """Fire incidents for the failing tests; returns the incidents that were accepted."""

        job_details = dict(details or {})
        if job_url:
            job_details.setdefault("details", job_url)
        plan = self._policy.plan(failing_test_names, source=job_name, details=job_details)
        if plan.skipped_reason:
            LOGGER.info("[Alerts] Not escalating for %s: %s", job_name, plan.skipped_reason)
            return []
        if plan.excluded:
            LOGGER.info("[Alerts] Ignoring %d informing failure(s)", len(plan.excluded))

        fired: list[Incident] = []
        for incident in plan.incidents:
            try:
                reference = self._service.fire_incident(incident)
            except AlertingError as exc:
                LOGGER.warning("[Alerts] Failed creating incident %r: %s", incident.summary, exc)
                continue
            fired.append(incident)
            if plan.bulk:
                self._notify_bulk(job_name, job_url, reference)

        LOGGER.info(
            "[Alerts] Fired %d of %d incident(s) for %s",
            len(fired),
            len(plan.incidents),
            job_name,
        )
        return fired

    def _notify_bulk(self, job_name: str, job_url: str | None, reference: str) -> None:
        message = (
            "A bunch of tests failed at once:\n"
            f"pipeline: {job_name}\n"
            f"URL: {job_url or 'n/a'}\n"
            f"incident: {reference}"
        )
        try:
            self._notifier.post(self._channel, message)
        except AlertingError as exc:
            LOGGER.warning("[Alerts] Failed sending bulk failure notification: %s", exc)

    def merge(self, source: str) -> int:
        """Merge open incidents with the same summary into the oldest one.

        Returns the number of incidents folded into another.
        """

        try:
            open_incidents = self._service.list_open_incidents(source)
        except AlertingError as exc:
            LOGGER.warning("[Alerts] Failed listing incidents for %s: %s", source, exc)
            return 0

        groups: dict[str, list] = {}
        for incident in open_incidents:
            groups.setdefault(incident.summary, []).append(incident)

        merged = 0
        for summary, members in groups.items():
            if len(members) < 2:
                continue
            members.sort(key=lambda incident: incident.created_at)
            target, duplicates = members[0], members[1:]
            try:
                self._service.merge_incidents(target, duplicates)
            except AlertingError as exc:
                LOGGER.warning("[Alerts] Failed merging incidents for %r: %s", summary, exc)
                continue
            merged += len(duplicates)
        if merged:
            LOGGER.info("[Alerts] Merged %d duplicate incident(s) for %s", merged, source)
        return merged
