"""Alerting and notification transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
import itertools
import json
from typing import Any, Iterable
from urllib import error, parse, request
import uuid

from core.errors import AlertingError
from core.logging import logger as LOGGER
from core.models import Incident


@dataclass(frozen=True)
class OpenIncident:
    """An incident that is still open in the alerting service."""

    id: str
    summary: str
    source: str
    created_at: datetime


def _parse_timestamp(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AlertingService(ABC):
    """Interface for incident management backends."""

    @abstractmethod
    def fire_incident(self, incident: Incident) -> str:
        """Open an incident and return the backend's reference for it."""

    @abstractmethod
    def list_open_incidents(self, source: str) -> list[OpenIncident]:
        """Return open incidents that were fired for ``source``."""

    @abstractmethod
    def merge_incidents(self, target: OpenIncident, duplicates: Iterable[OpenIncident]) -> None:
        """Fold ``duplicates`` into ``target``."""


class NullAlertingService(AlertingService):
    """Records incidents in memory instead of paging anyone."""

    def __init__(self) -> None:
        self.fired: list[Incident] = []
        self.merged: list[tuple[str, list[str]]] = []
        self._open: list[OpenIncident] = []
        self._ids = itertools.count(1)

    def fire_incident(self, incident: Incident) -> str:
        incident_id = f"null-{next(self._ids)}"
        self.fired.append(incident)
        self._open.append(
            OpenIncident(
                id=incident_id,
                summary=incident.summary,
                source=incident.source,
                created_at=datetime.now(timezone.utc),
            )
        )
        LOGGER.info("[Alerts] Recorded incident %s: %s", incident_id, incident.summary)
        return incident_id

    def list_open_incidents(self, source: str) -> list[OpenIncident]:
        return [incident for incident in self._open if incident.source == source]

    def merge_incidents(self, target: OpenIncident, duplicates: Iterable[OpenIncident]) -> None:
        duplicate_ids = [incident.id for incident in duplicates]
        self._open = [incident for incident in self._open if incident.id not in duplicate_ids]
        self.merged.append((target.id, duplicate_ids))


class PagerDutyAlertingService(AlertingService):
    """Events API v2 for firing; REST API for listing and merging."""

    def __init__(
        self,
        *,
        routing_key: str,
        api_token: str = "",
        from_email: str = "",
        events_url: str = "https://events.pagerduty.com/v2/enqueue",
        api_url: str = "https://api.pagerduty.com",
        timeout_s: float = 30.0,
    ) -> None:
        self._routing_key = routing_key.strip()
        self._api_token = api_token.strip()
        self._from_email = from_email.strip()
        self._events_url = events_url
        self._api_url = api_url.rstrip("/")
        self._timeout_s = max(5.0, float(timeout_s))

    @classmethod
    def from_settings(cls, settings) -> "PagerDutyAlertingService":
        return cls(
            routing_key=settings.pagerduty_routing_key,
            api_token=settings.pagerduty_api_token,
            from_email=settings.pagerduty_from_email,
            events_url=settings.pagerduty_events_url,
            api_url=settings.pagerduty_api_url,
            timeout_s=settings.timeout_s,
        )

    @property
    def enabled(self) -> bool:
        return bool(self._routing_key)

    def _send(
        self,
        url: str,
        *,
        method: str,
        payload: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = request.Request(
            url,
            data=data,
            headers={"Content-Type": "application/json", **(headers or {})},
            method=method,
        )
        try:
            with request.urlopen(req, timeout=self._timeout_s) as response:
                body = response.read().decode("utf-8")
        except (error.URLError, OSError) as exc:
            raise AlertingError(f"{method} {url} failed: {exc}") from exc
        if not body:
            return {}
        try:
            return json.loads(body)
        except ValueError as exc:
            raise AlertingError(f"{method} {url} returned invalid JSON") from exc

    def _rest_headers(self) -> dict[str, str]:
        if not self._api_token:
            raise AlertingError("PagerDuty REST API token is not configured")
        headers = {
            "Accept": "application/vnd.pagerduty+json;version=2",
            "Authorization": f"Token token={self._api_token}",
        }
        if self._from_email:
            headers["From"] = self._from_email
        return headers

    def fire_incident(self, incident: Incident) -> str:
        payload = {
            "routing_key": self._routing_key,
            "event_action": "trigger",
            # list_open_incidents matches on the "<source>:" prefix
            "dedup_key": f"{incident.source}:{uuid.uuid4().hex}",
            "payload": {
                "summary": incident.summary,
                "source": incident.source,
                "severity": incident.severity,
                "custom_details": dict(incident.details),
            },
        }
        if incident.group:
            payload["payload"]["group"] = incident.group
        response = self._send(self._events_url, method="POST", payload=payload)
        return str(response.get("dedup_key") or payload["dedup_key"])

    def list_open_incidents(self, source: str) -> list[OpenIncident]:
        query = parse.urlencode(
            [("statuses[]", "triggered"), ("statuses[]", "acknowledged"), ("limit", "100")]
        )
        response = self._send(
            f"{self._api_url}/incidents?{query}",
            method="GET",
            headers=self._rest_headers(),
        )
        incidents = []
        prefix = f"{source}:"
        for entry in response.get("incidents") or []:
            if not str(entry.get("incident_key") or "").startswith(prefix):
                continue
            incidents.append(
                OpenIncident(
                    id=str(entry.get("id")),
                    summary=str(entry.get("title") or entry.get("summary") or ""),
                    source=source,
                    created_at=_parse_timestamp(str(entry.get("created_at") or "")),
                )
            )
        return incidents

    def merge_incidents(self, target: OpenIncident, duplicates: Iterable[OpenIncident]) -> None:
        references = [{"id": incident.id, "type": "incident_reference"} for incident in duplicates]
        if not references:
            return
        self._send(
            f"{self._api_url}/incidents/{target.id}/merge",
            method="PUT",
            payload={"source_incidents": references},
            headers=self._rest_headers(),
        )


class Notifier(ABC):
    """Interface for chat notifications."""

    @abstractmethod
    def post(self, channel: str, message: str) -> None:
        """Post ``message`` to ``channel``."""


class NullNotifier(Notifier):
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def post(self, channel: str, message: str) -> None:
        self.messages.append((channel, message))
        LOGGER.info("[Alerts] Notification for %s suppressed", channel or "<default>")


class SlackNotifier(Notifier):
    """Posts messages through a Slack incoming webhook."""

    def __init__(self, *, webhook_url: str, timeout_s: float = 30.0) -> None:
        self._webhook_url = webhook_url.strip()
        self._timeout_s = max(5.0, float(timeout_s))

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    def post(self, channel: str, message: str) -> None:
        payload: dict[str, str] = {"text": message}
        if channel:
            payload["channel"] = channel
        req = request.Request(
            self._webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self._timeout_s) as response:
                response.read()
        except (error.URLError, OSError) as exc:
            raise AlertingError(f"Slack webhook post failed: {exc}") from exc


def build_alerting(settings) -> tuple[AlertingService, Notifier]:
    """Pick real transports when credentials are configured, null ones otherwise."""

    service: AlertingService = NullAlertingService()
    if settings.pagerduty_routing_key:
        service = PagerDutyAlertingService.from_settings(settings)
    notifier: Notifier = NullNotifier()
    if settings.slack_webhook_url:
        notifier = SlackNotifier(
            webhook_url=settings.slack_webhook_url,
            timeout_s=settings.timeout_s,
        )
    return service, notifier
