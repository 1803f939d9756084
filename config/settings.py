"""Typed run settings, validated once at startup."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from core.errors import ConfigError
from core.log_metrics import LogMetricSet


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def _section(config: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = config.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"config section {key!r} must be a mapping")
    return value


def _bool(section: Mapping[str, Any], key: str, default: bool) -> bool:
    value = section.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ConfigError(f"{key!r} must be a boolean, got {value!r}")


def _float(section: Mapping[str, Any], key: str, default: float, *, minimum: float = 0.0) -> float:
    try:
        value = float(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key!r} must be a number") from exc
    if value < minimum:
        raise ConfigError(f"{key!r} must be >= {minimum}, got {value}")
    return value


def _int(section: Mapping[str, Any], key: str, default: int, *, minimum: int = 0) -> int:
    try:
        value = int(section.get(key, default))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key!r} must be an integer") from exc
    if value < minimum:
        raise ConfigError(f"{key!r} must be >= {minimum}, got {value}")
    return value


def _str(section: Mapping[str, Any], key: str, default: str = "") -> str:
    value = section.get(key, default)
    return "" if value is None else str(value).strip()


@dataclass(frozen=True)
class RouteTarget:
    """Network endpoint probed during disruptive operations."""

    name: str
    url: str


@dataclass(frozen=True)
class ClusterSettings:
    """Cluster selection and teardown behavior."""

    id: str = ""
    name: str = ""
    version: str = ""
    reused: bool = False
    destroy_after_test: bool = False
    hibernate_after_use: bool = True
    install_specific_nightly: str = ""
    release_image_latest: str = ""
    skip_health_checks: bool = False
    ready_timeout_s: float = 7200.0
    poll_interval_s: float = 30.0
    expiry_extension_hours: int = 6
    max_lifetime_hours: int = 24

    @property
    def is_nightly(self) -> bool:
        return bool(self.install_specific_nightly or self.release_image_latest)

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "ClusterSettings":
        return cls(
            id=_str(section, "id"),
            name=_str(section, "name"),
            version=_str(section, "version"),
            reused=_bool(section, "reused", False),
            destroy_after_test=_bool(section, "destroy_after_test", False),
            hibernate_after_use=_bool(section, "hibernate_after_use", True),
            install_specific_nightly=_str(section, "install_specific_nightly"),
            release_image_latest=_str(section, "release_image_latest"),
            skip_health_checks=_bool(section, "skip_health_checks", False),
            ready_timeout_s=_float(section, "ready_timeout_s", 7200.0),
            poll_interval_s=_float(section, "poll_interval_s", 30.0),
            expiry_extension_hours=_int(section, "expiry_extension_hours", 6),
            max_lifetime_hours=_int(section, "max_lifetime_hours", 24),
        )


@dataclass(frozen=True)
class UpgradeSettings:
    """Upgrade target and route monitoring during the upgrade."""

    release_name: str = ""
    image: str = ""
    managed_upgrade: bool = False
    managed_upgrade_rescheduled: bool = False
    monitor_routes: bool = False
    route_targets: tuple[RouteTarget, ...] = ()

    @property
    def requested(self) -> bool:
        return bool(self.release_name or self.image)

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "UpgradeSettings":
        targets = []
        raw_targets = section.get("route_targets") or []
        if not isinstance(raw_targets, list):
            raise ConfigError("upgrade.route_targets must be a list")
        for entry in raw_targets:
            if not isinstance(entry, Mapping) or not entry.get("url"):
                raise ConfigError(f"route target requires a url: {entry!r}")
            url = str(entry["url"]).strip()
            name = str(entry.get("name") or url).strip()
            targets.append(RouteTarget(name=name, url=url))
        names = [target.name for target in targets]
        if len(names) != len(set(names)):
            raise ConfigError("route target names must be unique")
        return cls(
            release_name=_str(section, "release_name"),
            image=_str(section, "image"),
            managed_upgrade=_bool(section, "managed_upgrade", False),
            managed_upgrade_rescheduled=_bool(section, "managed_upgrade_rescheduled", False),
            monitor_routes=_bool(section, "monitor_routes", False),
            route_targets=tuple(targets),
        )


@dataclass(frozen=True)
class RouteMonitorSettings:
    """Probe cadence and funnel sizing for route monitoring."""

    interval_s: float = 1.0
    timeout_s: float = 5.0
    queue_size: int = 1000
    verify_tls: bool = False

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "RouteMonitorSettings":
        return cls(
            interval_s=_float(section, "interval_s", 1.0, minimum=0.01),
            timeout_s=_float(section, "timeout_s", 5.0, minimum=0.1),
            queue_size=_int(section, "queue_size", 1000, minimum=1),
            verify_tls=_bool(section, "verify_tls", False),
        )


@dataclass(frozen=True)
class TestSettings:
    """Test-framework invocation and result file conventions."""

    __test__ = False

    command: tuple[str, ...] = ()
    timeout_s: float = 3600.0
    result_pattern: str = r"^junit.*\.xml$"
    log_pattern: str = r".*-log\.txt$"
    install_description: str = "e2e suite"
    upgrade_description: str = "e2e suite post-upgrade"

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "TestSettings":
        command = section.get("command") or []
        if isinstance(command, str):
            command = command.split()
        if not isinstance(command, list):
            raise ConfigError("tests.command must be a list of arguments")
        return cls(
            command=tuple(str(part) for part in command),
            timeout_s=_float(section, "timeout_s", 3600.0, minimum=1.0),
            result_pattern=_str(section, "result_pattern", r"^junit.*\.xml$"),
            log_pattern=_str(section, "log_pattern", r".*-log\.txt$"),
            install_description=_str(section, "install_description", "e2e suite"),
            upgrade_description=_str(section, "upgrade_description", "e2e suite post-upgrade"),
        )


@dataclass(frozen=True)
class AlertSettings:
    """Escalation policy thresholds and alerting transports."""

    bulk_failure_threshold: int = 10
    informing_marker: str = "informing"
    addon_marker: str = "addon"
    severity: str = "info"
    pagerduty_routing_key: str = ""
    pagerduty_api_token: str = ""
    pagerduty_events_url: str = "https://events.pagerduty.com/v2/enqueue"
    pagerduty_api_url: str = "https://api.pagerduty.com"
    pagerduty_from_email: str = ""
    slack_webhook_url: str = ""
    slack_channel: str = ""
    timeout_s: float = 30.0

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "AlertSettings":
        pagerduty = _section(section, "pagerduty")
        slack = _section(section, "slack")
        return cls(
            bulk_failure_threshold=_int(section, "bulk_failure_threshold", 10, minimum=1),
            informing_marker=_str(section, "informing_marker", "informing"),
            addon_marker=_str(section, "addon_marker", "addon"),
            severity=_str(section, "severity", "info").lower(),
            pagerduty_routing_key=_str(pagerduty, "routing_key"),
            pagerduty_api_token=_str(pagerduty, "api_token"),
            pagerduty_events_url=_str(
                pagerduty, "events_url", "https://events.pagerduty.com/v2/enqueue"
            ),
            pagerduty_api_url=_str(pagerduty, "api_url", "https://api.pagerduty.com"),
            pagerduty_from_email=_str(pagerduty, "from_email"),
            slack_webhook_url=_str(slack, "webhook_url"),
            slack_channel=_str(slack, "channel"),
            timeout_s=_float(section, "timeout_s", 30.0, minimum=1.0),
        )


@dataclass(frozen=True)
class DatabaseSettings:
    """Result store location; an empty path disables persistence."""

    path: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.path)

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "DatabaseSettings":
        return cls(path=_str(section, "path"))


@dataclass(frozen=True)
class JobSettings:
    """CI job identity, taken from the environment for scheduled jobs."""

    type: str = ""
    name: str = ""
    id: str = ""
    started_at: str = ""
    url_template: str = ""

    @property
    def is_periodic(self) -> bool:
        return self.type == "periodic"

    @property
    def url(self) -> str | None:
        """Job URL; only resolvable for periodic jobs with a name and id."""

        if not self.is_periodic or not self.name or not self.id or not self.url_template:
            return None
        return self.url_template.format(job_name=self.name, job_id=self.id)

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> "JobSettings":
        return cls(
            type=_str(section, "type"),
            name=_str(section, "name"),
            id=_str(section, "id"),
            started_at=_str(section, "started_at"),
            url_template=_str(section, "url_template"),
        )


@dataclass(frozen=True)
class RunSettings:
    """Every option recognized by a validation run."""

    provider: str = "mock"
    report_dir: Path | None = None
    dry_run: bool = False
    suffix: str = ""
    logging_level: str = "INFO"
    file_logging_enabled: bool = True
    kubeconfig_path: str = ""
    cluster: ClusterSettings = field(default_factory=ClusterSettings)
    upgrade: UpgradeSettings = field(default_factory=UpgradeSettings)
    route_monitor: RouteMonitorSettings = field(default_factory=RouteMonitorSettings)
    tests: TestSettings = field(default_factory=TestSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    job: JobSettings = field(default_factory=JobSettings)
    log_metrics: LogMetricSet = field(default_factory=LogMetricSet)
    before_suite_metrics: LogMetricSet = field(default_factory=LogMetricSet)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RunSettings":
        """Build and validate settings from a loaded configuration mapping."""

        if not isinstance(config, Mapping):
            raise ConfigError("configuration root must be a mapping")
        report_dir = _str(config, "report_dir")
        provider = _str(config, "provider", "mock")
        if not provider:
            raise ConfigError("provider must not be empty")
        return cls(
            provider=provider,
            report_dir=Path(report_dir).expanduser() if report_dir else None,
            dry_run=_bool(config, "dry_run", False),
            suffix=_str(config, "suffix"),
            logging_level=_str(config, "logging_level", "INFO").upper(),
            file_logging_enabled=_bool(config, "file_logging_enabled", True),
            kubeconfig_path=_str(_section(config, "kubeconfig"), "path"),
            cluster=ClusterSettings.from_config(_section(config, "cluster")),
            upgrade=UpgradeSettings.from_config(_section(config, "upgrade")),
            route_monitor=RouteMonitorSettings.from_config(_section(config, "route_monitor")),
            tests=TestSettings.from_config(_section(config, "tests")),
            alerts=AlertSettings.from_config(_section(config, "alerts")),
            database=DatabaseSettings.from_config(_section(config, "database")),
            job=JobSettings.from_config(_section(config, "job")),
            log_metrics=LogMetricSet.from_config(config.get("log_metrics")),
            before_suite_metrics=LogMetricSet.from_config(config.get("before_suite_metrics")),
        )
