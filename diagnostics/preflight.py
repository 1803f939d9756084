"""Run preconditions checked before any cluster is touched."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from config.diagnostics import probe as config_probe
from config.settings import RunSettings
from core.errors import PreconditionError
from diagnostics.models import DiagnosticResult, DiagnosticStatus
from diagnostics.runner import run_diagnostics
from services.providers import ClusterProvider, available_providers
from storage.diagnostics import probe as storage_probe


def resolve_install_version(settings: RunSettings, provider: ClusterProvider | None) -> str:
    """Version the run will install, or an empty string when none is known."""

    cluster = settings.cluster
    if cluster.version:
        return cluster.version
    if cluster.install_specific_nightly:
        return cluster.install_specific_nightly
    if cluster.release_image_latest:
        return cluster.release_image_latest
    if provider is not None:
        return provider.default_version() or ""
    return ""


def probe_provider(settings: RunSettings) -> DiagnosticResult:
    name = "provider"
    if settings.provider in available_providers():
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.PASS,
            details=f"Provider {settings.provider!r} is available",
        )
    return DiagnosticResult(
        name=name,
        status=DiagnosticStatus.FAIL,
        details=(
            f"Unknown provider {settings.provider!r}; "
            f"available: {', '.join(available_providers())}"
        ),
    )


def probe_install_version(
    settings: RunSettings,
    provider: ClusterProvider | None,
) -> DiagnosticResult:
    """An install version must be resolvable unless an existing cluster is reused."""

    name = "install_version"
    if settings.cluster.id or settings.kubeconfig_path:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.PASS,
            details="Existing cluster reused; install version comes from the cluster",
        )
    version = resolve_install_version(settings, provider)
    if not version:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="No install version configured and the provider has no default",
        )
    return DiagnosticResult(
        name=name,
        status=DiagnosticStatus.PASS,
        details=f"Installing {version}",
    )


def probe_upgrade(settings: RunSettings, provider: ClusterProvider | None) -> DiagnosticResult:
    """Upgrades must target a different version and cannot be image-based when managed."""

    name = "upgrade"
    upgrade = settings.upgrade
    if not upgrade.requested:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.PASS,
            details="No upgrade requested",
        )
    if upgrade.managed_upgrade and upgrade.image:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="Image-based managed upgrades are not supported",
        )
    install_version = resolve_install_version(settings, provider)
    if upgrade.release_name and upgrade.release_name == install_version:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"Upgrade version {upgrade.release_name} equals the install version",
        )
    return DiagnosticResult(
        name=name,
        status=DiagnosticStatus.PASS,
        details=f"Upgrading to {upgrade.release_name or upgrade.image}",
    )


def precondition_probes(
    settings: RunSettings,
    provider: ClusterProvider | None,
) -> list[Callable[[], DiagnosticResult]]:
    """Probes whose failure aborts the run before it starts."""

    def provider_probe():
        return probe_provider(settings)

    def install_version_probe():
        return probe_install_version(settings, provider)

    def upgrade_probe():
        return probe_upgrade(settings, provider)

    return [provider_probe, install_version_probe, upgrade_probe]


def all_probes(
    settings: RunSettings,
    provider: ClusterProvider | None,
    config_dir: Path | None = None,
) -> list[Callable[[], DiagnosticResult]]:
    """Preconditions plus the config and storage subsystem probes."""

    def config_probe_with_dir():
        return config_probe(config_dir=config_dir)

    def storage_probe_with_settings():
        db_path = Path(settings.database.path) if settings.database.enabled else None
        return storage_probe(report_dir=settings.report_dir, db_path=db_path)

    return [
        config_probe_with_dir,
        storage_probe_with_settings,
        *precondition_probes(settings, provider),
    ]


def check_preconditions(
    settings: RunSettings,
    provider: ClusterProvider | None,
) -> list[DiagnosticResult]:
    """Run the precondition probes and return only the failures."""

    results = run_diagnostics(precondition_probes(settings, provider))
    return [result for result in results if result.failed]


def require_preconditions(settings: RunSettings, provider: ClusterProvider | None) -> None:
    """Raise ``PreconditionError`` naming every failed precondition."""

    failures = check_preconditions(settings, provider)
    if failures:
        reasons = "; ".join(f"{failure.name}: {failure.details}" for failure in failures)
        raise PreconditionError(f"insufficient preconditions to run ({reasons})")
