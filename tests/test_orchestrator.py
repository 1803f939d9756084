"""Tests for the phase orchestrator and its run state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
import gzip
import json
from pathlib import Path

from config.settings import (
    ClusterSettings,
    DatabaseSettings,
    JobSettings,
    RouteTarget,
    RunSettings,
    UpgradeSettings,
)
from core.errors import ProviderError
from core.log_metrics import LogMetricSet
from core.models import (
    INSTALL_PHASE,
    UPGRADE_PHASE,
    ClusterState,
    ExitCode,
    RunState,
)
from core.run_context import RunContext
from services.alert_consolidator import AlertConsolidator
from services.alerting import NullAlertingService, NullNotifier
from services.orchestrator import PhaseOrchestrator
from services.providers import MockProvider
from services.result_collector import LOG_METRICS_FILENAME, ResultCollector
from services.route_monitor import RouteMonitorSummary
from services.test_runner import RunnerOutcome, TestRunner
from storage.controller import ResultStore


PASSING_JUNIT = """<testsuite name="e2e">
  <testcase classname="e2e" name="namespaces work" time="0.5"/>
  <testcase classname="e2e" name="routes work" time="0.5"/>
  <testcase classname="e2e" name="optional"><skipped/></testcase>
</testsuite>
"""

FAILING_JUNIT = """<testsuite name="e2e">
  <testcase classname="e2e" name="namespaces work"/>
  <testcase classname="e2e" name="routes work"><failure message="timeout"/></testcase>
  <testcase classname="e2e" name="pods work"><error message="crash"/></testcase>
</testsuite>
"""


class _FakeRunner(TestRunner):
    def __init__(self, junit: str | None = PASSING_JUNIT, succeeded: bool = True) -> None:
        self.junit = junit
        self.succeeded = succeeded
        self.calls: list[dict[str, object]] = []

    def run(self, *, phase, description, output_dir, junit_path, kubeconfig_path, dry_run) -> RunnerOutcome:
        self.calls.append(
            {
                "phase": phase,
                "description": description,
                "kubeconfig_path": kubeconfig_path,
                "dry_run": dry_run,
            }
        )
        if self.junit is not None and not dry_run:
            junit_path.write_text(self.junit, encoding="utf-8")
        return RunnerOutcome(succeeded=self.succeeded, skipped=dry_run)

    @property
    def phases(self) -> list[object]:
        return [call["phase"] for call in self.calls]


@dataclass
class _FakeMonitors:
    stopped: bool = False
    started_with: list[object] = field(default_factory=list)

    def factory(self, targets, output_dir, settings):
        self.started_with = list(targets)
        return self

    def stop(self) -> RouteMonitorSummary:
        self.stopped = True
        return RouteMonitorSummary(
            output_dir=Path("."),
            targets={
                "console": {
                    "requests": 3,
                    "availability": 1.0,
                    "latency_s": {"p99": 0.01},
                }
            },
        )


def _settings(tmp_path: Path, **overrides) -> RunSettings:
    values = {
        "report_dir": tmp_path / "report",
        "file_logging_enabled": False,
        "cluster": ClusterSettings(poll_interval_s=0.0),
    }
    values.update(overrides)
    return RunSettings(**values)


def _orchestrator(settings, provider=None, runner=None, **kwargs):
    provider = provider or MockProvider()
    runner = runner or _FakeRunner()
    collector = kwargs.pop("collector", None) or ResultCollector.from_settings(settings)
    return PhaseOrchestrator(settings, provider, runner, collector, **kwargs), provider, runner


def test_acquisition_failure_never_invokes_runner(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    orchestrator, _, runner = _orchestrator(
        settings,
        provider=MockProvider(failing_operations={"provision"}),
    )
    ctx = RunContext(settings=settings, report_dir=tmp_path)

    result = orchestrator.run_phase(ctx, INSTALL_PHASE, "e2e suite", dry_run=False)

    assert not result.passed
    assert result.testcases == []
    assert runner.calls == []
    assert ctx.setup_failed


def test_successful_run_hibernates_and_reports(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    orchestrator, provider, runner = _orchestrator(settings)
    ctx = RunContext(settings=settings)

    exit_code = orchestrator.run(ctx)

    assert exit_code is ExitCode.SUCCESS
    assert runner.phases == [INSTALL_PHASE]
    assert ctx.state_history == [
        RunState.INITIALIZING,
        RunState.ACQUIRING_CLUSTER,
        RunState.RUNNING_INSTALL_PHASE,
        RunState.FINALIZING,
        RunState.HIBERNATING,
        RunState.DONE,
    ]
    install = ctx.phase_results[INSTALL_PHASE]
    assert install.pass_rate.passing == 2
    assert install.pass_rate.total == 2
    report_dir = settings.report_dir
    assert (report_dir / INSTALL_PHASE / LOG_METRICS_FILENAME).exists()
    metadata = json.loads((report_dir / "custom-metadata.json").read_text(encoding="utf-8"))
    assert metadata["pass_rates"][INSTALL_PHASE] == 1.0
    assert metadata["cluster_states"][INSTALL_PHASE] == ClusterState.READY.value
    assert provider.properties[ctx.cluster_id]["Status"] == "completed-passing"
    assert provider.get_state(ctx.cluster_id) is ClusterState.HIBERNATING
    assert "extend_expiry" in provider.operations()
    assert runner.calls[0]["kubeconfig_path"] == report_dir / "kubeconfig"


def test_failing_tests_fail_the_run(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    orchestrator, provider, _ = _orchestrator(settings, runner=_FakeRunner(FAILING_JUNIT))
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.FAILURE
    assert not ctx.phase_results[INSTALL_PHASE].passed
    assert provider.properties[ctx.cluster_id]["Status"] == "completed-failing"


def test_runner_failure_fails_phase_even_without_failed_cases(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    orchestrator, _, _ = _orchestrator(settings, runner=_FakeRunner(PASSING_JUNIT, succeeded=False))

    assert orchestrator.run(RunContext(settings=settings)) is ExitCode.FAILURE


def test_parse_error_fails_phase_without_partial_credit(tmp_path: Path) -> None:
    settings = _settings(tmp_path, upgrade=UpgradeSettings(release_name="4.1.0"))
    orchestrator, provider, runner = _orchestrator(settings, runner=_FakeRunner("<testsuite><testcase"))
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.FAILURE
    install = ctx.phase_results[INSTALL_PHASE]
    assert not install.passed
    assert install.testcases == []
    assert runner.phases == [INSTALL_PHASE]
    assert "upgrade" not in provider.operations()
    assert UPGRADE_PHASE not in ctx.phase_results
    assert ctx.fatal_error
    assert INSTALL_PHASE not in ctx.metadata.pass_rates
    assert ctx.metadata.undefined_pass_rates() == []
    assert INSTALL_PHASE in ctx.metadata.phase_errors
    assert ctx.state_history[-1] is RunState.DONE


def test_unwritable_phase_directory_aborts_remaining_phases(tmp_path: Path) -> None:
    settings = _settings(tmp_path, upgrade=UpgradeSettings(release_name="4.1.0"))
    settings.report_dir.mkdir(parents=True)
    (settings.report_dir / INSTALL_PHASE).write_text("not a directory", encoding="utf-8")
    orchestrator, provider, runner = _orchestrator(settings)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.FAILURE
    assert runner.calls == []
    assert not ctx.phase_results[INSTALL_PHASE].passed
    assert "upgrade" not in provider.operations()
    assert "phase directory" in ctx.fatal_error
    assert RunState.FINALIZING in ctx.state_history


def test_no_tests_leaves_pass_rate_undefined(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    orchestrator, _, _ = _orchestrator(settings, runner=_FakeRunner(junit=None))
    ctx = RunContext(settings=settings)

    orchestrator.run(ctx)

    assert ctx.metadata.pass_rates[INSTALL_PHASE] is None
    assert ctx.metadata.undefined_pass_rates() == [INSTALL_PHASE]
    assert ctx.phase_results[INSTALL_PHASE].pass_rate.value is None


def test_upgrade_failure_is_fatal_and_skips_upgrade_phase(tmp_path: Path) -> None:
    monitors = _FakeMonitors()
    settings = _settings(
        tmp_path,
        upgrade=UpgradeSettings(
            release_name="4.1.0",
            monitor_routes=True,
            route_targets=(RouteTarget(name="console", url="http://console.test"),),
        ),
    )
    orchestrator, _, runner = _orchestrator(
        settings,
        provider=MockProvider(failing_operations={"upgrade"}),
        monitor_factory=monitors.factory,
    )
    ctx = RunContext(settings=settings)

    exit_code = orchestrator.run(ctx)

    assert exit_code is ExitCode.FAILURE
    assert UPGRADE_PHASE not in ctx.phase_results
    assert runner.phases == [INSTALL_PHASE]
    assert monitors.stopped
    assert "upgrade" in ctx.fatal_error
    assert RunState.FINALIZING in ctx.state_history


def test_upgrade_runs_post_upgrade_phase_with_monitors(tmp_path: Path) -> None:
    monitors = _FakeMonitors()
    targets = (RouteTarget(name="console", url="http://console.test"),)
    settings = _settings(
        tmp_path,
        upgrade=UpgradeSettings(release_name="4.1.0", monitor_routes=True, route_targets=targets),
    )
    orchestrator, provider, runner = _orchestrator(settings, monitor_factory=monitors.factory)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.SUCCESS
    assert runner.phases == [INSTALL_PHASE, UPGRADE_PHASE]
    assert monitors.started_with == list(targets)
    assert monitors.stopped
    assert ctx.metadata.route_monitors["console"]["requests"] == 3
    assert ctx.metadata.upgrade_version == "4.1.0"
    assert provider.get_cluster(ctx.cluster_id).version == "4.1.0"
    assert RunState.UPGRADING_CLUSTER in ctx.state_history


def test_rescheduled_managed_upgrade_skips_post_upgrade_tests(tmp_path: Path) -> None:
    settings = _settings(
        tmp_path,
        upgrade=UpgradeSettings(release_name="4.1.0", managed_upgrade_rescheduled=True),
    )
    orchestrator, _, runner = _orchestrator(settings)

    assert orchestrator.run(RunContext(settings=settings)) is ExitCode.SUCCESS
    assert runner.phases == [INSTALL_PHASE]


def test_log_metrics_are_reset_for_every_phase(tmp_path: Path) -> None:
    report_dir = tmp_path / "report"
    report_dir.mkdir()
    (report_dir / "runner-log.txt").write_bytes(b"panic: early\n")
    settings = _settings(
        tmp_path,
        upgrade=UpgradeSettings(release_name="4.1.0"),
        log_metrics=LogMetricSet.from_config([{"name": "panics", "pattern": "panic:"}]),
    )
    provider = MockProvider(logs={"provider": b"panic: provider\n"})
    orchestrator, _, _ = _orchestrator(settings, provider=provider)
    ctx = RunContext(settings=settings)

    orchestrator.run(ctx)

    assert ctx.phase_results[INSTALL_PHASE].log_metrics == {"panics": 1}
    assert ctx.phase_results[UPGRADE_PHASE].log_metrics == {"panics": 2}
    assert ctx.metadata.log_metrics == {"panics": 2}
    assert (report_dir / "provider-log.txt").exists()


def test_periodic_jobs_escalate_failures(tmp_path: Path) -> None:
    service = NullAlertingService()
    consolidator = AlertConsolidator(service=service, notifier=NullNotifier())
    settings = _settings(tmp_path, job=JobSettings(type="periodic", name="e2e-periodic", id="9"))
    orchestrator, _, _ = _orchestrator(
        settings,
        runner=_FakeRunner(FAILING_JUNIT),
        consolidator=consolidator,
    )

    orchestrator.run(RunContext(settings=settings))

    assert [incident.summary for incident in service.fired] == ["routes work", "pods work"]
    assert all(incident.source == "e2e-periodic" for incident in service.fired)


def test_non_periodic_jobs_do_not_escalate(tmp_path: Path) -> None:
    service = NullAlertingService()
    settings = _settings(tmp_path, job=JobSettings(type="presubmit", name="e2e"))
    orchestrator, _, _ = _orchestrator(
        settings,
        runner=_FakeRunner(FAILING_JUNIT),
        consolidator=AlertConsolidator(service=service),
    )

    orchestrator.run(RunContext(settings=settings))

    assert service.fired == []


def test_precondition_failure_aborts_before_touching_cluster(tmp_path: Path) -> None:
    settings = _settings(
        tmp_path,
        cluster=ClusterSettings(version="4.1.0"),
        upgrade=UpgradeSettings(release_name="4.1.0"),
    )
    orchestrator, provider, runner = _orchestrator(settings)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.ABORTED
    assert runner.calls == []
    assert "provision" not in provider.operations()
    assert "equals the install version" in ctx.fatal_error
    assert ctx.state_history == [RunState.INITIALIZING, RunState.DONE]


def test_image_based_managed_upgrade_aborts(tmp_path: Path) -> None:
    settings = _settings(
        tmp_path,
        upgrade=UpgradeSettings(image="quay.io/release:4.2", managed_upgrade=True),
    )
    orchestrator, _, _ = _orchestrator(settings)

    assert orchestrator.run(RunContext(settings=settings)) is ExitCode.ABORTED


def test_destroy_after_test_deletes_cluster(tmp_path: Path) -> None:
    settings = _settings(tmp_path, cluster=ClusterSettings(destroy_after_test=True, poll_interval_s=0.0))
    orchestrator, provider, _ = _orchestrator(settings)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.SUCCESS
    assert RunState.DESTROYING in ctx.state_history
    assert provider.get_state(ctx.cluster_id) is ClusterState.DEPROVISIONED
    assert "hibernate" not in provider.operations()


def test_delete_failure_fails_the_run(tmp_path: Path) -> None:
    settings = _settings(tmp_path, cluster=ClusterSettings(destroy_after_test=True, poll_interval_s=0.0))
    orchestrator, _, _ = _orchestrator(settings, provider=MockProvider(failing_operations={"delete"}))
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.FAILURE
    assert "deleting cluster" in ctx.fatal_error


def test_nightly_clusters_expire_instead_of_hibernating(tmp_path: Path) -> None:
    settings = _settings(
        tmp_path,
        cluster=ClusterSettings(install_specific_nightly="4.2.0-0.nightly", poll_interval_s=0.0),
    )
    orchestrator, provider, _ = _orchestrator(settings)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.SUCCESS
    assert "expire" in provider.operations()
    assert "hibernate" not in provider.operations()
    assert ctx.metadata.cluster_version == "4.2.0-0.nightly"


def test_expiry_not_extended_past_lifetime(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    orchestrator, provider, _ = _orchestrator(settings, provider=MockProvider(lifetime_hours=20))

    orchestrator.run(RunContext(settings=settings))

    assert "hibernate" in provider.operations()
    assert "extend_expiry" not in provider.operations()


class _RaisingHibernateProvider(MockProvider):
    def hibernate(self, cluster_id: str) -> bool:
        self.calls.append(("hibernate", cluster_id))
        raise ProviderError("hibernate", cluster_id, "api unavailable")


def test_failed_hibernate_and_expiry_extension_do_not_fail_the_run(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    provider = MockProvider(failing_operations={"extend_expiry"}, hibernate_result=False)
    orchestrator, _, _ = _orchestrator(settings, provider=provider)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.SUCCESS
    assert provider.get_state(ctx.cluster_id) is not ClusterState.HIBERNATING
    assert ctx.state_history[-2:] == [RunState.HIBERNATING, RunState.DONE]


def test_raising_hibernate_is_logged_not_raised(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    orchestrator, provider, _ = _orchestrator(settings, provider=_RaisingHibernateProvider())
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.SUCCESS
    assert "hibernate" in provider.operations()
    assert ctx.state_history[-1] is RunState.DONE


def test_raising_hibernate_keeps_original_failure(tmp_path: Path) -> None:
    settings = _settings(tmp_path, upgrade=UpgradeSettings(release_name="4.1.0"))
    provider = _RaisingHibernateProvider(failing_operations={"upgrade"})
    orchestrator, _, _ = _orchestrator(settings, provider=provider)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.FAILURE
    assert "upgrade" in ctx.fatal_error
    assert ctx.state_history[-1] is RunState.DONE


def test_setup_failure_skips_teardown(tmp_path: Path) -> None:
    settings = _settings(tmp_path, cluster=ClusterSettings(destroy_after_test=True, poll_interval_s=0.0))
    provider = MockProvider(failing_operations={"get_kubeconfig"})
    orchestrator, _, runner = _orchestrator(settings, provider=provider)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.FAILURE
    assert ctx.setup_failed
    assert runner.calls == []
    assert "delete" not in provider.operations()
    assert ctx.state_history[-2:] == [RunState.IDLE, RunState.DONE]


def test_dry_run_skips_cluster_acquisition(tmp_path: Path) -> None:
    settings = _settings(tmp_path, dry_run=True)
    orchestrator, provider, runner = _orchestrator(settings)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.SUCCESS
    assert runner.calls[0]["dry_run"] is True
    assert provider.operations() == []


def test_existing_kubeconfig_skips_provisioning(tmp_path: Path) -> None:
    kubeconfig = tmp_path / "admin.kubeconfig"
    kubeconfig.write_text("apiVersion: v1\n", encoding="utf-8")
    settings = _settings(tmp_path, kubeconfig_path=str(kubeconfig))
    orchestrator, provider, runner = _orchestrator(settings)

    assert orchestrator.run(RunContext(settings=settings)) is ExitCode.SUCCESS
    assert "provision" not in provider.operations()
    assert runner.calls[0]["kubeconfig_path"] == kubeconfig


def test_configured_cluster_id_is_reused(tmp_path: Path) -> None:
    provider = MockProvider()
    existing = provider.provision(name="existing", version="4.0.0")
    provider.calls.clear()
    settings = _settings(tmp_path, cluster=ClusterSettings(id=existing.id, reused=True, poll_interval_s=0.0))
    orchestrator, _, _ = _orchestrator(settings, provider=provider)
    ctx = RunContext(settings=settings)

    assert orchestrator.run(ctx) is ExitCode.SUCCESS
    assert "provision" not in provider.operations()
    assert ctx.cluster_id == existing.id
    assert "extend_expiry" not in provider.operations()


def test_cluster_state_snapshot_is_gzipped(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    provider = MockProvider(state_snapshot={"v1/pods": [{"name": "router"}]})
    orchestrator, _, _ = _orchestrator(settings, provider=provider)

    orchestrator.run(RunContext(settings=settings))

    path = settings.report_dir / "cluster-state" / "v1_pods.json.gzip"
    assert json.loads(gzip.decompress(path.read_bytes())) == [{"name": "router"}]


def test_results_are_persisted_when_job_id_is_set(tmp_path: Path) -> None:
    db_path = tmp_path / "results.db"
    settings = _settings(
        tmp_path,
        job=JobSettings(name="e2e", id="77"),
        database=DatabaseSettings(path=str(db_path)),
    )
    store = ResultStore(db_path)
    orchestrator, _, _ = _orchestrator(settings, store=store)

    orchestrator.run(RunContext(settings=settings))

    jobs = store.list_jobs()
    assert len(jobs) == 1
    assert jobs[0]["job_id"] == "77"
    assert jobs[0]["result"] == "Passed"
    assert len(store.list_testcases(jobs[0]["id"])) == 3
    store.close()
