"""Drives a validation run: cluster acquisition, test phases, upgrade, teardown."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import gzip
import json
from pathlib import Path
import re
import tempfile
from typing import Callable

from config.settings import RunSettings
from core.errors import (
    E2EError,
    PhaseError,
    PreconditionError,
    ProviderError,
    SetupError,
    TestRunnerError,
    UpgradeError,
)
from core.logging import disable_file_logging, enable_file_logging, logger as LOGGER
from core.models import (
    INSTALL_PHASE,
    UPGRADE_PHASE,
    ClusterStatus,
    ExitCode,
    Job,
    JobResult,
    PhaseResult,
    RunState,
)
from core.run_context import RunContext
from diagnostics.preflight import require_preconditions, resolve_install_version
from services.alert_consolidator import AlertConsolidator
from services.providers import ClusterProvider, wait_for_ready
from services.result_collector import CollectionResult, ResultCollector
from services.route_monitor import ROUTE_MONITOR_DIRNAME, start_route_monitors
from services.test_runner import RunnerOutcome, TestRunner
from storage.controller import ResultStore


BUILD_LOG_FILENAME = "test_output.log"
CLUSTER_STATE_DIRNAME = "cluster-state"
KUBECONFIG_FILENAME = "kubeconfig"
STATUS_PROPERTY = "Status"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name) or "resource"


class PhaseOrchestrator:
    """Owns one run from preflight to teardown.

    The orchestrator is single-threaded; the only background work it starts is
    the route aggregator around the upgrade call.
    """

    def __init__(
        self,
        settings: RunSettings,
        provider: ClusterProvider,
        runner: TestRunner,
        collector: ResultCollector,
        consolidator: AlertConsolidator | None = None,
        store: ResultStore | None = None,
        monitor_factory: Callable = start_route_monitors,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._runner = runner
        self._collector = collector
        self._consolidator = consolidator
        self._store = store
        self._monitor_factory = monitor_factory
        self._build_log_enabled = False

    # ------------------------------------------------------------------
    # Top-level state machine

    def run(self, ctx: RunContext) -> ExitCode:
        """Run every phase and the teardown, returning the process exit code."""

        try:
            self._prepare(ctx)
        except SetupError as exc:
            ctx.fail(str(exc), setup=True)
            return self._done(ctx, ExitCode.FAILURE)

        try:
            require_preconditions(self._settings, self._provider)
        except PreconditionError as exc:
            ctx.fail(str(exc), setup=True)
            return self._done(ctx, ExitCode.ABORTED)

        teardown_ok = False
        try:
            self._run_phases(ctx)
        except E2EError as exc:
            ctx.fail(str(exc))
        finally:
            teardown_ok = self._finalize(ctx)

        exit_code = ExitCode.SUCCESS if ctx.passing and teardown_ok else ExitCode.FAILURE
        return self._done(ctx, exit_code)

    def _prepare(self, ctx: RunContext) -> None:
        report_dir = ctx.report_dir or self._settings.report_dir
        try:
            if report_dir is None:
                report_dir = Path(tempfile.mkdtemp(prefix="cluster-e2e-"))
            report_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SetupError(f"report directory {report_dir} is unusable: {exc}") from exc
        ctx.report_dir = report_dir

        if self._settings.file_logging_enabled:
            try:
                enable_file_logging(report_dir / BUILD_LOG_FILENAME)
                self._build_log_enabled = True
            except OSError as exc:
                LOGGER.warning("[Orchestrator] Build log unavailable: %s", exc)

        metadata = ctx.metadata
        metadata.report_dir = str(report_dir)
        metadata.job_name = self._settings.job.name
        metadata.job_id = self._settings.job.id
        metadata.environment = self._provider.environment
        metadata.reset_log_metrics(self._collector.log_metrics.names())
        metadata.reset_before_suite_metrics(self._collector.before_suite_metrics.names())
        LOGGER.info("[Orchestrator] Writing reports to %s", report_dir)

    def _run_phases(self, ctx: RunContext) -> None:
        settings = self._settings
        dry_run = settings.dry_run

        ctx.transition(RunState.ACQUIRING_CLUSTER)
        if not dry_run:
            try:
                self.acquire_cluster(ctx)
            except SetupError as exc:
                ctx.fail(str(exc), setup=True)
                self.collect_provider_logs(ctx)
                return

        ctx.transition(RunState.RUNNING_INSTALL_PHASE)
        self.run_phase(ctx, INSTALL_PHASE, settings.tests.install_description, dry_run)
        self.collect_provider_logs(ctx)

        if not settings.upgrade.requested:
            return
        if not ctx.has_kubeconfig:
            LOGGER.warning("[Orchestrator] No kubeconfig from cluster setup; unable to run upgrade")
            return

        ctx.transition(RunState.UPGRADING_CLUSTER)
        self.upgrade_cluster(ctx)

        if settings.upgrade.managed_upgrade_rescheduled:
            LOGGER.info("[Orchestrator] Upgrade rescheduled; skipping post-upgrade tests")
            return

        ctx.transition(RunState.RUNNING_UPGRADE_PHASE)
        self.run_phase(ctx, UPGRADE_PHASE, settings.tests.upgrade_description, dry_run)

    def _done(self, ctx: RunContext, exit_code: ExitCode) -> ExitCode:
        ctx.transition(RunState.DONE)
        phases = ", ".join(
            f"{name}={'passed' if result.passed else 'failed'} {result.pass_rate}"
            for name, result in ctx.phase_results.items()
        ) or "none"
        LOGGER.info(
            "[Orchestrator] Run finished with exit code %d; cluster=%s phases: %s%s",
            int(exit_code),
            ctx.cluster_id or "<none>",
            phases,
            f"; error: {ctx.fatal_error}" if ctx.fatal_error else "",
        )
        if self._build_log_enabled:
            disable_file_logging()
            self._build_log_enabled = False
        return exit_code

    # ------------------------------------------------------------------
    # Cluster acquisition

    def acquire_cluster(self, ctx: RunContext) -> None:
        """Make sure the run has a ready cluster and its kubeconfig.

        Reuses a kubeconfig file or a configured cluster id when given, otherwise
        provisions a new cluster. Safe to call more than once.
        """

        if ctx.has_kubeconfig:
            return
        settings = self._settings
        if settings.kubeconfig_path:
            path = Path(settings.kubeconfig_path).expanduser()
            try:
                ctx.kubeconfig = path.read_bytes()
            except OSError as exc:
                raise SetupError(f"failed reading kubeconfig {path}: {exc}") from exc
            ctx.kubeconfig_path = path
            LOGGER.info("[Orchestrator] Using existing cluster from %s", path)
            return

        try:
            if settings.cluster.id:
                cluster = self._provider.get_cluster(settings.cluster.id)
                LOGGER.info("[Orchestrator] Reusing cluster %s", cluster.id)
            else:
                version = resolve_install_version(settings, self._provider)
                name = settings.cluster.name or f"e2e-{ctx.suffix}"
                cluster = self._provider.provision(name=name, version=version)
                LOGGER.info("[Orchestrator] Provisioned cluster %s (%s)", cluster.id, version)
            ctx.cluster = cluster
            self._record_cluster(ctx)

            if settings.upgrade.release_name:
                self._add_property(ctx, "UpgradeVersion", settings.upgrade.release_name)

            if settings.cluster.skip_health_checks:
                LOGGER.info("[Orchestrator] Skipping health checks as requested")
            else:
                ctx.cluster = wait_for_ready(
                    self._provider,
                    cluster.id,
                    timeout_s=settings.cluster.ready_timeout_s,
                    poll_interval_s=settings.cluster.poll_interval_s,
                )
                self._record_cluster(ctx)
                LOGGER.info("[Orchestrator] Cluster is healthy and ready for testing")

            kubeconfig = self._provider.get_kubeconfig(cluster.id)
        except ProviderError as exc:
            raise SetupError(f"failed to set up or retrieve cluster: {exc}") from exc

        if not kubeconfig:
            raise SetupError(f"provider returned an empty kubeconfig for {cluster.id}")
        ctx.kubeconfig = kubeconfig
        if ctx.report_dir is not None:
            path = ctx.report_dir / KUBECONFIG_FILENAME
            try:
                path.write_bytes(kubeconfig)
            except OSError as exc:
                raise SetupError(f"failed writing kubeconfig to {path}: {exc}") from exc
            ctx.kubeconfig_path = path

    def _record_cluster(self, ctx: RunContext) -> None:
        cluster = ctx.cluster
        if cluster is None:
            return
        ctx.metadata.cluster_id = cluster.id
        ctx.metadata.cluster_name = cluster.name
        ctx.metadata.cluster_version = cluster.version
        ctx.metadata.region = cluster.region

    def _add_property(self, ctx: RunContext, key: str, value: str) -> bool:
        try:
            self._provider.add_property(ctx.cluster_id, key, value)
        except ProviderError as exc:
            LOGGER.warning("[Orchestrator] Failed setting cluster property %s: %s", key, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Phases

    def run_phase(
        self,
        ctx: RunContext,
        phase: str,
        description: str,
        dry_run: bool | None = None,
    ) -> PhaseResult:
        """Run one phase end to end and fold its result into the run context.

        Raises ``PhaseError`` after recording a failed result when the phase
        directory cannot be created or a result file cannot be parsed; the
        remaining phases are then skipped.
        """

        if dry_run is None:
            dry_run = self._settings.dry_run
        ctx.phase = phase
        ctx.metadata.reset_log_metrics(self._collector.log_metrics.names())
        ctx.metadata.reset_before_suite_metrics(self._collector.before_suite_metrics.names())

        report_dir = ctx.report_dir or Path(".")
        phase_dir = report_dir / phase
        try:
            phase_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._record(ctx, PhaseResult.failed(phase, phase_dir))
            raise PhaseError(phase, f"cannot create phase directory {phase_dir}: {exc}") from exc

        if not dry_run:
            try:
                self.acquire_cluster(ctx)
            except SetupError as exc:
                ctx.fail(str(exc), setup=True)
                return self._record(ctx, PhaseResult.failed(phase, phase_dir))

        outcome = self._run_tests(ctx, phase, description, phase_dir, dry_run)

        try:
            collection = self._collector.collect(phase_dir, log_dir=report_dir, phase=phase)
        except PhaseError as exc:
            ctx.metadata.phase_errors[phase] = str(exc)
            self._record(ctx, PhaseResult.failed(phase, phase_dir))
            raise

        self._escalate(ctx, collection)

        ctx.metadata.record_log_metrics(
            collection.log_metric_counts,
            collection.before_suite_metric_counts,
        )
        metrics_written = True
        try:
            self._collector.write_metric_reports(
                phase_dir,
                collection.log_metric_counts,
                collection.before_suite_metric_counts,
            )
        except OSError as exc:
            LOGGER.error("[Orchestrator] Failed writing log metric results: %s", exc)
            metrics_written = False

        pass_rate = collection.pass_rate
        ctx.metadata.set_pass_rate(phase, pass_rate)
        if pass_rate.defined:
            LOGGER.info("[Orchestrator] %s pass rate: %s", phase, pass_rate)
        else:
            LOGGER.warning("[Orchestrator] %s pass rate undefined: no tests ran", phase)

        state_read = self._read_cluster_state(ctx, phase)

        failing = [record for record in collection.records if record.is_failing]
        passed = outcome.succeeded and not failing and metrics_written and state_read
        result = PhaseResult(
            name=phase,
            directory=phase_dir,
            passed=passed,
            pass_rate=pass_rate,
            testcases=list(collection.records),
            log_metrics=dict(collection.log_metric_counts),
            before_suite_metrics=dict(collection.before_suite_metric_counts),
        )
        return self._record(ctx, result)

    def _record(self, ctx: RunContext, result: PhaseResult) -> PhaseResult:
        ctx.record_phase(result)
        LOGGER.info(
            "[Orchestrator] Phase %s %s",
            result.name,
            "passed" if result.passed else "failed",
        )
        return result

    def _run_tests(
        self,
        ctx: RunContext,
        phase: str,
        description: str,
        phase_dir: Path,
        dry_run: bool,
    ) -> RunnerOutcome:
        junit_path = phase_dir / f"junit_{ctx.suffix}.xml"
        try:
            outcome = self._runner.run(
                phase=phase,
                description=description,
                output_dir=phase_dir,
                junit_path=junit_path,
                kubeconfig_path=ctx.kubeconfig_path,
                dry_run=dry_run,
            )
        except TestRunnerError as exc:
            LOGGER.error("[Orchestrator] Test runner failed in %s: %s", phase, exc)
            return RunnerOutcome(succeeded=False, detail=str(exc))
        if not outcome.succeeded:
            LOGGER.error("[Orchestrator] Tests in %s did not succeed: %s", phase, outcome.detail)
        return outcome

    def _escalate(self, ctx: RunContext, collection: CollectionResult) -> None:
        job = self._settings.job
        if self._consolidator is None or not job.is_periodic:
            return
        details = {
            "clusterID": ctx.cluster_id,
            "clusterName": ctx.metadata.cluster_name,
            "clusterVersion": ctx.metadata.cluster_version,
            "phase": ctx.phase,
        }
        if collection.failing_names:
            self._consolidator.escalate(
                collection.failing_names,
                job.name,
                job_url=job.url,
                details=details,
            )
        self._consolidator.merge(job.name)

    def _read_cluster_state(self, ctx: RunContext, phase: str) -> bool:
        if not ctx.cluster_id:
            return True
        try:
            state = self._provider.get_state(ctx.cluster_id)
        except ProviderError as exc:
            LOGGER.error("[Orchestrator] Failed reading cluster state after %s: %s", phase, exc)
            return False
        ctx.metadata.cluster_states[phase] = state.value
        return True

    # ------------------------------------------------------------------
    # Upgrade

    def upgrade_cluster(self, ctx: RunContext) -> None:
        """Upgrade the cluster, monitoring routes around the call when enabled."""

        upgrade = self._settings.upgrade
        target = upgrade.release_name or upgrade.image
        monitors = None
        if upgrade.monitor_routes and not self._settings.dry_run:
            if not upgrade.route_targets:
                LOGGER.warning("[Orchestrator] Route monitoring enabled but no route targets configured")
            else:
                output_dir = (ctx.report_dir or Path(".")) / ROUTE_MONITOR_DIRNAME
                try:
                    monitors = self._monitor_factory(
                        upgrade.route_targets,
                        output_dir,
                        self._settings.route_monitor,
                    )
                except (OSError, RuntimeError) as exc:
                    LOGGER.warning("[Orchestrator] Route monitors unavailable: %s", exc)

        LOGGER.info("[Orchestrator] Upgrading cluster %s to %s", ctx.cluster_id, target)
        try:
            self._provider.upgrade(
                ctx.cluster_id,
                release_name=upgrade.release_name,
                image=upgrade.image,
            )
        except ProviderError as exc:
            raise UpgradeError(UPGRADE_PHASE, f"error performing upgrade: {exc}") from exc
        finally:
            if monitors is not None:
                try:
                    summary = monitors.stop()
                except OSError as exc:
                    LOGGER.warning("[Orchestrator] Failed flushing route monitor reports: %s", exc)
                else:
                    ctx.metadata.route_monitors = summary.to_metadata()
                    LOGGER.info("[Orchestrator] Route monitors reconciled")
        ctx.metadata.upgrade_version = target
        LOGGER.info("[Orchestrator] Upgrade to %s finished", target)

    # ------------------------------------------------------------------
    # Finalizing and teardown

    def _finalize(self, ctx: RunContext) -> bool:
        """Persist and collect everything, then tear down; returns False if teardown failed."""

        ctx.transition(RunState.FINALIZING)
        ok = True
        self._best_effort("persisting results", self._persist, ctx, _utcnow())
        if not self._write_metadata(ctx):
            ok = False

        if not self._settings.dry_run and ctx.cluster_id:
            self._best_effort("collecting provider logs", self.collect_provider_logs, ctx)
            self._best_effort("gathering cluster state", self._snapshot_cluster_state, ctx)
            self._best_effort("setting completion status", self._set_completion_status, ctx)

        if ctx.setup_failed or not ctx.cluster_id:
            LOGGER.info("[Orchestrator] No cluster to tear down")
            ctx.transition(RunState.IDLE)
            return ok

        cluster_settings = self._settings.cluster
        if cluster_settings.destroy_after_test:
            ctx.transition(RunState.DESTROYING)
            LOGGER.info("[Orchestrator] Destroying cluster %s", ctx.cluster_id)
            try:
                self._provider.delete(ctx.cluster_id)
            except ProviderError as exc:
                ctx.fail(f"error deleting cluster: {exc}")
                return False
            return ok

        if cluster_settings.is_nightly:
            LOGGER.info("[Orchestrator] Nightly build; expiring cluster %s", ctx.cluster_id)
            try:
                self._provider.expire(ctx.cluster_id)
            except ProviderError as exc:
                LOGGER.warning("[Orchestrator] Failed expiring cluster: %s", exc)
            ctx.transition(RunState.IDLE)
            return ok

        if cluster_settings.hibernate_after_use:
            ctx.transition(RunState.HIBERNATING)
            self._best_effort("hibernating cluster", self._hibernate, ctx)
            return ok

        ctx.transition(RunState.IDLE)
        LOGGER.info(
            "[Orchestrator] For debugging, look for cluster %s in environment %s",
            ctx.cluster_id,
            self._provider.environment,
        )
        return ok

    def _best_effort(self, description: str, step: Callable, *args) -> None:
        try:
            step(*args)
        except (E2EError, OSError) as exc:
            LOGGER.warning("[Orchestrator] Failed %s: %s", description, exc)

    def _persist(self, ctx: RunContext, finished: datetime) -> None:
        settings = self._settings
        if self._store is None or not settings.job.id:
            return
        records = [
            record
            for result in ctx.phase_results.values()
            for record in result.testcases
        ]
        job = Job(
            provider=settings.provider,
            name=settings.job.name,
            job_id=settings.job.id,
            url=settings.job.url,
            started=ctx.started,
            finished=finished,
            cluster_id=ctx.cluster_id,
            cluster_name=ctx.metadata.cluster_name,
            cluster_version=ctx.metadata.cluster_version,
            upgrade_version=settings.upgrade.release_name or settings.upgrade.image,
            environment=self._provider.environment,
            region=ctx.metadata.region,
            reused=settings.cluster.reused,
            hibernate_after_use=settings.cluster.hibernate_after_use,
            result=JobResult.PASSED if ctx.passing else JobResult.FAILED,
        )
        self._store.persist_run(job, records)

    def _write_metadata(self, ctx: RunContext) -> bool:
        if ctx.report_dir is None:
            return True
        try:
            path = ctx.metadata.write_to_json(ctx.report_dir)
        except OSError as exc:
            LOGGER.error("[Orchestrator] Failed writing run metadata: %s", exc)
            return False
        LOGGER.info("[Orchestrator] Wrote run metadata to %s", path)
        return True

    def collect_provider_logs(self, ctx: RunContext) -> None:
        """Write provider-side logs as ``<name>-log.txt`` in the report directory."""

        if not ctx.cluster_id or ctx.report_dir is None:
            return
        try:
            logs = self._provider.logs(ctx.cluster_id)
        except ProviderError as exc:
            LOGGER.warning("[Orchestrator] Failed collecting provider logs: %s", exc)
            return
        for name, data in logs.items():
            path = ctx.report_dir / f"{_safe_name(name)}-log.txt"
            try:
                path.write_bytes(data)
            except OSError as exc:
                LOGGER.warning("[Orchestrator] Failed writing %s: %s", path, exc)

    def _snapshot_cluster_state(self, ctx: RunContext) -> None:
        try:
            state = self._provider.inspect_state(ctx.cluster_id)
        except ProviderError as exc:
            LOGGER.warning("[Orchestrator] Failed gathering cluster state: %s", exc)
            ctx.cleanup_error = True
            return
        if not state or ctx.report_dir is None:
            return
        state_dir = ctx.report_dir / CLUSTER_STATE_DIRNAME
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("[Orchestrator] Failed creating %s: %s", state_dir, exc)
            ctx.cleanup_error = True
            return
        for resource, items in state.items():
            path = state_dir / f"{_safe_name(resource)}.json.gzip"
            try:
                data = json.dumps(items, indent=4, default=str).encode("utf-8")
                path.write_bytes(gzip.compress(data))
            except (TypeError, ValueError, OSError) as exc:
                LOGGER.warning("[Orchestrator] Failed writing cluster state for %s: %s", resource, exc)
                ctx.cleanup_error = True

    def _set_completion_status(self, ctx: RunContext) -> None:
        if ctx.cleanup_error:
            status = ClusterStatus.COMPLETED_ERROR
        elif ctx.passing:
            status = ClusterStatus.COMPLETED_PASSING
        else:
            status = ClusterStatus.COMPLETED_FAILING
        if self._add_property(ctx, STATUS_PROPERTY, status.value):
            LOGGER.info("[Orchestrator] Cluster %s marked %s", ctx.cluster_id, status.value)
        self._add_property(ctx, "JobID", "")
        self._add_property(ctx, "JobName", "")

    def _hibernate(self, ctx: RunContext) -> None:
        cluster_id = ctx.cluster_id
        try:
            hibernated = self._provider.hibernate(cluster_id)
        except ProviderError as exc:
            LOGGER.warning("[Orchestrator] Error hibernating %s: %s", cluster_id, exc)
            hibernated = False
        if hibernated:
            LOGGER.info("[Orchestrator] Hibernating %s", cluster_id)
        else:
            LOGGER.warning("[Orchestrator] Unable to hibernate %s", cluster_id)

        cluster_settings = self._settings.cluster
        if cluster_settings.reused or ctx.cleanup_error:
            return
        try:
            cluster = self._provider.get_cluster(cluster_id)
        except ProviderError as exc:
            LOGGER.warning("[Orchestrator] Failed reading cluster before extending expiry: %s", exc)
            return
        if cluster.addons or cluster.expires_at is None or cluster.created_at is None:
            return
        extension = timedelta(hours=cluster_settings.expiry_extension_hours)
        limit = cluster.created_at + timedelta(hours=cluster_settings.max_lifetime_hours)
        if cluster.expires_at + extension > limit:
            return
        try:
            self._provider.extend_expiry(cluster_id, cluster_settings.expiry_extension_hours)
        except ProviderError as exc:
            LOGGER.warning("[Orchestrator] Error extending cluster expiration: %s", exc)
        else:
            LOGGER.info(
                "[Orchestrator] Extended expiry of %s by %dh",
                cluster_id,
                cluster_settings.expiry_extension_hours,
            )
