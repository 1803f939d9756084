"""Command-line entry point for cluster validation runs."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sqlite3
import sys

import yaml

from config import ConfigController
from config.settings import RunSettings
from core.alert_policy import EscalationPolicy
from core.errors import ConfigError
from core.logging import logger, set_level
from core.models import ExitCode
from core.run_context import RunContext
from services.alert_consolidator import AlertConsolidator
from services.alerting import build_alerting
from services.orchestrator import PhaseOrchestrator
from services.providers import ClusterProvider, get_provider
from services.result_collector import ResultCollector
from services.test_runner import CommandTestRunner
from storage.controller import ResultStore


def configure_logging(level_name: str) -> None:
    """Configure application logging."""

    level = logging._nameToLevel.get(level_name.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    set_level(level_name)


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Raw command-line arguments.

    Returns:
        Parsed arguments namespace.
    """

    parser = argparse.ArgumentParser(
        description="Provision or reuse a cluster, run the test phases and report results."
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory holding default.yaml and an optional override.yaml.",
    )
    parser.add_argument(
        "--report-dir",
        type=Path,
        default=None,
        help="Where to write reports; a temporary directory is used when unset.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Skip cluster acquisition and test execution.",
    )
    parser.add_argument(
        "--diagnostics",
        action="store_true",
        help="Run preflight diagnostics and exit.",
    )
    parser.add_argument(
        "--provider",
        type=str,
        default=None,
        help="Cluster provider backend to use (overrides config).",
    )
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> tuple[RunSettings, Path]:
    """Load YAML config, apply command-line overrides and validate it."""

    try:
        controller = ConfigController.get_instance(config_dir=args.config_dir)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed loading configuration: {exc}") from exc
    config = controller.get_config()
    if args.report_dir is not None:
        config["report_dir"] = str(args.report_dir)
    if args.dry_run:
        config["dry_run"] = True
    if args.provider:
        config["provider"] = args.provider
    return RunSettings.from_config(config), controller.paths.config_dir


def run_preflight(settings: RunSettings, provider: ClusterProvider | None, config_dir: Path) -> int:
    from diagnostics.preflight import all_probes
    from diagnostics.runner import format_results, has_failures, run_diagnostics

    results = run_diagnostics(all_probes(settings, provider, config_dir))
    print(format_results(results))
    return 1 if has_failures(results) else 0


def open_store(settings: RunSettings) -> ResultStore | None:
    try:
        return ResultStore.from_settings(settings.database)
    except (OSError, sqlite3.Error) as exc:
        logger.warning("Result store unavailable; results will not be persisted: %s", exc)
        return None


def main(argv: list[str] | None = None) -> int:
    """Application entry point.

    Args:
        argv: Optional list of command-line arguments.

    Returns:
        Process exit code.
    """

    if argv is None:
        argv = sys.argv[1:]
    args = parse_args(argv)

    try:
        settings, config_dir = load_settings(args)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return int(ExitCode.FAILURE)
    configure_logging(settings.logging_level)

    provider: ClusterProvider | None
    try:
        provider = get_provider(settings.provider)
    except ConfigError as exc:
        logger.error("%s", exc)
        provider = None

    if args.diagnostics:
        return run_preflight(settings, provider, config_dir)
    if provider is None:
        return int(ExitCode.ABORTED)

    service, notifier = build_alerting(settings.alerts)
    consolidator = AlertConsolidator(
        EscalationPolicy.from_settings(settings.alerts),
        service,
        notifier,
        channel=settings.alerts.slack_channel,
    )
    store = open_store(settings)
    orchestrator = PhaseOrchestrator(
        settings,
        provider,
        CommandTestRunner.from_settings(settings.tests),
        ResultCollector.from_settings(settings),
        consolidator=consolidator,
        store=store,
    )

    try:
        return int(orchestrator.run(RunContext(settings=settings)))
    except KeyboardInterrupt:
        logger.info("Program terminated by user")
        return int(ExitCode.ABORTED)
    finally:
        if store is not None:
            store.close()


if __name__ == "__main__":
    raise SystemExit(main())
