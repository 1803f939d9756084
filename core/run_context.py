"""Explicit per-run state threaded through every orchestrator call."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
import secrets

from config.settings import RunSettings
from core.logging import logger as LOGGER
from core.metadata import RunMetadata
from core.models import ClusterHandle, PhaseResult, RunState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunContext:
    """Mutable state for one run; owned by a single orchestrator."""

    settings: RunSettings
    report_dir: Path | None = None
    suffix: str = ""
    started: datetime = field(default_factory=_utcnow)
    state: RunState = RunState.INITIALIZING
    state_history: list[RunState] = field(default_factory=lambda: [RunState.INITIALIZING])
    phase: str = ""
    cluster: ClusterHandle | None = None
    kubeconfig: bytes = b""
    kubeconfig_path: Path | None = None
    metadata: RunMetadata = field(default_factory=RunMetadata)
    phase_results: dict[str, PhaseResult] = field(default_factory=dict)
    fatal_error: str = ""
    setup_failed: bool = False
    cleanup_error: bool = False

    def __post_init__(self) -> None:
        if not self.suffix:
            self.suffix = self.settings.suffix or secrets.token_hex(3)[:5]
        if self.settings.job.started_at:
            try:
                self.started = datetime.fromisoformat(self.settings.job.started_at)
            except ValueError:
                LOGGER.warning(
                    "[Run] Ignoring unparseable job start time %r",
                    self.settings.job.started_at,
                )

    @property
    def cluster_id(self) -> str:
        if self.cluster is not None:
            return self.cluster.id
        return self.settings.cluster.id

    @property
    def has_kubeconfig(self) -> bool:
        return bool(self.kubeconfig)

    @property
    def passing(self) -> bool:
        """True when no fatal error occurred and every phase that ran passed."""

        if self.fatal_error or not self.phase_results:
            return False
        return all(result.passed for result in self.phase_results.values())

    def transition(self, state: RunState) -> None:
        LOGGER.info("[Run] %s -> %s", self.state.value, state.value)
        self.state = state
        self.state_history.append(state)

    def fail(self, message: str, *, setup: bool = False) -> None:
        """Record a fatal error; the first one wins."""

        LOGGER.error("[Run] Fatal: %s", message)
        if not self.fatal_error:
            self.fatal_error = message
        if setup:
            self.setup_failed = True

    def record_phase(self, result: PhaseResult) -> None:
        self.phase_results[result.name] = result
