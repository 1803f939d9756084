"""Models for validation runs, phases, and test results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import Mapping


class ExitCode(IntEnum):
    """Process exit codes surfaced by a run."""

    SUCCESS = 0
    FAILURE = 1
    ABORTED = 130


class TestResult(str, Enum):
    """Outcome of a single executed test case."""

    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERROR = "error"


class JobResult(str, Enum):
    """Final result recorded for a job."""

    PASSED = "Passed"
    FAILED = "Failed"


class ClusterState(str, Enum):
    """Cluster lifecycle state as reported by the provider."""

    UNKNOWN = "Unknown"
    INSTALLING = "Installing"
    READY = "Ready"
    ERROR = "Error"
    UNINSTALLING = "Uninstalling"
    HIBERNATING = "Hibernating"
    DEPROVISIONED = "Deprovisioned"


class RunState(str, Enum):
    """States of the top-level run state machine."""

    INITIALIZING = "initializing"
    ACQUIRING_CLUSTER = "acquiring_cluster"
    RUNNING_INSTALL_PHASE = "running_install_phase"
    UPGRADING_CLUSTER = "upgrading_cluster"
    RUNNING_UPGRADE_PHASE = "running_upgrade_phase"
    FINALIZING = "finalizing"
    DESTROYING = "destroying"
    HIBERNATING = "hibernating"
    IDLE = "idle"
    DONE = "done"


class ClusterStatus(str, Enum):
    """Completion status recorded on the cluster after cleanup."""

    COMPLETED_PASSING = "completed-passing"
    COMPLETED_FAILING = "completed-failing"
    COMPLETED_ERROR = "completed-error"


INSTALL_PHASE = "install"
UPGRADE_PHASE = "upgrade"


@dataclass(frozen=True)
class TestCaseRecord:
    """One executed test case, as read from a structured result file."""

    __test__ = False

    name: str
    result: TestResult
    duration_s: float = 0.0
    stdout: str = ""
    stderr: str = ""
    error: str = ""
    suite: str = ""
    class_name: str = ""

    @property
    def is_failing(self) -> bool:
        return self.result in (TestResult.FAILED, TestResult.ERROR)


@dataclass(frozen=True)
class PassRate:
    """Passing tests over non-skipped tests; undefined when nothing ran."""

    passing: int
    total: int

    def __post_init__(self) -> None:
        if self.passing < 0 or self.total < 0 or self.passing > self.total:
            raise ValueError(f"invalid pass rate counts: {self.passing}/{self.total}")

    @property
    def defined(self) -> bool:
        return self.total > 0

    @property
    def value(self) -> float | None:
        if not self.defined:
            return None
        return self.passing / self.total

    def __str__(self) -> str:
        if not self.defined:
            return f"undefined ({self.passing}/{self.total})"
        return f"{self.value:.2%} ({self.passing}/{self.total})"


@dataclass(frozen=True)
class PhaseResult:
    """Summary of one phase, folded into the run once it finishes."""

    name: str
    directory: Path
    passed: bool
    pass_rate: PassRate = field(default_factory=lambda: PassRate(0, 0))
    testcases: list[TestCaseRecord] = field(default_factory=list)
    log_metrics: Mapping[str, int] = field(default_factory=dict)
    before_suite_metrics: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def failed(cls, name: str, directory: Path) -> "PhaseResult":
        return cls(name=name, directory=directory, passed=False)


@dataclass(frozen=True)
class ClusterHandle:
    """Cluster identity returned by a provider."""

    id: str
    name: str = ""
    version: str = ""
    cloud_provider: str = ""
    region: str = ""
    state: ClusterState = ClusterState.UNKNOWN
    addons: tuple[str, ...] = ()
    created_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class Incident:
    """Alert record handed to the alerting service."""

    summary: str
    source: str
    severity: str = "info"
    group: str = ""
    details: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Job:
    """One orchestration run as persisted by the result store."""

    provider: str
    name: str
    job_id: str
    url: str | None
    started: datetime
    finished: datetime
    cluster_id: str
    cluster_name: str
    cluster_version: str
    upgrade_version: str
    environment: str
    region: str
    reused: bool
    hibernate_after_use: bool
    result: JobResult
