"""Error taxonomy for validation runs."""

from __future__ import annotations


class E2EError(RuntimeError):
    """Base class for validation run failures."""


class ConfigError(E2EError):
    """Configuration could not be validated at startup."""


class SetupError(E2EError):
    """Fatal setup failure (cluster unreachable, report directory unusable)."""


class PreconditionError(E2EError):
    """The run lacks the preconditions needed to even attempt it."""


class PhaseError(E2EError):
    """Fatal failure inside a phase; remaining phases are skipped."""

    def __init__(self, phase: str, message: str) -> None:
        super().__init__(f"[{phase}] {message}")
        self.phase = phase


class ResultParseError(PhaseError):
    """A structured result file could not be read or parsed."""

    def __init__(self, phase: str, path: object, reason: str) -> None:
        super().__init__(phase, f"failed to parse result file {path}: {reason}")
        self.path = path


class UpgradeError(PhaseError):
    """The cluster upgrade operation failed."""


class ProviderError(E2EError):
    """A cluster provider call failed."""

    def __init__(self, operation: str, cluster_id: str | None, message: str) -> None:
        target = cluster_id or "<no cluster>"
        super().__init__(f"{operation} failed for {target}: {message}")
        self.operation = operation
        self.cluster_id = cluster_id


class TestRunnerError(E2EError):
    """The test-framework runner could not execute a phase."""

    __test__ = False


class AlertingError(E2EError):
    """The alerting or notification transport rejected a request."""
