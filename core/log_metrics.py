"""Content-matched log metrics."""

from __future__ import annotations

from dataclasses import dataclass
import math
import re
from typing import Any, Iterable, Iterator, Mapping

from core.errors import ConfigError


@dataclass(frozen=True)
class LogMetric:
    """Counts log files matching a pattern and judges the count against thresholds."""

    name: str
    pattern: re.Pattern[bytes]
    high_threshold: float = math.inf
    low_threshold: float = -math.inf

    @classmethod
    def from_config(cls, entry: Mapping[str, Any]) -> "LogMetric":
        name = str(entry.get("name") or "").strip()
        if not name:
            raise ConfigError("log metric entries require a name")
        raw_pattern = entry.get("pattern") or entry.get("regex")
        if not raw_pattern:
            raise ConfigError(f"log metric {name!r} requires a pattern")
        try:
            pattern = re.compile(str(raw_pattern).encode("utf-8"))
        except re.error as exc:
            raise ConfigError(f"log metric {name!r} has an invalid pattern: {exc}") from exc
        high = entry.get("high_threshold")
        low = entry.get("low_threshold")
        return cls(
            name=name,
            pattern=pattern,
            high_threshold=float(high) if high is not None else math.inf,
            low_threshold=float(low) if low is not None else -math.inf,
        )

    def has_matches(self, data: bytes) -> int:
        """Return 1 when the pattern matches anywhere in ``data``, otherwise 0."""

        return 1 if self.pattern.search(data) else 0

    def is_passing(self, count: int) -> bool:
        return self.low_threshold <= count <= self.high_threshold


class LogMetricSet:
    """Ordered, name-indexed collection of log metrics."""

    def __init__(self, metrics: Iterable[LogMetric] = ()) -> None:
        self._metrics: dict[str, LogMetric] = {}
        for metric in metrics:
            if metric.name in self._metrics:
                raise ConfigError(f"duplicate log metric name {metric.name!r}")
            self._metrics[metric.name] = metric

    @classmethod
    def from_config(cls, entries: object) -> "LogMetricSet":
        if not entries:
            return cls()
        if not isinstance(entries, list):
            raise ConfigError("log metrics must be a list of mappings")
        metrics = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                raise ConfigError(f"log metric entry must be a mapping, got {entry!r}")
            metrics.append(LogMetric.from_config(entry))
        return cls(metrics)

    def get(self, name: str) -> LogMetric | None:
        return self._metrics.get(name)

    def names(self) -> list[str]:
        return list(self._metrics)

    def zeroed(self) -> dict[str, int]:
        return {name: 0 for name in self._metrics}

    def __iter__(self) -> Iterator[LogMetric]:
        return iter(self._metrics.values())

    def __len__(self) -> int:
        return len(self._metrics)
