"""Route health aggregation during disruptive cluster operations."""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
import json
import math
from pathlib import Path
import queue
import re
import threading
import time
from typing import Any, Callable, Iterable

from config.settings import RouteMonitorSettings, RouteTarget
from core.logging import logger as LOGGER
from services.health_probes import RouteProbeResult, probe_route


ROUTE_MONITOR_DIRNAME = "route-monitors"
METADATA_FILENAME = "metadata.json"

ProbeFn = Callable[[str, float, bool], RouteProbeResult]

_STOP = object()


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name) or "route"


@dataclass(frozen=True)
class RouteSample:
    """One probe outcome for one target."""

    target: str
    sequence: int
    timestamp: float
    latency_s: float
    status_code: int | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


class RouteMonitor:
    """Per-target accumulator; only the consolidation thread mutates it."""

    def __init__(self, target: RouteTarget) -> None:
        self.target = target
        self.requests = 0
        self.successes = 0
        self.latencies: list[float] = []
        self.status_codes: dict[str, int] = {}
        self.errors: dict[str, int] = {}
        self.first_timestamp: float | None = None
        self.last_timestamp: float | None = None

    def add(self, sample: RouteSample) -> None:
        self.requests += 1
        if sample.ok:
            self.successes += 1
        else:
            self.errors[sample.error] = self.errors.get(sample.error, 0) + 1
        code = str(sample.status_code) if sample.status_code is not None else "none"
        self.status_codes[code] = self.status_codes.get(code, 0) + 1
        self.latencies.append(sample.latency_s)
        if self.first_timestamp is None:
            self.first_timestamp = sample.timestamp
        self.last_timestamp = sample.timestamp

    def percentile(self, percent: float) -> float | None:
        if not self.latencies:
            return None
        ordered = sorted(self.latencies)
        index = max(0, math.ceil(percent / 100.0 * len(ordered)) - 1)
        return ordered[min(index, len(ordered) - 1)]

    def summary(self) -> dict[str, Any]:
        latencies = self.latencies
        return {
            "target": self.target.name,
            "url": self.target.url,
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.requests - self.successes,
            "availability": self.successes / self.requests if self.requests else None,
            "latency_s": {
                "min": min(latencies) if latencies else None,
                "mean": sum(latencies) / len(latencies) if latencies else None,
                "p50": self.percentile(50),
                "p90": self.percentile(90),
                "p99": self.percentile(99),
                "max": max(latencies) if latencies else None,
            },
            "status_codes": dict(self.status_codes),
            "errors": dict(self.errors),
            "first_timestamp": self.first_timestamp,
            "last_timestamp": self.last_timestamp,
        }


class PlotBuffer:
    """Time series of samples for one target, flushed as CSV."""

    HEADER = ("timestamp", "sequence", "latency_s", "status_code", "error")

    def __init__(self) -> None:
        self.rows: list[tuple[float, int, float, str, str]] = []

    def add(self, sample: RouteSample) -> None:
        code = "" if sample.status_code is None else str(sample.status_code)
        self.rows.append(
            (sample.timestamp, sample.sequence, sample.latency_s, code, sample.error)
        )

    def write_csv(self, path: Path) -> Path:
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(self.HEADER)
            writer.writerows(self.rows)
        return path


@dataclass(frozen=True)
class RouteMonitorSummary:
    """What a stopped aggregator flushed to disk."""

    output_dir: Path
    targets: dict[str, dict[str, Any]] = field(default_factory=dict)
    report_paths: tuple[Path, ...] = ()
    plot_paths: tuple[Path, ...] = ()
    metadata_path: Path | None = None

    @property
    def total_samples(self) -> int:
        return sum(int(summary["requests"]) for summary in self.targets.values())

    def to_metadata(self) -> dict[str, Any]:
        return {
            name: {
                "requests": summary["requests"],
                "availability": summary["availability"],
                "p99_latency_s": summary["latency_s"]["p99"],
            }
            for name, summary in self.targets.items()
        }


class RouteHealthAggregator:
    """Probe every target concurrently and fold samples through one queue."""

    def __init__(
        self,
        targets: Iterable[RouteTarget],
        output_dir: Path,
        *,
        probe: ProbeFn = probe_route,
        interval_s: float = 1.0,
        timeout_s: float = 5.0,
        queue_size: int = 1000,
        verify_tls: bool = False,
    ) -> None:
        self._targets = list(targets)
        self._output_dir = Path(output_dir)
        self._probe = probe
        self._interval_s = interval_s
        self._timeout_s = timeout_s
        self._verify_tls = verify_tls
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._probe_threads: list[threading.Thread] = []
        self._consumer_thread: threading.Thread | None = None
        self._monitors = {target.name: RouteMonitor(target) for target in self._targets}
        self._plots = {target.name: PlotBuffer() for target in self._targets}
        self._last_ok: dict[str, bool] = {}
        self._started_at: float | None = None
        self._summary: RouteMonitorSummary | None = None

    @classmethod
    def from_settings(
        cls,
        targets: Iterable[RouteTarget],
        output_dir: Path,
        settings: RouteMonitorSettings,
        probe: ProbeFn = probe_route,
    ) -> "RouteHealthAggregator":
        return cls(
            targets,
            output_dir,
            probe=probe,
            interval_s=settings.interval_s,
            timeout_s=settings.timeout_s,
            queue_size=settings.queue_size,
            verify_tls=settings.verify_tls,
        )

    def is_running(self) -> bool:
        return self._consumer_thread is not None and self._consumer_thread.is_alive()

    def start(self) -> None:
        if self._consumer_thread is not None:
            raise RuntimeError("Route monitors were already started")
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._started_at = time.time()
        self._consumer_thread = threading.Thread(
            target=self._consume,
            name="route-monitor-consolidator",
            daemon=True,
        )
        self._consumer_thread.start()
        for target in self._targets:
            thread = threading.Thread(
                target=self._probe_loop,
                args=(target,),
                name=f"route-monitor-{target.name}",
                daemon=True,
            )
            self._probe_threads.append(thread)
            thread.start()
        LOGGER.info(
            "[Routes] Monitoring %d route(s) every %.2fs",
            len(self._targets),
            self._interval_s,
        )

    def stop(self) -> RouteMonitorSummary:
        """Stop probing, drain the funnel, then flush reports, plots and metadata."""

        if self._summary is not None:
            return self._summary
        if self._consumer_thread is None:
            raise RuntimeError("Route monitors were never started")

        self._stop_event.set()
        join_timeout_s = self._timeout_s * 2 + self._interval_s
        for thread in self._probe_threads:
            thread.join(timeout=join_timeout_s)
            if thread.is_alive():
                LOGGER.warning(
                    "[Routes] Probe thread %s did not exit within %.2fs; its last sample may be lost.",
                    thread.name,
                    join_timeout_s,
                )
        self._queue.put(_STOP)
        self._consumer_thread.join()

        self._summary = self._flush()
        LOGGER.info(
            "[Routes] Stopped route monitors after %d sample(s)",
            self._summary.total_samples,
        )
        return self._summary

    def _probe_loop(self, target: RouteTarget) -> None:
        sequence = 0
        while not self._stop_event.is_set():
            timestamp = time.time()
            try:
                result = self._probe(target.url, self._timeout_s, self._verify_tls)
                sample = RouteSample(
                    target=target.name,
                    sequence=sequence,
                    timestamp=timestamp,
                    latency_s=result.latency_s,
                    status_code=result.status_code,
                    error=result.error,
                )
            except Exception as exc:  # noqa: BLE001 - probe should not raise
                sample = RouteSample(
                    target=target.name,
                    sequence=sequence,
                    timestamp=timestamp,
                    latency_s=time.time() - timestamp,
                    error=str(exc) or exc.__class__.__name__,
                )
            self._queue.put(sample)
            sequence += 1
            self._stop_event.wait(timeout=self._interval_s)

    def _consume(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self._record(item)
            except Exception as exc:
                LOGGER.exception("[Routes] Failed to record sample (continuing): %s", exc)

    def _record(self, sample: RouteSample) -> None:
        self._monitors[sample.target].add(sample)
        self._plots[sample.target].add(sample)
        previous = self._last_ok.get(sample.target)
        if previous == sample.ok:
            return
        self._last_ok[sample.target] = sample.ok
        if not sample.ok:
            LOGGER.warning("[Routes] %s unreachable: %s", sample.target, sample.error)
        elif previous is not None:
            LOGGER.info("[Routes] %s reachable again", sample.target)

    def _flush(self) -> RouteMonitorSummary:
        targets: dict[str, dict[str, Any]] = {}
        report_paths: list[Path] = []
        for name, monitor in self._monitors.items():
            summary = monitor.summary()
            targets[name] = summary
            path = self._output_dir / f"{_safe_name(name)}-report.json"
            path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
            report_paths.append(path)

        plot_paths = [
            plot.write_csv(self._output_dir / f"{_safe_name(name)}-plot.csv")
            for name, plot in self._plots.items()
        ]

        metadata_path = self._output_dir / METADATA_FILENAME
        metadata = {
            "started_at": self._started_at,
            "stopped_at": time.time(),
            "interval_s": self._interval_s,
            "targets": {
                name: {
                    "url": summary["url"],
                    "requests": summary["requests"],
                    "availability": summary["availability"],
                }
                for name, summary in targets.items()
            },
        }
        metadata_path.write_text(json.dumps(metadata, indent=2), encoding="utf-8")
        return RouteMonitorSummary(
            output_dir=self._output_dir,
            targets=targets,
            report_paths=tuple(report_paths),
            plot_paths=tuple(plot_paths),
            metadata_path=metadata_path,
        )


def start_route_monitors(
    targets: Iterable[RouteTarget],
    output_dir: Path,
    settings: RouteMonitorSettings | None = None,
    probe: ProbeFn = probe_route,
) -> RouteHealthAggregator:
    """Create and start an aggregator; the caller must ``stop()`` it."""

    aggregator = RouteHealthAggregator.from_settings(
        targets,
        output_dir,
        settings or RouteMonitorSettings(),
        probe=probe,
    )
    aggregator.start()
    return aggregator
