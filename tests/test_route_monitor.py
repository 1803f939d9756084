"""Tests for route probing and the route health aggregator."""

from __future__ import annotations

import csv
import json
from pathlib import Path
import threading
import time

from config.settings import RouteMonitorSettings, RouteTarget
from services.health_probes import RouteProbeResult, probe_route
from services.route_monitor import (
    METADATA_FILENAME,
    RouteHealthAggregator,
    RouteMonitor,
    RouteSample,
    start_route_monitors,
)


class _CountingProbe:
    """Fake probe that records how many samples it produced per URL."""

    def __init__(self, failing_urls: set[str] | None = None) -> None:
        self.failing_urls = failing_urls or set()
        self.calls: dict[str, int] = {}
        self._lock = threading.Lock()

    def __call__(self, url: str, timeout_s: float, verify_tls: bool) -> RouteProbeResult:
        with self._lock:
            self.calls[url] = self.calls.get(url, 0) + 1
        if url in self.failing_urls:
            return RouteProbeResult(url=url, latency_s=0.001, error="connection refused")
        return RouteProbeResult(url=url, latency_s=0.002, status_code=200)


def _wait_for(predicate, timeout_s: float = 2.0) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)


def test_every_sample_reaches_the_reports(tmp_path: Path) -> None:
    probe = _CountingProbe()
    targets = [
        RouteTarget(name="console", url="http://console.test"),
        RouteTarget(name="api", url="http://api.test"),
    ]
    aggregator = RouteHealthAggregator(targets, tmp_path, probe=probe, interval_s=0.01, queue_size=4)

    aggregator.start()
    _wait_for(lambda: all(probe.calls.get(target.url, 0) >= 5 for target in targets))
    summary = aggregator.stop()

    for target in targets:
        report = json.loads((tmp_path / f"{target.name}-report.json").read_text(encoding="utf-8"))
        assert report["requests"] == probe.calls[target.url]
        assert report["successes"] == report["requests"]
        with (tmp_path / f"{target.name}-plot.csv").open(encoding="utf-8", newline="") as handle:
            rows = list(csv.reader(handle))
        assert len(rows) - 1 == probe.calls[target.url]
        sequences = [int(row[1]) for row in rows[1:]]
        assert sequences == sorted(sequences)
    assert summary.total_samples == sum(probe.calls.values())
    metadata = json.loads((tmp_path / METADATA_FILENAME).read_text(encoding="utf-8"))
    assert set(metadata["targets"]) == {"console", "api"}


def test_unreachable_target_does_not_stop_monitoring(tmp_path: Path) -> None:
    probe = _CountingProbe(failing_urls={"http://down.test"})
    targets = [
        RouteTarget(name="down", url="http://down.test"),
        RouteTarget(name="up", url="http://up.test"),
    ]

    aggregator = start_route_monitors(
        targets,
        tmp_path,
        RouteMonitorSettings(interval_s=0.01),
        probe=probe,
    )
    _wait_for(lambda: probe.calls.get("http://down.test", 0) >= 3)
    summary = aggregator.stop()

    down = summary.targets["down"]
    assert down["requests"] >= 3
    assert down["successes"] == 0
    assert down["availability"] == 0.0
    assert down["errors"] == {"connection refused": down["requests"]}
    assert summary.targets["up"]["availability"] == 1.0


def test_raising_probe_becomes_error_sample(tmp_path: Path) -> None:
    def _explode(url: str, timeout_s: float, verify_tls: bool) -> RouteProbeResult:
        raise RuntimeError("boom")

    aggregator = RouteHealthAggregator(
        [RouteTarget(name="x", url="http://x.test")],
        tmp_path,
        probe=_explode,
        interval_s=0.01,
    )
    aggregator.start()
    time.sleep(0.05)
    summary = aggregator.stop()

    assert summary.targets["x"]["requests"] >= 1
    assert summary.targets["x"]["errors"].get("boom") == summary.targets["x"]["requests"]


def test_stop_is_idempotent(tmp_path: Path) -> None:
    aggregator = RouteHealthAggregator([], tmp_path)
    aggregator.start()

    first = aggregator.stop()

    assert aggregator.stop() is first
    assert first.total_samples == 0
    assert not aggregator.is_running()


def test_route_monitor_percentiles() -> None:
    monitor = RouteMonitor(RouteTarget(name="x", url="http://x"))
    for index, latency in enumerate([0.1, 0.2, 0.3, 0.4]):
        monitor.add(RouteSample(target="x", sequence=index, timestamp=float(index), latency_s=latency, status_code=200))
    monitor.add(RouteSample(target="x", sequence=4, timestamp=4.0, latency_s=0.5, status_code=503, error="HTTP 503"))

    summary = monitor.summary()

    assert summary["requests"] == 5
    assert summary["failures"] == 1
    assert summary["status_codes"] == {"200": 4, "503": 1}
    assert summary["latency_s"]["p50"] == 0.3
    assert summary["latency_s"]["max"] == 0.5


def test_probe_route_reports_connection_errors() -> None:
    result = probe_route("http://127.0.0.1:9/", timeout_s=0.5)

    assert not result.ok
    assert result.status_code is None
    assert result.error
