"""Tests for JUnit ingestion and log-metric scanning."""

from __future__ import annotations

from pathlib import Path
import xml.etree.ElementTree as ET

import pytest

from core.errors import ResultParseError
from core.log_metrics import LogMetricSet
from core.models import TestResult
from services.result_collector import (
    BEFORE_SUITE_FILENAME,
    LOG_METRICS_FILENAME,
    ResultCollector,
    parse_result_file,
)


_SUITES = """<?xml version="1.0" encoding="UTF-8"?>
<testsuites>
  <testsuite name="install" tests="5">
    <testcase classname="e2e" name="creates namespace" time="1.5"/>
    <testcase classname="e2e" name="routes answer" time="0.2">
      <failure message="route timed out">stack</failure>
    </testcase>
    <testcase classname="e2e" name="pods schedule" time="0.1">
      <error>pod crashed</error>
    </testcase>
    <testcase classname="e2e" name="optional feature">
      <skipped/>
    </testcase>
    <testcase classname="e2e" name="informing check">
      <system-out>out</system-out>
      <system-err>err</system-err>
    </testcase>
  </testsuite>
</testsuites>
"""


def _collector(**kwargs) -> ResultCollector:
    return ResultCollector(**kwargs)


def test_parse_result_file_reads_each_case(tmp_path: Path) -> None:
    path = tmp_path / "junit_a.xml"
    path.write_text(_SUITES, encoding="utf-8")

    records = parse_result_file(path, "install")

    assert [record.result for record in records] == [
        TestResult.PASSED,
        TestResult.FAILED,
        TestResult.ERROR,
        TestResult.SKIPPED,
        TestResult.PASSED,
    ]
    assert records[0].duration_s == pytest.approx(1.5)
    assert records[1].error == "route timed out"
    assert records[2].error == "pod crashed"
    assert records[4].stdout == "out"
    assert records[4].stderr == "err"
    assert records[0].suite == "install"


def test_collect_excludes_skipped_from_totals(tmp_path: Path) -> None:
    (tmp_path / "junit_a.xml").write_text(_SUITES, encoding="utf-8")
    (tmp_path / "junit_b.xml").write_text(
        '<testsuite name="more"><testcase name="extra"/></testsuite>',
        encoding="utf-8",
    )
    (tmp_path / "notes.xml").write_text("not junit", encoding="utf-8")

    result = _collector().collect(tmp_path)

    assert result.total == 5
    assert result.passing == 3
    assert result.passing <= result.total
    assert result.failing_names == ["routes answer", "pods schedule"]
    assert result.pass_rate.value == pytest.approx(0.6)
    assert len(result.records) == 6


def test_collect_without_results_has_undefined_pass_rate(tmp_path: Path) -> None:
    result = _collector().collect(tmp_path)

    assert result.total == 0
    assert result.pass_rate.value is None
    assert not result.pass_rate.defined


def test_collect_raises_on_malformed_file(tmp_path: Path) -> None:
    (tmp_path / "junit_good.xml").write_text(_SUITES, encoding="utf-8")
    bad = tmp_path / "junit_bad.xml"
    bad.write_text("<testsuite><testcase", encoding="utf-8")

    with pytest.raises(ResultParseError) as excinfo:
        _collector().collect(tmp_path, phase="install")

    assert excinfo.value.path == bad
    assert excinfo.value.phase == "install"


def test_collect_ignores_previous_metric_reports(tmp_path: Path) -> None:
    collector = _collector(log_metrics=LogMetricSet.from_config([{"name": "x", "pattern": "x"}]))
    collector.write_metric_reports(tmp_path, {"x": 1}, {})

    result = collector.collect(tmp_path)

    assert result.total == 0


def test_log_metrics_count_matching_files(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    (log_dir / "install-log.txt").write_bytes(b"panic: boom\npanic: again\n")
    (log_dir / "operator-log.txt").write_bytes(b"panic: once\nBeforeSuite failed\n")
    (log_dir / "quiet-log.txt").write_bytes(b"fine\n")
    (log_dir / "other.txt").write_bytes(b"panic: not scanned\n")
    collector = _collector(
        log_metrics=LogMetricSet.from_config(
            [{"name": "panics", "pattern": "panic:"}, {"name": "none", "pattern": "never"}]
        ),
        before_suite_metrics=LogMetricSet.from_config(
            [{"name": "before", "pattern": "BeforeSuite failed"}]
        ),
    )

    result = collector.collect(tmp_path, log_dir=log_dir)

    assert result.log_metric_counts == {"panics": 2, "none": 0}
    assert result.before_suite_metric_counts == {"before": 1}


def test_log_metric_counts_are_fresh_per_call(tmp_path: Path) -> None:
    (tmp_path / "a-log.txt").write_bytes(b"panic:\n")
    collector = _collector(log_metrics=LogMetricSet.from_config([{"name": "panics", "pattern": "panic:"}]))

    first = collector.collect(tmp_path)
    second = collector.collect(tmp_path)

    assert first.log_metric_counts == {"panics": 1}
    assert second.log_metric_counts == {"panics": 1}


def test_write_metric_reports(tmp_path: Path) -> None:
    collector = _collector(
        log_metrics=LogMetricSet.from_config(
            [{"name": "panics", "pattern": "panic:", "high_threshold": 0}]
        ),
        before_suite_metrics=LogMetricSet.from_config([{"name": "setup", "pattern": "x"}]),
    )

    log_path, before_path = collector.write_metric_reports(tmp_path, {"panics": 2}, {"setup": 0})

    assert log_path.name == LOG_METRICS_FILENAME
    assert before_path.name == BEFORE_SUITE_FILENAME
    suite = ET.parse(log_path).getroot()
    assert suite.attrib["failures"] == "1"
    case = suite.find("testcase")
    assert case.attrib["name"] == "[Log Metrics] panics"
    assert case.attrib["time"] == "2.0"
    assert case.find("failure").attrib["message"] == "Failed with 2 matches"
    before_case = ET.parse(before_path).getroot().find("testcase")
    assert before_case.attrib["name"] == "[BeforeSuite] setup"
    assert before_case.find("passed").attrib["message"] == "Passed with 0 matches"
