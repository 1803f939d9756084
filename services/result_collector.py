"""Structured result ingestion and log-metric scanning for one phase."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import re
from typing import Mapping
import xml.etree.ElementTree as ET

from core.errors import PhaseError, ResultParseError
from core.log_metrics import LogMetricSet
from core.logging import logger as LOGGER
from core.models import PassRate, TestCaseRecord, TestResult


LOG_METRICS_FILENAME = "junit_logmetrics.xml"
BEFORE_SUITE_FILENAME = "junit_beforesuite.xml"

_SYNTHETIC_FILENAMES = {LOG_METRICS_FILENAME, BEFORE_SUITE_FILENAME}


@dataclass(frozen=True)
class CollectionResult:
    """Counts and records read from a phase directory."""

    total: int = 0
    passing: int = 0
    records: list[TestCaseRecord] = field(default_factory=list)
    failing_names: list[str] = field(default_factory=list)
    log_metric_counts: dict[str, int] = field(default_factory=dict)
    before_suite_metric_counts: dict[str, int] = field(default_factory=dict)

    @property
    def pass_rate(self) -> PassRate:
        return PassRate(passing=self.passing, total=self.total)


def _float_attr(element: ET.Element, name: str) -> float:
    try:
        return float(element.attrib.get(name, 0) or 0)
    except ValueError:
        return 0.0


def _error_text(element: ET.Element) -> str:
    message = element.attrib.get("message", "").strip()
    if message:
        return message
    return (element.text or "").strip()


def _parse_testcase(case: ET.Element, suite_name: str) -> TestCaseRecord:
    failure = case.find("failure")
    error = case.find("error")
    if case.find("skipped") is not None:
        result = TestResult.SKIPPED
        detail = None
    elif failure is not None:
        result = TestResult.FAILED
        detail = failure
    elif error is not None:
        result = TestResult.ERROR
        detail = error
    else:
        result = TestResult.PASSED
        detail = None

    return TestCaseRecord(
        name=case.attrib.get("name", ""),
        result=result,
        duration_s=_float_attr(case, "time"),
        stdout=(case.findtext("system-out") or "").strip(),
        stderr=(case.findtext("system-err") or "").strip(),
        error=_error_text(detail) if detail is not None else "",
        suite=suite_name,
        class_name=case.attrib.get("classname", ""),
    )


def parse_result_file(path: Path, phase: str = "") -> list[TestCaseRecord]:
    """Read every test case from a JUnit XML file.

    Accepts either a ``<testsuites>`` or a bare ``<testsuite>`` root. Any read
    or parse problem raises ``ResultParseError`` naming the file.
    """

    try:
        root = ET.parse(path).getroot()
    except (OSError, ET.ParseError) as exc:
        raise ResultParseError(phase, path, str(exc)) from exc

    if root.tag == "testsuite":
        suites = [root]
    elif root.tag == "testsuites":
        suites = list(root.iter("testsuite"))
    else:
        raise ResultParseError(phase, path, f"unexpected root element <{root.tag}>")

    records = []
    for suite in suites:
        suite_name = suite.attrib.get("name", "")
        for case in suite.findall("testcase"):
            records.append(_parse_testcase(case, suite_name))
    return records


def _metric_suite(
    suite_name: str,
    prefix: str,
    counts: Mapping[str, int],
    metrics: LogMetricSet,
) -> ET.Element:
    suite = ET.Element("testsuite", {"name": suite_name})
    failures = 0
    for name, value in counts.items():
        case = ET.SubElement(
            suite,
            "testcase",
            {"classname": suite_name, "name": f"[{prefix}] {name}", "time": str(float(value))},
        )
        metric = metrics.get(name)
        if metric is None or metric.is_passing(value):
            ET.SubElement(case, "passed", {"message": f"Passed with {value} matches"})
        else:
            ET.SubElement(case, "failure", {"message": f"Failed with {value} matches"})
            failures += 1
    suite.set("tests", str(len(counts)))
    suite.set("failures", str(failures))
    return suite


class ResultCollector:
    """Parse a phase's result files and count log-metric matches."""

    def __init__(
        self,
        log_metrics: LogMetricSet | None = None,
        before_suite_metrics: LogMetricSet | None = None,
        result_pattern: str = r"^junit.*\.xml$",
        log_pattern: str = r".*-log\.txt$",
    ) -> None:
        self._log_metrics = log_metrics or LogMetricSet()
        self._before_suite_metrics = before_suite_metrics or LogMetricSet()
        self._result_pattern = re.compile(result_pattern)
        self._log_pattern = re.compile(log_pattern)

    @classmethod
    def from_settings(cls, settings) -> "ResultCollector":
        return cls(
            log_metrics=settings.log_metrics,
            before_suite_metrics=settings.before_suite_metrics,
            result_pattern=settings.tests.result_pattern,
            log_pattern=settings.tests.log_pattern,
        )

    @property
    def log_metrics(self) -> LogMetricSet:
        return self._log_metrics

    @property
    def before_suite_metrics(self) -> LogMetricSet:
        return self._before_suite_metrics

    def result_files(self, phase_dir: Path) -> list[Path]:
        return sorted(
            path
            for path in phase_dir.iterdir()
            if path.is_file()
            and path.name not in _SYNTHETIC_FILENAMES
            and self._result_pattern.match(path.name)
        )

    def collect(self, phase_dir: Path, log_dir: Path | None = None, phase: str = "") -> CollectionResult:
        """Aggregate every result file in ``phase_dir`` and scan logs in ``log_dir``."""

        phase = phase or phase_dir.name
        try:
            files = self.result_files(phase_dir)
        except OSError as exc:
            raise PhaseError(phase, f"cannot list phase directory {phase_dir}: {exc}") from exc

        records: list[TestCaseRecord] = []
        for path in files:
            records.extend(parse_result_file(path, phase))

        total = 0
        passing = 0
        failing_names: list[str] = []
        for record in records:
            if record.result == TestResult.SKIPPED:
                continue
            total += 1
            if record.result == TestResult.PASSED:
                passing += 1
            else:
                failing_names.append(record.name)

        log_counts, before_suite_counts = self.scan_logs(log_dir or phase_dir, phase)
        LOGGER.info(
            "[Results] %s: %d result file(s), %d/%d passing",
            phase,
            len(files),
            passing,
            total,
        )
        return CollectionResult(
            total=total,
            passing=passing,
            records=records,
            failing_names=failing_names,
            log_metric_counts=log_counts,
            before_suite_metric_counts=before_suite_counts,
        )

    def scan_logs(self, log_dir: Path, phase: str = "") -> tuple[dict[str, int], dict[str, int]]:
        """Count, per metric, the log files with at least one match."""

        log_counts = self._log_metrics.zeroed()
        before_suite_counts = self._before_suite_metrics.zeroed()
        if not len(self._log_metrics) and not len(self._before_suite_metrics):
            return log_counts, before_suite_counts
        try:
            paths = sorted(
                path
                for path in log_dir.iterdir()
                if path.is_file() and self._log_pattern.match(path.name)
            )
        except OSError as exc:
            raise PhaseError(phase, f"cannot list log directory {log_dir}: {exc}") from exc

        for path in paths:
            try:
                data = path.read_bytes()
            except OSError as exc:
                raise PhaseError(phase, f"cannot read log file {path}: {exc}") from exc
            for metric in self._log_metrics:
                log_counts[metric.name] += metric.has_matches(data)
            for metric in self._before_suite_metrics:
                before_suite_counts[metric.name] += metric.has_matches(data)
        return log_counts, before_suite_counts

    def write_metric_reports(
        self,
        phase_dir: Path,
        counts: Mapping[str, int],
        before_suite_counts: Mapping[str, int],
    ) -> tuple[Path, Path]:
        """Write the log-metric and before-suite counts as synthetic JUnit files."""

        log_path = phase_dir / LOG_METRICS_FILENAME
        before_path = phase_dir / BEFORE_SUITE_FILENAME
        ET.ElementTree(
            _metric_suite("Log Metrics", "Log Metrics", counts, self._log_metrics)
        ).write(log_path, encoding="utf-8", xml_declaration=True)
        ET.ElementTree(
            _metric_suite(
                "Before Suite Metrics",
                "BeforeSuite",
                before_suite_counts,
                self._before_suite_metrics,
            )
        ).write(before_path, encoding="utf-8", xml_declaration=True)
        return log_path, before_path
