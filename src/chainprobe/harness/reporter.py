"""
Result accumulation and report generation for scenario runs.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .checks import Divergence


@dataclass
class CheckResult:
    """Result of a single check (one operation or one read-back)."""
    name: str
    scenario: str
    passed: bool
    execution_time_ms: float
    outcome: Optional[str] = None
    divergences: List[Divergence] = field(default_factory=list)
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class ScenarioResult:
    """Result of a scenario (an ordered sequence of checks)."""
    scenario: str
    total_checks: int
    passed_checks: int
    failed_checks: int
    execution_time_ms: float
    check_results: List[CheckResult]
    aborted: Optional[str] = None

    @property
    def pass_rate(self) -> float:
        if self.total_checks == 0:
            return 0.0
        return self.passed_checks / self.total_checks * 100

    @property
    def passed(self) -> bool:
        return self.failed_checks == 0 and self.aborted is None


@dataclass
class RunReport:
    """Complete report for one harness run."""
    timestamp: str
    endpoint: str
    total_scenarios: int
    total_checks: int
    total_passed: int
    total_failed: int
    total_divergences: int
    execution_time_ms: float
    scenario_results: List[ScenarioResult]
    divergences: List[Divergence]

    @property
    def passed(self) -> bool:
        return self.total_failed == 0 and all(s.aborted is None for s in self.scenario_results)


class ResultAccumulator:
    """Collects check results for one scenario.

    Passed explicitly into every check; expected failures are recorded as
    passes only when they matched a specific expectation.
    """

    def __init__(self, scenario: str, stop_on_first_failure: bool = False):
        self.scenario = scenario
        self.stop_on_first_failure = stop_on_first_failure
        self.results: List[CheckResult] = []

    def record(self, result: CheckResult) -> CheckResult:
        self.results.append(result)
        return result

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.passed)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.passed)

    @property
    def should_stop(self) -> bool:
        return self.stop_on_first_failure and self.failed > 0

    def finish(self, execution_time_ms: float, aborted: Optional[str] = None) -> ScenarioResult:
        return ScenarioResult(
            scenario=self.scenario,
            total_checks=len(self.results),
            passed_checks=self.passed,
            failed_checks=self.failed,
            execution_time_ms=execution_time_ms,
            check_results=list(self.results),
            aborted=aborted,
        )


class ReportGenerator:
    """Generates run reports."""

    def __init__(self, result_dir: str):
        """
        Initialize report generator.

        Args:
            result_dir: Directory to write reports to
        """
        self.result_dir = result_dir

    def generate_report(
        self,
        scenario_results: List[ScenarioResult],
        endpoint: str,
        execution_time_ms: float,
    ) -> RunReport:
        """
        Aggregate scenario results into a run report.

        Args:
            scenario_results: Results from all scenarios run
            endpoint: Remote system the scenarios ran against
            execution_time_ms: Total execution time

        Returns:
            RunReport object
        """
        divergences = [
            d
            for scenario in scenario_results
            for check in scenario.check_results
            for d in check.divergences
        ]
        return RunReport(
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            endpoint=endpoint,
            total_scenarios=len(scenario_results),
            total_checks=sum(s.total_checks for s in scenario_results),
            total_passed=sum(s.passed_checks for s in scenario_results),
            total_failed=sum(s.failed_checks for s in scenario_results),
            total_divergences=len(divergences),
            execution_time_ms=execution_time_ms,
            scenario_results=scenario_results,
            divergences=divergences,
        )

    def write_json_report(self, report: RunReport, filename: str = "chainprobe-report.json") -> str:
        """Write report as JSON; returns the path written."""
        os.makedirs(self.result_dir, exist_ok=True)
        path = os.path.join(self.result_dir, filename)
        with open(path, "w") as f:
            json.dump(self.report_to_dict(report), f, indent=2)
        return path

    def summary_lines(self, report: RunReport) -> List[str]:
        lines = [
            "=" * 60,
            "chainprobe Scenario Report",
            "=" * 60,
            f"Timestamp: {report.timestamp}",
            f"Endpoint:  {report.endpoint}",
            "",
            "Results:",
            f"  Total Checks: {report.total_checks}",
            f"  Passed:       {report.total_passed}",
            f"  Failed:       {report.total_failed}",
            f"  Divergences:  {report.total_divergences}",
            f"  Pass Rate:    {report.total_passed / max(report.total_checks, 1) * 100:.1f}%",
            f"  Duration:     {report.execution_time_ms:.2f}ms",
            "",
            "Scenarios:",
        ]
        for scenario in report.scenario_results:
            status = "PASS" if scenario.passed else "FAIL"
            lines.append(
                f"  [{status}] {scenario.scenario}: "
                f"{scenario.passed_checks}/{scenario.total_checks} "
                f"({scenario.pass_rate:.1f}%)"
            )
            if scenario.aborted:
                lines.append(f"      aborted: {scenario.aborted}")
            for check in scenario.check_results:
                if check.skipped:
                    lines.append(f"      [SKIP] {check.name}: {check.outcome}")
                elif not check.passed:
                    lines.append(f"      [FAIL] {check.name}: {check.error or check.outcome}")

        if report.divergences:
            lines.append("")
            lines.append("Divergences:")
            for div in report.divergences:
                lines.append(f"  - {div.check} ({div.field}):")
                lines.append(f"      expected: {div.expected}")
                lines.append(f"      actual:   {div.actual}")
                if div.details:
                    lines.append(f"      details:  {div.details}")

        lines.append("")
        lines.append("=" * 60)
        return lines

    def write_summary(self, report: RunReport, filename: str = "chainprobe-summary.txt") -> str:
        """Write human-readable summary; returns the path written."""
        os.makedirs(self.result_dir, exist_ok=True)
        path = os.path.join(self.result_dir, filename)
        with open(path, "w") as f:
            f.write("\n".join(self.summary_lines(report)))
        return path

    def print_summary(self, report: RunReport) -> None:
        """Print summary to console."""
        print()
        print("\n".join(self.summary_lines(report)))
        print(f"Overall: {'PASSED' if report.passed else 'FAILED'}")

    def report_to_dict(self, report: RunReport) -> Dict[str, Any]:
        """Convert report to dictionary for JSON serialization."""
        return {
            "timestamp": report.timestamp,
            "endpoint": report.endpoint,
            "passed": report.passed,
            "total_scenarios": report.total_scenarios,
            "total_checks": report.total_checks,
            "total_passed": report.total_passed,
            "total_failed": report.total_failed,
            "total_divergences": report.total_divergences,
            "execution_time_ms": report.execution_time_ms,
            "scenario_results": [
                {
                    "scenario": s.scenario,
                    "total_checks": s.total_checks,
                    "passed_checks": s.passed_checks,
                    "failed_checks": s.failed_checks,
                    "execution_time_ms": s.execution_time_ms,
                    "pass_rate": s.pass_rate,
                    "aborted": s.aborted,
                    "checks": [
                        {
                            "name": c.name,
                            "passed": c.passed,
                            "skipped": c.skipped,
                            "execution_time_ms": c.execution_time_ms,
                            "outcome": c.outcome,
                            "error": c.error,
                        }
                        for c in s.check_results
                    ],
                }
                for s in report.scenario_results
            ],
            "divergences": [
                {
                    "field": d.field,
                    "expected": str(d.expected),
                    "actual": str(d.actual),
                    "check": d.check,
                    "details": d.details,
                }
                for d in report.divergences
            ],
        }
