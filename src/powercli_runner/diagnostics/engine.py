from __future__ import annotations

import logging
from typing import Iterable, Sequence

from ..execution.engine import ScriptRunner
from ..modules.resolver import ModuleResolver
from .probes import DEFAULT_PROBES, Probe, ProbeContext
from .report import DiagnosticIssue, DiagnosticReport, RepairOutcome, RepairReport, utcnow

logger = logging.getLogger(__name__)


class DiagnosticsEngine:
    """Run independent environment probes and apply automatic fixes.

    Example:
        ```python
        engine = DiagnosticsEngine(gateway, gateway.resolver)
        report = engine.run()
        engine.repair(report.fixable)
        ```
    """

    def __init__(
        self,
        runner: ScriptRunner,
        resolver: ModuleResolver | None = None,
        *,
        probes: Sequence[Probe] = DEFAULT_PROBES,
        probe_timeout_seconds: float = 60.0,
        repair_timeout_seconds: float = 600.0,
    ) -> None:
        """Configure the probes and their timeouts.

        Example:
            ```python
            engine = DiagnosticsEngine(gateway, probe_timeout_seconds=30)
            ```
        """
        self._runner = runner
        self._resolver = resolver or ModuleResolver()
        self._probes = tuple(probes)
        self._probe_timeout = probe_timeout_seconds
        self._repair_timeout = repair_timeout_seconds

    def run(self) -> DiagnosticReport:
        """Run every probe; a failing probe becomes an issue in its category.

        Example:
            ```python
            report = engine.run()
            ```
        """
        logger.info("Running PowerCLI diagnostics")
        report = DiagnosticReport()
        context = ProbeContext(self._runner, self._resolver, self._probe_timeout)
        failed = 0
        for probe in self._probes:
            try:
                findings = probe.check(context)
            except Exception as exc:
                failed += 1
                logger.warning("%s probe failed: %s", probe.category, exc)
                report.issues.append(
                    DiagnosticIssue(
                        severity=probe.failure_severity,
                        category=probe.category,
                        description=f"Failed to check {probe.category.lower()}: {exc}",
                        recommendation=f"Verify {probe.category.lower()} manually",
                    )
                )
                continue
            report.issues.extend(findings.issues)
            if findings.details:
                report.details[probe.category] = findings.details

        report.issues.sort(key=lambda issue: issue.severity, reverse=True)
        if self._probes and failed == len(self._probes):
            report.status = "Failed"
        else:
            report.status = "Healthy" if not report.issues else "Issues Found"
        report.completed_at = utcnow()
        logger.info("Diagnostics completed: %s, %s issue(s)", report.status, len(report.issues))
        return report

    def repair(self, issues: Iterable[DiagnosticIssue]) -> RepairReport:
        """Apply fix scripts of auto-fixable issues, one outcome per attempt.

        Example:
            ```python
            outcome = engine.repair(report.issues)
            ```
        """
        report = RepairReport()
        for issue in issues:
            if not issue.auto_fixable or not issue.fix_script:
                report.skipped.append(issue)
                continue
            try:
                result = self._runner.execute(issue.fix_script, timeout_seconds=self._repair_timeout)
            except Exception as exc:
                logger.exception("Error repairing issue: %s", issue.description)
                report.outcomes.append(RepairOutcome(issue, False, f"Error repairing '{issue.description}': {exc}"))
                continue
            if result.success:
                logger.info("Repaired issue: %s", issue.description)
                report.outcomes.append(RepairOutcome(issue, True, f"Fixed: {issue.description}"))
            else:
                logger.warning("Failed to repair issue %s: %s", issue.description, result.error)
                report.outcomes.append(
                    RepairOutcome(issue, False, f"Failed to repair: {issue.description}: {result.error}")
                )
        return report
