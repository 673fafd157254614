from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any


class Severity(IntEnum):
    """Ordered issue severity.

    Example:
        ```python
        assert Severity.CRITICAL > Severity.HIGH
        ```
    """

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass(frozen=True, slots=True)
class DiagnosticIssue:
    """One problem found by a probe.

    Example:
        ```python
        issue = DiagnosticIssue(Severity.LOW, "Network Settings", "TLS 1.2 is not enabled", "Enable TLS 1.2")
        ```
    """

    severity: Severity
    category: str
    description: str
    recommendation: str
    auto_fixable: bool = False
    fix_script: str | None = None


def utcnow() -> datetime:
    """Return an aware UTC timestamp.

    Example:
        ```python
        started = utcnow()
        ```
    """
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class DiagnosticReport:
    """All issues and details gathered by one diagnostics run.

    Example:
        ```python
        report = DiagnosticReport()
        ```
    """

    issues: list[DiagnosticIssue] = field(default_factory=list)
    details: dict[str, dict[str, Any]] = field(default_factory=dict)
    status: str = "Running"
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def healthy(self) -> bool:
        """Return True when no issue was found.

        Example:
            ```python
            if report.healthy:
                ...
            ```
        """
        return self.status == "Healthy"

    def by_category(self, category: str) -> list[DiagnosticIssue]:
        """Return the issues of one category.

        Example:
            ```python
            policy_issues = report.by_category("Execution Policy")
            ```
        """
        return [issue for issue in self.issues if issue.category == category]

    @property
    def fixable(self) -> list[DiagnosticIssue]:
        """Return issues that `repair` can act on.

        Example:
            ```python
            outcome = engine.repair(report.fixable)
            ```
        """
        return [issue for issue in self.issues if issue.auto_fixable and issue.fix_script]


@dataclass(frozen=True, slots=True)
class RepairOutcome:
    """Result of applying one issue's fix.

    Example:
        ```python
        outcome = RepairOutcome(issue=issue, success=True, message="Fixed")
        ```
    """

    issue: DiagnosticIssue
    success: bool
    message: str


@dataclass(slots=True)
class RepairReport:
    """Per-issue repair outcomes plus the issues that were not attempted.

    Example:
        ```python
        report = RepairReport()
        ```
    """

    outcomes: list[RepairOutcome] = field(default_factory=list)
    skipped: list[DiagnosticIssue] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Return True when every attempted fix succeeded.

        Example:
            ```python
            if report.success:
                ...
            ```
        """
        return all(outcome.success for outcome in self.outcomes)
