import json
from typing import Any, Mapping

from powercli_runner import DiagnosticsEngine, ExecutionResult, Severity
from powercli_runner.diagnostics import DEFAULT_PROBES, DiagnosticIssue, Probe, ProbeFindings, evaluate_execution_policy
from powercli_runner.diagnostics.probes import (
    NETWORK_SCRIPT,
    POLICY_FIX,
    POLICY_SCRIPT,
    SMOKE_SCRIPT,
    VERSION_SCRIPT,
)
from powercli_runner.modules import INSTALL_COMMAND, INVENTORY_SCRIPT

_MODULES = [
    {"Name": "VMware.VimAutomation.Core", "Version": "13.2.0", "Path": ""},
    {"Name": "VMware.VimAutomation.Common", "Version": "13.2.0", "Path": ""},
]


class _Machine:
    def __init__(self, **overrides: Any) -> None:
        self.policies = {
            "MachinePolicy": "Undefined",
            "UserPolicy": "Undefined",
            "Process": "Bypass",
            "CurrentUser": "Undefined",
            "LocalMachine": "RemoteSigned",
        }
        self.policies.update(overrides.pop("policies", {}))
        self.modules = overrides.pop("modules", _MODULES)
        self.version = overrides.pop("version", {"Version": "7.4.1", "Edition": "Core"})
        self.smoke = overrides.pop("smoke", {"Success": True, "Version": "VMware.PowerCLI 13.2.0", "Build": "22746353"})
        self.tls = overrides.pop("tls", "Tls12, Tls13")
        self.broken: set[str] = overrides.pop("broken", set())
        self.raising: set[str] = overrides.pop("raising", set())
        self.scripts: list[str] = []

    def execute(
        self,
        script: str,
        parameters: Mapping[str, Any] | None = None,
        timeout_seconds: float | None = None,
        cancel: Any = None,
    ) -> ExecutionResult:
        self.scripts.append(script)
        if script in self.raising:
            raise RuntimeError("runner exploded")
        if script in self.broken:
            return ExecutionResult(success=False, error="access denied")
        if script == POLICY_SCRIPT:
            return self._json(self.policies)
        if script == INVENTORY_SCRIPT:
            return self._json(self.modules)
        if script == VERSION_SCRIPT:
            return self._json(self.version)
        if script == SMOKE_SCRIPT:
            return self._json(self.smoke)
        if script == NETWORK_SCRIPT:
            return self._json({"ProxyAddress": "None", "TLSProtocol": self.tls})
        if script == POLICY_FIX:
            self.policies["CurrentUser"] = "RemoteSigned"
            return ExecutionResult(success=True)
        return ExecutionResult(success=False, error=f"unexpected script {script[:20]}")

    @staticmethod
    def _json(value: Any) -> ExecutionResult:
        return ExecutionResult(success=True, output=json.dumps(value) + "\n")


def test_healthy_machine_has_no_issues() -> None:
    report = DiagnosticsEngine(_Machine()).run()

    assert report.status == "Healthy"
    assert report.healthy
    assert report.issues == []
    assert report.details["PowerShell Version"]["Version"] == "7.4.1"
    assert report.details["Execution Policy"]["Effective"] == "RemoteSigned"
    assert report.completed_at is not None


def test_restrictive_policy_is_fixed_by_repair() -> None:
    machine = _Machine(policies={"CurrentUser": "Restricted"})
    engine = DiagnosticsEngine(machine)

    report = engine.run()
    policy_issues = report.by_category("Execution Policy")

    assert report.status == "Issues Found"
    assert len(policy_issues) == 1
    assert policy_issues[0].severity is Severity.HIGH
    assert policy_issues[0].auto_fixable
    assert policy_issues[0].fix_script == POLICY_FIX

    repair = engine.repair(report.issues)

    assert repair.success
    assert [outcome.issue for outcome in repair.outcomes] == policy_issues
    assert engine.run().by_category("Execution Policy") == []


def test_group_policy_restriction_is_not_fixable() -> None:
    findings = evaluate_execution_policy({"MachinePolicy": "AllSigned", "CurrentUser": "Unrestricted"})

    assert len(findings.issues) == 1
    assert findings.issues[0].severity is Severity.CRITICAL
    assert not findings.issues[0].auto_fixable


def test_process_scope_is_ignored() -> None:
    findings = evaluate_execution_policy({"Process": "Bypass"})

    assert findings.details["Effective"] == "Undefined"
    assert findings.issues[0].severity is Severity.HIGH


def test_missing_core_module_is_critical_and_fixable() -> None:
    report = DiagnosticsEngine(_Machine(modules=[])).run()
    issues = report.by_category("PowerCLI Modules")

    assert issues[0].severity is Severity.CRITICAL
    assert issues[0].fix_script == INSTALL_COMMAND
    assert report.issues[0].severity is Severity.CRITICAL


def test_inventory_is_fetched_once_per_run() -> None:
    machine = _Machine()

    DiagnosticsEngine(machine).run()

    assert machine.scripts.count(INVENTORY_SCRIPT) == 1


def test_version_conflicts_are_reported() -> None:
    modules = _MODULES + [{"Name": "VMware.VimAutomation.Common", "Version": "12.7.0", "Path": ""}]
    report = DiagnosticsEngine(_Machine(modules=modules)).run()
    conflicts = report.by_category("Module Conflicts")

    assert len(conflicts) == 1
    assert conflicts[0].severity is Severity.MEDIUM
    assert "2 versions installed" in conflicts[0].description


def test_old_powershell_and_weak_tls_are_flagged() -> None:
    machine = _Machine(version={"Version": "7.0.3", "Edition": "Core"}, tls="Ssl3, Tls")
    report = DiagnosticsEngine(machine).run()

    assert report.by_category("PowerShell Version")[0].severity is Severity.MEDIUM
    assert report.by_category("Network Settings")[0].severity is Severity.LOW


def test_failed_probe_becomes_issue_in_its_category() -> None:
    machine = _Machine(broken={VERSION_SCRIPT}, raising={NETWORK_SCRIPT})
    report = DiagnosticsEngine(machine).run()

    version_issue = report.by_category("PowerShell Version")[0]
    network_issue = report.by_category("Network Settings")[0]
    assert "access denied" in version_issue.description
    assert "runner exploded" in network_issue.description
    assert report.status == "Issues Found"


def test_all_probes_failing_marks_report_failed() -> None:
    scripts = {POLICY_SCRIPT, INVENTORY_SCRIPT, VERSION_SCRIPT, SMOKE_SCRIPT, NETWORK_SCRIPT}
    report = DiagnosticsEngine(_Machine(broken=scripts)).run()

    assert report.status == "Failed"
    assert len(report.issues) == len(DEFAULT_PROBES)


def test_issues_are_sorted_by_severity() -> None:
    probes = (
        Probe("Low", lambda context: _findings(Severity.LOW), Severity.LOW),
        Probe("Critical", lambda context: _findings(Severity.CRITICAL), Severity.LOW),
    )
    report = DiagnosticsEngine(_Machine(), probes=probes).run()

    assert [issue.severity for issue in report.issues] == [Severity.CRITICAL, Severity.LOW]


def test_repair_skips_manual_issues_and_survives_errors() -> None:
    machine = _Machine(raising={"Install-Thing"})
    manual = DiagnosticIssue(Severity.CRITICAL, "Execution Policy", "Group policy", "Ask an admin")
    exploding = DiagnosticIssue(Severity.HIGH, "PowerCLI Modules", "Missing", "Install", True, "Install-Thing")
    fixable = DiagnosticIssue(Severity.HIGH, "Execution Policy", "Restricted", "Fix", True, POLICY_FIX)

    repair = DiagnosticsEngine(machine).repair([manual, exploding, fixable])

    assert repair.skipped == [manual]
    assert [outcome.success for outcome in repair.outcomes] == [False, True]
    assert "runner exploded" in repair.outcomes[0].message
    assert not repair.success
    assert machine.scripts == ["Install-Thing", POLICY_FIX]


def _findings(severity: Severity) -> ProbeFindings:
    return ProbeFindings(issues=[DiagnosticIssue(severity, severity.name.title(), "x", "y")])
