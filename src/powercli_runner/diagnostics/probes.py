from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from packaging.version import Version

from ..execution.engine import ScriptRunner
from ..execution.records import Record
from ..modules.loader import INSTALL_COMMAND, REINSTALL_COMMAND
from ..modules.resolver import CORE_MODULE, INVENTORY_SCRIPT, ModuleDescriptor, ModuleResolver, parse_inventory, parse_version
from .report import DiagnosticIssue, Severity

logger = logging.getLogger(__name__)

POLICY_SCOPES = ("MachinePolicy", "UserPolicy", "Process", "CurrentUser", "LocalMachine")
GROUP_POLICY_SCOPES = frozenset({"MachinePolicy", "UserPolicy"})
RESTRICTIVE_POLICIES = frozenset({"Restricted", "AllSigned", "Undefined"})
POLICY_FIX = "Set-ExecutionPolicy -ExecutionPolicy RemoteSigned -Scope CurrentUser -Force"

POLICY_SCRIPT = """\
$policies = [ordered]@{}
foreach ($scope in @('MachinePolicy', 'UserPolicy', 'Process', 'CurrentUser', 'LocalMachine')) {
    $policies[$scope] = (Get-ExecutionPolicy -Scope $scope).ToString()
}
[pscustomobject]$policies | ConvertTo-Json -Compress
"""

VERSION_SCRIPT = """\
[pscustomobject]@{
    Version = $PSVersionTable.PSVersion.ToString()
    Edition = [string]$PSVersionTable.PSEdition
} | ConvertTo-Json -Compress
"""

SMOKE_SCRIPT = """\
try {
    Import-Module VMware.VimAutomation.Core -ErrorAction Stop -WarningAction SilentlyContinue
    $version = Get-PowerCLIVersion -ErrorAction Stop -WarningAction SilentlyContinue
    [pscustomobject]@{ Success = $true; Version = [string]$version.ProductLine; Build = [string]$version.Build } | ConvertTo-Json -Compress
} catch {
    [pscustomobject]@{ Success = $false; Error = $_.Exception.Message } | ConvertTo-Json -Compress
}
"""

NETWORK_SCRIPT = """\
$proxy = [System.Net.WebRequest]::DefaultWebProxy
$address = 'None'
if ($proxy) {
    $uri = $proxy.GetProxy([uri]'https://www.powershellgallery.com')
    if ($uri -and $uri.Host -ne 'www.powershellgallery.com') { $address = $uri.ToString() }
}
[pscustomobject]@{
    ProxyAddress = $address
    TLSProtocol = [System.Net.ServicePointManager]::SecurityProtocol.ToString()
} | ConvertTo-Json -Compress
"""


class ProbeError(RuntimeError):
    """Raised by a probe whose script could not run."""


@dataclass(slots=True)
class ProbeFindings:
    """Issues and details produced by one probe.

    Example:
        ```python
        findings = ProbeFindings(details={"Version": "7.4.1"})
        ```
    """

    issues: list[DiagnosticIssue] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)


class ProbeContext:
    """Shared runner access for one diagnostics run.

    The module inventory is fetched at most once per run.

    Example:
        ```python
        context = ProbeContext(gateway, ModuleResolver(), timeout_seconds=60)
        ```
    """

    def __init__(self, runner: ScriptRunner, resolver: ModuleResolver, timeout_seconds: float) -> None:
        """Bind the context to a runner.

        Example:
            ```python
            context = ProbeContext(gateway, resolver, 60)
            ```
        """
        self.runner = runner
        self.resolver = resolver
        self.timeout_seconds = timeout_seconds
        self._inventory: list[ModuleDescriptor] | None = None

    def record(self, script: str, what: str) -> Record:
        """Run a script that prints one JSON object and return it.

        Example:
            ```python
            record = context.record(VERSION_SCRIPT, "PowerShell version")
            ```
        """
        result = self.runner.execute(script, timeout_seconds=self.timeout_seconds)
        if not result.success:
            raise ProbeError(f"{what} check failed: {result.error}")
        record = result.first_record()
        if record is None:
            raise ProbeError(f"{what} check returned no data")
        return record

    def inventory(self) -> list[ModuleDescriptor]:
        """Return installed VMware modules, fetching them on first use.

        Example:
            ```python
            installed = context.inventory()
            ```
        """
        if self._inventory is None:
            result = self.runner.execute(INVENTORY_SCRIPT, timeout_seconds=self.timeout_seconds)
            try:
                self._inventory = parse_inventory(result)
            except ValueError as exc:
                raise ProbeError(str(exc)) from exc
        return self._inventory


def evaluate_execution_policy(policies: Mapping[str, str]) -> ProbeFindings:
    """Judge per-scope execution policies; at most one issue results.

    The Process scope is ignored because every runner process sets it to
    Bypass for itself.

    Example:
        ```python
        findings = evaluate_execution_policy({"CurrentUser": "Restricted", "LocalMachine": "Undefined"})
        ```
    """
    details: dict[str, Any] = {scope: policies.get(scope, "Undefined") for scope in POLICY_SCOPES}
    effective = "Undefined"
    source = ""
    for scope in POLICY_SCOPES:
        if scope == "Process":
            continue
        value = policies.get(scope, "Undefined") or "Undefined"
        if value != "Undefined":
            effective, source = value, scope
            break
    details["Effective"] = effective
    findings = ProbeFindings(details=details)
    if effective not in RESTRICTIVE_POLICIES:
        return findings

    if source in GROUP_POLICY_SCOPES:
        findings.issues.append(
            DiagnosticIssue(
                severity=Severity.CRITICAL,
                category="Execution Policy",
                description=f"Execution policy '{effective}' is enforced by Group Policy ({source})",
                recommendation="Ask a domain administrator to allow RemoteSigned scripts for this machine or user",
            )
        )
    else:
        where = f" at {source} scope" if source else ""
        findings.issues.append(
            DiagnosticIssue(
                severity=Severity.HIGH,
                category="Execution Policy",
                description=f"Execution policy is '{effective}'{where}, which prevents PowerCLI modules from loading",
                recommendation=f"Run '{POLICY_FIX}'",
                auto_fixable=True,
                fix_script=POLICY_FIX,
            )
        )
    return findings


def probe_execution_policy(context: ProbeContext) -> ProbeFindings:
    """Read execution policies at every scope.

    Example:
        ```python
        findings = probe_execution_policy(context)
        ```
    """
    record = context.record(POLICY_SCRIPT, "Execution policy")
    policies = {scope: record.get_str(scope).or_default("Undefined") for scope in POLICY_SCOPES}
    return evaluate_execution_policy(policies)


def probe_modules(context: ProbeContext) -> ProbeFindings:
    """Check that the mandatory core module is installed.

    Example:
        ```python
        findings = probe_modules(context)
        ```
    """
    installed = context.inventory()
    core_versions = sorted(
        {module.version for module in installed if module.name.lower() == CORE_MODULE.lower()},
        key=parse_version,
        reverse=True,
    )
    findings = ProbeFindings(details={"AvailableCount": len(installed), "CoreVersions": core_versions})
    if not core_versions:
        findings.issues.append(
            DiagnosticIssue(
                severity=Severity.CRITICAL,
                category="PowerCLI Modules",
                description=f"{CORE_MODULE} module is not installed",
                recommendation="Install the VMware PowerCLI modules for the current user",
                auto_fixable=True,
                fix_script=INSTALL_COMMAND,
            )
        )
    return findings


def probe_conflicts(context: ProbeContext) -> ProbeFindings:
    """Report modules with several installed versions and resolver drops.

    Example:
        ```python
        findings = probe_conflicts(context)
        ```
    """
    installed = context.inventory()
    versions: dict[str, set[str]] = {}
    names: dict[str, str] = {}
    for module in installed:
        versions.setdefault(module.name.lower(), set()).add(module.version)
        names.setdefault(module.name.lower(), module.name)
    findings = ProbeFindings()
    for key in sorted(versions):
        if len(versions[key]) < 2:
            continue
        listed = ", ".join(sorted(versions[key], key=parse_version, reverse=True))
        findings.issues.append(
            DiagnosticIssue(
                severity=Severity.MEDIUM,
                category="Module Conflicts",
                description=f"Module '{names[key]}' has {len(versions[key])} versions installed ({listed})",
                recommendation="Remove older versions or rely on version-specific imports",
            )
        )
    plan = context.resolver.resolve(installed)
    for name in plan.dropped:
        findings.issues.append(
            DiagnosticIssue(
                severity=Severity.HIGH,
                category="Module Conflicts",
                description=f"No installed version of {name} is compatible with {context.resolver.anchor}",
                recommendation=REINSTALL_COMMAND,
            )
        )
    findings.details["Notes"] = list(plan.notes)
    return findings


def probe_powershell_version(context: ProbeContext) -> ProbeFindings:
    """Check the interpreter version and edition.

    Example:
        ```python
        findings = probe_powershell_version(context)
        ```
    """
    record = context.record(VERSION_SCRIPT, "PowerShell version")
    text = record.get_str("Version").or_default("0")
    edition = record.get_str("Edition").or_default("Desktop") or "Desktop"
    version = parse_version(text)
    findings = ProbeFindings(details={"Version": text, "Edition": edition})
    if version < Version("5.1"):
        findings.issues.append(
            DiagnosticIssue(
                severity=Severity.HIGH,
                category="PowerShell Version",
                description=f"PowerShell {text} is too old for PowerCLI",
                recommendation="Install Windows PowerShell 5.1 or PowerShell 7.2 or later",
            )
        )
    elif edition == "Core" and version < Version("7.2"):
        findings.issues.append(
            DiagnosticIssue(
                severity=Severity.MEDIUM,
                category="PowerShell Version",
                description=f"PowerShell {text} (Core) may have compatibility issues with current PowerCLI releases",
                recommendation="Upgrade to PowerShell 7.2 or later",
            )
        )
    return findings


def probe_functionality(context: ProbeContext) -> ProbeFindings:
    """Import the core module and call `Get-PowerCLIVersion`.

    Example:
        ```python
        findings = probe_functionality(context)
        ```
    """
    record = context.record(SMOKE_SCRIPT, "PowerCLI functionality")
    if record.get_bool("Success").or_default(False):
        return ProbeFindings(
            details={
                "Status": "Success",
                "Version": record.get_str("Version").or_default("Unknown"),
                "Build": record.get_str("Build").or_default(""),
            }
        )
    error = record.get_str("Error").or_default("unknown error")
    return ProbeFindings(
        issues=[
            DiagnosticIssue(
                severity=Severity.CRITICAL,
                category="PowerCLI Functionality",
                description=f"PowerCLI basic functionality test failed: {error}",
                recommendation="Reinstall PowerCLI or check module integrity",
            )
        ],
        details={"Status": "Failed"},
    )


def probe_network(context: ProbeContext) -> ProbeFindings:
    """Record proxy and TLS settings.

    Example:
        ```python
        findings = probe_network(context)
        ```
    """
    record = context.record(NETWORK_SCRIPT, "Network settings")
    tls = record.get_str("TLSProtocol").or_default("Unknown")
    findings = ProbeFindings(details={"Proxy": record.get_str("ProxyAddress").or_default("Unknown"), "TLS": tls})
    if "tls12" not in tls.lower() and "tls13" not in tls.lower() and "systemdefault" not in tls.lower():
        findings.issues.append(
            DiagnosticIssue(
                severity=Severity.LOW,
                category="Network Settings",
                description=f"TLS 1.2 is not enabled for .NET connections ({tls})",
                recommendation="Enable TLS 1.2 with [Net.ServicePointManager]::SecurityProtocol or the SchUseStrongCrypto registry setting",
            )
        )
    return findings


@dataclass(frozen=True, slots=True)
class Probe:
    """A named probe with the severity used when it cannot run.

    Example:
        ```python
        probe = Probe("Network Settings", probe_network, Severity.LOW)
        ```
    """

    category: str
    check: Callable[[ProbeContext], ProbeFindings]
    failure_severity: Severity


DEFAULT_PROBES = (
    Probe("Execution Policy", probe_execution_policy, Severity.MEDIUM),
    Probe("PowerCLI Modules", probe_modules, Severity.HIGH),
    Probe("Module Conflicts", probe_conflicts, Severity.LOW),
    Probe("PowerShell Version", probe_powershell_version, Severity.LOW),
    Probe("PowerCLI Functionality", probe_functionality, Severity.HIGH),
    Probe("Network Settings", probe_network, Severity.LOW),
)
