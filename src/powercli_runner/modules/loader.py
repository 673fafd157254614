from __future__ import annotations

import logging
from dataclasses import dataclass

from ..execution.records import Record
from ..execution.script import quote_literal
from ..execution.types import ExecutionResult
from .resolver import ModuleDescriptor, ModuleLoadPlan, ModuleResolver

logger = logging.getLogger(__name__)

INSTALL_COMMAND = "Install-Module VMware.PowerCLI -Scope CurrentUser -AllowClobber -Force"
REINSTALL_COMMAND = "Uninstall-Module VMware.PowerCLI -AllVersions -Force; " + INSTALL_COMMAND

_LOAD_PRELUDE = """\
$ErrorActionPreference = 'Continue'
$pcrLoaded = New-Object System.Collections.Generic.List[object]
$pcrFailures = New-Object System.Collections.Generic.List[string]
$pcrMeta = $false

function Import-PcrModule([string]$Name, [string]$Version, [string]$Path, [bool]$Mandatory) {
    try {
        Import-Module -Name $Name -RequiredVersion $Version -Force -ErrorAction Stop -WarningAction SilentlyContinue
        return 'version'
    } catch {
        $pcrFailures.Add("$Name ${Version}: import by version failed: $($_.Exception.Message)")
    }
    if (-not $Path) { return $null }
    try {
        Import-Module -Name $Path -Force -ErrorAction Stop -WarningAction SilentlyContinue
        return 'path'
    } catch {
        $pcrFailures.Add("$Name ${Version}: import by path failed: $($_.Exception.Message)")
    }
    if (-not $Mandatory) { return $null }
    try {
        $dir = Split-Path -Parent $Path
        Get-ChildItem -Path $dir -Filter '*.dll' -ErrorAction SilentlyContinue | ForEach-Object {
            try { Add-Type -Path $_.FullName -ErrorAction Stop } catch { }
        }
        Import-Module -Name $Path -Force -ErrorAction Stop -WarningAction SilentlyContinue
        return 'assemblies'
    } catch {
        $pcrFailures.Add("$Name ${Version}: import after loading assemblies failed: $($_.Exception.Message)")
    }
    return $null
}

function Add-PcrLoaded([string]$Name, [string]$Version, [string]$Path, [string]$Strategy) {
    $pcrLoaded.Add([pscustomobject]@{ Name = $Name; Version = $Version; Path = $Path; Strategy = $Strategy })
}
"""

_LOAD_REPORT = """\
[pscustomobject]@{
    MetaModule = [bool]$pcrMeta
    Loaded = $pcrLoaded.ToArray()
    Failures = $pcrFailures.ToArray()
} | ConvertTo-Json -Compress -Depth 4
"""


@dataclass(frozen=True, slots=True)
class ModuleLoadOutcome:
    """What a load script managed to import.

    Example:
        ```python
        outcome = ModuleLoadOutcome(loaded=(core,), failures=(), success=True)
        ```
    """

    loaded: tuple[ModuleDescriptor, ...] = ()
    failures: tuple[str, ...] = ()
    success: bool = False
    recommended_action: str = ""
    meta_module: bool = False

    @property
    def loaded_names(self) -> list[str]:
        """Return names of imported modules.

        Example:
            ```python
            names = outcome.loaded_names
            ```
        """
        return [module.name for module in self.loaded]


class ModuleLoader:
    """Render load scripts for a plan and judge their reports.

    Example:
        ```python
        loader = ModuleLoader(resolver)
        script = loader.script(plan)
        ```
    """

    def __init__(self, resolver: ModuleResolver) -> None:
        """Bind the loader to a resolver's mandatory module set.

        Example:
            ```python
            loader = ModuleLoader(ModuleResolver())
            ```
        """
        self._resolver = resolver

    def script(self, plan: ModuleLoadPlan) -> str:
        """Render the PowerShell that imports `plan` and reports the result.

        Example:
            ```python
            text = loader.script(plan)
            ```
        """
        lines = [_LOAD_PRELUDE]
        per_module: list[str] = []
        for module in plan.modules:
            mandatory = "$true" if self._resolver.is_mandatory(module.name) else "$false"
            name = quote_literal(module.name)
            version = quote_literal(module.version)
            path = quote_literal(module.path)
            per_module.append(
                f"$strategy = Import-PcrModule -Name {name} -Version {version} -Path {path} -Mandatory {mandatory}\n"
                f"if ($strategy) {{ Add-PcrLoaded {name} {version} {path} $strategy }}"
            )

        if plan.meta_module is not None:
            meta = plan.meta_module
            lines.append(
                "try {\n"
                f"    Import-Module -Name {quote_literal(meta.name)} -RequiredVersion {quote_literal(meta.version)} "
                "-Force -ErrorAction Stop -WarningAction SilentlyContinue\n"
                "    $pcrMeta = $true\n"
                "    Get-Module -Name 'VMware.*' | ForEach-Object {\n"
                "        Add-PcrLoaded $_.Name $_.Version.ToString() $_.Path 'meta'\n"
                "    }\n"
                "} catch {\n"
                f"    $pcrFailures.Add(\"{meta.name} {meta.version}: meta-module import failed: $($_.Exception.Message)\")\n"
                "}"
            )
            if per_module:
                lines.append("if (-not $pcrMeta) {\n" + _indent("\n".join(per_module)) + "\n}")
        else:
            lines.extend(per_module)
        lines.append(_LOAD_REPORT)
        return "\n".join(lines)

    def evaluate(self, result: ExecutionResult, plan: ModuleLoadPlan) -> ModuleLoadOutcome:
        """Turn a load script result into a `ModuleLoadOutcome`.

        Example:
            ```python
            outcome = loader.evaluate(result, plan)
            ```
        """
        if plan.empty:
            return ModuleLoadOutcome(
                failures=("No VMware PowerCLI modules are installed",),
                recommended_action=INSTALL_COMMAND,
            )
        record = result.first_record()
        if record is None:
            message = result.error.strip() or "Module load script returned no report"
            return ModuleLoadOutcome(failures=(message,), recommended_action=REINSTALL_COMMAND)

        loaded: list[ModuleDescriptor] = []
        for item in record.get_list("Loaded").or_default([]):
            if not isinstance(item, dict):
                continue
            entry = Record(item)
            name = entry.get_str("Name")
            if not name.ok:
                continue
            loaded.append(
                ModuleDescriptor(
                    name=name.value,
                    version=entry.get_str("Version").or_default(""),
                    path=entry.get_str("Path").or_default(""),
                    loaded=True,
                )
            )
        failures = tuple(str(item) for item in record.get_list("Failures").or_default([]) if item)
        for failure in failures:
            logger.debug("Module load attempt failed: %s", failure)

        success = any(self._resolver.is_mandatory(module.name) for module in loaded)
        if not success:
            action = REINSTALL_COMMAND
        elif failures or plan.dropped:
            action = "Optional modules could not be loaded; some cmdlets may be unavailable"
        else:
            action = ""
        return ModuleLoadOutcome(
            loaded=tuple(loaded),
            failures=failures,
            success=success,
            recommended_action=action,
            meta_module=record.get_bool("MetaModule").or_default(False),
        )


def _indent(text: str, prefix: str = "    ") -> str:
    """Indent every line of `text`.

    Example:
        ```python
        assert _indent("a") == "    a"
        ```
    """
    return "\n".join(prefix + line if line else line for line in text.splitlines())
