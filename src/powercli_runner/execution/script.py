from __future__ import annotations

import math
import re
from typing import Any, Mapping

_PARAMETER_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

STRICT_PREAMBLE = "$ErrorActionPreference = 'Stop'"

VENDOR_PREAMBLE = """\
try {
    Import-Module VMware.VimAutomation.Core -ErrorAction Stop
    Import-Module VMware.VimAutomation.Common -ErrorAction SilentlyContinue
    Import-Module VMware.VimAutomation.Vds -ErrorAction SilentlyContinue
    Import-Module VMware.VimAutomation.Storage -ErrorAction SilentlyContinue
    Set-PowerCLIConfiguration -InvalidCertificateAction Ignore -DefaultVIServerMode Multiple -Scope Session -Confirm:$false -ErrorAction SilentlyContinue | Out-Null
} catch {
    Write-Error "Failed to import PowerCLI modules: $($_.Exception.Message)"
    exit 1
}
"""


def quote_literal(value: str) -> str:
    """Return a PowerShell single-quoted string literal.

    Example:
        ```python
        assert quote_literal("it's") == "'it''s'"
        ```
    """
    escaped = value.replace("'", "''")
    # Typographic single quotes also terminate PowerShell literals.
    for quote in ("‘", "’", "‚", "‛"):
        escaped = escaped.replace(quote, quote * 2)
    return f"'{escaped}'"


def to_literal(value: Any) -> str:
    """Convert a Python value into a PowerShell expression.

    Example:
        ```python
        assert to_literal(True) == "$true"
        assert to_literal(["a", 1]) == "@('a', 1)"
        ```
    """
    if value is None:
        return "$null"
    if isinstance(value, bool):
        return "$true" if value else "$false"
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return "[double]::NaN"
        return "[double]::PositiveInfinity" if value > 0 else "[double]::NegativeInfinity"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return quote_literal(value)
    if isinstance(value, Mapping):
        items = "; ".join(f"{quote_literal(str(key))} = {to_literal(item)}" for key, item in value.items())
        return f"[ordered]@{{{items}}}"
    if isinstance(value, (list, tuple, set, frozenset)):
        return "@(" + ", ".join(to_literal(item) for item in value) + ")"
    return quote_literal(str(value))


def validate_parameters(parameters: Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate parameter names and return a plain dict copy.

    Example:
        ```python
        params = validate_parameters({"ServerUrl": "vc01.lab"})
        ```
    """
    if not parameters:
        return {}
    normalized: dict[str, Any] = {}
    for name, value in parameters.items():
        key = str(name)
        if not _PARAMETER_NAME.match(key):
            raise ValueError(f"Invalid parameter name: {key!r}")
        normalized[key] = value
    return normalized


def render_script(
    script: str,
    parameters: Mapping[str, Any] | None = None,
    *,
    strict: bool = True,
) -> str:
    """Prefix a script with its parameter assignments.

    Example:
        ```python
        text = render_script("Get-VMHost -Name $HostName", {"HostName": "esx01"})
        ```
    """
    lines: list[str] = []
    if strict:
        lines.append(STRICT_PREAMBLE)
        lines.append("")
    assignments = validate_parameters(parameters)
    for name, value in assignments.items():
        lines.append(f"${name} = {to_literal(value)}")
    if assignments:
        lines.append("")
    lines.append(script)
    return "\n".join(lines) + "\n"


def wrap_vendor_command(command: str) -> str:
    """Wrap a PowerCLI command with the module import preamble.

    Example:
        ```python
        script = wrap_vendor_command("Get-Cluster | Select-Object Name")
        ```
    """
    return (
        VENDOR_PREAMBLE
        + "try {\n"
        + command
        + "\n} catch {\n"
        + '    Write-Error "PowerCLI command failed: $($_.Exception.Message)"\n'
        + "    exit 1\n"
        + "}\n"
    )
