from __future__ import annotations

import argparse
import logging
import os
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from powercli_runner import DiagnosticsEngine, ExecutionResult, FailureKind, RunnerSettings, ScriptGateway, SessionManager
from powercli_runner.diagnostics import DiagnosticReport, RepairReport, Severity
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich_argparse import RawTextRichHelpFormatter

_CONSOLE = Console(no_color=False)

_SEVERITY_STYLES = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "cyan",
}

EXIT_TIMEOUT = 124


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m pcr")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_help()
        raise SystemExit(2)


def build_parser() -> argparse.ArgumentParser:
    """Build the `pcr` command line parser.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m pcr",
        description=(
            "powercli-runner CLI\n"
            "Run PowerShell and PowerCLI scripts through the execution gateway,\n"
            "inspect installed VMware modules and diagnose the local environment."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m pcr run inventory.ps1 --param Cluster=prod --timeout 120\n"
            "  python -m pcr --mode embedded run report.ps1\n"
            "  python -m pcr modules\n"
            "  python -m pcr diagnose\n"
            "  python -m pcr repair\n"
            "  PCR_PASSWORD=... python -m pcr test-connection vc01.lab --user administrator@vsphere.local"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Path to a settings TOML file with a [runner] table.\n"
            "Missing keys use the bundled defaults."
        ),
    )
    parser.add_argument(
        "--mode",
        choices=["both", "external", "embedded"],
        help="Override the execution mode (default from settings: both).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show debug logging on stderr.",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Run a PowerShell script file.",
        description=(
            "Run a script file through the gateway.\n"
            "Parameters become PowerShell variables assigned before the script."
        ),
        epilog=(
            "Examples:\n"
            "  python -m pcr run hosts.ps1\n"
            "  python -m pcr run vm.ps1 --param Name=web01 --param Datacenter=dc1 --timeout 60"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    run_cmd.add_argument("file", help="Script file to run.")
    run_cmd.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Script parameter; repeat for several (values are strings).",
    )
    run_cmd.add_argument(
        "--timeout",
        type=float,
        help="Timeout in seconds (default from settings: 300).",
    )
    run_cmd.add_argument(
        "--embedded",
        action="store_true",
        help="Force the embedded interpreter pool for this run.",
    )

    sub.add_parser(
        "modules",
        help="Show installed VMware PowerCLI modules.",
        description="List installed VMware modules and check version compatibility.",
        formatter_class=_HELP_FORMATTER,
    )
    sub.add_parser(
        "diagnose",
        help="Run environment diagnostics.",
        description=(
            "Check execution policy, module presence and conflicts,\n"
            "PowerShell version, PowerCLI functionality and network settings."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    sub.add_parser(
        "repair",
        help="Diagnose and apply automatic fixes.",
        description="Run diagnostics, then apply the fix of every auto-fixable issue.",
        formatter_class=_HELP_FORMATTER,
    )

    test_cmd = sub.add_parser(
        "test-connection",
        help="Connect to a server, read its version and disconnect.",
        description=(
            "Open a session, report server details and close it.\n"
            "The password is read from PCR_PASSWORD when --password is omitted."
        ),
        epilog=(
            "Example:\n"
            "  python -m pcr test-connection https://vc01.lab --user administrator@vsphere.local"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    test_cmd.add_argument("server", help="Server address or URL.")
    test_cmd.add_argument("--user", required=True, help="User name.")
    test_cmd.add_argument("--password", help="Password (prefer PCR_PASSWORD).")
    test_cmd.add_argument("--timeout", type=float, help="Connect timeout in seconds.")
    return parser


def _configure_logging(verbose: bool) -> None:
    """Route library logging through Rich on stderr.

    Example:
        ```python
        _configure_logging(verbose=True)
        ```
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def build_settings(args: argparse.Namespace) -> RunnerSettings:
    """Load settings and apply global CLI overrides.

    Example:
        ```python
        settings = build_settings(args)
        ```
    """
    settings = RunnerSettings.from_file(args.config) if args.config else RunnerSettings()
    return settings.with_overrides(mode=args.mode)


def _parse_params(values: list[str]) -> dict[str, Any]:
    """Parse repeated NAME=VALUE options.

    Example:
        ```python
        params = _parse_params(["Name=web01"])
        ```
    """
    params: dict[str, Any] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Invalid --param '{item}', expected NAME=VALUE")
        params[name.strip()] = value
    return params


def _print_result(result: ExecutionResult) -> int:
    """Render an execution result and return the process exit code.

    Example:
        ```python
        code = _print_result(result)
        ```
    """
    if result.output.strip():
        _CONSOLE.print(result.output.rstrip(), markup=False, highlight=False)
    for warning in result.warnings:
        _CONSOLE.print(f"[yellow]WARNING:[/yellow] {warning}")
    suffix = " (fallback)" if result.fell_back else ""
    footer = f"{result.backend or 'unknown'}{suffix} in {result.elapsed_seconds:.2f}s"
    if result.success:
        _CONSOLE.print(Panel.fit(f"Succeeded on {footer}", style="bold green"))
        return 0
    kind = result.failure.value if result.failure else "error"
    _CONSOLE.print(
        Panel.fit(result.error or "Script failed", title=f"Failed ({kind}) on {footer}", border_style="red")
    )
    return EXIT_TIMEOUT if result.failure is FailureKind.TIMEOUT else 1


def _print_diagnostics(report: DiagnosticReport) -> None:
    """Render diagnostic issues and details.

    Example:
        ```python
        _print_diagnostics(report)
        ```
    """
    table = Table(title=f"Diagnostics: {report.status}")
    table.add_column("Severity")
    table.add_column("Category", style="magenta")
    table.add_column("Description")
    table.add_column("Recommendation")
    table.add_column("Auto-fix")
    for issue in report.issues:
        style = _SEVERITY_STYLES[issue.severity]
        table.add_row(
            f"[{style}]{issue.severity.name}[/{style}]",
            issue.category,
            issue.description,
            issue.recommendation,
            "yes" if issue.auto_fixable else "no",
        )
    _CONSOLE.print(table)
    if report.details:
        _CONSOLE.print(Panel.fit(Pretty(report.details), title="Details", border_style="cyan"))


def _print_repair(report: RepairReport) -> None:
    """Render repair outcomes.

    Example:
        ```python
        _print_repair(report)
        ```
    """
    if not report.outcomes:
        _CONSOLE.print(Panel.fit("No auto-fixable issues found.", style="bold yellow"))
        return
    table = Table(title="Repair")
    table.add_column("Category", style="magenta")
    table.add_column("Result")
    table.add_column("Message")
    for outcome in report.outcomes:
        status = "[green]fixed[/green]" if outcome.success else "[red]failed[/red]"
        table.add_row(outcome.issue.category, status, outcome.message)
    _CONSOLE.print(table)
    if report.skipped:
        _CONSOLE.print(f"{len(report.skipped)} issue(s) need manual action.")


def _cmd_modules(gateway: ScriptGateway) -> int:
    """Show installed VMware modules.

    Example:
        ```python
        code = _cmd_modules(gateway)
        ```
    """
    info = gateway.module_versions()
    table = Table(title="VMware Modules")
    table.add_column("Name", style="cyan")
    table.add_column("Version", style="magenta")
    table.add_column("Path")
    for module in info.modules:
        table.add_row(module.name, module.version, module.path)
    _CONSOLE.print(table)
    if not info.installed:
        _CONSOLE.print(Panel.fit(info.message or "VMware PowerCLI is not installed", style="bold red"))
        return 1
    style = "bold green" if info.compatible else "bold yellow"
    title = f"PowerCLI {info.version}: {'compatible' if info.compatible else 'conflicts found'}"
    _CONSOLE.print(Panel.fit(info.message, title=title, style=style))
    return 0 if info.compatible else 1


def _cmd_test_connection(args: argparse.Namespace, gateway: ScriptGateway, settings: RunnerSettings) -> int:
    """Run a connect-probe-disconnect round trip.

    Example:
        ```python
        code = _cmd_test_connection(args, gateway, settings)
        ```
    """
    password = args.password if args.password is not None else os.environ.get("PCR_PASSWORD", "")
    manager = SessionManager(gateway, settings)
    outcome = manager.test_connection(args.server, args.user, password, args.timeout)
    table = Table(title=f"Connection test: {args.server}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Success", "[green]yes[/green]" if outcome.success else "[red]no[/red]")
    table.add_row("Response time", f"{outcome.response_seconds:.2f}s")
    table.add_row("Secure", "yes" if outcome.secure else "no")
    if outcome.success:
        table.add_row("Server version", outcome.server_version)
        table.add_row("Server build", outcome.server_build)
        table.add_row("API version", outcome.api_version)
    else:
        table.add_row("Error", outcome.error_message)
        table.add_row("Error kind", outcome.error_kind.value if outcome.error_kind else "unknown")
    _CONSOLE.print(table)
    return 0 if outcome.success else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `pcr` CLI command handler.

    Example:
        ```python
        code = main(["diagnose"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    _configure_logging(args.verbose)
    try:
        settings = build_settings(args)
    except ValueError as exc:
        parser.error(str(exc))

    if args.command == "test-connection" and args.password is None and not os.environ.get("PCR_PASSWORD"):
        parser.error("test-connection needs --password or the PCR_PASSWORD environment variable")

    gateway = ScriptGateway(settings)
    try:
        if args.command == "run":
            path = Path(args.file)
            if not path.is_file():
                _CONSOLE.print(Panel.fit(f"Script file not found: {args.file}", style="bold red"))
                return 1
            try:
                params = _parse_params(args.param)
            except ValueError as exc:
                parser.error(str(exc))
            if args.embedded:
                gateway.force_embedded()
            script = path.read_text(encoding="utf-8-sig")
            try:
                result = gateway.execute(script, params, timeout_seconds=args.timeout)
            except ValueError as exc:
                parser.error(str(exc))
            return _print_result(result)
        if args.command == "modules":
            return _cmd_modules(gateway)
        if args.command == "diagnose":
            report = DiagnosticsEngine(gateway, gateway.resolver).run()
            _print_diagnostics(report)
            return 0 if report.healthy else 1
        if args.command == "repair":
            engine = DiagnosticsEngine(gateway, gateway.resolver)
            report = engine.run()
            _print_diagnostics(report)
            repaired = engine.repair(report.issues)
            _print_repair(repaired)
            return 0 if repaired.success else 1
        if args.command == "test-connection":
            return _cmd_test_connection(args, gateway, settings)
    finally:
        gateway.close()

    parser.error("Unhandled command")
    return 2
