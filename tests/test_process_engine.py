import os
import sys
import time
from typing import Any, Mapping

from powercli_runner.execution import CancellationToken, CancelScope, ExecutionRequest, FailureKind, ProcessEngine
from powercli_runner.execution.process_engine import PowerShellLauncher


class _PythonLauncher:
    suffix = ".py"

    def __init__(self) -> None:
        self.paths: list[str] = []

    def render(self, script: str, parameters: Mapping[str, Any]) -> str:
        lines = [f"{name} = {value!r}" for name, value in parameters.items()]
        lines.append(script)
        return "\n".join(lines) + "\n"

    def command(self, script_path: str) -> list[str]:
        self.paths.append(script_path)
        return [sys.executable, script_path]


def _request(script: str, timeout: float = 30, token: CancellationToken | None = None, **params: Any) -> ExecutionRequest:
    return ExecutionRequest(script=script, parameters=params, scope=CancelScope(timeout, token))


def test_success_captures_stdout_and_removes_script() -> None:
    launcher = _PythonLauncher()
    engine = ProcessEngine(launcher=launcher)

    result = engine.execute(_request("print('hello ' + Name)", Name="web01"))

    assert result.success is True
    assert result.output.strip() == "hello web01"
    assert result.error == ""
    assert result.backend == "external"
    assert result.elapsed_seconds > 0
    assert launcher.paths and not os.path.exists(launcher.paths[0])


def test_stderr_output_is_a_script_failure() -> None:
    engine = ProcessEngine(launcher=_PythonLauncher())

    result = engine.execute(_request("import sys\nprint('partial')\nsys.exit('boom')"))

    assert result.success is False
    assert result.failure is FailureKind.SCRIPT
    assert "boom" in result.error
    assert "partial" in result.output
    assert result.exit_code == 1


def test_nonzero_exit_without_stderr_reports_exit_code() -> None:
    engine = ProcessEngine(launcher=_PythonLauncher())

    result = engine.execute(_request("raise SystemExit(3)"))

    assert result.failure is FailureKind.SCRIPT
    assert result.error == "PowerShell exited with code 3"


def test_timeout_kills_process_within_margin() -> None:
    launcher = _PythonLauncher()
    engine = ProcessEngine(launcher=launcher, kill_grace_seconds=2)

    started = time.monotonic()
    result = engine.execute(_request("import time\ntime.sleep(30)", timeout=0.5))
    elapsed = time.monotonic() - started

    assert result.failure is FailureKind.TIMEOUT
    assert result.timed_out
    assert "timed out after 0.5 seconds" in result.error
    assert elapsed < 5
    assert not os.path.exists(launcher.paths[0])


def test_caller_cancel_is_reported_as_cancelled() -> None:
    token = CancellationToken()
    token.cancel()
    engine = ProcessEngine(launcher=_PythonLauncher())

    result = engine.execute(_request("print('never')", token=token))

    assert result.failure is FailureKind.CANCELLED
    assert result.error == "PowerShell execution was cancelled"


def test_missing_interpreter_is_a_mechanism_failure() -> None:
    engine = ProcessEngine(launcher=PowerShellLauncher(executable="/nonexistent/pwsh"))

    result = engine.execute(_request("Get-Date"))

    assert result.failure is FailureKind.MECHANISM
    assert "PowerShell executable not found" in result.error
    assert result.elapsed_seconds > 0


def test_non_inherited_environment_drops_custom_variables(monkeypatch) -> None:
    monkeypatch.setenv("PCR_TEST_SECRET", "visible")
    engine = ProcessEngine(launcher=_PythonLauncher(), inherit_environment=False)

    result = engine.execute(_request("import os\nprint(os.environ.get('PCR_TEST_SECRET', 'hidden'))"))

    assert result.output.strip() == "hidden"
