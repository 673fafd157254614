import json
import threading
import time
from typing import Any, Mapping

from powercli_runner import RunnerSettings
from powercli_runner.execution import CancellationToken, CancelScope, ExecutionRequest, FailureKind, HostError, HostReply, InitState, PooledEngine
from powercli_runner.execution.host import HostCancelled
from powercli_runner.execution.pooled_engine import GENERIC_SMOKE_SCRIPT, POLICY_SCRIPT, VENDOR_SMOKE_SCRIPT
from powercli_runner.modules import INVENTORY_SCRIPT

_INSTALLED = [
    {"Name": "VMware.VimAutomation.Core", "Version": "13.2.0", "Path": "/m/Core/13.2.0/Core.psd1"},
    {"Name": "VMware.VimAutomation.Common", "Version": "13.2.0", "Path": "/m/Common/13.2.0/Common.psd1"},
]


class _ScriptedHost:
    def __init__(self, farm: "_HostFarm", index: int = 0) -> None:
        self.farm = farm
        self.index = index
        self.alive = True
        self.scripts: list[str] = []

    def invoke(self, script: str, parameters: Mapping[str, Any], scope: CancelScope) -> HostReply:
        self.scripts.append(script)
        self.farm.record(script)
        if script == POLICY_SCRIPT and self.farm.hang_from is not None and self.index >= self.farm.hang_from:
            script = "hang"
        if script == INVENTORY_SCRIPT:
            return HostReply(request_id=1, output=[json.dumps(self.farm.installed)])
        if "Import-PcrModule" in script:
            loaded = [item for item in self.farm.installed if self.farm.loads]
            report = {"MetaModule": False, "Loaded": loaded, "Failures": [] if loaded else ["Core: not found"]}
            return HostReply(request_id=1, output=[json.dumps(report)])
        if script == "hang":
            while scope.sleep(0.01) is None:
                pass
            self.kill()
            raise HostCancelled(scope.reason(), scope.describe())
        if script == "broken":
            raise HostError("pipe closed")
        if script == "fail":
            return HostReply(request_id=1, errors=["Get-VM: not found"], had_errors=True)
        return HostReply(request_id=1, output=[f"ran {script}"])

    def kill(self) -> None:
        self.alive = False

    def close(self, grace_seconds: float | None = None) -> None:
        self.alive = False


class _HostFarm:
    def __init__(
        self, installed: list[dict[str, str]] | None = None, loads: bool = True, hang_from: int | None = None
    ) -> None:
        self.hang_from = hang_from
        self.installed = _INSTALLED if installed is None else installed
        self.loads = loads
        self.hosts: list[_ScriptedHost] = []
        self.counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def record(self, script: str) -> None:
        key = "load" if "Import-PcrModule" in script else script
        with self._lock:
            self.counts[key] = self.counts.get(key, 0) + 1

    def __call__(self) -> _ScriptedHost:
        with self._lock:
            host = _ScriptedHost(self, len(self.hosts))
            self.hosts.append(host)
        return host


def _engine(farm: _HostFarm, **settings: Any) -> PooledEngine:
    return PooledEngine(RunnerSettings(**settings), host_factory=farm)


def _request(script: str, timeout: float = 10) -> ExecutionRequest:
    return ExecutionRequest(script=script, parameters={}, scope=CancelScope(timeout))


def test_bootstrap_runs_policy_inventory_load_and_smoke_in_order() -> None:
    farm = _HostFarm()
    engine = _engine(farm)

    assert engine.initialize() is True

    first = farm.hosts[0]
    assert first.scripts[0] == POLICY_SCRIPT
    assert first.scripts[1] == INVENTORY_SCRIPT
    assert "Import-PcrModule" in first.scripts[2]
    assert first.scripts[3] == VENDOR_SMOKE_SCRIPT
    assert engine.state is InitState.READY
    assert engine.load_plan.names == ["VMware.VimAutomation.Common", "VMware.VimAutomation.Core"]
    assert engine.load_outcome.success
    assert engine.pool.size == 1


def test_initialization_happens_once_under_concurrency() -> None:
    farm = _HostFarm()
    engine = _engine(farm, pool_capacity=3)
    results = []
    lock = threading.Lock()

    def call() -> None:
        result = engine.execute(_request("Get-VM"))
        with lock:
            results.append(result)

    threads = [threading.Thread(target=call) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(results) == 8
    assert all(result.success for result in results)
    assert farm.counts[INVENTORY_SCRIPT] == 1
    assert len(farm.hosts) <= 3
    assert all(result.output == "ran Get-VM" for result in results)


def test_new_pool_hosts_replay_policy_and_module_load() -> None:
    farm = _HostFarm()
    engine = _engine(farm, pool_capacity=2)
    engine.initialize()

    spare = engine.spawn_host()

    assert spare.scripts[0] == POLICY_SCRIPT
    assert "Import-PcrModule" in spare.scripts[1]
    assert INVENTORY_SCRIPT not in spare.scripts


def test_initialization_failure_is_permanent() -> None:
    calls = []

    def factory() -> _ScriptedHost:
        calls.append(1)
        raise HostError("PowerShell executable not found: pwsh")

    engine = PooledEngine(RunnerSettings(), host_factory=factory)

    first = engine.execute(_request("Get-VM"))
    second = engine.execute(_request("Get-VM"))

    assert first.failure is FailureKind.MECHANISM
    assert "initialization failed" in first.error
    assert second.failure is FailureKind.MECHANISM
    assert engine.state is InitState.UNAVAILABLE
    assert len(calls) == 1


def test_missing_modules_make_engine_unavailable_when_required() -> None:
    farm = _HostFarm(installed=[])
    engine = _engine(farm)

    assert engine.initialize() is False
    assert "VMware PowerCLI modules could not be loaded" in engine.init_error
    assert not farm.hosts[0].alive


def test_missing_modules_tolerated_when_not_required() -> None:
    farm = _HostFarm(installed=[])
    engine = _engine(farm, require_vendor_modules=False)

    assert engine.initialize() is True
    assert farm.hosts[0].scripts[-1] == GENERIC_SMOKE_SCRIPT
    assert engine.execute(_request("Get-Date")).success


def test_script_errors_keep_host_in_pool() -> None:
    farm = _HostFarm()
    engine = _engine(farm)

    result = engine.execute(_request("fail"))

    assert result.failure is FailureKind.SCRIPT
    assert result.error == "Get-VM: not found"
    assert engine.pool.size == 1


def test_timeout_discards_host_and_pool_recovers() -> None:
    farm = _HostFarm()
    engine = _engine(farm, pool_capacity=1)

    result = engine.execute(_request("hang", timeout=0.2))

    assert result.failure is FailureKind.TIMEOUT
    assert engine.pool.size == 0
    assert engine.execute(_request("Get-VM")).success
    assert len(farm.hosts) == 2


def test_broken_host_is_a_mechanism_failure() -> None:
    farm = _HostFarm()
    engine = _engine(farm)

    result = engine.execute(_request("broken"))

    assert result.failure is FailureKind.MECHANISM
    assert "pipe closed" in result.error
    assert engine.pool.size == 0


def test_close_shuts_down_pool() -> None:
    farm = _HostFarm()
    engine = _engine(farm)
    engine.initialize()

    engine.close()

    assert not farm.hosts[0].alive
    assert engine.execute(_request("Get-VM")).failure is FailureKind.MECHANISM


def test_cold_start_respects_the_request_timeout() -> None:
    farm = _HostFarm(hang_from=0)
    engine = _engine(farm, init_timeout_seconds=3)
    started = time.monotonic()

    result = engine.execute(_request("Get-VM", timeout=0.3))

    assert time.monotonic() - started < 1.5
    assert result.failure is FailureKind.TIMEOUT
    assert "initialization timed out" in result.error
    assert engine.state is InitState.NOT_STARTED


def test_cold_start_respects_caller_cancellation() -> None:
    farm = _HostFarm(hang_from=0)
    engine = _engine(farm, init_timeout_seconds=3)
    token = CancellationToken()
    threading.Timer(0.2, token.cancel).start()

    result = engine.execute(ExecutionRequest(script="Get-VM", parameters={}, scope=CancelScope(10, token)))

    assert result.failure is FailureKind.CANCELLED
    assert "was cancelled" in result.error


def test_new_host_preparation_respects_the_request_timeout() -> None:
    farm = _HostFarm(hang_from=1)
    engine = _engine(farm, pool_capacity=2)
    assert engine.initialize() is True
    engine.pool.acquire(CancelScope(5))
    started = time.monotonic()

    result = engine.execute(_request("Get-VM", timeout=0.3))

    assert time.monotonic() - started < 1.5
    assert result.failure is FailureKind.TIMEOUT
    assert engine.pool.size == 1
    assert not farm.hosts[1].alive
