from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any


class ExecutionMode(str, Enum):
    """Backend selection policy for the gateway.

    Example:
        ```python
        mode = ExecutionMode("both")
        ```
    """

    BOTH = "both"
    EXTERNAL = "external"
    EMBEDDED = "embedded"


def _default_settings_path() -> Path:
    """Return bundled default settings TOML path.

    Example:
        ```python
        path = _default_settings_path()
        ```
    """
    return Path(__file__).with_name("default_settings.toml")


def _read_settings_toml(path: Path) -> dict[str, Any]:
    """Read settings TOML and return the `[runner]` table.

    Example:
        ```python
        raw = _read_settings_toml(Path("/etc/pcr/settings.toml"))
        ```
    """
    if not path.exists():
        return {}
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    table = raw.get("runner", raw)
    if not isinstance(table, dict):
        raise ValueError("Settings config must be a TOML table")
    return table


def _positive(value: Any, field_name: str) -> float:
    """Validate a positive number setting.

    Example:
        ```python
        seconds = _positive(300, "default_timeout_seconds")
        ```
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{field_name}' must be a number")
    if value <= 0:
        raise ValueError(f"'{field_name}' must be positive")
    return value


_DEFAULT_SETTINGS_RAW = _read_settings_toml(_default_settings_path())


@dataclass(frozen=True, slots=True)
class RunnerSettings:
    """Configuration for backends, sessions and diagnostics.

    Example:
        ```python
        settings = RunnerSettings(mode=ExecutionMode.EMBEDDED, pool_capacity=3)
        ```
    """

    mode: ExecutionMode = ExecutionMode(_DEFAULT_SETTINGS_RAW.get("mode", "both"))
    pool_capacity: int = int(_DEFAULT_SETTINGS_RAW.get("pool_capacity", 5))
    default_timeout_seconds: float = float(_DEFAULT_SETTINGS_RAW.get("default_timeout_seconds", 300))
    inherit_environment: bool = bool(_DEFAULT_SETTINGS_RAW.get("inherit_environment", True))
    pinned_module_version: str | None = _DEFAULT_SETTINGS_RAW.get("pinned_module_version") or None
    executable: str | None = _DEFAULT_SETTINGS_RAW.get("executable") or None
    connect_timeout_seconds: float = float(_DEFAULT_SETTINGS_RAW.get("connect_timeout_seconds", 60))
    logout_timeout_seconds: float = float(_DEFAULT_SETTINGS_RAW.get("logout_timeout_seconds", 10))
    shutdown_grace_seconds: float = float(_DEFAULT_SETTINGS_RAW.get("shutdown_grace_seconds", 5))
    kill_grace_seconds: float = float(_DEFAULT_SETTINGS_RAW.get("kill_grace_seconds", 5))
    init_timeout_seconds: float = float(_DEFAULT_SETTINGS_RAW.get("init_timeout_seconds", 120))
    host_max_runs: int = int(_DEFAULT_SETTINGS_RAW.get("host_max_runs", 200))
    host_ttl_seconds: float = float(_DEFAULT_SETTINGS_RAW.get("host_ttl_seconds", 3600))
    require_vendor_modules: bool = bool(_DEFAULT_SETTINGS_RAW.get("require_vendor_modules", True))
    ignore_invalid_certificates: bool = bool(_DEFAULT_SETTINGS_RAW.get("ignore_invalid_certificates", True))

    def __post_init__(self) -> None:
        """Validate mode and numeric limits after initialization.

        Example:
            ```python
            RunnerSettings(pool_capacity=0)  # raises ValueError
            ```
        """
        if not isinstance(self.mode, ExecutionMode):
            try:
                object.__setattr__(self, "mode", ExecutionMode(str(self.mode)))
            except ValueError:
                raise ValueError("mode must be 'both', 'external' or 'embedded'") from None
        for name in (
            "pool_capacity",
            "default_timeout_seconds",
            "connect_timeout_seconds",
            "logout_timeout_seconds",
            "shutdown_grace_seconds",
            "kill_grace_seconds",
            "init_timeout_seconds",
            "host_max_runs",
            "host_ttl_seconds",
        ):
            _positive(getattr(self, name), name)
        if int(self.pool_capacity) != self.pool_capacity:
            raise ValueError("'pool_capacity' must be an integer")

    @classmethod
    def from_file(cls, config_path: str) -> "RunnerSettings":
        """Create settings from a TOML file, defaulting missing keys.

        Example:
            ```python
            settings = RunnerSettings.from_file("/etc/pcr/settings.toml")
            ```
        """
        path = Path(config_path)
        if not path.exists():
            raise ValueError(f"Settings file not found: {config_path}")
        raw = _read_settings_toml(path)
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(unknown)}")
        return cls(**raw)

    def with_overrides(self, **changes: Any) -> "RunnerSettings":
        """Return a copy with the given non-None fields replaced.

        Example:
            ```python
            settings = RunnerSettings().with_overrides(mode="embedded")
            ```
        """
        present = {key: value for key, value in changes.items() if value is not None}
        return replace(self, **present) if present else self
