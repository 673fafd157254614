from pathlib import Path

import pytest

from powercli_runner import ExecutionMode, RunnerSettings


def test_defaults_come_from_bundled_toml() -> None:
    settings = RunnerSettings()
    assert settings.mode is ExecutionMode.BOTH
    assert settings.pool_capacity == 5
    assert settings.default_timeout_seconds == 300
    assert settings.inherit_environment is True
    assert settings.pinned_module_version is None
    assert settings.executable is None


def test_from_file_overrides_selected_keys(tmp_path: Path) -> None:
    config = tmp_path / "settings.toml"
    config.write_text('[runner]\nmode = "embedded"\npool_capacity = 2\n', encoding="utf-8")
    settings = RunnerSettings.from_file(str(config))
    assert settings.mode is ExecutionMode.EMBEDDED
    assert settings.pool_capacity == 2
    assert settings.connect_timeout_seconds == 60


def test_invalid_mode_is_rejected(tmp_path: Path) -> None:
    config = tmp_path / "settings.toml"
    config.write_text('[runner]\nmode = "sometimes"\n', encoding="utf-8")
    with pytest.raises(ValueError, match="mode"):
        RunnerSettings.from_file(str(config))


def test_non_positive_values_are_rejected() -> None:
    with pytest.raises(ValueError, match="pool_capacity"):
        RunnerSettings(pool_capacity=0)
    with pytest.raises(ValueError, match="default_timeout_seconds"):
        RunnerSettings(default_timeout_seconds=-1)


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    config = tmp_path / "settings.toml"
    config.write_text("[runner]\npool_size = 3\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unknown settings: pool_size"):
        RunnerSettings.from_file(str(config))


def test_missing_file_is_rejected() -> None:
    with pytest.raises(ValueError, match="not found"):
        RunnerSettings.from_file("/nonexistent/pcr.toml")


def test_with_overrides_ignores_none() -> None:
    settings = RunnerSettings()
    assert settings.with_overrides(mode=None) is settings
    assert settings.with_overrides(mode="external").mode is ExecutionMode.EXTERNAL
