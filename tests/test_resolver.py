import json

import pytest

from powercli_runner.execution import ExecutionResult
from powercli_runner.modules import (
    INSTALL_COMMAND,
    ModuleDescriptor,
    ModuleLoader,
    ModuleLoadPlan,
    ModuleResolver,
    parse_inventory,
)
from powercli_runner.modules.resolver import parse_version

CORE = "VMware.VimAutomation.Core"
COMMON = "VMware.VimAutomation.Common"


def _installed(*pairs: tuple[str, str]) -> list[ModuleDescriptor]:
    return [ModuleDescriptor(name, version, f"/m/{name}/{version}/{name}.psd1") for name, version in pairs]


def test_parse_version_keeps_numeric_part() -> None:
    assert parse_version("13.2.0.22643732") > parse_version("12.7.0")
    assert parse_version("13.1.0-beta") == parse_version("13.1.0")
    assert str(parse_version("garbage")) == "0"


def test_compatibility_outranks_recency() -> None:
    plan = ModuleResolver().resolve(_installed((CORE, "12.7.0"), (COMMON, "13.2.0"), (COMMON, "12.7.0")))

    assert plan.version_of(CORE) == "12.7.0"
    assert plan.version_of(COMMON) == "12.7.0"
    assert plan.dropped == ()
    assert any("selected 12.7.0" in note for note in plan.notes)


def test_dependent_is_dropped_when_nothing_matches() -> None:
    plan = ModuleResolver().resolve(_installed((CORE, "13.2.0"), (COMMON, "12.7.0")))

    assert plan.names == [CORE]
    assert plan.dropped == (COMMON,)


def test_older_anchor_is_chosen_to_keep_the_pair() -> None:
    plan = ModuleResolver().resolve(_installed((CORE, "13.2.0"), (CORE, "12.7.0"), (COMMON, "12.7.0")))

    assert plan.version_of(CORE) == "12.7.0"
    assert plan.version_of(COMMON) == "12.7.0"
    assert plan.dropped == ()
    assert any("13.2.0 not loaded" in note for note in plan.notes)


def test_newest_compatible_anchor_wins() -> None:
    installed = _installed((CORE, "13.2.0"), (CORE, "12.7.0"), (CORE, "12.6.0"), (COMMON, "12.7.0"), (COMMON, "12.6.0"))

    plan = ModuleResolver().resolve(installed)

    assert plan.version_of(CORE) == "12.7.0"
    assert plan.version_of(COMMON) == "12.7.0"


def test_pin_blocks_anchor_downgrade() -> None:
    installed = _installed((CORE, "13.2.0"), (CORE, "12.7.0"), (COMMON, "12.7.0"))

    plan = ModuleResolver(pinned_version="13.2.0").resolve(installed)

    assert plan.version_of(CORE) == "13.2.0"
    assert plan.dropped == (COMMON,)


def test_generic_anchor_and_dependent() -> None:
    resolver = ModuleResolver(anchor="A", dependent="B", foundation=("B",), core=("A",), optional=(), meta_module=None)

    plan = resolver.resolve(_installed(("A", "2.1.5"), ("B", "2.1.0"), ("B", "3.0.0")))

    assert plan.names == ["B", "A"]
    assert plan.version_of("B") == "2.1.0"


def test_pin_selects_anchor_version() -> None:
    resolver = ModuleResolver(pinned_version="12.7.0")

    plan = resolver.resolve(_installed((CORE, "13.2.0"), (CORE, "12.7.0"), (COMMON, "12.7.0"), (COMMON, "13.2.0")))

    assert plan.version_of(CORE) == "12.7.0"
    assert plan.version_of(COMMON) == "12.7.0"
    assert "Using pinned VMware.VimAutomation.Core 12.7.0" in plan.notes


def test_missing_pin_falls_back_to_latest_with_note() -> None:
    plan = ModuleResolver(pinned_version="11.0.0").resolve(_installed((CORE, "13.2.0"), (COMMON, "13.2.0")))

    assert plan.version_of(CORE) == "13.2.0"
    assert any("11.0.0 is not installed" in note for note in plan.notes)


def test_meta_module_is_tried_only_for_clean_plans() -> None:
    clean = ModuleResolver().resolve(_installed(("VMware.PowerCLI", "13.2.0"), (CORE, "13.2.0"), (COMMON, "13.2.0")))
    broken = ModuleResolver().resolve(_installed(("VMware.PowerCLI", "13.2.0"), (CORE, "13.2.0"), (COMMON, "12.7.0")))

    assert clean.meta_module is not None
    assert broken.meta_module is None


def test_plan_is_memoized_until_reset() -> None:
    resolver = ModuleResolver()
    first = resolver.plan(_installed((CORE, "13.2.0"), (COMMON, "13.2.0")))
    second = resolver.plan(_installed((CORE, "12.7.0")))

    assert second is first
    assert resolver.cached_plan is first

    resolver.reset()
    assert resolver.plan(_installed((CORE, "12.7.0"))).version_of(CORE) == "12.7.0"


def test_foundation_modules_load_before_core_and_optional() -> None:
    plan = ModuleResolver().resolve(
        _installed(
            ("VMware.VimAutomation.Vds", "13.2.0"),
            (CORE, "13.2.0"),
            ("VMware.Vim", "8.2.0"),
            (COMMON, "13.2.0"),
            ("VMware.VimAutomation.Sdk", "13.2.0"),
        )
    )

    assert plan.names == [
        "VMware.VimAutomation.Sdk",
        COMMON,
        "VMware.Vim",
        CORE,
        "VMware.VimAutomation.Vds",
    ]


def test_parse_inventory_handles_single_object_and_failures() -> None:
    single = ExecutionResult(success=True, output=json.dumps({"Name": CORE, "Version": "13.2.0", "Path": None}))
    assert parse_inventory(single) == [ModuleDescriptor(CORE, "13.2.0", "")]
    assert parse_inventory(ExecutionResult(success=True, output="")) == []
    with pytest.raises(ValueError, match="invalid JSON"):
        parse_inventory(ExecutionResult(success=True, output="not json"))
    with pytest.raises(ValueError, match="inventory failed"):
        parse_inventory(ExecutionResult(success=False, error="boom"))


def test_loader_script_orders_imports_and_marks_mandatory() -> None:
    resolver = ModuleResolver()
    plan = resolver.resolve(_installed((CORE, "13.2.0"), (COMMON, "13.2.0"), ("VMware.VimAutomation.Vds", "13.2.0")))

    script = ModuleLoader(resolver).script(plan)

    assert script.index(f"-Name '{COMMON}'") < script.index(f"-Name '{CORE}'")
    assert f"-Name '{CORE}' -Version '13.2.0' -Path '/m/{CORE}/13.2.0/{CORE}.psd1' -Mandatory $true" in script
    assert "-Name 'VMware.VimAutomation.Vds' -Version '13.2.0'" in script
    assert "Mandatory $false" in script


def test_loader_evaluate_requires_a_mandatory_module() -> None:
    resolver = ModuleResolver()
    plan = resolver.resolve(_installed((CORE, "13.2.0"), ("VMware.VimAutomation.Vds", "13.2.0")))
    loader = ModuleLoader(resolver)
    only_optional = {"MetaModule": False, "Loaded": [{"Name": "VMware.VimAutomation.Vds", "Version": "13.2.0"}], "Failures": "Core: broken"}
    with_core = {"MetaModule": False, "Loaded": [{"Name": CORE, "Version": "13.2.0"}], "Failures": []}

    failed = loader.evaluate(ExecutionResult(success=True, output=json.dumps(only_optional)), plan)
    loaded = loader.evaluate(ExecutionResult(success=True, output=json.dumps(with_core)), plan)

    assert not failed.success
    assert failed.failures == ("Core: broken",)
    assert "Uninstall-Module" in failed.recommended_action
    assert loaded.success
    assert loaded.loaded_names == [CORE]


def test_loader_recommends_install_for_empty_plan() -> None:
    outcome = ModuleLoader(ModuleResolver()).evaluate(ExecutionResult(success=True), ModuleLoadPlan())

    assert not outcome.success
    assert outcome.recommended_action == INSTALL_COMMAND
