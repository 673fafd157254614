from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from packaging.version import InvalidVersion, Version

from ..execution.records import Record
from ..execution.types import ExecutionResult

logger = logging.getLogger(__name__)

META_MODULE = "VMware.PowerCLI"
CORE_MODULE = "VMware.VimAutomation.Core"
COMMON_MODULE = "VMware.VimAutomation.Common"
FOUNDATION_MODULES = ("VMware.VimAutomation.Sdk", COMMON_MODULE, "VMware.Vim")
CORE_MODULES = (CORE_MODULE,)
OPTIONAL_MODULES = ("VMware.VimAutomation.Vds", "VMware.VimAutomation.Storage")

INVENTORY_SCRIPT = """\
$found = @(Get-Module -ListAvailable -Name 'VMware.*' -ErrorAction SilentlyContinue | ForEach-Object {
    [pscustomobject]@{ Name = $_.Name; Version = $_.Version.ToString(); Path = $_.Path }
})
ConvertTo-Json -InputObject $found -Compress -Depth 3
"""

_NUMERIC = re.compile(r"\d+(?:\.\d+)*")


def parse_version(text: str) -> Version:
    """Parse a module version, keeping only the numeric part when needed.

    Example:
        ```python
        assert parse_version("13.2.0.22643732") > parse_version("12.7.0")
        ```
    """
    try:
        return Version(text)
    except InvalidVersion:
        match = _NUMERIC.search(text or "")
        return Version(match.group(0)) if match else Version("0")


@dataclass(frozen=True, slots=True)
class ModuleDescriptor:
    """One installed (or loaded) module version.

    Example:
        ```python
        module = ModuleDescriptor("VMware.VimAutomation.Core", "13.2.0", "/opt/modules/Core.psd1")
        ```
    """

    name: str
    version: str
    path: str = ""
    loaded: bool = False

    @property
    def parsed_version(self) -> Version:
        """Return the comparable version.

        Example:
            ```python
            v = module.parsed_version
            ```
        """
        return parse_version(self.version)

    @property
    def major_minor(self) -> tuple[int, int]:
        """Return the (major, minor) compatibility key.

        Example:
            ```python
            assert ModuleDescriptor("A", "13.2.1").major_minor == (13, 2)
            ```
        """
        parsed = self.parsed_version
        return parsed.major, parsed.minor


@dataclass(frozen=True, slots=True)
class ModuleLoadPlan:
    """Ordered modules to load, with the reasons behind the choice.

    Example:
        ```python
        plan = ModuleLoadPlan(modules=(core,), notes=("Selected Core 13.2.0",))
        ```
    """

    modules: tuple[ModuleDescriptor, ...] = ()
    notes: tuple[str, ...] = ()
    dropped: tuple[str, ...] = ()
    meta_module: ModuleDescriptor | None = None

    @property
    def names(self) -> list[str]:
        """Return module names in load order.

        Example:
            ```python
            names = plan.names
            ```
        """
        return [module.name for module in self.modules]

    @property
    def empty(self) -> bool:
        """Return True when nothing can be loaded.

        Example:
            ```python
            if plan.empty:
                ...
            ```
        """
        return not self.modules and self.meta_module is None

    def version_of(self, name: str) -> str | None:
        """Return the planned version for `name`, if any.

        Example:
            ```python
            version = plan.version_of("VMware.VimAutomation.Core")
            ```
        """
        for module in self.modules:
            if module.name.lower() == name.lower():
                return module.version
        return None


def parse_inventory(result: ExecutionResult) -> list[ModuleDescriptor]:
    """Decode the module inventory emitted by `INVENTORY_SCRIPT`.

    Example:
        ```python
        installed = parse_inventory(runner.execute(INVENTORY_SCRIPT, timeout_seconds=60))
        ```
    """
    if not result.success:
        raise ValueError(f"Module inventory failed: {result.error or 'no output'}")
    text = result.output.strip()
    if not text:
        return []
    try:
        decoded: Any = json.loads(text.splitlines()[-1])
    except ValueError as exc:
        raise ValueError(f"Module inventory returned invalid JSON: {exc}") from exc
    items = decoded if isinstance(decoded, list) else [decoded]
    modules: list[ModuleDescriptor] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        record = Record(item)
        name = record.get_str("Name")
        version = record.get_str("Version")
        if not name.ok or not version.ok:
            continue
        modules.append(ModuleDescriptor(name.value, version.value, record.get_str("Path").or_default("")))
    return modules


class ModuleResolver:
    """Pick one mutually compatible version per vendor module.

    The anchor module's major.minor decides which dependent version is
    acceptable. The resulting plan is computed once and memoized.

    Example:
        ```python
        resolver = ModuleResolver(pinned_version="13.2.0")
        plan = resolver.plan(installed)
        ```
    """

    def __init__(
        self,
        *,
        anchor: str = CORE_MODULE,
        dependent: str = COMMON_MODULE,
        foundation: tuple[str, ...] = FOUNDATION_MODULES,
        core: tuple[str, ...] = CORE_MODULES,
        optional: tuple[str, ...] = OPTIONAL_MODULES,
        mandatory: Iterable[str] | None = None,
        meta_module: str | None = META_MODULE,
        pinned_version: str | None = None,
    ) -> None:
        """Configure module tiers and the optional anchor pin.

        Example:
            ```python
            resolver = ModuleResolver(anchor="A", dependent="B", foundation=("B",), core=("A",), optional=())
            ```
        """
        self.anchor = anchor
        self.dependent = dependent
        self._order: list[str] = []
        for name in (*foundation, *core, *optional):
            if name.lower() not in {item.lower() for item in self._order}:
                self._order.append(name)
        self.mandatory = frozenset(name.lower() for name in (mandatory or (anchor, dependent)))
        self._meta_module = meta_module
        self._pinned = pinned_version.strip() if pinned_version else None
        self._lock = threading.Lock()
        self._plan: ModuleLoadPlan | None = None

    @property
    def cached_plan(self) -> ModuleLoadPlan | None:
        """Return the memoized plan, or None before the first `plan` call.

        Example:
            ```python
            plan = resolver.cached_plan
            ```
        """
        return self._plan

    def is_mandatory(self, name: str) -> bool:
        """Return True for modules whose load decides overall success.

        Example:
            ```python
            assert resolver.is_mandatory("VMware.VimAutomation.Core")
            ```
        """
        return name.lower() in self.mandatory

    def plan(self, installed: Iterable[ModuleDescriptor]) -> ModuleLoadPlan:
        """Return the memoized plan, resolving it on the first call.

        Example:
            ```python
            plan = resolver.plan(installed)
            ```
        """
        with self._lock:
            if self._plan is None:
                self._plan = self.resolve(installed)
                logger.info("Module load plan: %s", ", ".join(
                    f"{module.name} {module.version}" for module in self._plan.modules
                ) or "empty")
            return self._plan

    def reset(self) -> None:
        """Forget the memoized plan.

        Example:
            ```python
            resolver.reset()
            ```
        """
        with self._lock:
            self._plan = None

    def resolve(self, installed: Iterable[ModuleDescriptor]) -> ModuleLoadPlan:
        """Compute a load plan without memoizing it.

        Example:
            ```python
            plan = resolver.resolve([ModuleDescriptor("A", "2.0"), ModuleDescriptor("B", "2.0")])
            ```
        """
        candidates = self._group(installed)
        notes: list[str] = []
        dropped: list[str] = []
        chosen: dict[str, ModuleDescriptor] = {}

        for name in self._order:
            versions = candidates.get(name.lower())
            if not versions:
                continue
            chosen[name.lower()] = versions[0]

        anchor_key = self.anchor.lower()
        if self._pinned and anchor_key in chosen:
            pinned = next(
                (item for item in candidates[anchor_key] if item.parsed_version == parse_version(self._pinned)),
                None,
            )
            if pinned is None:
                notes.append(f"Pinned {self.anchor} {self._pinned} is not installed; using {chosen[anchor_key].version}")
            else:
                chosen[anchor_key] = pinned
                notes.append(f"Using pinned {self.anchor} {pinned.version}")

        dependent_key = self.dependent.lower()
        anchor = chosen.get(anchor_key)
        dependent = chosen.get(dependent_key)
        if anchor is not None and dependent is not None and anchor.major_minor != dependent.major_minor:
            wanted = "%d.%d" % anchor.major_minor
            match = next(
                (item for item in candidates[dependent_key] if item.major_minor == anchor.major_minor),
                None,
            )
            pair = None if match is not None or self._pinned else self._older_pair(candidates, anchor_key, dependent_key)
            if match is not None:
                chosen[dependent_key] = match
                notes.append(
                    f"{self.dependent} {dependent.version} is incompatible with {self.anchor} {anchor.version}; "
                    f"selected {match.version} to match {wanted}"
                )
            elif pair is not None:
                chosen[anchor_key], chosen[dependent_key] = pair
                notes.append(
                    f"No {self.dependent} version matches {self.anchor} {anchor.version} ({wanted}); "
                    f"selected {self.anchor} {pair[0].version} with {self.dependent} {pair[1].version}"
                )
                logger.info("Using older %s %s to stay compatible with %s", self.anchor, pair[0].version, self.dependent)
            else:
                del chosen[dependent_key]
                dropped.append(self.dependent)
                notes.append(
                    f"No {self.dependent} version matches {self.anchor} {anchor.version} ({wanted}); "
                    f"dropped {self.dependent}"
                )
                logger.warning("Dropped %s: no version compatible with %s %s", self.dependent, self.anchor, anchor.version)

        for name in self._order:
            if name.lower() in candidates and len(candidates[name.lower()]) > 1 and name.lower() in chosen:
                others = ", ".join(item.version for item in candidates[name.lower()] if item is not chosen[name.lower()])
                notes.append(f"{name}: {len(candidates[name.lower()])} versions installed ({others} not loaded)")

        ordered = tuple(chosen[name.lower()] for name in self._order if name.lower() in chosen)
        meta: ModuleDescriptor | None = None
        if self._meta_module and self._meta_module.lower() in candidates and not dropped and not self._pinned:
            meta = candidates[self._meta_module.lower()][0]
            notes.append(f"{self._meta_module} {meta.version} installed; will try it before individual modules")
        return ModuleLoadPlan(modules=ordered, notes=tuple(notes), dropped=tuple(dropped), meta_module=meta)

    @staticmethod
    def _older_pair(
        candidates: dict[str, list[ModuleDescriptor]], anchor_key: str, dependent_key: str
    ) -> tuple[ModuleDescriptor, ModuleDescriptor] | None:
        """Return the newest anchor below the latest that has a same major.minor dependent.

        Example:
            ```python
            pair = ModuleResolver._older_pair(groups, "vmware.vimautomation.core", "vmware.vimautomation.common")
            ```
        """
        for anchor in candidates[anchor_key][1:]:
            for dependent in candidates[dependent_key]:
                if dependent.major_minor == anchor.major_minor:
                    return anchor, dependent
        return None

    def _group(self, installed: Iterable[ModuleDescriptor]) -> dict[str, list[ModuleDescriptor]]:
        """Group installed modules by lowercase name, newest first, one per version.

        Example:
            ```python
            groups = resolver._group(installed)
            ```
        """
        groups: dict[str, list[ModuleDescriptor]] = {}
        for module in installed:
            bucket = groups.setdefault(module.name.lower(), [])
            if any(item.parsed_version == module.parsed_version for item in bucket):
                continue
            bucket.append(replace(module, loaded=False))
        for bucket in groups.values():
            bucket.sort(key=lambda item: item.parsed_version, reverse=True)
        return groups


@dataclass(frozen=True, slots=True)
class VendorVersionInfo:
    """Installed toolkit version and per-module details.

    Example:
        ```python
        info = VendorVersionInfo(version="13.2.0", modules=[core], compatible=True)
        ```
    """

    version: str = ""
    modules: list[ModuleDescriptor] = field(default_factory=list)
    compatible: bool = False
    message: str = ""

    @property
    def installed(self) -> bool:
        """Return True when the core module was found.

        Example:
            ```python
            if info.installed:
                ...
            ```
        """
        return bool(self.version)
