from .loader import INSTALL_COMMAND, ModuleLoader, ModuleLoadOutcome
from .resolver import (
    COMMON_MODULE,
    CORE_MODULE,
    INVENTORY_SCRIPT,
    META_MODULE,
    ModuleDescriptor,
    ModuleLoadPlan,
    ModuleResolver,
    VendorVersionInfo,
    parse_inventory,
)

__all__ = [
    "COMMON_MODULE",
    "CORE_MODULE",
    "INSTALL_COMMAND",
    "INVENTORY_SCRIPT",
    "META_MODULE",
    "ModuleDescriptor",
    "ModuleLoadOutcome",
    "ModuleLoadPlan",
    "ModuleLoader",
    "ModuleResolver",
    "VendorVersionInfo",
    "parse_inventory",
]
