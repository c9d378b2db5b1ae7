"""VM definition: the root aggregate consumed by synthesis.

The definition arrives fully resolved (validated, addresses allocated,
aliases assigned) and is treated as read-only during a synthesis pass.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Literal, TypeVar
from uuid import UUID

import aiofiles
from pydantic import BaseModel, ConfigDict, Field

from qemu_argv._logging import get_logger
from qemu_argv.devices import (
    Controller,
    ControllerType,
    Device,
    StorageSource,
)

logger = get_logger(__name__)


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


DeviceT = TypeVar("DeviceT")


# ============================================================================
# OS / boot
# ============================================================================


class Loader(_Model):
    path: str
    type: Literal["rom", "pflash"] = "pflash"
    readonly: bool = True
    secure: bool = False
    format: Literal["raw", "qcow2"] = "raw"


class OsInfo(_Model):
    arch: str = "x86_64"
    machine: str = "pc-q35-9.0"
    loader: Loader | None = None
    nvram: StorageSource | None = None
    kernel: str | None = None
    initrd: str | None = None
    cmdline: str | None = None
    dtb: str | None = None
    boot_devices: tuple[Literal["hd", "cdrom", "network", "fd"], ...] = ()
    boot_menu: bool | None = None
    boot_menu_timeout: int | None = None
    reboot_timeout: int | None = None
    """Milliseconds; -1 disables reboot after a failed boot."""
    bios_serial: bool | None = None


# ============================================================================
# Memory / CPU / NUMA
# ============================================================================


class HugePage(_Model):
    size: int
    """KiB"""
    nodes: tuple[int, ...] = ()


class MemoryInfo(_Model):
    """Memory sizing and backing. All sizes are KiB."""

    total: int = Field(ge=1)
    max: int | None = None
    slots: int | None = None
    hugepages: tuple[HugePage, ...] = ()
    source: Literal["anonymous", "file", "memfd"] = "anonymous"
    access: Literal["shared", "private"] | None = None
    discard: bool | None = None
    locked: bool = False
    allocation: Literal["immediate", "ondemand"] | None = None
    allocation_threads: int | None = None
    dump_core: bool | None = None
    nosharepages: bool = False


class CpuFeature(_Model):
    name: str
    policy: Literal["force", "require", "optional", "disable", "forbid"] = "require"


class CpuInfo(_Model):
    mode: Literal["host-passthrough", "host-model", "custom", "maximum"] = "custom"
    model: str | None = None
    features: tuple[CpuFeature, ...] = ()
    migratable: bool | None = None


class Topology(_Model):
    sockets: int = 1
    dies: int = 1
    clusters: int = 1
    cores: int = 1
    threads: int = 1


class NumaCell(_Model):
    id: int = Field(ge=0)
    cpus: str
    """cpuset string, e.g. "0-3,8" """
    memory: int
    """KiB"""
    mem_access: Literal["shared", "private"] | None = None
    discard: bool | None = None
    distances: dict[int, int] = Field(default_factory=dict)


class IOThread(_Model):
    id: int = Field(ge=1)
    poll_max_ns: int | None = None
    poll_grow: int | None = None
    poll_shrink: int | None = None
    thread_pool_min: int | None = None
    thread_pool_max: int | None = None


# ============================================================================
# Features, clock, PM, lifecycle
# ============================================================================


class HyperV(_Model):
    relaxed: bool | None = None
    vapic: bool | None = None
    spinlocks: int | None = None
    vpindex: bool | None = None
    runtime: bool | None = None
    synic: bool | None = None
    stimer: bool | None = None
    frequencies: bool | None = None
    tlbflush: bool | None = None
    ipi: bool | None = None
    vendor_id: str | None = None


class Features(_Model):
    acpi: bool | None = None
    smm: bool | None = None
    vmport: bool | None = None
    gic_version: str | None = None
    hyperv: HyperV | None = None
    kvm_hidden: bool | None = None
    pmu: bool | None = None
    vmcoreinfo: bool | None = None
    hpet: bool | None = None
    pvspinlock: bool | None = None


class Timer(_Model):
    name: Literal["rtc", "pit", "hpet", "kvmclock", "hypervclock", "tsc"]
    present: bool | None = None
    tickpolicy: Literal["delay", "catchup", "merge", "discard"] | None = None
    track: Literal["boot", "guest", "wall", "realtime"] | None = None


class ClockInfo(_Model):
    offset: Literal["utc", "localtime", "timezone", "variable"] = "utc"
    timezone: str | None = None
    adjustment: int = 0
    """Seconds (variable offset)."""
    basis: Literal["utc", "localtime"] = "utc"
    timers: tuple[Timer, ...] = ()


class PmInfo(_Model):
    suspend_to_mem: bool | None = None
    suspend_to_disk: bool | None = None


class Lifecycle(_Model):
    on_poweroff: Literal["destroy", "restart", "preserve"] = "destroy"
    on_reboot: Literal["destroy", "restart", "preserve"] = "restart"
    on_crash: Literal["destroy", "restart", "preserve", "coredump-destroy", "coredump-restart"] = "destroy"


# ============================================================================
# Sysinfo, launch security, policy
# ============================================================================


class FwCfgEntry(_Model):
    name: str
    value: str | None = None
    file: str | None = None


class SysInfo(_Model):
    type: Literal["smbios", "fwcfg"] = "smbios"
    bios: dict[str, str] = Field(default_factory=dict)
    system: dict[str, str] = Field(default_factory=dict)
    baseboard: dict[str, str] = Field(default_factory=dict)
    chassis: dict[str, str] = Field(default_factory=dict)
    oem_strings: tuple[str, ...] = ()
    fw_cfg: tuple[FwCfgEntry, ...] = ()


class LaunchSecurity(_Model):
    type: Literal["sev", "sev-snp", "s390-pv"]
    cbitpos: int | None = None
    reduced_phys_bits: int | None = None
    policy: int | None = None
    dh_cert: str | None = None
    session: str | None = None
    kernel_hashes: bool | None = None


class VirtType(StrEnum):
    KVM = "kvm"
    QEMU = "qemu"
    HVF = "hvf"


# ============================================================================
# Root aggregate
# ============================================================================


class VmDefinition(_Model):
    """Fully resolved VM definition.

    Attributes:
        name: Domain name (-name guest=...).
        uuid: Domain UUID.
        virt_type: Accelerator family.
        memory: Memory sizing and backing.
        vcpus: Online vCPUs at boot; max_vcpus is the hotplug ceiling.
        numa: NUMA cells in id order.
        master_key_path: File holding the per-domain master key.
        deprecation_behavior: -compat deprecated-output policy.
        smbios_mode: "sysinfo" emits the sysinfo tables; "host" copies the
            host tables.
        devices: Every device, in definition order.
    """

    name: str
    uuid: UUID
    virt_type: VirtType = VirtType.KVM
    os: OsInfo = Field(default_factory=OsInfo)
    memory: MemoryInfo
    cpu: CpuInfo = Field(default_factory=CpuInfo)
    vcpus: int = Field(default=1, ge=1)
    max_vcpus: int | None = None
    topology: Topology | None = None
    numa: tuple[NumaCell, ...] = ()
    iothreads: tuple[IOThread, ...] = ()
    features: Features = Field(default_factory=Features)
    clock: ClockInfo = Field(default_factory=ClockInfo)
    pm: PmInfo = Field(default_factory=PmInfo)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    sysinfo: tuple[SysInfo, ...] = ()
    smbios_mode: Literal["emulate", "host", "sysinfo"] | None = None
    master_key_path: str | None = None
    deprecation_behavior: Literal["none", "omit", "reject", "crash"] = "none"
    launch_security: LaunchSecurity | None = None
    devices: tuple[Device, ...] = ()

    def devices_of(self, cls: type[DeviceT]) -> list[DeviceT]:
        """Devices of one kind, in definition order."""
        return [d for d in self.devices if isinstance(d, cls)]

    def find_controller(self, type: ControllerType, index: int) -> Controller | None:
        for ctrl in self.devices_of(Controller):
            if ctrl.type == type and ctrl.index == index:
                return ctrl
        return None

    @property
    def arch(self) -> str:
        return self.os.arch

    @property
    def machine(self) -> str:
        return self.os.machine

    @property
    def max_cpus(self) -> int:
        return self.max_vcpus or self.vcpus

    def is_machine(self, *prefixes: str) -> bool:
        """True when the machine type starts with any of `prefixes`."""
        return any(self.os.machine == p or self.os.machine.startswith(p + "-") for p in prefixes)

    @property
    def is_q35(self) -> bool:
        return self.is_machine("q35", "pc-q35")

    @property
    def is_i440fx(self) -> bool:
        return (self.is_machine("pc") or self.is_machine("pc-i440fx")) and not self.is_q35

    @property
    def is_s390(self) -> bool:
        return self.os.arch.startswith("s390")

    @property
    def is_pseries(self) -> bool:
        return self.is_machine("pseries")


async def load_definition(path: Path) -> VmDefinition:
    """Load a resolved VM definition from a JSON file."""
    async with aiofiles.open(path, encoding="utf-8") as f:
        raw = await f.read()
    vm = VmDefinition.model_validate_json(raw)
    logger.debug("Loaded VM definition", extra={"path": str(path), "vm": vm.name, "devices": len(vm.devices)})
    return vm
