"""Machine type (-machine), firmware images and direct kernel boot."""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.audio import AudioMode, pc_speaker_audio_alias, select_audio_mode
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.cpu import accelerator_name
from qemu_argv.devices import Controller, ControllerType, Iommu, MemoryDevice, Sound
from qemu_argv.emitter import TreeKind, emit_flat
from qemu_argv.exceptions import ConfigUnsupportedError
from qemu_argv.fragments import Fragment
from qemu_argv.linking import StorageStrategy, select_storage_strategy
from qemu_argv.memory import main_ram_alias, uses_machine_memory_backend
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition

logger = get_logger(__name__)

_PFLASH_CODE = "pflash0"
_PFLASH_VARS = "pflash1"


def pflash_node_names(unit: str) -> tuple[str, str]:
    """(storage, format) node names for a firmware flash unit."""
    return f"{constants.NODE_NAME_PREFIX}-{unit}-storage", f"{constants.NODE_NAME_PREFIX}-{unit}-format"


def hpet_enabled(vm: VmDefinition) -> bool | None:
    """HPET presence from the features block, else from the hpet timer."""
    if vm.features.hpet is not None:
        return vm.features.hpet
    timer = next((t for t in vm.clock.timers if t.name == "hpet"), None)
    return None if timer is None else timer.present


def _has_usb(vm: VmDefinition) -> bool:
    return any(c.type == ControllerType.USB and c.model != "none" for c in vm.devices_of(Controller))


# ============================================================================
# Firmware
# ============================================================================


def _pflash_blockdevs(unit: str, path: str, fmt: str, readonly: bool, caps: CapabilitySet) -> list[Fragment]:
    storage, format_node = pflash_node_names(unit)
    proto = PropTree.blockdev("file", storage).add("filename", path).add("read-only", readonly)
    top = PropTree.blockdev(fmt, format_node).add("read-only", readonly).add("file", PropRef(storage))
    return [Fragment.from_tree(proto, caps, TreeKind.BLOCKDEV), Fragment.from_tree(top, caps, TreeKind.BLOCKDEV)]


def _pflash_drive(unit: int, path: str, fmt: str, readonly: bool) -> Fragment:
    tree = PropTree([("file", path), ("if", "pflash"), ("format", fmt), ("unit", unit)])
    if readonly:
        tree.add("readonly", True)
    return Fragment("-drive", emit_flat(tree, TreeKind.DRIVE))


def firmware_fragments(vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    """-bios, or the code and variable flash images."""
    loader = vm.os.loader
    if loader is None:
        return []
    if loader.type == "rom":
        return [Fragment("-bios", loader.path)]

    out: list[Fragment] = []
    if loader.secure:
        if not vm.features.smm:
            raise ConfigUnsupportedError(
                "secure boot flash requires SMM to be enabled",
                context={"loader": loader.path},
            )
        out.append(Fragment("-global", "driver=cfi.pflash01,property=secure,value=on"))

    nvram = vm.os.nvram
    if select_storage_strategy(caps) == StorageStrategy.BLOCKDEV_CHAIN:
        out.extend(_pflash_blockdevs(_PFLASH_CODE, loader.path, loader.format, loader.readonly, caps))
        if nvram is not None and nvram.path:
            out.extend(_pflash_blockdevs(_PFLASH_VARS, nvram.path, str(nvram.format), nvram.readonly, caps))
    else:
        out.append(_pflash_drive(0, loader.path, loader.format, loader.readonly))
        if nvram is not None and nvram.path:
            out.append(_pflash_drive(1, nvram.path, str(nvram.format), nvram.readonly))
    return out


# ============================================================================
# -machine
# ============================================================================


def machine_props(vm: VmDefinition, caps: CapabilitySet) -> PropTree:
    tree = PropTree([("type", vm.machine)])
    features = vm.features

    if not caps.has(Cap.ACCEL):
        tree.add("accel", accelerator_name(vm))
    if caps.has(Cap.MACHINE_USB_OPT) and not _has_usb(vm):
        tree.add("usb", False)
    if features.vmport is not None and vm.arch in ("x86_64", "i686"):
        if not caps.has(Cap.MACHINE_VMPORT_OPT):
            raise ConfigUnsupportedError("vmport is not supported by this QEMU", context={"machine": vm.machine})
        tree.add("vmport", features.vmport)
    if features.smm is not None:
        if caps.has(Cap.MACHINE_SMM_OPT):
            tree.add("smm", features.smm)
        elif features.smm:
            raise ConfigUnsupportedError("SMM is not supported by this QEMU", context={"machine": vm.machine})
    hpet = hpet_enabled(vm)
    if hpet is not None and caps.has(Cap.MACHINE_HPET):
        tree.add("hpet", hpet)
    if features.acpi is not None and caps.has(Cap.MACHINE_ACPI):
        tree.add("acpi", features.acpi)
    if features.gic_version is not None:
        if not caps.has(Cap.GIC_VERSION):
            raise ConfigUnsupportedError(
                "selecting the GIC version is not supported by this QEMU",
                context={"gic_version": features.gic_version},
            )
        tree.add("gic-version", features.gic_version)
    if vm.memory.dump_core is not None and caps.has(Cap.DUMP_GUEST_CORE):
        tree.add("dump-guest-core", vm.memory.dump_core)
    if vm.memory.nosharepages and caps.has(Cap.MEM_MERGE):
        tree.add("mem-merge", False)
    if any(d.model == "nvdimm" for d in vm.devices_of(MemoryDevice)):
        if not caps.has(Cap.MACHINE_NVDIMM):
            raise ConfigUnsupportedError("nvdimm is not supported by this QEMU", context={"machine": vm.machine})
        tree.add("nvdimm", True)
    if any(i.model == "smmuv3" for i in vm.devices_of(Iommu)):
        tree.add("iommu", "smmuv3")

    loader = vm.os.loader
    if (
        loader is not None
        and loader.type == "pflash"
        and select_storage_strategy(caps) == StorageStrategy.BLOCKDEV_CHAIN
    ):
        tree.add("pflash0", PropRef(pflash_node_names(_PFLASH_CODE)[1]))
        if vm.os.nvram is not None and vm.os.nvram.path:
            tree.add("pflash1", PropRef(pflash_node_names(_PFLASH_VARS)[1]))

    # Objects below are created later on the command line; the emulator
    # resolves these ids only once every -object has been parsed.
    if uses_machine_memory_backend(vm, caps):
        tree.add("memory-backend", main_ram_alias(vm, caps))
    if any(s.model == "pcspk" for s in vm.devices_of(Sound)) and select_audio_mode(caps) == AudioMode.AUDIODEV:
        tree.add("pcspk-audiodev", pc_speaker_audio_alias(vm))
    if vm.launch_security is not None:
        if not caps.has(Cap.MACHINE_CONFIDENTIAL_GUEST_SUPPORT):
            raise ConfigUnsupportedError(
                "launch security is not supported by this QEMU",
                context={"type": vm.launch_security.type},
            )
        tree.add("confidential-guest-support", constants.LAUNCH_SECURITY_ALIAS)
    return tree


def machine_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment:
    return Fragment.option("-machine", machine_props(vm, caps))


# ============================================================================
# Direct kernel boot
# ============================================================================


def kernel_fragments(vm: VmDefinition) -> list[Fragment]:
    os_info = vm.os
    out: list[Fragment] = []
    if os_info.kernel:
        out.append(Fragment("-kernel", os_info.kernel))
    if os_info.initrd:
        out.append(Fragment("-initrd", os_info.initrd))
    if os_info.cmdline:
        out.append(Fragment("-append", os_info.cmdline))
    if os_info.dtb:
        out.append(Fragment("-dtb", os_info.dtb))
    if not os_info.kernel and (os_info.initrd or os_info.cmdline):
        logger.warning("initrd/cmdline given without a kernel", extra={"vm": vm.name})
    return out
