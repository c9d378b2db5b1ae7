"""Guest memory: -m, memory backend objects and memory devices.

Which backend type a piece of guest RAM uses is one explicit decision,
select_memory_backend(), driven by what the configuration needs (hugepages,
shared access, a file or memfd source, discard) layered with capability
gates. All sizes in the definition are KiB; backend objects take bytes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.device_common import device_label, finish_device, plain_device, require_address, virtio_device
from qemu_argv.devices import MemoryDevice
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.props import PropRef, PropTree
from qemu_argv.secret_objects import object_fragment

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition
    from qemu_argv.settings import Settings

logger = get_logger(__name__)


class MemoryBackendKind(StrEnum):
    """QOM type of a memory backend object."""

    RAM = "memory-backend-ram"
    FILE = "memory-backend-file"
    MEMFD = "memory-backend-memfd"


@dataclass(frozen=True, slots=True)
class MemoryRequest:
    """What one backend object must provide. Sizes in KiB.

    Attributes:
        size: Backend size.
        pagesize: Hugepage size, or None for default pages.
        source: Where the pages come from.
        path: Explicit backing file (nvdimm / virtio-pmem).
        shared: Map shared (vhost-user backends need it).
        discard: Discard the backing file contents on exit.
        prealloc: Allocate every page up front.
    """

    size: int
    pagesize: int | None = None
    source: Literal["anonymous", "file", "memfd"] = "anonymous"
    path: str | None = None
    shared: bool | None = None
    discard: bool | None = None
    prealloc: bool = False


def kib_to_bytes(kib: int) -> int:
    return kib * constants.KIB


def select_memory_backend(request: MemoryRequest, caps: CapabilitySet) -> MemoryBackendKind:
    """Pick the backend type for `request`.

    memfd is used when asked for explicitly; hugepages, shared access,
    explicit files and discard all need a file backend; everything else is
    plain anonymous RAM.
    """
    if request.source == "memfd":
        if not caps.has(Cap.OBJECT_MEMORY_MEMFD):
            raise ConfigUnsupportedError(
                "memfd memory backend is not supported by this QEMU",
                context={"capability": Cap.OBJECT_MEMORY_MEMFD.value},
            )
        if request.pagesize is not None and not caps.has(Cap.OBJECT_MEMORY_MEMFD_HUGETLB):
            raise ConfigUnsupportedError(
                "hugepages with a memfd memory backend are not supported by this QEMU",
                context={"capability": Cap.OBJECT_MEMORY_MEMFD_HUGETLB.value},
            )
        return MemoryBackendKind.MEMFD

    needs_file = (
        request.pagesize is not None
        or request.source == "file"
        or request.path is not None
        or request.shared is True
        or request.discard is True
    )
    if not needs_file:
        return MemoryBackendKind.RAM
    if not caps.has(Cap.OBJECT_MEMORY_FILE):
        raise ConfigUnsupportedError(
            "this memory configuration needs a file memory backend, which this QEMU lacks",
            context={"capability": Cap.OBJECT_MEMORY_FILE.value, "pagesize": request.pagesize},
        )
    return MemoryBackendKind.FILE


def hugepage_size_for(vm: VmDefinition, node: int | None) -> int | None:
    """Hugepage size (KiB) configured for NUMA `node`, or the default one."""
    default = None
    for page in vm.memory.hugepages:
        if not page.nodes:
            default = page.size
        elif node is not None and node in page.nodes:
            return page.size
    return default


def memory_backend_props(
    alias: str,
    request: MemoryRequest,
    vm: VmDefinition,
    caps: CapabilitySet,
    settings: Settings,
) -> PropTree:
    """Backend object for `request` under id `alias`."""
    kind = select_memory_backend(request, caps)
    tree = PropTree.object(kind.value, alias)
    mem = vm.memory

    match kind:
        case MemoryBackendKind.FILE:
            if request.path is not None:
                mem_path = request.path
            elif request.pagesize is not None:
                mem_path = str(settings.hugetlbfs_mount)
            else:
                mem_path = str(Path(settings.memory_backing_dir) / vm.name)
            tree.add("mem-path", mem_path)
            if request.discard is not None:
                if caps.has(Cap.OBJECT_MEMORY_FILE_DISCARD):
                    tree.add("discard-data", request.discard)
                else:
                    logger.debug("Dropping discard-data, not supported", extra={"alias": alias})
        case MemoryBackendKind.MEMFD:
            if request.pagesize is not None:
                tree.add("hugetlb", True).add("hugetlbsize", kib_to_bytes(request.pagesize))
        case MemoryBackendKind.RAM:
            pass
        case _:
            raise EnumRangeError.for_value("memory backend kind", kind)

    if request.shared is not None and kind != MemoryBackendKind.RAM:
        tree.add("share", request.shared)
    if request.prealloc or request.pagesize is not None:
        tree.add("prealloc", True)
        if mem.allocation_threads is not None and caps.has(Cap.MEMORY_BACKEND_PREALLOC_THREADS):
            tree.add("prealloc-threads", mem.allocation_threads)
    tree.add("size", kib_to_bytes(request.size))
    if mem.nosharepages and caps.has(Cap.MEM_MERGE):
        tree.add("merge", False)
    if mem.dump_core is not None and caps.has(Cap.DUMP_GUEST_CORE):
        tree.add("dump", mem.dump_core)
    return tree


def guest_ram_request(vm: VmDefinition, size: int, node: int | None = None) -> MemoryRequest:
    """Backend request for main guest RAM (whole or one NUMA cell)."""
    mem = vm.memory
    access = mem.access
    discard = mem.discard
    if node is not None:
        cell = next((c for c in vm.numa if c.id == node), None)
        if cell is not None:
            access = cell.mem_access or access
            discard = cell.discard if cell.discard is not None else discard
    return MemoryRequest(
        size=size,
        pagesize=hugepage_size_for(vm, node),
        source=mem.source,
        shared=None if access is None else access == "shared",
        discard=discard,
        prealloc=mem.allocation == "immediate",
    )


def needs_explicit_backend(request: MemoryRequest) -> bool:
    """Whether guest RAM must come from a backend object rather than -m alone."""
    return (
        request.pagesize is not None
        or request.source != "anonymous"
        or request.shared is not None
        or request.discard is not None
        or request.prealloc
    )


# ============================================================================
# -m and locking
# ============================================================================


def memory_size_fragment(vm: VmDefinition) -> Fragment:
    mem = vm.memory
    tree = PropTree([("size", f"{mem.total}k")])
    if mem.max is not None and mem.slots:
        tree.add("slots", mem.slots).add("maxmem", f"{mem.max}k")
    return Fragment.option("-m", tree)


def main_ram_fragments(vm: VmDefinition, caps: CapabilitySet, settings: Settings) -> list[Fragment]:
    """Backing for non-NUMA guest RAM.

    A backend object bound via -machine memory-backend where the binary has
    it, otherwise the -mem-path / -mem-prealloc switches.
    """
    if vm.numa:
        return []
    request = guest_ram_request(vm, vm.memory.total)
    if not needs_explicit_backend(request):
        return []
    if caps.has(Cap.MACHINE_MEMORY_BACKEND):
        tree = memory_backend_props(main_ram_alias(vm, caps), request, vm, caps, settings)
        return [object_fragment(tree, caps)]
    return legacy_ram_fragments(vm, request, settings)


def legacy_ram_fragments(vm: VmDefinition, request: MemoryRequest, settings: Settings) -> list[Fragment]:
    unsupported = [
        what
        for what, wanted in (
            ("a memfd source", request.source == "memfd"),
            ("shared access", request.shared is True),
            ("discard", request.discard is True),
        )
        if wanted
    ]
    if unsupported:
        requested = " and ".join(unsupported)
        raise ConfigUnsupportedError(
            f"guest memory with {requested} needs a memory backend object, which this QEMU lacks",
            context={"capability": Cap.MACHINE_MEMORY_BACKEND.value, "source": request.source},
        )
    out: list[Fragment] = []
    if request.pagesize is not None:
        out.append(Fragment("-mem-path", str(settings.hugetlbfs_mount)))
    elif request.source == "file":
        out.append(Fragment("-mem-path", str(Path(settings.memory_backing_dir) / vm.name)))
    if request.prealloc or request.pagesize is not None:
        out.append(Fragment("-mem-prealloc"))
    return out


def main_ram_alias(vm: VmDefinition, caps: CapabilitySet) -> str:
    return caps.default_ram_id(vm.machine) or "pc.ram"


def uses_machine_memory_backend(vm: VmDefinition, caps: CapabilitySet) -> bool:
    if vm.numa or not caps.has(Cap.MACHINE_MEMORY_BACKEND):
        return False
    return needs_explicit_backend(guest_ram_request(vm, vm.memory.total))


def memory_lock_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    if not vm.memory.locked:
        return None
    if caps.has(Cap.OVERCOMMIT):
        return Fragment("-overcommit", "mem-lock=on")
    return Fragment("-realtime", "mlock=on")


# ============================================================================
# Memory devices
# ============================================================================


def memory_device_backend_alias(dev: MemoryDevice) -> str:
    return f"mem{dev.info.alias}"


def _memory_device_request(dev: MemoryDevice, vm: VmDefinition) -> MemoryRequest:
    match dev.model:
        case "nvdimm" | "virtio-pmem":
            if not dev.source_path:
                raise ConfigUnsupportedError(
                    f"{dev.model} memory device '{device_label(dev)}' needs a backing path",
                    context={"alias": device_label(dev)},
                )
            return MemoryRequest(size=dev.size, path=dev.source_path, shared=dev.access != "private")
        case "dimm" | "virtio-mem":
            pagesize = dev.pagesize or hugepage_size_for(vm, dev.node)
            shared = None if dev.access is None else dev.access == "shared"
            return MemoryRequest(size=dev.size, pagesize=pagesize, source=vm.memory.source, shared=shared)
        case _:
            raise EnumRangeError.for_value("memory device model", dev.model)


def _require(caps: CapabilitySet, cap: Cap, dev: MemoryDevice) -> None:
    if not caps.has(cap):
        raise ConfigUnsupportedError(
            f"{dev.model} memory device '{device_label(dev)}' is not supported by this QEMU",
            context={"alias": device_label(dev), "capability": cap.value},
        )


def memory_device_fragments(
    dev: MemoryDevice, vm: VmDefinition, caps: CapabilitySet, settings: Settings
) -> list[Fragment]:
    """Backend object then the hotpluggable device consuming it."""
    backend_alias = memory_device_backend_alias(dev)
    request = _memory_device_request(dev, vm)
    backend = memory_backend_props(backend_alias, request, vm, caps, settings)
    if dev.model in ("nvdimm", "virtio-pmem") and dev.pmem is not None:
        if caps.has(Cap.OBJECT_MEMORY_FILE_PMEM):
            backend.add("pmem", dev.pmem)
        else:
            logger.debug("Dropping pmem, not supported", extra={"alias": device_label(dev)})

    match dev.model:
        case "dimm":
            _require(caps, Cap.DEVICE_PC_DIMM, dev)
            tree = PropTree.device("pc-dimm").add("node", dev.node).add("memdev", PropRef(backend_alias))
            bus = None
        case "nvdimm":
            _require(caps, Cap.DEVICE_NVDIMM, dev)
            tree = PropTree.device("nvdimm").add("node", dev.node)
            if dev.label_size is not None:
                tree.add("label-size", kib_to_bytes(dev.label_size))
            tree.add("unarmed", dev.readonly).add("memdev", PropRef(backend_alias))
            bus = None
        case "virtio-pmem":
            _require(caps, Cap.DEVICE_VIRTIO_PMEM, dev)
            require_address(dev, (AddressKind.PCI,), what="virtio-pmem")
            tree, bus = plain_device("virtio-pmem-pci", dev, vm)
            tree.add("memdev", PropRef(backend_alias))
        case "virtio-mem":
            _require(caps, Cap.DEVICE_VIRTIO_MEM, dev)
            tree, bus = virtio_device("virtio-mem", dev, vm, caps)
            tree.add("node", dev.node)
            if dev.block_size is not None:
                tree.add("block-size", kib_to_bytes(dev.block_size))
            if dev.requested_size is not None:
                tree.add("requested-size", kib_to_bytes(dev.requested_size))
            tree.add("memdev", PropRef(backend_alias))
        case _:
            raise EnumRangeError.for_value("memory device model", dev.model)

    finish_device(tree, dev, boot=False)
    return [object_fragment(backend, caps), Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))]
