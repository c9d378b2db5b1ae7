"""Guest NUMA topology: per-node memory backends, -numa node and distances."""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.exceptions import ConfigUnsupportedError
from qemu_argv.fragments import Fragment
from qemu_argv.memory import guest_ram_request, memory_backend_props, needs_explicit_backend
from qemu_argv.props import Bitmap, PropRef, PropTree
from qemu_argv.secret_objects import object_fragment

if TYPE_CHECKING:
    from qemu_argv.domain import NumaCell, VmDefinition
    from qemu_argv.settings import Settings

logger = get_logger(__name__)


def numa_backend_alias(cell: NumaCell) -> str:
    return f"ram-node{cell.id}"


def _check_cpus(vm: VmDefinition) -> None:
    seen: set[int] = set()
    for cell in vm.numa:
        cpus = Bitmap.parse(cell.cpus)
        overlap = seen & cpus.bits
        if overlap:
            raise ConfigUnsupportedError(
                f"vCPUs {sorted(overlap)} are assigned to more than one NUMA node",
                context={"node": cell.id, "cpus": sorted(overlap)},
            )
        if any(c >= vm.max_cpus for c in cpus.bits):
            raise ConfigUnsupportedError(
                f"NUMA node {cell.id} references vCPUs beyond the maximum of {vm.max_cpus}",
                context={"node": cell.id, "cpus": cell.cpus},
            )
        seen |= cpus.bits


def numa_fragments(vm: VmDefinition, caps: CapabilitySet, settings: Settings) -> list[Fragment]:
    """Backends (when memdev is available) then one -numa node per cell, then distances."""
    if not vm.numa:
        return []
    _check_cpus(vm)
    memdev = caps.has(Cap.NUMA_MEMDEV)
    out: list[Fragment] = []

    for cell in vm.numa:
        tree = PropTree([("type", "node"), ("nodeid", cell.id), ("cpus", Bitmap.parse(cell.cpus))])
        request = guest_ram_request(vm, cell.memory, cell.id)
        if memdev:
            alias = numa_backend_alias(cell)
            out.append(object_fragment(memory_backend_props(alias, request, vm, caps, settings), caps))
            tree.add("memdev", PropRef(alias))
        else:
            if needs_explicit_backend(request):
                raise ConfigUnsupportedError(
                    f"per-node memory tuning of NUMA node {cell.id} is not supported by this QEMU",
                    context={"node": cell.id, "capability": Cap.NUMA_MEMDEV.value},
                )
            # Legacy mem= is in MiB.
            tree.add("mem", cell.memory // constants.KIB_PER_MIB)
        out.append(Fragment.option("-numa", tree))

    distances = [(cell.id, dst, val) for cell in vm.numa for dst, val in sorted(cell.distances.items())]
    if distances:
        if not caps.has(Cap.NUMA_DIST):
            raise ConfigUnsupportedError(
                "NUMA distances are not supported by this QEMU",
                context={"capability": Cap.NUMA_DIST.value},
            )
        for src, dst, val in distances:
            tree = PropTree([("type", "dist"), ("src", src), ("dst", dst), ("val", val)])
            out.append(Fragment.option("-numa", tree))
    return out
