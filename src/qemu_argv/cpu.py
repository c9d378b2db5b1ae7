"""CPU model (-cpu), topology (-smp), I/O thread objects and -accel."""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv._logging import get_logger
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import Panic
from qemu_argv.domain import CpuFeature, HyperV, IOThread, VirtType
from qemu_argv.emitter import emit_flat, flat_join
from qemu_argv.exceptions import ConfigUnsupportedError
from qemu_argv.fragments import Fragment
from qemu_argv.props import PropTree
from qemu_argv.secret_objects import object_fragment

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition

logger = get_logger(__name__)

_ACCELERATORS: dict[VirtType, str] = {
    VirtType.KVM: "kvm",
    VirtType.QEMU: "tcg",
    VirtType.HVF: "hvf",
}

_HYPERV_FLAGS: tuple[tuple[str, str], ...] = (
    ("relaxed", "hv-relaxed"),
    ("vapic", "hv-vapic"),
    ("vpindex", "hv-vpindex"),
    ("runtime", "hv-runtime"),
    ("synic", "hv-synic"),
    ("stimer", "hv-stimer"),
    ("frequencies", "hv-frequencies"),
    ("tlbflush", "hv-tlbflush"),
    ("ipi", "hv-ipi"),
)


def accelerator_name(vm: VmDefinition) -> str:
    return _ACCELERATORS[vm.virt_type]


def _feature_enabled(feature: CpuFeature) -> bool:
    return feature.policy in ("force", "require", "optional")


def _add_feature(tree: PropTree, legacy: list[str], name: str, enabled: bool, caps: CapabilitySet) -> None:
    if caps.has(Cap.CPU_FEATURE_ON_OFF):
        tree.add(name, enabled)
    else:
        # Old binaries only take bare +feat / -feat tokens.
        legacy.append(("+" if enabled else "-") + name)


def _add_hyperv(tree: PropTree, hv: HyperV) -> None:
    for field_name, prop in _HYPERV_FLAGS:
        value = getattr(hv, field_name)
        if value is not None:
            tree.add(prop, value)
    if hv.spinlocks is not None:
        tree.add("hv-spinlocks", f"0x{hv.spinlocks:x}")
    tree.add("hv-vendor-id", hv.vendor_id)


def _timer_and_panic_flags(vm: VmDefinition) -> list[tuple[str, bool]]:
    """CPU flags driven by <clock> timers and the Hyper-V crash notifier."""
    flags: list[tuple[str, bool]] = []
    for timer in vm.clock.timers:
        if timer.present is None:
            continue
        if timer.name == "kvmclock":
            flags.append(("kvmclock", timer.present))
        elif timer.name == "hypervclock":
            flags.append(("hv-time", timer.present))
    if any(p.model == "hyperv" for p in vm.devices_of(Panic)):
        flags.append(("hv-crash", True))
    return flags


def cpu_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    """-cpu for the configured model and features, or None for the default."""
    cpu = vm.cpu
    match cpu.mode:
        case "host-passthrough" | "host-model":
            if vm.virt_type != VirtType.KVM and cpu.mode == "host-passthrough":
                raise ConfigUnsupportedError(
                    "host-passthrough CPU mode requires a hardware accelerator",
                    context={"virt_type": str(vm.virt_type)},
                )
            model = "host"
        case "maximum":
            model = "max"
        case _:
            model = cpu.model

    features = vm.features
    extra_flags = _timer_and_panic_flags(vm)
    if model is None:
        if cpu.features or features.hyperv or features.kvm_hidden or features.pmu is not None or extra_flags:
            raise ConfigUnsupportedError(
                "CPU features need an explicit CPU model",
                context={"mode": cpu.mode},
            )
        return None

    tree = PropTree([("type", model)])
    if cpu.migratable is not None and cpu.mode == "host-passthrough":
        tree.add("migratable", cpu.migratable)
    legacy: list[str] = []
    for feature in cpu.features:
        _add_feature(tree, legacy, feature.name, _feature_enabled(feature), caps)
    if features.kvm_hidden:
        tree.add("kvm", False)
    if features.pvspinlock is not None:
        tree.add("kvm-pv-unhalt", features.pvspinlock)
    if features.pmu is not None:
        tree.add("pmu", features.pmu)
    if features.hyperv is not None:
        _add_hyperv(tree, features.hyperv)
    for name, enabled in extra_flags:
        tree.add(name, enabled)
    return Fragment("-cpu", flat_join([emit_flat(tree), *legacy]))


def smp_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment:
    """-smp N,maxcpus=M plus the socket/die/cluster/core/thread split."""
    tree = PropTree([("type", vm.vcpus), ("maxcpus", vm.max_cpus)])
    topo = vm.topology
    if topo is not None:
        total = topo.sockets * topo.dies * topo.clusters * topo.cores * topo.threads
        if total != vm.max_cpus:
            raise ConfigUnsupportedError(
                f"CPU topology describes {total} CPUs but the maximum is {vm.max_cpus}",
                context={"topology": total, "max_vcpus": vm.max_cpus},
            )
        if topo.dies > 1 and not caps.has(Cap.SMP_DIES):
            raise ConfigUnsupportedError(
                "multiple dies per socket are not supported by this QEMU",
                context={"capability": Cap.SMP_DIES.value, "dies": topo.dies},
            )
        if topo.clusters > 1 and not caps.has(Cap.SMP_CLUSTERS):
            raise ConfigUnsupportedError(
                "CPU clusters are not supported by this QEMU",
                context={"capability": Cap.SMP_CLUSTERS.value, "clusters": topo.clusters},
            )
        tree.add("sockets", topo.sockets)
        tree.add_if(caps.has(Cap.SMP_DIES), "dies", topo.dies)
        tree.add_if(caps.has(Cap.SMP_CLUSTERS), "clusters", topo.clusters)
        tree.add("cores", topo.cores).add("threads", topo.threads)
    return Fragment.option("-smp", tree)


def iothread_alias_for(thread: IOThread) -> str:
    return f"iothread{thread.id}"


def iothread_fragments(vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    if not vm.iothreads:
        return []
    if not caps.has(Cap.OBJECT_IOTHREAD):
        raise ConfigUnsupportedError(
            "I/O threads are not supported by this QEMU",
            context={"capability": Cap.OBJECT_IOTHREAD.value, "count": len(vm.iothreads)},
        )
    out = []
    for thread in vm.iothreads:
        tree = PropTree.object("iothread", iothread_alias_for(thread))
        polling = (thread.poll_max_ns, thread.poll_grow, thread.poll_shrink)
        if any(v is not None for v in polling):
            if caps.has(Cap.IOTHREAD_POLLING):
                tree.add("poll-max-ns", thread.poll_max_ns)
                tree.add("poll-grow", thread.poll_grow).add("poll-shrink", thread.poll_shrink)
            else:
                logger.debug("Dropping iothread polling tuning, not supported", extra={"iothread": thread.id})
        if thread.thread_pool_min is not None or thread.thread_pool_max is not None:
            if caps.has(Cap.IOTHREAD_THREAD_POOL):
                tree.add("thread-pool-min", thread.thread_pool_min)
                tree.add("thread-pool-max", thread.thread_pool_max)
            else:
                logger.debug("Dropping iothread pool size, not supported", extra={"iothread": thread.id})
        out.append(object_fragment(tree, caps))
    return out


def accel_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    """-accel when supported; older binaries take accel= on -machine instead."""
    if not caps.has(Cap.ACCEL):
        return None
    return Fragment.option("-accel", PropTree([("type", accelerator_name(vm))]))
