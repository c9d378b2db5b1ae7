"""Assorted devices: input, watchdog, USB redirection, balloon, RNG, NVRAM,
vmcoreinfo, launch security, panic notifiers, shared memory and vsock.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind, IsaAddress
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.chardev import build_chardev, chardev_alias
from qemu_argv.device_common import (
    device_label,
    finish_device,
    plain_device,
    require_address,
    require_alias,
    virtio_device,
)
from qemu_argv.devices import (
    CharSource,
    CharSourceType,
    Input,
    Memballoon,
    Nvram,
    Panic,
    Redirdev,
    Rng,
    Shmem,
    VirtioModel,
    Vsock,
    Watchdog,
)
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import FdPolicy, Fragment
from qemu_argv.linking import AttachmentBundle, LinkingResolver
from qemu_argv.props import PropRef, PropTree
from qemu_argv.secret_objects import object_fragment

if TYPE_CHECKING:
    from qemu_argv.domain import LaunchSecurity, VmDefinition
    from qemu_argv.resources import ResourceTracker

logger = get_logger(__name__)


def _require(caps: CapabilitySet, cap: Cap, label: str, what: str) -> None:
    if not caps.has(cap):
        raise ConfigUnsupportedError(
            f"{what} is not supported by this QEMU (device '{label}')",
            context={"alias": label, "capability": cap.value},
        )


def _device(tree: PropTree, caps: CapabilitySet, bus: str | None) -> Fragment:
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))


# ============================================================================
# Input
# ============================================================================

_USB_INPUT = {"mouse": "usb-mouse", "tablet": "usb-tablet", "keyboard": "usb-kbd"}
_VIRTIO_INPUT = {"mouse": "virtio-mouse", "tablet": "virtio-tablet", "keyboard": "virtio-keyboard"}


def input_fragment(dev: Input, vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    """Device (or input-linux object) for `dev`; None for the built-in PS/2 devices."""
    label = device_label(dev)
    if dev.type == "evdev":
        _require(caps, Cap.INPUT_LINUX, label, "evdev input")
        tree = PropTree.object("input-linux", require_alias(dev)).add("evdev", dev.evdev)
        tree.add("repeat", dev.repeat).add("grab_all", dev.grab_all)
        tree.add("grab-toggle", dev.grab_toggle)
        return object_fragment(tree, caps)

    match dev.bus:
        case "ps2":
            if dev.type == "tablet":
                raise ConfigUnsupportedError(
                    f"PS/2 tablets do not exist (device '{label}')",
                    context={"alias": label},
                )
            return None
        case "usb":
            if dev.type == "passthrough":
                raise ConfigUnsupportedError(
                    f"input passthrough needs the virtio bus (device '{label}')",
                    context={"alias": label},
                )
            require_address(dev, (AddressKind.USB,), what=_USB_INPUT[dev.type])
            tree, bus = plain_device(_USB_INPUT[dev.type], dev, vm)
        case "virtio":
            if dev.type == "passthrough":
                tree, bus = virtio_device("virtio-input-host", dev, vm, caps, model=dev.model, options=dev.virtio)
                tree.add("evdev", dev.evdev)
            else:
                base = _VIRTIO_INPUT[dev.type]
                tree, bus = virtio_device(base, dev, vm, caps, model=dev.model, options=dev.virtio)
        case _:
            raise EnumRangeError.for_value("input bus", dev.bus)
    finish_device(tree, dev, boot=False)
    return _device(tree, caps, bus)


# ============================================================================
# Watchdog
# ============================================================================

_WATCHDOG_ACTIONS = {
    "reset": "reset",
    "shutdown": "shutdown",
    "poweroff": "poweroff",
    "pause": "pause",
    "none": "none",
    "inject-nmi": "inject-nmi",
    # The dump itself is taken by the management layer while paused.
    "dump": "pause",
}


def watchdog_fragments(vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    """One device per watchdog and a single shared -action watchdog=."""
    watchdogs = vm.devices_of(Watchdog)
    if not watchdogs:
        return []
    actions = {w.action for w in watchdogs}
    if len(actions) > 1:
        raise ConfigUnsupportedError(
            "all watchdogs must share the same action",
            context={"actions": sorted(actions)},
        )

    out: list[Fragment] = []
    for dog in watchdogs:
        label = device_label(dog)
        match dog.model:
            case "i6300esb":
                require_address(dog, (AddressKind.PCI,), what="i6300esb")
                tree, bus = plain_device("i6300esb", dog, vm)
            case "ib700":
                tree, bus = plain_device("ib700", dog, vm)
            case "diag288":
                if not vm.is_s390:
                    raise ConfigUnsupportedError(
                        f"diag288 watchdog needs an s390 guest (device '{label}')",
                        context={"alias": label, "arch": vm.arch},
                    )
                tree, bus = PropTree.device("diag288"), None
            case "itco":
                if not vm.is_q35:
                    raise ConfigUnsupportedError(
                        f"iTCO watchdog is built into q35 machines only (device '{label}')",
                        context={"alias": label, "machine": vm.machine},
                    )
                continue
            case _:
                raise EnumRangeError.for_value("watchdog model", dog.model)
        finish_device(tree, dog, boot=False)
        out.append(_device(tree, caps, bus))

    action = _WATCHDOG_ACTIONS[watchdogs[0].action]
    if caps.has(Cap.SET_ACTION):
        out.append(Fragment("-action", f"watchdog={action}"))
    else:
        out.append(Fragment("-watchdog-action", action))
    return out


# ============================================================================
# USB redirection
# ============================================================================


async def redirdev_bundle(
    dev: Redirdev,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    alias = require_alias(dev)
    _require(caps, Cap.USB_REDIR, alias, "USB redirection")
    require_address(dev, (AddressKind.USB,), what="usb-redir")
    chr_alias = chardev_alias(alias)
    chardev = await build_chardev(dev.source, chr_alias, caps, tracker)

    tree, bus = plain_device("usb-redir", dev, vm)
    tree.add("chardev", PropRef(chr_alias)).add("id", alias)
    if dev.filters:
        _require(caps, Cap.USB_REDIR_FILTER, alias, "USB redirection filtering")
        tree.add("filter", "|".join(dev.filters))
    if dev.info.boot_index is not None:
        _require(caps, Cap.USB_REDIR_BOOTINDEX, alias, "booting from a redirected USB device")
        tree.add("bootindex", dev.info.boot_index)
    return resolver.chardev_bundle(alias, dev.source.tls, chardev.fragments, _device(tree, caps, bus))


# ============================================================================
# Balloon
# ============================================================================


def balloon_fragment(dev: Memballoon, vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    if dev.model == "none":
        return None
    label = device_label(dev)
    model = VirtioModel(dev.model)
    tree, bus = virtio_device("virtio-balloon", dev, vm, caps, model=model, options=dev.virtio)
    tree.add("id", dev.info.alias)
    if dev.autodeflate is not None:
        _require(caps, Cap.VIRTIO_BALLOON_AUTODEFLATE, label, "balloon deflate-on-oom")
        tree.add("deflate-on-oom", dev.autodeflate)
    if dev.free_page_reporting is not None:
        _require(caps, Cap.VIRTIO_BALLOON_FREE_PAGE_REPORTING, label, "balloon free page reporting")
        tree.add("free-page-reporting", dev.free_page_reporting)
    return _device(tree, caps, bus)


# ============================================================================
# RNG
# ============================================================================


def rng_backend_alias(dev: Rng) -> str:
    return f"obj{require_alias(dev)}"


async def rng_bundle(
    dev: Rng,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    """Backend object (and its chardev for EGD) followed by virtio-rng."""
    alias = require_alias(dev)
    backend_alias = rng_backend_alias(dev)
    backend: list[Fragment] = []
    tls = None

    match dev.backend:
        case "random":
            _require(caps, Cap.OBJECT_RNG_RANDOM, alias, "rng-random")
            obj = PropTree.object("rng-random", backend_alias).add("filename", dev.source_path)
        case "egd":
            _require(caps, Cap.OBJECT_RNG_EGD, alias, "rng-egd")
            if dev.egd_source is None:
                raise ConfigUnsupportedError(
                    f"EGD rng '{alias}' needs a character device source",
                    context={"alias": alias},
                )
            chr_alias = chardev_alias(alias)
            backend.extend((await build_chardev(dev.egd_source, chr_alias, caps, tracker)).fragments)
            tls = dev.egd_source.tls
            obj = PropTree.object("rng-egd", backend_alias).add("chardev", PropRef(chr_alias))
        case "builtin":
            _require(caps, Cap.OBJECT_RNG_BUILTIN, alias, "rng-builtin")
            obj = PropTree.object("rng-builtin", backend_alias)
        case _:
            raise EnumRangeError.for_value("rng backend", dev.backend)
    backend.append(object_fragment(obj, caps))

    tree, bus = virtio_device("virtio-rng", dev, vm, caps, model=dev.model, options=dev.virtio)
    tree.add("rng", PropRef(backend_alias))
    if dev.rate_bytes is not None:
        tree.add("max-bytes", dev.rate_bytes).add("period", dev.rate_period or 1000)
    finish_device(tree, dev, boot=False)
    return resolver.chardev_bundle(alias, tls, backend, _device(tree, caps, bus))


# ============================================================================
# NVRAM, vmcoreinfo
# ============================================================================


def nvram_fragment(dev: Nvram, vm: VmDefinition, caps: CapabilitySet) -> Fragment:
    label = device_label(dev)
    if not vm.is_pseries:
        raise ConfigUnsupportedError(
            f"NVRAM devices are only supported on pSeries guests (device '{label}')",
            context={"alias": label, "machine": vm.machine},
        )
    require_address(dev, (AddressKind.SPAPR_VIO,), what="spapr-nvram")
    tree, bus = plain_device("spapr-nvram", dev, vm)
    finish_device(tree, dev, boot=False)
    return _device(tree, caps, bus)


def vmcoreinfo_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    if not vm.features.vmcoreinfo:
        return None
    _require(caps, Cap.DEVICE_VMCOREINFO, "vmcoreinfo", "vmcoreinfo")
    return _device(PropTree.device("vmcoreinfo"), caps, None)


# ============================================================================
# Launch security
# ============================================================================


def launch_security_props(sec: LaunchSecurity) -> PropTree:
    alias = constants.LAUNCH_SECURITY_ALIAS
    match sec.type:
        case "sev":
            tree = PropTree.object("sev-guest", alias)
            tree.add("cbitpos", sec.cbitpos).add("reduced-phys-bits", sec.reduced_phys_bits)
            if sec.policy is not None:
                tree.add("policy", f"0x{sec.policy:x}")
            tree.add("dh-cert-file", sec.dh_cert).add("session-file", sec.session)
            tree.add("kernel-hashes", sec.kernel_hashes)
        case "sev-snp":
            tree = PropTree.object("sev-snp-guest", alias)
            tree.add("cbitpos", sec.cbitpos).add("reduced-phys-bits", sec.reduced_phys_bits)
            tree.add("policy", sec.policy)
            tree.add("kernel-hashes", sec.kernel_hashes)
        case "s390-pv":
            tree = PropTree.object("s390-pv-guest", alias)
        case _:
            raise EnumRangeError.for_value("launch security type", sec.type)
    return tree


_LAUNCH_SECURITY_CAPS: dict[str, Cap] = {
    "sev": Cap.SEV_GUEST,
    "sev-snp": Cap.SEV_SNP_GUEST,
    "s390-pv": Cap.S390_PV_GUEST,
}


def launch_security_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    sec = vm.launch_security
    if sec is None:
        return None
    _require(caps, _LAUNCH_SECURITY_CAPS[sec.type], constants.LAUNCH_SECURITY_ALIAS, f"{sec.type} launch security")
    return object_fragment(launch_security_props(sec), caps)


# ============================================================================
# Panic
# ============================================================================


def panic_fragment(dev: Panic, vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    """At most one argument pair per panic device."""
    label = device_label(dev)
    match dev.model:
        case "isa":
            _require(caps, Cap.DEVICE_PANIC, label, "ISA pvpanic")
            require_address(dev, (AddressKind.ISA, AddressKind.NONE), what="pvpanic")
            address = dev.info.address
            iobase = address.iobase if isinstance(address, IsaAddress) else None
            tree = PropTree.device("pvpanic").add("ioport", iobase)
            bus = None
        case "pvpanic":
            _require(caps, Cap.DEVICE_PANIC_PCI, label, "pvpanic-pci")
            require_address(dev, (AddressKind.PCI,), what="pvpanic-pci")
            tree, bus = plain_device("pvpanic-pci", dev, vm)
        case "pseries" | "s390" | "hyperv":
            # Firmware/hypervisor notifiers; hyperv is a CPU flag.
            return None
        case _:
            raise EnumRangeError.for_value("panic model", dev.model)
    finish_device(tree, dev, boot=False)
    return _device(tree, caps, bus)


# ============================================================================
# Shared memory
# ============================================================================


def shmem_backend_alias(dev: Shmem) -> str:
    return f"shmmem-{require_alias(dev)}"


async def shmem_bundle(
    dev: Shmem,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    alias = require_alias(dev)
    require_address(dev, (AddressKind.PCI,), what=dev.model)
    backend: list[Fragment] = []
    match dev.model:
        case "ivshmem-plain":
            _require(caps, Cap.DEVICE_IVSHMEM_PLAIN, alias, "ivshmem-plain")
            if dev.size is None:
                raise ConfigUnsupportedError(
                    f"shared memory '{alias}' needs a size",
                    context={"alias": alias},
                )
            mem_alias = shmem_backend_alias(dev)
            obj = PropTree.object("memory-backend-file", mem_alias)
            obj.add("mem-path", f"/dev/shm/{dev.name}").add("size", dev.size).add("share", True)
            backend.append(object_fragment(obj, caps))
            tree, bus = plain_device("ivshmem-plain", dev, vm)
            tree.add("memdev", PropRef(mem_alias))
        case "ivshmem-doorbell":
            _require(caps, Cap.DEVICE_IVSHMEM_DOORBELL, alias, "ivshmem-doorbell")
            chr_alias = chardev_alias(alias)
            server_path = dev.server_path or f"/var/lib/libvirt/shmem-{dev.name}-sock"
            source = CharSource(type=CharSourceType.UNIX, path=server_path)
            backend.extend((await build_chardev(source, chr_alias, caps, tracker)).fragments)
            tree, bus = plain_device("ivshmem-doorbell", dev, vm)
            tree.add("chardev", PropRef(chr_alias)).add("vectors", dev.vectors).add("ioeventfd", dev.ioeventfd)
        case _:
            raise EnumRangeError.for_value("shmem model", dev.model)
    finish_device(tree, dev, boot=False)
    return resolver.chardev_bundle(alias, None, backend, _device(tree, caps, bus))


# ============================================================================
# vsock
# ============================================================================


def vsock_fragment(dev: Vsock, vm: VmDefinition, caps: CapabilitySet, tracker: ResourceTracker) -> Fragment:
    label = device_label(dev)
    _require(caps, Cap.DEVICE_VHOST_VSOCK, label, "vhost-vsock")
    tree, bus = virtio_device("vhost-vsock", dev, vm, caps, model=dev.model, options=dev.virtio)
    tree.add("id", dev.info.alias).add("guest-cid", dev.cid)
    if dev.vhost_fd is not None:
        tree.add("vhostfd", tracker.pass_fd(dev.vhost_fd, FdPolicy.KEEP_PARENT).render())
    return _device(tree, caps, bus)
