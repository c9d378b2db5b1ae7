"""Shared device fragment policies.

Address formatting, virtio device naming, generic virtio options, boot
index and option ROM props. Every device builder goes through these so the
policies stay uniform:

- dispatch keys off the assigned address kind; a kind the builder does not
  accept is ConfigUnsupportedError naming the device and the combination
- PCI bus aliases are resolved through the controller list; a missing
  controller or alias is InternalError
- capability-gated options are dropped silently unless explicitly required
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from qemu_argv._logging import get_logger
from qemu_argv.addresses import (
    AddressKind,
    CcidAddress,
    CcwAddress,
    DeviceInfo,
    DriveAddress,
    IsaAddress,
    PciAddress,
    SpaprVioAddress,
    UsbAddress,
    VirtioSerialAddress,
)
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import ControllerType, VirtioModel, VirtioOptions
from qemu_argv.exceptions import ConfigUnsupportedError, InternalError
from qemu_argv.props import PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition

logger = get_logger(__name__)

VIRTIO_ADDRESS_KINDS: tuple[AddressKind, ...] = (AddressKind.PCI, AddressKind.CCW, AddressKind.VIRTIO_MMIO)


# ============================================================================
# Labels and address checks
# ============================================================================


def device_label(dev: Any) -> str:
    """Human-readable device name for error messages."""
    info: DeviceInfo = dev.info
    return info.alias or getattr(dev, "kind", type(dev).__name__)


def require_alias(dev: Any) -> str:
    alias = dev.info.alias
    if not alias:
        raise InternalError(
            f"{getattr(dev, 'kind', 'device')} device has no alias assigned",
            context={"kind": getattr(dev, "kind", None)},
        )
    return alias


def require_address(dev: Any, accepted: Iterable[AddressKind], what: str | None = None) -> AddressKind:
    """Return the device's address kind, rejecting kinds the builder can't use."""
    kind = dev.info.address_kind
    accepted = tuple(accepted)
    if kind not in accepted:
        label = device_label(dev)
        what = what or getattr(dev, "kind", "device")
        raise ConfigUnsupportedError(
            f"address type '{kind}' is not supported for {what} device '{label}'",
            context={"alias": label, "device": what, "address": str(kind), "accepted": [str(a) for a in accepted]},
        )
    return kind


# ============================================================================
# Address props
# ============================================================================


def _controller_alias(vm: VmDefinition, ctype: ControllerType, index: int, dev: Any, address: str) -> str:
    ctrl = vm.find_controller(ctype, index)
    if ctrl is None:
        raise InternalError(
            f"could not find {ctype} controller with index '{index}' required for device '{device_label(dev)}' "
            f"at address '{address}'",
            context={"controller_type": str(ctype), "bus_index": index, "alias": device_label(dev)},
        )
    if not ctrl.info.alias:
        raise InternalError(
            f"{ctype} controller with index '{index}' has no alias",
            context={"controller_type": str(ctype), "bus_index": index},
        )
    return ctrl.info.alias


def format_pci_address(addr: PciAddress) -> str:
    return f"{addr.domain:04x}:{addr.bus:02x}:{addr.slot:02x}.{addr.function:x}"


def add_address_props(tree: PropTree, dev: Any, vm: VmDefinition) -> str | None:
    """Append bus/addr-style props for the device's address.

    Returns the alias of the controller the props reference, if any.
    Drive addresses are bus specific and handled by add_drive_address_props.
    """
    address = dev.info.address
    match address:
        case PciAddress():
            if address.domain != 0:
                raise ConfigUnsupportedError(
                    f"only PCI device addresses with domain=0 are supported (device '{device_label(dev)}')",
                    context={"alias": device_label(dev), "address": format_pci_address(address)},
                )
            bus = _controller_alias(vm, ControllerType.PCI, address.bus, dev, format_pci_address(address))
            addr = f"0x{address.slot:x}"
            if address.function:
                addr += f".0x{address.function:x}"
            tree.add("bus", bus).add("addr", addr)
            if address.multifunction is not None:
                tree.add("multifunction", address.multifunction)
            if dev.info.acpi_index is not None:
                tree.add("acpi-index", dev.info.acpi_index)
            return bus
        case UsbAddress():
            alias = _controller_alias(vm, ControllerType.USB, address.bus, dev, f"usb:{address.bus}")
            tree.add("bus", f"{alias}.0").add("port", address.port)
            return alias
        case CcwAddress():
            tree.add("devno", f"{address.cssid:x}.{address.ssid:x}.{address.devno:04x}")
            return None
        case IsaAddress():
            if address.iobase is not None:
                tree.add("iobase", f"0x{address.iobase:x}")
            tree.add("irq", address.irq)
            return None
        case VirtioSerialAddress():
            alias = _controller_alias(
                vm, ControllerType.VIRTIO_SERIAL, address.controller, dev, f"virtio-serial:{address.controller}"
            )
            tree.add("bus", f"{alias}.{address.bus}").add("nr", address.port)
            return alias
        case CcidAddress():
            alias = _controller_alias(vm, ControllerType.CCID, address.controller, dev, f"ccid:{address.controller}")
            tree.add("bus", f"{alias}.0")
            return alias
        case SpaprVioAddress():
            if address.reg is not None:
                tree.add("reg", f"0x{address.reg:08x}")
            return None
        case DriveAddress():
            raise InternalError(
                f"drive address of device '{device_label(dev)}' must be formatted by its bus builder",
                context={"alias": device_label(dev)},
            )
        case _:
            return None


def add_drive_address_props(tree: PropTree, dev: Any, vm: VmDefinition, ctype: ControllerType) -> str:
    """Append bus/unit props for a drive-unit address on controller type `ctype`."""
    address = dev.info.address
    if not isinstance(address, DriveAddress):
        raise ConfigUnsupportedError(
            f"device '{device_label(dev)}' on a {ctype} bus needs a drive address, got '{address.type}'",
            context={"alias": device_label(dev), "address": address.type, "bus": str(ctype)},
        )
    alias = _controller_alias(vm, ctype, address.controller, dev, f"drive:{address.controller}")
    match ctype:
        case ControllerType.SCSI:
            ctrl = vm.find_controller(ctype, address.controller)
            model = ctrl.model if ctrl is not None else None
            if model in ("lsilogic", "lsisas1068", "lsisas1078", "ibmvscsi"):
                # Single-channel HBAs: the unit is the SCSI id
                tree.add("bus", f"{alias}.{address.bus}").add("scsi-id", address.unit)
            else:
                tree.add("bus", f"{alias}.0")
                tree.add("channel", address.bus).add("scsi-id", address.target).add("lun", address.unit)
        case ControllerType.IDE:
            tree.add("bus", f"{alias}.{address.bus}").add("unit", address.unit)
        case ControllerType.SATA:
            tree.add("bus", f"{alias}.{address.unit}")
        case ControllerType.FDC:
            tree.add("unit", address.unit)
        case _:
            raise InternalError(f"controller type '{ctype}' has no drive addresses", context={"type": str(ctype)})
    return alias


# ============================================================================
# Virtio naming
# ============================================================================


class VirtioVariant(StrEnum):
    """Transport family of a virtio device, i.e. its name suffix."""

    PCI = "pci"
    CCW = "ccw"
    MMIO = "device"


def select_virtio_variant(dev: Any) -> VirtioVariant:
    """Pick the virtio transport from the device's address kind."""
    kind = require_address(dev, VIRTIO_ADDRESS_KINDS, what="virtio")
    if kind == AddressKind.PCI:
        return VirtioVariant.PCI
    if kind == AddressKind.CCW:
        return VirtioVariant.CCW
    return VirtioVariant.MMIO


@dataclass(frozen=True, slots=True)
class VirtioName:
    """Resolved virtio driver name plus the legacy/modern switches it needs."""

    driver: str
    disable_legacy: bool | None = None
    disable_modern: bool | None = None


def virtio_name(
    base: str,
    variant: VirtioVariant,
    model: VirtioModel,
    caps: CapabilitySet,
    label: str,
) -> VirtioName:
    """Resolve the virtio driver name for `model`.

    Non-transitional requests need either the *-non-transitional device
    names or the disable-legacy property; with neither the request is
    rejected. Transitional requests fall back to plain naming, which the
    guest sees identically.
    """
    plain = f"{base}-{variant.value}"
    if model == VirtioModel.DEFAULT:
        return VirtioName(plain)

    if variant != VirtioVariant.PCI:
        if model == VirtioModel.NON_TRANSITIONAL:
            raise ConfigUnsupportedError(
                f"virtio non-transitional model not supported for address type '{variant.value}' "
                f"(device '{label}')",
                context={"alias": label, "model": str(model), "variant": variant.value},
            )
        return VirtioName(plain)

    if caps.has(Cap.VIRTIO_PCI_TRANSITIONAL):
        suffix = "non-transitional" if model == VirtioModel.NON_TRANSITIONAL else "transitional"
        return VirtioName(f"{plain}-{suffix}")

    if caps.has(Cap.VIRTIO_PCI_DISABLE_LEGACY):
        if model == VirtioModel.NON_TRANSITIONAL:
            return VirtioName(plain, disable_legacy=True, disable_modern=False)
        return VirtioName(plain, disable_legacy=False)

    if model == VirtioModel.NON_TRANSITIONAL:
        raise ConfigUnsupportedError(
            f"virtio non-transitional model not supported for this QEMU (device '{label}')",
            context={"alias": label, "model": str(model)},
        )
    logger.debug("Transitional virtio naming unavailable, using plain name", extra={"alias": label})
    return VirtioName(plain)


def add_virtio_options(tree: PropTree, options: VirtioOptions | None, caps: CapabilitySet, label: str) -> None:
    if options is None:
        return
    tree.add("iommu_platform", options.iommu_platform)
    tree.add("ats", options.ats)
    if options.packed is not None:
        if caps.has(Cap.VIRTIO_PACKED_QUEUES):
            tree.add("packed", options.packed)
        elif options.packed:
            raise ConfigUnsupportedError(
                f"packed virtqueues are not supported by this QEMU (device '{label}')",
                context={"alias": label, "capability": Cap.VIRTIO_PACKED_QUEUES.value},
            )
    tree.add("page-per-vq", options.page_per_vq)
    if options.event_idx is not None:
        if caps.has(Cap.VIRTIO_EVENT_IDX):
            tree.add("event_idx", options.event_idx)
        else:
            logger.debug("Dropping event_idx, not supported", extra={"alias": label})


def virtio_device(
    base: str,
    dev: Any,
    vm: VmDefinition,
    caps: CapabilitySet,
    *,
    model: VirtioModel = VirtioModel.DEFAULT,
    options: VirtioOptions | None = None,
) -> tuple[PropTree, str | None]:
    """Start a virtio device tree: driver, address, legacy switches, options.

    Returns the tree and the referenced controller alias.
    """
    variant = select_virtio_variant(dev)
    label = device_label(dev)
    name = virtio_name(base, variant, model, caps, label)
    tree = PropTree.device(name.driver)
    bus = add_address_props(tree, dev, vm)
    tree.add("disable-legacy", name.disable_legacy)
    tree.add("disable-modern", name.disable_modern)
    add_virtio_options(tree, options, caps, label)
    return tree, bus


def plain_device(driver: str, dev: Any, vm: VmDefinition) -> tuple[PropTree, str | None]:
    """Start a non-virtio device tree: driver then address props."""
    tree = PropTree.device(driver)
    bus = add_address_props(tree, dev, vm)
    return tree, bus


# ============================================================================
# Trailing props
# ============================================================================


def add_rom_props(tree: PropTree, dev: Any) -> None:
    rom = dev.info.rom
    if rom is None:
        return
    if dev.info.address_kind != AddressKind.PCI:
        raise ConfigUnsupportedError(
            f"ROM tuning is only supported for PCI devices (device '{device_label(dev)}')",
            context={"alias": device_label(dev), "address": str(dev.info.address_kind)},
        )
    if rom.enabled is False:
        tree.add("romfile", "")
        return
    if rom.bar is not None:
        tree.add("rombar", 1 if rom.bar else 0)
    tree.add("romfile", rom.file)


def finish_device(tree: PropTree, dev: Any, *, boot: bool = True) -> PropTree:
    """Append id and (optionally) bootindex."""
    tree.add("id", dev.info.alias)
    if boot:
        tree.add("bootindex", dev.info.boot_index)
    return tree


def iothread_alias(iothread: int | None, caps: CapabilitySet, label: str) -> str | None:
    """iothread object id for binding, or None when unsupported."""
    if iothread is None:
        return None
    if not caps.has(Cap.OBJECT_IOTHREAD):
        logger.debug("Dropping iothread binding, not supported", extra={"alias": label, "iothread": iothread})
        return None
    return f"iothread{iothread}"
