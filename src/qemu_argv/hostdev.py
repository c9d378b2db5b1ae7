"""Host device assignment: VFIO PCI, mediated devices, USB host and SCSI generic."""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.device_common import (
    add_drive_address_props,
    add_rom_props,
    device_label,
    finish_device,
    plain_device,
    require_address,
    require_alias,
)
from qemu_argv.devices import ControllerType, Hostdev
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.linking import StorageStrategy, select_storage_strategy
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition

logger = get_logger(__name__)

_MDEV_SYSFS = "/sys/bus/mdev/devices"

_MDEV_DRIVERS: dict[str, tuple[Cap, tuple[AddressKind, ...]]] = {
    "vfio-pci": (Cap.VFIO_PCI, (AddressKind.PCI,)),
    "vfio-ccw": (Cap.VFIO_CCW, (AddressKind.CCW,)),
    "vfio-ap": (Cap.VFIO_AP, (AddressKind.NONE,)),
}


def _require(caps: CapabilitySet, cap: Cap, dev: Hostdev, what: str) -> None:
    if not caps.has(cap):
        raise ConfigUnsupportedError(
            f"{what} is not supported by this QEMU (device '{device_label(dev)}')",
            context={"alias": device_label(dev), "capability": cap.value},
        )


def _add_display(tree: PropTree, dev: Hostdev, caps: CapabilitySet) -> None:
    if dev.display is None:
        return
    _require(caps, Cap.VFIO_PCI_DISPLAY, dev, "vfio display")
    tree.add("display", dev.display)
    tree.add("ramfb", dev.ramfb)


def _pci_props(dev: Hostdev, vm: VmDefinition, caps: CapabilitySet) -> tuple[PropTree, str | None]:
    _require(caps, Cap.VFIO_PCI, dev, "vfio-pci")
    require_address(dev, (AddressKind.PCI,), what="vfio-pci")
    if not dev.pci_address:
        raise ConfigUnsupportedError(
            f"PCI host device '{device_label(dev)}' has no host address",
            context={"alias": device_label(dev)},
        )
    tree, bus = plain_device("vfio-pci", dev, vm)
    tree.add("host", dev.pci_address)
    _add_display(tree, dev, caps)
    tree.add("id", dev.info.alias).add("bootindex", dev.info.boot_index)
    add_rom_props(tree, dev)
    return tree, bus


def _mdev_props(dev: Hostdev, vm: VmDefinition, caps: CapabilitySet) -> tuple[PropTree, str | None]:
    cap, addresses = _MDEV_DRIVERS[dev.mdev_model]
    _require(caps, cap, dev, dev.mdev_model)
    require_address(dev, addresses, what=dev.mdev_model)
    if not dev.mdev_uuid:
        raise ConfigUnsupportedError(
            f"mediated device '{device_label(dev)}' has no UUID",
            context={"alias": device_label(dev)},
        )
    tree, bus = plain_device(dev.mdev_model, dev, vm)
    tree.add("sysfsdev", f"{_MDEV_SYSFS}/{dev.mdev_uuid}")
    if dev.mdev_model == "vfio-pci":
        _add_display(tree, dev, caps)
    finish_device(tree, dev)
    return tree, bus


def _usb_props(dev: Hostdev, vm: VmDefinition) -> tuple[PropTree, str | None]:
    require_address(dev, (AddressKind.USB,), what="usb-host")
    tree, bus = plain_device("usb-host", dev, vm)
    if dev.usb_bus is not None and dev.usb_device is not None:
        tree.add("hostbus", dev.usb_bus).add("hostaddr", dev.usb_device)
    elif dev.usb_vendor is not None and dev.usb_product is not None:
        tree.add("vendorid", f"0x{dev.usb_vendor:04x}").add("productid", f"0x{dev.usb_product:04x}")
    else:
        raise ConfigUnsupportedError(
            f"USB host device '{device_label(dev)}' needs a bus/device pair or a vendor/product pair",
            context={"alias": device_label(dev)},
        )
    finish_device(tree, dev)
    return tree, bus


def scsi_generic_backend_alias(dev: Hostdev) -> str:
    return f"{constants.NODE_NAME_PREFIX}-{require_alias(dev)}-backend"


def _scsi_fragments(dev: Hostdev, vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    if not dev.scsi_sg_path:
        raise ConfigUnsupportedError(
            f"SCSI host device '{device_label(dev)}' has no generic device path",
            context={"alias": device_label(dev)},
        )
    backend_alias = scsi_generic_backend_alias(dev)
    if select_storage_strategy(caps) == StorageStrategy.BLOCKDEV_CHAIN:
        node = PropTree.blockdev("host_device", backend_alias)
        node.add("filename", dev.scsi_sg_path).add("read-only", dev.readonly)
        backend = Fragment.from_tree(node, caps, TreeKind.BLOCKDEV)
    else:
        drive = PropTree([("file", dev.scsi_sg_path), ("if", "none"), ("format", "raw"), ("id", backend_alias)])
        if dev.readonly:
            drive.add("readonly", True)
        backend = Fragment.from_tree(drive, caps, TreeKind.DRIVE)

    tree = PropTree.device("scsi-generic")
    bus = add_drive_address_props(tree, dev, vm, ControllerType.SCSI)
    tree.add("drive", PropRef(backend_alias))
    finish_device(tree, dev)
    return [backend, Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))]


def hostdev_fragments(dev: Hostdev, vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    require_alias(dev)
    match dev.subsys:
        case "pci":
            tree, bus = _pci_props(dev, vm, caps)
        case "mdev":
            tree, bus = _mdev_props(dev, vm, caps)
        case "usb":
            tree, bus = _usb_props(dev, vm)
        case "scsi":
            return _scsi_fragments(dev, vm, caps)
        case _:
            raise EnumRangeError.for_value("host device subsystem", dev.subsys)
    return [Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))]
