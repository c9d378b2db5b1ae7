"""Disk frontend devices.

The backend (blockdev chain or legacy -drive) is produced by the linking
resolver; the builders here only render the guest-visible device and take
the backend id as input.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind, DriveAddress
from qemu_argv.blockdev import cache_flags
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.chardev import ChardevBackend, build_chardev
from qemu_argv.device_common import (
    add_drive_address_props,
    device_label,
    finish_device,
    iothread_alias,
    plain_device,
    require_address,
    virtio_device,
)
from qemu_argv.devices import (
    CharSource,
    CharSourceType,
    ControllerType,
    Disk,
    DiskBus,
    DiskDevice,
    StorageType,
)
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.linking import AttachmentBundle, LinkingResolver, StorageStrategy, select_storage_strategy
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition
    from qemu_argv.resources import ResourceTracker

logger = get_logger(__name__)


def _require_cap(caps: CapabilitySet, cap: Cap, disk: Disk, what: str) -> None:
    if not caps.has(cap):
        raise ConfigUnsupportedError(
            f"{what} is not supported by this QEMU (disk '{device_label(disk)}')",
            context={"alias": device_label(disk), "capability": cap.value},
        )


def _frontend(disk: Disk, vm: VmDefinition, caps: CapabilitySet) -> tuple[PropTree, str | None]:
    """Driver and address props for the disk's bus."""
    match disk.bus:
        case DiskBus.VIRTIO:
            tree, bus = virtio_device("virtio-blk", disk, vm, caps, model=disk.model, options=disk.virtio)
            label = device_label(disk)
            tree.add("iothread", iothread_alias(disk.iothread, caps, label))
            if disk.queues is not None:
                if caps.has(Cap.VIRTIO_BLK_NUM_QUEUES):
                    tree.add("num-queues", disk.queues)
                else:
                    logger.debug("Dropping virtio-blk num-queues, not supported", extra={"alias": label})
            if disk.queue_size is not None:
                if caps.has(Cap.VIRTIO_BLK_QUEUE_SIZE):
                    tree.add("queue-size", disk.queue_size)
                else:
                    logger.debug("Dropping virtio-blk queue-size, not supported", extra={"alias": label})
            return tree, bus
        case DiskBus.SCSI:
            require_address(disk, (AddressKind.DRIVE,))
            if disk.device == DiskDevice.CDROM:
                driver = "scsi-cd"
            elif disk.device == DiskDevice.LUN:
                driver = "scsi-block"
            else:
                driver = "scsi-hd"
            tree = PropTree.device(driver)
            bus = add_drive_address_props(tree, disk, vm, ControllerType.SCSI)
            if disk.wwn is not None:
                _require_cap(caps, Cap.SCSI_DISK_WWN, disk, "setting wwn for SCSI disks")
                tree.add("wwn", disk.wwn)
            tree.add("vendor", disk.vendor).add("product", disk.product)
            return tree, bus
        case DiskBus.IDE | DiskBus.SATA:
            require_address(disk, (AddressKind.DRIVE,))
            driver = "ide-cd" if disk.device == DiskDevice.CDROM else "ide-hd"
            tree = PropTree.device(driver)
            ctype = ControllerType.IDE if disk.bus == DiskBus.IDE else ControllerType.SATA
            bus = add_drive_address_props(tree, disk, vm, ctype)
            if disk.wwn is not None:
                tree.add("wwn", disk.wwn)
            return tree, bus
        case DiskBus.FDC:
            require_address(disk, (AddressKind.DRIVE,))
            tree = PropTree.device("floppy")
            bus = add_drive_address_props(tree, disk, vm, ControllerType.FDC)
            return tree, bus
        case DiskBus.USB:
            require_address(disk, (AddressKind.USB,))
            _require_cap(caps, Cap.USB_STORAGE, disk, "usb-storage")
            tree, bus = plain_device("usb-storage", disk, vm)
            tree.add("removable", disk.removable)
            return tree, bus
        case _:
            raise EnumRangeError.for_value("disk bus", disk.bus)


def _add_disk_tuning(tree: PropTree, disk: Disk, caps: CapabilitySet) -> None:
    if disk.rotation_rate is not None and caps.has(Cap.DISK_ROTATION_RATE):
        tree.add("rotation_rate", disk.rotation_rate)
    if disk.geometry is not None:
        g = disk.geometry
        tree.add("cyls", g.cylinders).add("heads", g.heads).add("secs", g.sectors)
        if g.trans is not None and disk.bus == DiskBus.IDE:
            tree.add("bios-chs-trans", g.trans)
    if disk.blockio is not None:
        b = disk.blockio
        tree.add("logical_block_size", b.logical_block_size)
        tree.add("physical_block_size", b.physical_block_size)
        if b.discard_granularity is not None and caps.has(Cap.BLOCKIO_DISCARD_GRANULARITY):
            tree.add("discard_granularity", b.discard_granularity)
    if disk.serial is not None:
        tree.add("serial", disk.serial)


def disk_device_props(
    disk: Disk, vm: VmDefinition, caps: CapabilitySet, backend: str | None
) -> tuple[PropTree, str | None]:
    """Frontend props referencing `backend` (node name or -drive id, None for empty media)."""
    tree, bus = _frontend(disk, vm, caps)
    _add_disk_tuning(tree, disk, caps)

    if select_storage_strategy(caps) == StorageStrategy.BLOCKDEV_CHAIN:
        writeback = cache_flags(disk.cache).writeback
        if writeback is not None and caps.has(Cap.DISK_WRITE_CACHE):
            tree.add("write-cache", writeback)
        tree.add("werror", str(disk.error_policy) if disk.error_policy else None)
        tree.add("rerror", str(disk.rerror_policy) if disk.rerror_policy else None)
    if disk.shareable:
        if caps.has(Cap.DISK_SHARE_RW):
            tree.add("share-rw", True)
        else:
            logger.debug("Dropping share-rw, not supported", extra={"alias": device_label(disk)})

    if backend is not None:
        tree.add("drive", PropRef(backend))
    finish_device(tree, disk)
    return tree, bus


def disk_device_fragment(disk: Disk, vm: VmDefinition, caps: CapabilitySet, backend: str | None) -> Fragment | None:
    if disk.bus == DiskBus.FDC and not caps.has(Cap.DEVICE_FLOPPY):
        if backend is None:
            return None
        address = disk.info.address
        unit = address.unit if isinstance(address, DriveAddress) else 0
        return Fragment("-global", f"isa-fdc.drive{'AB'[unit]}={backend}", references=(backend,))
    tree, bus = disk_device_props(disk, vm, caps, backend)
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))


# ============================================================================
# vhost-user-blk
# ============================================================================


def vhost_user_chardev_alias(disk: Disk) -> str:
    return f"chr-vu-{disk.info.alias}"


async def vhost_user_disk_bundle(
    disk: Disk,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    """vhost-user-blk: a client socket chardev plus the device using it."""
    _require_cap(caps, Cap.VHOST_USER_BLK, disk, "vhost-user-blk")
    if disk.bus != DiskBus.VIRTIO:
        raise ConfigUnsupportedError(
            f"vhost-user disk '{device_label(disk)}' must use the virtio bus",
            context={"alias": device_label(disk), "bus": str(disk.bus)},
        )
    chr_alias = vhost_user_chardev_alias(disk)
    chardev: ChardevBackend = await build_chardev(
        CharSource(type=CharSourceType.UNIX, path=disk.source.path),
        chr_alias,
        caps,
        tracker,
    )
    tree, bus = virtio_device("vhost-user-blk", disk, vm, caps, model=disk.model, options=disk.virtio)
    tree.add("chardev", PropRef(chr_alias))
    if disk.queues is not None:
        tree.add("num-queues", disk.queues)
    finish_device(tree, disk)
    device = Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))
    return resolver.chardev_bundle(device_label(disk), None, chardev.fragments, device)


def is_vhost_user(disk: Disk) -> bool:
    return disk.source.type == StorageType.VHOST_USER


