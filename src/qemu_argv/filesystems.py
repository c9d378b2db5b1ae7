"""Shared host directories: virtiofs (vhost-user-fs) and 9p."""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.chardev import build_chardev
from qemu_argv.device_common import device_label, finish_device, require_alias, virtio_device
from qemu_argv.devices import CharSource, CharSourceType, Filesystem
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.linking import AttachmentBundle, LinkingResolver
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition
    from qemu_argv.resources import ResourceTracker

logger = get_logger(__name__)

_9P_SECURITY_MODELS = {"passthrough": "passthrough", "mapped": "mapped", "squash": "none"}


def fsdev_alias(fs: Filesystem) -> str:
    return f"fsdev-{require_alias(fs)}"


def virtiofs_chardev_alias(fs: Filesystem) -> str:
    return f"chr-vu-{require_alias(fs)}"


def guest_memory_shared(vm: VmDefinition) -> bool:
    """Whether all guest RAM is mapped shared, as vhost-user backends need."""
    if vm.memory.access == "shared":
        return True
    return bool(vm.numa) and all(cell.mem_access == "shared" for cell in vm.numa)


async def virtiofs_bundle(
    fs: Filesystem,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    """Client chardev to the external virtiofsd plus the vhost-user-fs device."""
    label = device_label(fs)
    if not caps.has(Cap.VHOST_USER_FS):
        raise ConfigUnsupportedError(
            f"virtiofs is not supported by this QEMU (filesystem '{label}')",
            context={"alias": label, "capability": Cap.VHOST_USER_FS.value},
        )
    if fs.socket_path is None:
        raise ConfigUnsupportedError(
            f"virtiofs filesystem '{label}' has no daemon socket",
            context={"alias": label},
        )
    if not guest_memory_shared(vm):
        raise ConfigUnsupportedError(
            f"virtiofs requires shared guest memory (filesystem '{label}')",
            context={"alias": label, "memory_access": vm.memory.access},
        )
    chr_alias = virtiofs_chardev_alias(fs)
    chardev = await build_chardev(CharSource(type=CharSourceType.UNIX, path=fs.socket_path), chr_alias, caps, tracker)

    tree, bus = virtio_device("vhost-user-fs", fs, vm, caps, model=fs.model, options=fs.virtio)
    tree.add("chardev", PropRef(chr_alias))
    tree.add("queue-size", fs.queue_size or constants.VIRTIOFS_DEFAULT_QUEUE_SIZE)
    tree.add("tag", fs.target)
    finish_device(tree, fs)
    device = Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))
    return resolver.chardev_bundle(label, None, chardev.fragments, device)


def fsdev_props(fs: Filesystem) -> PropTree:
    """-fsdev local,... for a 9p export."""
    match fs.driver:
        case "path":
            tree = PropTree([("type", "local")])
        case "handle":
            raise ConfigUnsupportedError(
                f"the 9p handle driver is no longer available (filesystem '{device_label(fs)}')",
                context={"alias": device_label(fs)},
            )
        case _:
            raise EnumRangeError.for_value("9p filesystem driver", fs.driver)
    tree.add("security_model", _9P_SECURITY_MODELS[fs.access_mode])
    tree.add("multidevs", fs.multidevs)
    tree.add("id", fsdev_alias(fs)).add("path", fs.source_dir)
    if fs.readonly:
        tree.add("readonly", True)
    return tree


def nine_p_fragments(fs: Filesystem, vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    fsdev = Fragment.option("-fsdev", fsdev_props(fs))
    tree, bus = virtio_device("virtio-9p", fs, vm, caps, model=fs.model, options=fs.virtio)
    tree.add("id", fs.info.alias)
    tree.add("fsdev", PropRef(fsdev_alias(fs))).add("mount_tag", fs.target)
    return [fsdev, Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))]


async def filesystem_fragments(
    fs: Filesystem,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> list[Fragment]:
    if fs.driver == "virtiofs":
        return (await virtiofs_bundle(fs, vm, caps, resolver, tracker)).fragments()
    return nine_p_fragments(fs, vm, caps)
