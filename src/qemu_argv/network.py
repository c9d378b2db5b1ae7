"""Network interfaces: host backend (-netdev) plus guest NIC (-device).

Tap-style backends consume descriptors the caller opened beforehand; they
are passed to the child as-is and stay owned by the caller. vhost-user
backends get a socket chardev and vDPA backends an fdset for the device node.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.chardev import build_chardev, chardev_alias
from qemu_argv.device_common import (
    add_rom_props,
    device_label,
    plain_device,
    require_address,
    require_alias,
    virtio_device,
)
from qemu_argv.devices import CharSource, CharSourceType, Interface, InterfaceType, Offloads
from qemu_argv.emitter import TreeKind, escape_commas, uses_json
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.filesystems import guest_memory_shared
from qemu_argv.fragments import FdPolicy, Fragment
from qemu_argv.linking import AttachmentBundle, LinkingResolver
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition
    from qemu_argv.resources import ResourceTracker

logger = get_logger(__name__)

_TAP_TYPES = (InterfaceType.ETHERNET, InterfaceType.BRIDGE, InterfaceType.NETWORK, InterfaceType.DIRECT)
_SOCKET_TYPES = (InterfaceType.MCAST, InterfaceType.CLIENT, InterfaceType.SERVER, InterfaceType.UDP)

# NIC model -> address kinds it can sit on
_PLAIN_NIC_MODELS: dict[str, tuple[AddressKind, ...]] = {
    "e1000": (AddressKind.PCI,),
    "e1000e": (AddressKind.PCI,),
    "rtl8139": (AddressKind.PCI,),
    "vmxnet3": (AddressKind.PCI,),
    "igb": (AddressKind.PCI,),
    "ne2k_pci": (AddressKind.PCI,),
    "pcnet": (AddressKind.PCI,),
    "spapr-vlan": (AddressKind.SPAPR_VIO,),
    "usb-net": (AddressKind.USB,),
}


def netdev_alias(iface: Interface) -> str:
    return f"host{require_alias(iface)}"


# ============================================================================
# Backends
# ============================================================================


def _require(caps: CapabilitySet, cap: Cap, iface: Interface, what: str) -> None:
    if not caps.has(cap):
        raise ConfigUnsupportedError(
            f"{what} is not supported by this QEMU (interface '{device_label(iface)}')",
            context={"alias": device_label(iface), "capability": cap.value},
        )


def _user_netdev(iface: Interface, caps: CapabilitySet) -> tuple[PropTree, list[str]]:
    """User-mode netdev; host forwards are returned separately for flat mode."""
    tree = PropTree.netdev("user", netdev_alias(iface))
    if iface.ipv4_address:
        net = iface.ipv4_address if iface.ipv4_prefix is None else f"{iface.ipv4_address}/{iface.ipv4_prefix}"
        tree.add("net", net)
    rules = [
        f"{pf.protocol}:{pf.host_address or ''}:{pf.host_port}-{pf.guest_address or ''}:{pf.guest_port}"
        for pf in iface.port_forwards
    ]
    if rules and uses_json(caps, TreeKind.NETDEV):
        tree.add("hostfwd", [PropTree([("str", rule)]) for rule in rules])
        rules = []
    return tree, rules


def _tap_netdev(iface: Interface, tracker: ResourceTracker) -> PropTree:
    label = device_label(iface)
    if not iface.tap_fds:
        raise ConfigUnsupportedError(
            f"{iface.type} interface '{label}' needs pre-opened tap descriptors",
            context={"alias": label, "type": str(iface.type)},
        )
    queues = iface.queues or 1
    if len(iface.tap_fds) != queues:
        raise ConfigUnsupportedError(
            f"interface '{label}' has {len(iface.tap_fds)} tap descriptors for {queues} queues",
            context={"alias": label, "fds": len(iface.tap_fds), "queues": queues},
        )
    tree = PropTree.netdev("tap", netdev_alias(iface))
    taps = [tracker.pass_fd(fd, FdPolicy.KEEP_PARENT).render() for fd in iface.tap_fds]
    if len(taps) == 1:
        tree.add("fd", taps[0])
    else:
        tree.add("fds", ":".join(taps))
    if iface.vhost is not False and iface.vhost_fds:
        vhosts = [tracker.pass_fd(fd, FdPolicy.KEEP_PARENT).render() for fd in iface.vhost_fds]
        tree.add("vhost", True)
        if len(vhosts) == 1:
            tree.add("vhostfd", vhosts[0])
        else:
            tree.add("vhostfds", ":".join(vhosts))
    elif iface.vhost:
        tree.add("vhost", True)
    return tree


def _socket_netdev(iface: Interface, caps: CapabilitySet) -> PropTree:
    ident = netdev_alias(iface)
    if caps.has(Cap.NETDEV_STREAM):
        if iface.type in (InterfaceType.CLIENT, InterfaceType.SERVER):
            tree = PropTree.netdev("stream", ident)
            tree.add("server", iface.type == InterfaceType.SERVER)
            addr = PropTree([("type", "inet"), ("host", iface.address or "0.0.0.0"), ("port", str(iface.port))])
            tree.add("addr", addr)
            return tree
        tree = PropTree.netdev("dgram", ident)
        tree.add("remote", PropTree([("type", "inet"), ("host", iface.address), ("port", str(iface.port))]))
        if iface.type == InterfaceType.UDP and iface.local_address:
            tree.add(
                "local",
                PropTree([("type", "inet"), ("host", iface.local_address), ("port", str(iface.local_port or 0))]),
            )
        return tree

    tree = PropTree.netdev("socket", ident)
    endpoint = f"{iface.address or ''}:{iface.port}"
    match iface.type:
        case InterfaceType.CLIENT:
            tree.add("connect", endpoint)
        case InterfaceType.SERVER:
            tree.add("listen", endpoint)
        case InterfaceType.MCAST:
            tree.add("mcast", endpoint)
        case InterfaceType.UDP:
            tree.add("udp", endpoint).add("localaddr", f"{iface.local_address or ''}:{iface.local_port or 0}")
    return tree


async def netdev_fragments(
    iface: Interface,
    vm: VmDefinition,
    caps: CapabilitySet,
    tracker: ResourceTracker,
) -> list[Fragment]:
    """-netdev plus any chardev / -add-fd it needs, in emission order."""
    out: list[Fragment] = []
    extra: list[str] = []
    match iface.type:
        case InterfaceType.USER:
            tree, extra = _user_netdev(iface, caps)
        case t if t in _TAP_TYPES:
            tree = _tap_netdev(iface, tracker)
        case t if t in _SOCKET_TYPES:
            tree = _socket_netdev(iface, caps)
        case InterfaceType.VHOSTUSER:
            if not guest_memory_shared(vm):
                raise ConfigUnsupportedError(
                    f"vhost-user interface '{device_label(iface)}' requires shared guest memory",
                    context={"alias": device_label(iface)},
                )
            chr_alias = chardev_alias(require_alias(iface))
            source = CharSource(
                type=CharSourceType.UNIX,
                path=iface.socket_path,
                listen=iface.socket_mode == "server",
            )
            out.extend((await build_chardev(source, chr_alias, caps, tracker)).fragments)
            tree = PropTree.netdev("vhost-user", netdev_alias(iface)).add("chardev", PropRef(chr_alias))
            tree.add("queues", iface.queues if iface.queues and iface.queues > 1 else None)
        case InterfaceType.VDPA:
            _require(caps, Cap.NETDEV_VHOST_VDPA, iface, "vhost-vdpa")
            if not iface.vdpa_device:
                raise ConfigUnsupportedError(
                    f"vdpa interface '{device_label(iface)}' has no device node",
                    context={"alias": device_label(iface)},
                )
            fd = await tracker.open_device_node(Path(iface.vdpa_device))
            fdset = tracker.add_fdset(fd, opaque=f"{netdev_alias(iface)}-vdpa")
            out.append(fdset.add_fd_fragment())
            tree = PropTree.netdev("vhost-vdpa", netdev_alias(iface)).add("vhostdev", fdset.path)
            tree.add("queues", iface.queues if iface.queues and iface.queues > 1 else None)
        case InterfaceType.NULL:
            return out
        case _:
            raise EnumRangeError.for_value("interface type", iface.type)

    fragment = Fragment.from_tree(tree, caps, TreeKind.NETDEV)
    if extra:
        # Repeated hostfwd keys only exist in the flat syntax.
        value = ",".join([fragment.value or "", *(f"hostfwd={escape_commas(r)}" for r in extra)])
        fragment = Fragment(fragment.flag, value, fragment.defines, fragment.references)
    out.append(fragment)
    return out


# ============================================================================
# NIC
# ============================================================================


def _offload_props(tree: PropTree, host: Offloads | None, guest: Offloads | None) -> None:
    if host is not None:
        tree.add("csum", host.csum).add("gso", host.gso)
        tree.add("host_tso4", host.tso4).add("host_tso6", host.tso6)
        tree.add("host_ecn", host.ecn).add("host_ufo", host.ufo)
        tree.add("mrg_rxbuf", host.mrg_rxbuf)
    if guest is not None:
        tree.add("guest_csum", guest.csum)
        tree.add("guest_tso4", guest.tso4).add("guest_tso6", guest.tso6)
        tree.add("guest_ecn", guest.ecn).add("guest_ufo", guest.ufo)


def _virtio_net_props(iface: Interface, vm: VmDefinition, caps: CapabilitySet) -> tuple[PropTree, str | None]:
    label = device_label(iface)
    tree, bus = virtio_device("virtio-net", iface, vm, caps, model=iface.virtio_model, options=iface.virtio)
    if iface.queues and iface.queues > 1:
        tree.add("mq", True)
        if iface.info.address_kind == AddressKind.PCI:
            vectors = constants.VIRTIO_NET_VECTORS_PER_QUEUE * iface.queues + constants.VIRTIO_NET_EXTRA_VECTORS
            tree.add("vectors", vectors)
    if iface.rx_queue_size is not None:
        if caps.has(Cap.VIRTIO_NET_RX_QUEUE_SIZE):
            tree.add("rx_queue_size", iface.rx_queue_size)
        else:
            logger.debug("Dropping rx_queue_size, not supported", extra={"alias": label})
    if iface.tx_queue_size is not None:
        if caps.has(Cap.VIRTIO_NET_TX_QUEUE_SIZE):
            tree.add("tx_queue_size", iface.tx_queue_size)
        else:
            logger.debug("Dropping tx_queue_size, not supported", extra={"alias": label})
    if iface.mtu is not None:
        _require(caps, Cap.VIRTIO_NET_HOST_MTU, iface, "setting the interface MTU")
        tree.add("host_mtu", iface.mtu)
    _offload_props(tree, iface.host_offloads, iface.guest_offloads)
    return tree, bus


def nic_device_props(iface: Interface, vm: VmDefinition, caps: CapabilitySet) -> tuple[PropTree, str | None]:
    if iface.model == "virtio":
        tree, bus = _virtio_net_props(iface, vm, caps)
    else:
        accepted = _PLAIN_NIC_MODELS.get(iface.model)
        if accepted is None:
            raise ConfigUnsupportedError(
                f"interface model '{iface.model}' is not supported (interface '{device_label(iface)}')",
                context={"alias": device_label(iface), "model": iface.model},
            )
        require_address(iface, accepted, what=iface.model)
        tree, bus = plain_device(iface.model, iface, vm)
        if iface.host_offloads or iface.guest_offloads or iface.queues:
            logger.debug("Offloads and queues only apply to virtio NICs", extra={"alias": device_label(iface)})

    if iface.type != InterfaceType.NULL:
        tree.add("netdev", PropRef(netdev_alias(iface)))
    tree.add("id", iface.info.alias).add("mac", iface.mac)
    add_rom_props(tree, iface)
    tree.add("bootindex", iface.info.boot_index)
    if iface.link_up is False:
        logger.debug("Link state is applied over the monitor after start", extra={"alias": device_label(iface)})
    return tree, bus


async def interface_bundle(
    iface: Interface,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    label = require_alias(iface)
    backend = await netdev_fragments(iface, vm, caps, tracker)
    tree, bus = nic_device_props(iface, vm, caps)
    device = Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))
    return resolver.chardev_bundle(label, None, backend, device)
