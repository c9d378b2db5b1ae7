"""Character device frontends: serial, parallel, channel, console, smartcard.

Every frontend with a host side gets a chardev named "char" + its alias; the
chardev, any descriptors it needs and its TLS objects are bundled with the
frontend device so they commit together.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.chardev import build_chardev, chardev_alias
from qemu_argv.device_common import (
    device_label,
    finish_device,
    plain_device,
    require_address,
    require_alias,
)
from qemu_argv.devices import Channel, Console, Parallel, Serial, Smartcard
from qemu_argv.emitter import TreeKind, uses_json
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.linking import AttachmentBundle, LinkingResolver
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition
    from qemu_argv.resources import ResourceTracker

logger = get_logger(__name__)

_CCID_CERTIFICATES = 3


def _frontend_fragment(tree: PropTree, caps: CapabilitySet, bus: str | None) -> Fragment:
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))


# ============================================================================
# Serial / parallel
# ============================================================================


def serial_device_props(serial: Serial, vm: VmDefinition, chr_alias: str) -> tuple[PropTree, str | None] | None:
    """Frontend props for `serial`, or None when the machine wires it itself."""
    match serial.target_type:
        case "isa-serial":
            require_address(serial, (AddressKind.ISA, AddressKind.NONE), what="isa-serial")
            tree, bus = plain_device("isa-serial", serial, vm)
        case "usb-serial":
            require_address(serial, (AddressKind.USB,), what="usb-serial")
            tree, bus = plain_device("usb-serial", serial, vm)
        case "pci-serial":
            require_address(serial, (AddressKind.PCI,), what="pci-serial")
            tree, bus = plain_device("pci-serial", serial, vm)
        case "spapr-vio-serial":
            require_address(serial, (AddressKind.SPAPR_VIO,), what="spapr-vty")
            tree, bus = plain_device("spapr-vty", serial, vm)
        case "sclp-serial":
            driver = "sclplmconsole" if serial.target_model == "sclplm" else "sclpconsole"
            tree, bus = PropTree.device(driver), None
        case "system-serial":
            return None
        case _:
            raise EnumRangeError.for_value("serial target type", serial.target_type)
    tree.add("chardev", PropRef(chr_alias))
    finish_device(tree, serial, boot=False)
    return tree, bus


async def serial_bundle(
    serial: Serial,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    alias = require_alias(serial)
    chr_alias = chardev_alias(alias)
    chardev = await build_chardev(serial.source, chr_alias, caps, tracker)
    props = serial_device_props(serial, vm, chr_alias)
    if props is None:
        # Machine-provided UART (pl011, ...): bind it positionally.
        device = Fragment("-serial", f"chardev:{chr_alias}", references=(chr_alias,))
    else:
        tree, bus = props
        device = _frontend_fragment(tree, caps, bus)
    return resolver.chardev_bundle(alias, serial.source.tls, chardev.fragments, device)


async def parallel_bundle(
    parallel: Parallel,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    alias = require_alias(parallel)
    require_address(parallel, (AddressKind.ISA, AddressKind.NONE), what="isa-parallel")
    chr_alias = chardev_alias(alias)
    chardev = await build_chardev(parallel.source, chr_alias, caps, tracker)
    tree, bus = plain_device("isa-parallel", parallel, vm)
    tree.add("chardev", PropRef(chr_alias))
    finish_device(tree, parallel, boot=False)
    return resolver.chardev_bundle(alias, parallel.source.tls, chardev.fragments, _frontend_fragment(tree, caps, bus))


# ============================================================================
# Channels and consoles
# ============================================================================


def _virtio_port_props(
    dev: Channel | Console, vm: VmDefinition, driver: str, chr_alias: str
) -> tuple[PropTree, str | None]:
    require_address(dev, (AddressKind.VIRTIO_SERIAL,), what=driver)
    tree, bus = plain_device(driver, dev, vm)
    tree.add("chardev", PropRef(chr_alias))
    return tree, bus


def guestfwd_netdev_props(channel: Channel, chr_alias: str, caps: CapabilitySet) -> PropTree:
    """User-mode netdev forwarding guest TCP to the channel's chardev."""
    if not channel.guestfwd_address or channel.guestfwd_port is None:
        raise ConfigUnsupportedError(
            f"guestfwd channel '{device_label(channel)}' needs a target address and port",
            context={"alias": device_label(channel)},
        )
    rule = f"tcp:{channel.guestfwd_address}:{channel.guestfwd_port}-chardev:{chr_alias}"
    tree = PropTree.netdev("user", require_alias(channel))
    if uses_json(caps, TreeKind.NETDEV):
        tree.add("guestfwd", [PropTree([("str", rule)])])
    else:
        tree.add("guestfwd", rule)
    return tree


async def channel_bundle(
    channel: Channel,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    alias = require_alias(channel)
    chr_alias = chardev_alias(alias)
    chardev = await build_chardev(channel.source, chr_alias, caps, tracker)
    match channel.target_type:
        case "virtio":
            tree, bus = _virtio_port_props(channel, vm, "virtserialport", chr_alias)
            tree.add("id", alias).add("name", channel.name)
            device = _frontend_fragment(tree, caps, bus)
        case "guestfwd":
            netdev = guestfwd_netdev_props(channel, chr_alias, caps)
            device = Fragment.from_tree(netdev, caps, TreeKind.NETDEV, references=(chr_alias,))
        case _:
            raise EnumRangeError.for_value("channel target type", channel.target_type)
    return resolver.chardev_bundle(alias, channel.source.tls, chardev.fragments, device)


async def console_bundle(
    console: Console,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle | None:
    """Bundle for `console`; None for serial consoles, which alias a serial device."""
    if console.target_type == "serial":
        logger.debug("Serial console shares the first serial device", extra={"alias": console.info.alias})
        return None
    alias = require_alias(console)
    chr_alias = chardev_alias(alias)
    chardev = await build_chardev(console.source, chr_alias, caps, tracker)
    match console.target_type:
        case "virtio":
            tree, bus = _virtio_port_props(console, vm, "virtconsole", chr_alias)
        case "sclp" | "sclplm":
            tree, bus = PropTree.device("sclpconsole" if console.target_type == "sclp" else "sclplmconsole"), None
            tree.add("chardev", PropRef(chr_alias))
        case _:
            raise EnumRangeError.for_value("console target type", console.target_type)
    finish_device(tree, console, boot=False)
    return resolver.chardev_bundle(alias, console.source.tls, chardev.fragments, _frontend_fragment(tree, caps, bus))


# ============================================================================
# Smartcard
# ============================================================================


async def smartcard_bundle(
    card: Smartcard,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    alias = require_alias(card)
    require_address(card, (AddressKind.CCID,), what="smartcard")
    label = device_label(card)
    backend: list[Fragment] = []
    tls = None

    match card.mode:
        case "host" | "host-certificates":
            if not caps.has(Cap.CCID_EMULATED):
                raise ConfigUnsupportedError(
                    f"emulated smartcard '{label}' is not supported by this QEMU",
                    context={"alias": label, "capability": Cap.CCID_EMULATED.value},
                )
            tree, bus = plain_device("ccid-card-emulated", card, vm)
            if card.mode == "host":
                tree.add("backend", "nss-emulated")
            else:
                if len(card.certificates) != _CCID_CERTIFICATES:
                    raise ConfigUnsupportedError(
                        f"smartcard '{label}' needs exactly {_CCID_CERTIFICATES} certificates",
                        context={"alias": label, "count": len(card.certificates)},
                    )
                tree.add("backend", "certificates")
                for i, cert in enumerate(card.certificates, start=1):
                    tree.add(f"cert{i}", cert)
                tree.add("db", card.database or "/etc/pki/nssdb")
        case "passthrough":
            if not caps.has(Cap.CCID_PASSTHRU):
                raise ConfigUnsupportedError(
                    f"smartcard passthrough '{label}' is not supported by this QEMU",
                    context={"alias": label, "capability": Cap.CCID_PASSTHRU.value},
                )
            if card.source is None:
                raise ConfigUnsupportedError(
                    f"smartcard passthrough '{label}' needs a character device source",
                    context={"alias": label},
                )
            chr_alias = chardev_alias(alias)
            backend = (await build_chardev(card.source, chr_alias, caps, tracker)).fragments
            tls = card.source.tls
            tree, bus = plain_device("ccid-card-passthru", card, vm)
            tree.add("chardev", PropRef(chr_alias))
        case _:
            raise EnumRangeError.for_value("smartcard mode", card.mode)

    finish_device(tree, card, boot=False)
    return resolver.chardev_bundle(alias, tls, backend, _frontend_fragment(tree, caps, bus))
