"""Storage source nodes and legacy -drive strings.

Two renderings of the same storage chain:

- blockdev: one protocol node and one format node per layer, named
  libvirt-N-storage / libvirt-N-format, always JSON
- legacy drive: a single -drive whose `file` is either a locator string or,
  when the locator syntax can't carry the source's settings, dotted
  file.* props

The decision between locator string and props is data: _LEGACY_NEEDS_PROPS
maps each protocol to a predicate over (source, capabilities).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import NamedTuple

from qemu_argv import constants
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import (
    CacheMode,
    Disk,
    DiskDevice,
    HostEntry,
    IoMode,
    NetProtocol,
    StorageFormat,
    StorageSource,
    StorageType,
    Throttle,
)
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.props import JSON_NULL, PropRef, PropTree
from qemu_argv.secret_objects import pr_manager_alias

# ============================================================================
# Node names and cache mapping
# ============================================================================


def storage_node_name(index: int) -> str:
    return f"{constants.NODE_NAME_PREFIX}-{index}-storage"


def format_node_name(index: int) -> str:
    return f"{constants.NODE_NAME_PREFIX}-{index}-format"


class CacheFlags(NamedTuple):
    """Cache mode decomposed into the three block layer switches."""

    writeback: bool | None
    direct: bool | None
    no_flush: bool | None


_CACHE_FLAGS: dict[CacheMode, CacheFlags] = {
    CacheMode.DEFAULT: CacheFlags(None, None, None),
    CacheMode.NONE: CacheFlags(True, True, False),
    CacheMode.WRITETHROUGH: CacheFlags(False, False, False),
    CacheMode.WRITEBACK: CacheFlags(True, False, False),
    CacheMode.DIRECTSYNC: CacheFlags(False, True, False),
    CacheMode.UNSAFE: CacheFlags(True, False, True),
}


def cache_flags(mode: CacheMode) -> CacheFlags:
    try:
        return _CACHE_FLAGS[mode]
    except KeyError:
        raise EnumRangeError.for_value("cache mode", mode) from None


def _cache_props(mode: CacheMode) -> PropTree | None:
    flags = cache_flags(mode)
    if flags.direct is None:
        return None
    return PropTree([("direct", flags.direct), ("no-flush", flags.no_flush)])


# ============================================================================
# Throttling
# ============================================================================

_THROTTLE_KEYS: tuple[tuple[str, str], ...] = (
    ("total_bytes_sec", "bps-total"),
    ("read_bytes_sec", "bps-read"),
    ("write_bytes_sec", "bps-write"),
    ("total_iops_sec", "iops-total"),
    ("read_iops_sec", "iops-read"),
    ("write_iops_sec", "iops-write"),
    ("total_bytes_sec_max", "bps-total-max"),
    ("read_bytes_sec_max", "bps-read-max"),
    ("write_bytes_sec_max", "bps-write-max"),
    ("total_iops_sec_max", "iops-total-max"),
    ("read_iops_sec_max", "iops-read-max"),
    ("write_iops_sec_max", "iops-write-max"),
    ("size_iops_sec", "iops-size"),
)


def throttle_limits(throttle: Throttle) -> PropTree:
    tree = PropTree()
    for field_name, key in _THROTTLE_KEYS:
        value = getattr(throttle, field_name)
        if value:
            tree.add(key, value)
    return tree


def throttle_group_name(disk: Disk) -> str:
    if disk.throttle is not None and disk.throttle.group_name:
        return f"throttle-{disk.throttle.group_name}"
    return f"throttle-{disk.info.alias}"


def throttle_group_props(disk: Disk) -> PropTree:
    assert disk.throttle is not None
    return PropTree.object("throttle-group", throttle_group_name(disk)).add("limits", throttle_limits(disk.throttle))


def throttle_filter_props(disk: Disk, node_name: str, child: str) -> PropTree:
    return (
        PropTree.blockdev("throttle", node_name)
        .add("throttle-group", PropRef(throttle_group_name(disk)))
        .add("file", PropRef(child))
    )


# ============================================================================
# Protocol nodes
# ============================================================================


def _split_pair(name: str | None, what: str, protocol: NetProtocol) -> tuple[str, str]:
    if not name or "/" not in name:
        raise ConfigUnsupportedError(
            f"{protocol} source name must be '{what}'",
            context={"protocol": str(protocol), "name": name},
        )
    first, rest = name.split("/", 1)
    return first, rest


def _inet_server(host: HostEntry, default_port: int | None) -> PropTree:
    if host.transport == "unix":
        return PropTree([("type", "unix"), ("path", host.socket)])
    port = host.port if host.port is not None else default_port
    return PropTree([("type", "inet"), ("host", host.name), ("port", str(port) if port is not None else None)])


def _first_host(src: StorageSource) -> HostEntry:
    if not src.hosts:
        raise ConfigUnsupportedError(
            f"{src.protocol} storage source requires a host",
            context={"protocol": str(src.protocol)},
        )
    return src.hosts[0]


def _url(src: StorageSource) -> str:
    host = _first_host(src)
    authority = host.name or ""
    if host.port is not None:
        authority += f":{host.port}"
    name = (src.name or "").lstrip("/")
    url = f"{src.protocol}://{authority}/{name}"
    if src.query:
        url += f"?{src.query}"
    return url


def _network_props(tree: PropTree, src: StorageSource) -> None:
    protocol = src.protocol
    match protocol:
        case NetProtocol.NBD:
            tree.add("server", _inet_server(_first_host(src), 10809))
            tree.add("export", src.name)
            if src.tls is not None:
                tree.add("tls-creds", PropRef(src.tls.alias))
        case NetProtocol.ISCSI:
            target, lun = _split_pair(src.name, "target/lun", protocol)
            host = _first_host(src)
            portal = f"{host.name}:{host.port or 3260}"
            tree.add("portal", portal).add("target", target).add("lun", int(lun)).add("transport", "tcp")
            if src.auth is not None:
                tree.add("user", src.auth.username).add("password-secret", PropRef(src.auth.secret.alias))
        case NetProtocol.RBD:
            pool, image = _split_pair(src.name, "pool/image", protocol)
            tree.add("pool", pool).add("image", image)
            if src.hosts:
                tree.add("server", [_inet_server(h, None) for h in src.hosts])
            if src.auth is not None:
                tree.add("user", src.auth.username).add("auth-client-required", ["cephx", "none"])
                tree.add("key-secret", PropRef(src.auth.secret.alias))
            tree.add("conf", src.config_file)
        case NetProtocol.GLUSTER:
            volume, path = _split_pair(src.name, "volume/path", protocol)
            tree.add("volume", volume).add("path", path)
            tree.add("server", [_inet_server(h, 24007) for h in src.hosts])
        case NetProtocol.HTTP | NetProtocol.HTTPS | NetProtocol.FTP | NetProtocol.FTPS:
            tree.add("url", _url(src))
            if protocol in (NetProtocol.HTTPS, NetProtocol.FTPS):
                tree.add("sslverify", src.sslverify)
            if src.cookies is not None:
                tree.add("cookie-secret", PropRef(src.cookies.alias))
            tree.add("timeout", src.timeout).add("readahead", src.readahead)
            if src.auth is not None:
                tree.add("username", src.auth.username).add("password-secret", PropRef(src.auth.secret.alias))
        case NetProtocol.SSH:
            host = _first_host(src)
            tree.add("path", src.name)
            tree.add("server", PropTree([("host", host.name), ("port", str(host.port or 22))]))
            if src.auth is not None:
                tree.add("user", src.auth.username)
        case _:
            raise EnumRangeError.for_value("network protocol", protocol)


def protocol_driver(src: StorageSource, disk: Disk | None = None) -> str:
    match src.type:
        case StorageType.FILE:
            return "file"
        case StorageType.BLOCK:
            return "host_cdrom" if disk is not None and disk.device == DiskDevice.CDROM else "host_device"
        case StorageType.DIR:
            return "vvfat"
        case StorageType.NVME:
            return "nvme"
        case StorageType.NETWORK:
            if src.protocol is None:
                raise ConfigUnsupportedError("network storage source requires a protocol")
            return str(src.protocol)
        case StorageType.VHOST_USER:
            raise ConfigUnsupportedError("vhost-user storage has no block layer node; it attaches as a device")
        case _:
            raise EnumRangeError.for_value("storage type", src.type)


def protocol_props(
    src: StorageSource,
    caps: CapabilitySet,
    *,
    node_name: str | None,
    disk: Disk | None = None,
    top: bool = True,
) -> PropTree:
    """Protocol-level node for one storage layer.

    With node_name None the tree has no identity and serves as the nested
    `file` of a legacy -drive.
    """
    tree = PropTree.blockdev(protocol_driver(src, disk), node_name)
    match src.type:
        case StorageType.FILE | StorageType.BLOCK:
            tree.add("filename", src.path)
            if disk is not None and top and disk.io is not None:
                if disk.io == IoMode.IO_URING and not caps.has(Cap.AIO_IO_URING):
                    raise ConfigUnsupportedError(
                        f"io_uring is not supported by this QEMU (disk '{disk.info.alias}')",
                        context={"alias": disk.info.alias, "capability": Cap.AIO_IO_URING.value},
                    )
                tree.add("aio", str(disk.io))
            if src.reservations is not None:
                tree.add("pr-manager", PropRef(pr_manager_alias(src.reservations)))
        case StorageType.DIR:
            tree.add("dir", src.path).add("floppy", disk is not None and disk.device == DiskDevice.FLOPPY)
            tree.add("rw", False)
        case StorageType.NVME:
            tree.add("device", src.nvme_address).add("namespace", src.nvme_namespace)
        case StorageType.NETWORK:
            _network_props(tree, src)
        case _:
            raise EnumRangeError.for_value("storage type", src.type)

    if node_name is not None:
        _add_common_node_props(tree, src, disk, top)
        tree.add("auto-read-only", True)
    return tree


def _add_common_node_props(tree: PropTree, src: StorageSource, disk: Disk | None, top: bool) -> None:
    readonly = src.readonly or not top or (disk is not None and disk.device == DiskDevice.CDROM)
    tree.add("read-only", readonly)
    if disk is not None and top and disk.discard == "unmap":
        tree.add("discard", "unmap")
    if disk is not None:
        tree.add("cache", _cache_props(disk.cache))


# ============================================================================
# Format nodes
# ============================================================================

_FORMATS_WITH_BACKING = frozenset({StorageFormat.QCOW2, StorageFormat.QED, StorageFormat.VMDK})


def format_props(
    src: StorageSource,
    *,
    node_name: str,
    file_node: str,
    backing_node: str | None,
    disk: Disk | None = None,
    top: bool = True,
) -> PropTree:
    """Format-level node for one layer; references its protocol node."""
    tree = PropTree.blockdev(str(src.format), node_name)
    _add_common_node_props(tree, src, disk, top)
    if disk is not None and top and disk.detect_zeroes and disk.detect_zeroes != "off":
        tree.add("detect-zeroes", disk.detect_zeroes)
    _add_encryption(tree, src)
    tree.add("file", PropRef(file_node))
    if src.format in _FORMATS_WITH_BACKING:
        tree.add("backing", PropRef(backing_node) if backing_node else JSON_NULL)
    return tree


def _add_encryption(tree: PropTree, src: StorageSource) -> None:
    enc = src.encryption
    if enc is None:
        return
    if src.format == StorageFormat.LUKS:
        tree.add("key-secret", PropRef(enc.secret.alias))
    elif src.format == StorageFormat.QCOW2:
        tree.add("encrypt", PropTree([("format", enc.format), ("key-secret", PropRef(enc.secret.alias))]))
    else:
        raise ConfigUnsupportedError(
            f"encryption is not supported for format '{src.format}'",
            context={"format": str(src.format)},
        )


# ============================================================================
# Legacy -drive
# ============================================================================


def _nbd_locator(src: StorageSource) -> str:
    host = _first_host(src)
    if host.transport == "unix":
        locator = f"nbd:unix:{host.socket}"
    else:
        locator = f"nbd:{host.name}:{host.port or 10809}"
    if src.name:
        locator += f":exportname={src.name}"
    return locator


def _rbd_locator(src: StorageSource) -> str:
    locator = f"rbd:{src.name}"
    if src.auth is not None:
        locator += f":id={src.auth.username}"
    if src.hosts:
        mons = "\\;".join(
            f"{h.name}\\:{h.port}" if h.port is not None else str(h.name) for h in src.hosts
        )
        locator += f":mon_host={mons}"
    if src.config_file:
        locator += f":conf={src.config_file}"
    return locator


def _gluster_locator(src: StorageSource) -> str:
    host = _first_host(src)
    name = (src.name or "").lstrip("/")
    if host.transport == "unix":
        return f"gluster+unix:///{name}?socket={host.socket}"
    port = f":{host.port}" if host.port is not None else ""
    return f"gluster://{host.name}{port}/{name}"


def _iscsi_locator(src: StorageSource) -> str:
    host = _first_host(src)
    return f"iscsi://{host.name}:{host.port or 3260}/{src.name}"


def _ssh_locator(src: StorageSource) -> str:
    host = _first_host(src)
    user = f"{src.auth.username}@" if src.auth is not None else ""
    port = f":{host.port}" if host.port is not None else ""
    return f"ssh://{user}{host.name}{port}/{(src.name or '').lstrip('/')}"


def legacy_locator(src: StorageSource) -> str:
    """Opaque single-string description of a storage source."""
    match src.type:
        case StorageType.FILE | StorageType.BLOCK:
            return src.path or ""
        case StorageType.DIR:
            return f"fat:{src.path}"
        case StorageType.NETWORK:
            match src.protocol:
                case NetProtocol.NBD:
                    return _nbd_locator(src)
                case NetProtocol.RBD:
                    return _rbd_locator(src)
                case NetProtocol.GLUSTER:
                    return _gluster_locator(src)
                case NetProtocol.ISCSI:
                    return _iscsi_locator(src)
                case NetProtocol.SSH:
                    return _ssh_locator(src)
                case NetProtocol.HTTP | NetProtocol.HTTPS | NetProtocol.FTP | NetProtocol.FTPS:
                    return _url(src)
                case _:
                    raise EnumRangeError.for_value("network protocol", src.protocol)
        case _:
            raise ConfigUnsupportedError(
                f"storage type '{src.type}' has no legacy locator string",
                context={"type": str(src.type)},
            )


NeedsProps = Callable[[StorageSource, CapabilitySet], bool]


def _never(src: StorageSource, caps: CapabilitySet) -> bool:
    return False


def _always(src: StorageSource, caps: CapabilitySet) -> bool:
    return True


def _http_needs_props(src: StorageSource, caps: CapabilitySet) -> bool:
    return any(v is not None for v in (src.cookies, src.sslverify, src.timeout, src.readahead, src.auth))


_LEGACY_NEEDS_PROPS: dict[StorageType | NetProtocol, NeedsProps] = {
    StorageType.FILE: _never,
    StorageType.BLOCK: _never,
    StorageType.DIR: _never,
    StorageType.NVME: _always,
    NetProtocol.NBD: lambda src, caps: src.tls is not None and caps.has(Cap.NBD_TLS),
    NetProtocol.ISCSI: lambda src, caps: src.auth is not None,
    NetProtocol.RBD: lambda src, caps: src.auth is not None and caps.has(Cap.OBJECT_SECRET),
    NetProtocol.GLUSTER: lambda src, caps: len(src.hosts) > 1,
    NetProtocol.HTTP: _http_needs_props,
    NetProtocol.HTTPS: _http_needs_props,
    NetProtocol.FTP: _http_needs_props,
    NetProtocol.FTPS: _http_needs_props,
    NetProtocol.SSH: _never,
}


def legacy_needs_props(src: StorageSource, caps: CapabilitySet) -> bool:
    """Whether a legacy -drive must describe `src` with file.* props."""
    key: StorageType | NetProtocol | None = src.protocol if src.type == StorageType.NETWORK else src.type
    if key is None:
        raise ConfigUnsupportedError("network storage source requires a protocol")
    predicate = _LEGACY_NEEDS_PROPS.get(key)
    if predicate is None:
        raise EnumRangeError.for_value("storage source kind", key)
    return predicate(src, caps)


_LEGACY_THROTTLE_KEYS: tuple[tuple[str, str], ...] = tuple(
    (field_name, f"throttling.{key}") for field_name, key in _THROTTLE_KEYS
)


def drive_props(disk: Disk, caps: CapabilitySet, drive_id: str) -> PropTree:
    """Single -drive describing the whole chain of `disk`."""
    src = disk.source
    tree = PropTree()
    # An empty CD-ROM or floppy is just "if=none,id=...".
    if not src.is_empty:
        if legacy_needs_props(src, caps):
            tree.add("file", protocol_props(src, caps, node_name=None, disk=disk))
        else:
            tree.add("file", legacy_locator(src))
        tree.add("format", str(src.format))
    if src.encryption is not None:
        if src.format == StorageFormat.LUKS:
            tree.add("key-secret", PropRef(src.encryption.secret.alias))
        else:
            tree.add("encrypt.format", src.encryption.format)
            tree.add("encrypt.key-secret", PropRef(src.encryption.secret.alias))
    tree.add("if", "none").add("id", drive_id)
    if src.readonly or disk.device == DiskDevice.CDROM:
        tree.add("readonly", True)
    if disk.cache != CacheMode.DEFAULT:
        tree.add("cache", str(disk.cache))
    if disk.io is not None:
        tree.add("aio", str(disk.io))
    tree.add("discard", disk.discard)
    tree.add("detect-zeroes", disk.detect_zeroes)
    tree.add("werror", str(disk.error_policy) if disk.error_policy else None)
    tree.add("rerror", str(disk.rerror_policy) if disk.rerror_policy else None)
    if disk.throttle is not None and disk.throttle.is_set:
        for field_name, key in _LEGACY_THROTTLE_KEYS:
            value = getattr(disk.throttle, field_name)
            if value:
                tree.add(key, value)
        tree.add("throttling.group", disk.throttle.group_name)
    return tree


def drive_id_for(disk: Disk) -> str:
    return disk.drive_alias or f"{constants.LEGACY_DRIVE_ALIAS_PREFIX}{disk.info.alias}"
