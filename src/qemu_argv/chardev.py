"""Character device backends (-chardev).

Listening UNIX sockets and log/output files are acquired through the
resource tracker when the binary accepts pre-opened descriptors, so the
emulator never needs access to the paths themselves.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from qemu_argv._logging import get_logger
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import CharSource, CharSourceType
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.resources import ResourceTracker

logger = get_logger(__name__)


class ReconnectSyntax(StrEnum):
    """Spelling of the client socket reconnect option."""

    MILLISECONDS = "reconnect-ms"
    SECONDS = "reconnect"


def select_reconnect_syntax(caps: CapabilitySet) -> ReconnectSyntax:
    return ReconnectSyntax.MILLISECONDS if caps.has(Cap.CHARDEV_RECONNECT_MS) else ReconnectSyntax.SECONDS


@dataclass
class ChardevBackend:
    """-chardev fragment plus any -add-fd fragments it depends on."""

    alias: str
    fragments: list[Fragment] = field(default_factory=list)


def chardev_alias(device_alias: str) -> str:
    return f"char{device_alias}"


def _require(caps: CapabilitySet, cap: Cap, alias: str, what: str) -> None:
    if not caps.has(cap):
        raise ConfigUnsupportedError(
            f"{what} is not supported by this QEMU (chardev '{alias}')",
            context={"alias": alias, "capability": cap.value},
        )


async def build_chardev(
    source: CharSource,
    alias: str,
    caps: CapabilitySet,
    tracker: ResourceTracker,
) -> ChardevBackend:
    """Build the -chardev for `source` under id `alias`.

    Acquires descriptors through `tracker` (listening sockets, output and
    log files) when descriptor passing is supported.
    """
    result = ChardevBackend(alias)
    fd_pass = caps.has(Cap.CHARDEV_FD_PASS)

    match source.type:
        case CharSourceType.NULL | CharSourceType.VC | CharSourceType.PTY | CharSourceType.STDIO:
            tree = PropTree.chardev(str(source.type), alias)
        case CharSourceType.DEV:
            backend = "parallel" if source.path and "parport" in source.path else "serial"
            tree = PropTree.chardev(backend, alias).add("path", source.path)
        case CharSourceType.FILE:
            tree = PropTree.chardev("file", alias)
            if fd_pass and source.path:
                fd = await tracker.open_log_file(Path(source.path), append=bool(source.append))
                fdset = tracker.add_fdset(fd, opaque=f"{alias}-source")
                result.fragments.append(fdset.add_fd_fragment())
                tree.add("path", fdset.path)
            else:
                tree.add("path", source.path)
            tree.add("append", source.append)
        case CharSourceType.PIPE:
            tree = PropTree.chardev("pipe", alias).add("path", source.path)
        case CharSourceType.UDP:
            tree = PropTree.chardev("udp", alias)
            tree.add("host", source.host).add("port", source.service)
            tree.add("localaddr", source.bind_host).add("localport", source.bind_service)
        case CharSourceType.TCP:
            tree = PropTree.chardev("socket", alias).add("host", source.host).add("port", source.service)
            if source.telnet:
                tree.add("telnet", True)
            _add_socket_mode(tree, source, caps)
            if source.tls is not None:
                tree.add("tls-creds", PropRef(source.tls.alias))
        case CharSourceType.UNIX:
            tree = PropTree.chardev("socket", alias)
            if source.listen and fd_pass and source.path:
                fd = await tracker.create_unix_listen_socket(Path(source.path))
                tree.add("fd", tracker.pass_fd(fd).render())
            else:
                tree.add("path", source.path)
            _add_socket_mode(tree, source, caps)
        case CharSourceType.SPICEVMC:
            _require(caps, Cap.CHARDEV_SPICEVMC, alias, "spicevmc")
            tree = PropTree.chardev("spicevmc", alias).add("name", source.channel or "vdagent")
        case CharSourceType.SPICEPORT:
            _require(caps, Cap.CHARDEV_SPICEPORT, alias, "spiceport")
            tree = PropTree.chardev("spiceport", alias).add("name", source.channel)
        case CharSourceType.QEMU_VDAGENT:
            _require(caps, Cap.CHARDEV_QEMU_VDAGENT, alias, "qemu-vdagent")
            tree = PropTree.chardev("qemu-vdagent", alias).add("name", "vdagent")
            tree.add("clipboard", source.clipboard).add("mouse", source.mouse)
        case CharSourceType.DBUS:
            _require(caps, Cap.CHARDEV_DBUS, alias, "dbus chardev")
            tree = PropTree.chardev("dbus", alias).add("name", source.channel)
        case _:
            raise EnumRangeError.for_value("chardev source type", source.type)

    if source.log_file:
        _require(caps, Cap.CHARDEV_LOGFILE, alias, "chardev log file")
        if fd_pass:
            fd = await tracker.open_log_file(Path(source.log_file), append=bool(source.log_append))
            fdset = tracker.add_fdset(fd, opaque=f"{alias}-log")
            result.fragments.append(fdset.add_fd_fragment())
            tree.add("logfile", fdset.path)
        else:
            tree.add("logfile", source.log_file)
        tree.add("logappend", source.log_append)

    result.fragments.append(Fragment.from_tree(tree, caps, TreeKind.CHARDEV))
    return result


def _add_socket_mode(tree: PropTree, source: CharSource, caps: CapabilitySet) -> None:
    if source.listen:
        tree.add("server", True).add("wait", False)
        return
    if source.reconnect_seconds:
        syntax = select_reconnect_syntax(caps)
        value = source.reconnect_seconds * 1000 if syntax == ReconnectSyntax.MILLISECONDS else source.reconnect_seconds
        tree.add(syntax.value, value)
