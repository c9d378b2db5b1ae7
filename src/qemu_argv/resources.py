"""Resource broker and per-pass resource tracking.

The broker performs the handful of OS operations synthesis needs (opening
log files and device nodes, creating listening UNIX sockets, labelling).
The tracker owns everything acquired during one pass and releases it on any
abort path, so a failed pass never leaks descriptors into a process that
never launches.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import socket
from collections.abc import Awaitable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiofiles.os

from qemu_argv._logging import get_logger
from qemu_argv.exceptions import ResourceError
from qemu_argv.fragments import FdPolicy, Fragment, PassedFd

logger = get_logger(__name__)

# sockaddr_un.sun_path is 108 bytes including the terminating NUL
_UNIX_PATH_MAX = 107

LabelTarget = Path | int


# ============================================================================
# Broker protocol and implementations
# ============================================================================


@runtime_checkable
class ResourceBroker(Protocol):
    """Narrow interface to the host for descriptor and socket creation."""

    async def open_log_file(self, path: Path, *, append: bool = True) -> int: ...

    async def open_device_node(self, path: Path, *, write: bool = True) -> int: ...

    async def create_unix_listen_socket(self, path: Path) -> int: ...

    async def set_security_label(self, target: LabelTarget) -> None: ...

    async def clear_security_label(self, target: LabelTarget) -> None: ...

    async def close_fd(self, fd: int) -> None: ...

    async def remove_socket(self, path: Path) -> None: ...


class LocalResourceBroker:
    """Broker backed by the local OS.

    Blocking os/socket calls run in worker threads so the event loop keeps
    observing cancellation. Security labelling is delegated to an optional
    callback (the security driver lives outside this package).
    """

    def __init__(self, labeler: SecurityLabeler | None = None) -> None:
        self._labeler = labeler

    async def open_log_file(self, path: Path, *, append: bool = True) -> int:
        flags = os.O_CREAT | os.O_WRONLY | os.O_CLOEXEC | (os.O_APPEND if append else os.O_TRUNC)
        try:
            return await asyncio.to_thread(os.open, path, flags, 0o600)
        except OSError as e:
            raise ResourceError(f"failed to open log file '{path}'", os_error=e, path=str(path)) from e

    async def open_device_node(self, path: Path, *, write: bool = True) -> int:
        flags = (os.O_RDWR if write else os.O_RDONLY) | os.O_CLOEXEC
        try:
            return await asyncio.to_thread(os.open, path, flags)
        except OSError as e:
            raise ResourceError(f"failed to open device node '{path}'", os_error=e, path=str(path)) from e

    async def create_unix_listen_socket(self, path: Path) -> int:
        if len(os.fsencode(path)) > _UNIX_PATH_MAX:
            raise ResourceError(
                f"UNIX socket path '{path}' too long",
                context={"max_length": _UNIX_PATH_MAX},
                path=str(path),
            )
        try:
            return await asyncio.to_thread(_bind_unix_listener, path)
        except OSError as e:
            raise ResourceError(f"failed to listen on UNIX socket '{path}'", os_error=e, path=str(path)) from e

    async def set_security_label(self, target: LabelTarget) -> None:
        if self._labeler is not None:
            await asyncio.to_thread(self._labeler.set_label, target)

    async def clear_security_label(self, target: LabelTarget) -> None:
        if self._labeler is not None:
            await asyncio.to_thread(self._labeler.clear_label, target)

    async def close_fd(self, fd: int) -> None:
        await asyncio.to_thread(os.close, fd)

    async def remove_socket(self, path: Path) -> None:
        with contextlib.suppress(FileNotFoundError):
            await aiofiles.os.remove(path)


class SecurityLabeler(Protocol):
    def set_label(self, target: LabelTarget) -> None: ...

    def clear_label(self, target: LabelTarget) -> None: ...


def _bind_unix_listener(path: Path) -> int:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        # Stale socket from a previous run
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)
        sock.bind(os.fspath(path))
        sock.listen(1)
    except OSError:
        sock.close()
        raise
    return sock.detach()


class DryRunResourceBroker:
    """Broker that touches nothing and hands out placeholder descriptors.

    Used to preview a command line. Descriptor numbers start at
    `first_fd` and increase monotonically so the output is deterministic.
    """

    def __init__(self, first_fd: int = 100) -> None:
        self._next_fd = first_fd
        self.calls: list[tuple[str, str]] = []

    def _placeholder(self, op: str, target: object) -> int:
        self.calls.append((op, str(target)))
        fd = self._next_fd
        self._next_fd += 1
        return fd

    async def open_log_file(self, path: Path, *, append: bool = True) -> int:
        return self._placeholder("open_log_file", path)

    async def open_device_node(self, path: Path, *, write: bool = True) -> int:
        return self._placeholder("open_device_node", path)

    async def create_unix_listen_socket(self, path: Path) -> int:
        return self._placeholder("create_unix_listen_socket", path)

    async def set_security_label(self, target: LabelTarget) -> None:
        self.calls.append(("set_security_label", str(target)))

    async def clear_security_label(self, target: LabelTarget) -> None:
        self.calls.append(("clear_security_label", str(target)))

    async def close_fd(self, fd: int) -> None:
        self.calls.append(("close_fd", str(fd)))

    async def remove_socket(self, path: Path) -> None:
        self.calls.append(("remove_socket", str(path)))


# ============================================================================
# Handles
# ============================================================================


@dataclass(frozen=True, slots=True)
class FdHandle:
    """Descriptor passed to the child, rendered in place as its number."""

    fd: int

    def render(self) -> str:
        return str(self.fd)

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True, slots=True)
class FdSet:
    """Descriptor placed in an fdset, referenced as /dev/fdset/N."""

    set_id: int
    fd: int
    opaque: str | None = None

    @property
    def path(self) -> str:
        return f"/dev/fdset/{self.set_id}"

    def render(self) -> str:
        return self.path

    def add_fd_fragment(self) -> Fragment:
        value = f"set={self.set_id},fd={self.fd}"
        if self.opaque:
            value += f",opaque={self.opaque}"
        return Fragment("-add-fd", value)


# ============================================================================
# Tracker
# ============================================================================


@dataclass
class ResourceTracker:
    """Owns every resource acquired during one synthesis pass.

    Descriptors acquired through the tracker are closed on rollback.
    Descriptors the caller handed in (tap, vhost, migration fds) are only
    recorded as passed with KEEP_PARENT and are never closed here.
    """

    broker: ResourceBroker
    _owned_fds: list[int] = field(default_factory=list)
    _sockets: list[Path] = field(default_factory=list)
    _labels: list[LabelTarget] = field(default_factory=list)
    _passed: list[PassedFd] = field(default_factory=list)
    _next_fdset: int = 0

    async def _acquire(self, acquisition: Awaitable[int], *, socket_path: Path | None = None) -> int:
        """Await `acquisition` and take ownership of its descriptor.

        The broker call runs as its own task shielded from cancellation. A
        worker thread that is already opening a descriptor cannot be stopped,
        so when the pass is cancelled meanwhile the call is still awaited and
        its descriptor recorded before the cancellation propagates.
        """
        task = asyncio.ensure_future(acquisition)
        try:
            fd = await asyncio.shield(task)
        except asyncio.CancelledError:
            while not task.done():
                with contextlib.suppress(asyncio.CancelledError):
                    await asyncio.wait({task})
            if not task.cancelled() and task.exception() is None:
                self._own(task.result(), socket_path)
                logger.debug("Kept descriptor acquired during cancellation", extra={"fd": task.result()})
            raise
        self._own(fd, socket_path)
        return fd

    def _own(self, fd: int, socket_path: Path | None) -> None:
        self._owned_fds.append(fd)
        if socket_path is not None:
            self._sockets.append(socket_path)

    async def open_log_file(self, path: Path, *, append: bool = True) -> int:
        fd = await self._acquire(self.broker.open_log_file(path, append=append))
        logger.debug("Opened log file", extra={"path": str(path), "fd": fd})
        return fd

    async def open_device_node(self, path: Path, *, write: bool = True) -> int:
        fd = await self._acquire(self.broker.open_device_node(path, write=write))
        logger.debug("Opened device node", extra={"path": str(path), "fd": fd})
        return fd

    async def create_unix_listen_socket(self, path: Path) -> int:
        fd = await self._acquire(self.broker.create_unix_listen_socket(path), socket_path=path)
        logger.debug("Listening on UNIX socket", extra={"path": str(path), "fd": fd})
        return fd

    async def set_security_label(self, target: LabelTarget) -> None:
        await self.broker.set_security_label(target)
        self._labels.append(target)

    def pass_fd(self, fd: int, policy: FdPolicy = FdPolicy.CLOSE_PARENT) -> FdHandle:
        """Mark `fd` for inheritance by the child."""
        self._passed.append(PassedFd(fd=fd, policy=policy))
        return FdHandle(fd)

    def add_fdset(
        self,
        fd: int,
        *,
        opaque: str | None = None,
        policy: FdPolicy = FdPolicy.CLOSE_PARENT,
    ) -> FdSet:
        """Pass `fd` to the child inside a new fdset."""
        self.pass_fd(fd, policy)
        fdset = FdSet(set_id=self._next_fdset, fd=fd, opaque=opaque)
        self._next_fdset += 1
        return fdset

    def passed_fds(self) -> tuple[PassedFd, ...]:
        return tuple(self._passed)

    @property
    def owned_fds(self) -> tuple[int, ...]:
        return tuple(self._owned_fds)

    async def rollback(self) -> None:
        """Release everything acquired so far. Never raises.

        Descriptors close in reverse acquisition order, then created
        sockets are removed and labels cleared.
        """
        fds, self._owned_fds = self._owned_fds, []
        sockets, self._sockets = self._sockets, []
        labels, self._labels = self._labels, []
        self._passed.clear()

        for fd in reversed(fds):
            try:
                await self.broker.close_fd(fd)
            except OSError as e:
                logger.warning("Failed to close descriptor during rollback", extra={"fd": fd, "error": str(e)})
        for path in reversed(sockets):
            try:
                await self.broker.remove_socket(path)
            except OSError as e:
                logger.warning("Failed to remove socket during rollback", extra={"path": str(path), "error": str(e)})
        for target in reversed(labels):
            try:
                await self.broker.clear_security_label(target)
            except OSError as e:
                logger.warning("Failed to clear label during rollback", extra={"target": str(target), "error": str(e)})

        if fds or sockets or labels:
            logger.info(
                "Rolled back synthesis resources",
                extra={"fds": len(fds), "sockets": len(sockets), "labels": len(labels)},
            )
