"""Backend/device linking resolver.

Builds the attachment bundle of a storage source or character device: the
prerequisite objects in their fixed dependency order, the primary backend
fragment(s) and the consuming device fragment. Bundles are completed before
they are committed to the command buffer, so a failure part-way through
never leaves dangling references in the output.

Dependency order:

    reservation manager -> auth secret -> encryption secret -> cookie secret
    -> TLS key secret -> TLS credentials -> primary backend(s) -> device
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, StrEnum, auto
from pathlib import Path

from qemu_argv._logging import get_logger
from qemu_argv.blockdev import (
    drive_id_for,
    drive_props,
    format_node_name,
    format_props,
    protocol_props,
    storage_node_name,
    throttle_filter_props,
    throttle_group_props,
)
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import Disk, DiskDevice, StorageSource, TlsInfo
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, InternalError
from qemu_argv.fragments import Fragment
from qemu_argv.secret_objects import object_fragment, pr_manager_fragment, secret_fragment, tls_creds_fragment

logger = get_logger(__name__)


class StorageStrategy(StrEnum):
    """How a storage source is attached. Exactly one per source."""

    BLOCKDEV_CHAIN = "blockdev"
    LEGACY_DRIVE = "drive"


def select_storage_strategy(caps: CapabilitySet) -> StorageStrategy:
    return StorageStrategy.BLOCKDEV_CHAIN if caps.has(Cap.BLOCKDEV) else StorageStrategy.LEGACY_DRIVE


class AttachState(Enum):
    UNATTACHED = auto()
    BACKEND_OBJECTS_EMITTED = auto()
    STORAGE_NODE_EMITTED = auto()
    DEVICE_FRAGMENT_EMITTED = auto()


_NEXT_STATE: dict[AttachState, AttachState] = {
    AttachState.UNATTACHED: AttachState.BACKEND_OBJECTS_EMITTED,
    AttachState.BACKEND_OBJECTS_EMITTED: AttachState.STORAGE_NODE_EMITTED,
    AttachState.STORAGE_NODE_EMITTED: AttachState.DEVICE_FRAGMENT_EMITTED,
}


@dataclass
class AttachmentBundle:
    """Prerequisites, backend fragments and the consuming device of one source.

    Fragments are added through the state machine; each stage may be
    entered only from the one before it.
    """

    label: str
    prerequisites: list[Fragment] = field(default_factory=list)
    backend: list[Fragment] = field(default_factory=list)
    device: Fragment | None = None
    state: AttachState = AttachState.UNATTACHED

    def _advance(self, target: AttachState) -> None:
        if _NEXT_STATE.get(self.state) != target:
            raise InternalError(
                f"invalid attachment transition {self.state.name} -> {target.name} for '{self.label}'",
                context={"alias": self.label, "from": self.state.name, "to": target.name},
            )
        self.state = target

    def emit_prerequisites(self, fragments: list[Fragment]) -> None:
        self._advance(AttachState.BACKEND_OBJECTS_EMITTED)
        self.prerequisites.extend(fragments)

    def emit_backend(self, fragments: list[Fragment]) -> None:
        self._advance(AttachState.STORAGE_NODE_EMITTED)
        self.backend.extend(fragments)

    def emit_device(self, fragment: Fragment | None) -> None:
        self._advance(AttachState.DEVICE_FRAGMENT_EMITTED)
        self.device = fragment

    def fragments(self) -> list[Fragment]:
        """All fragments in commit order; the bundle must be complete."""
        if self.state != AttachState.DEVICE_FRAGMENT_EMITTED:
            raise InternalError(
                f"attachment of '{self.label}' committed in state {self.state.name}",
                context={"alias": self.label, "state": self.state.name},
            )
        out = [*self.prerequisites, *self.backend]
        if self.device is not None:
            out.append(self.device)
        return out


class NodeNameAllocator:
    """Deterministic per-pass allocator of N in libvirt-N-storage/format."""

    def __init__(self) -> None:
        self._next = 1
        self._used: set[int] = set()

    def allocate(self, src: StorageSource) -> int:
        if src.node_index is not None:
            if src.node_index in self._used:
                raise InternalError(
                    f"storage node index {src.node_index} used twice",
                    context={"node_index": src.node_index},
                )
            self._used.add(src.node_index)
            return src.node_index
        while self._next in self._used:
            self._next += 1
        index = self._next
        self._used.add(index)
        self._next += 1
        return index


def tls_prerequisites(tls: TlsInfo | None, caps: CapabilitySet) -> list[Fragment]:
    if tls is None:
        return []
    out = []
    if tls.secret is not None:
        out.append(secret_fragment(tls.secret, caps))
    out.append(tls_creds_fragment(tls, caps))
    return out


class LinkingResolver:
    """Builds attachment bundles for one synthesis pass."""

    def __init__(self, caps: CapabilitySet, pr_helper_socket: Path) -> None:
        self.caps = caps
        self.strategy = select_storage_strategy(caps)
        self._nodes = NodeNameAllocator()
        self._pr_helper_socket = pr_helper_socket

    def source_prerequisites(self, src: StorageSource) -> list[Fragment]:
        """Objects one storage layer depends on, in dependency order."""
        out: list[Fragment] = []
        if src.reservations is not None and not src.reservations.managed:
            out.append(pr_manager_fragment(src.reservations, self.caps, self._pr_helper_socket))
        if src.auth is not None:
            out.append(secret_fragment(src.auth.secret, self.caps))
        if src.encryption is not None:
            out.append(secret_fragment(src.encryption.secret, self.caps))
        if src.cookies is not None:
            out.append(secret_fragment(src.cookies, self.caps))
        out.extend(tls_prerequisites(src.tls, self.caps))
        return out

    def disk_bundle(self, disk: Disk, device: Callable[[str | None], Fragment | None]) -> AttachmentBundle:
        """Bundle for `disk`; `device` builds the frontend given the backend id.

        An empty CD-ROM or floppy has no block nodes at all, so its frontend
        gets no backend id. Legacy drives still need an empty -drive.
        """
        label = disk.info.alias or "disk"
        bundle = AttachmentBundle(label=label)
        top: str | None
        if disk.source.is_empty and disk.device not in (DiskDevice.CDROM, DiskDevice.FLOPPY):
            raise ConfigUnsupportedError(
                f"disk '{label}' has no source; only CD-ROM and floppy drives may be empty",
                context={"alias": label, "device": str(disk.device)},
            )
        if disk.source.is_empty and self.strategy == StorageStrategy.BLOCKDEV_CHAIN:
            bundle.emit_prerequisites([])
            bundle.emit_backend([])
            top = None
        elif self.strategy == StorageStrategy.BLOCKDEV_CHAIN:
            top = self._blockdev_chain(disk, bundle)
        else:
            top = self._legacy_drive(disk, bundle)
        bundle.emit_device(device(top))
        logger.debug(
            "Built storage attachment",
            extra={"alias": label, "strategy": self.strategy.value, "backend": top},
        )
        return bundle

    def _blockdev_chain(self, disk: Disk, bundle: AttachmentBundle) -> str:
        layers = list(reversed(disk.source.chain()))
        prerequisites: list[Fragment] = []
        nodes: list[Fragment] = []
        backing: str | None = None
        for depth, layer in enumerate(layers):
            top = depth == len(layers) - 1
            index = self._nodes.allocate(layer)
            prerequisites.extend(self.source_prerequisites(layer))
            storage = storage_node_name(index)
            fmt = format_node_name(index)
            nodes.append(
                Fragment.from_tree(
                    protocol_props(layer, self.caps, node_name=storage, disk=disk, top=top),
                    self.caps,
                    TreeKind.BLOCKDEV,
                )
            )
            nodes.append(
                Fragment.from_tree(
                    format_props(layer, node_name=fmt, file_node=storage, backing_node=backing, disk=disk, top=top),
                    self.caps,
                    TreeKind.BLOCKDEV,
                )
            )
            backing = fmt
        assert backing is not None

        if disk.throttle is not None and disk.throttle.is_set:
            if not self.caps.has(Cap.THROTTLE_GROUP):
                raise ConfigUnsupportedError(
                    f"I/O throttling is not supported with blockdev for disk '{bundle.label}'",
                    context={"alias": bundle.label, "capability": Cap.THROTTLE_GROUP.value},
                )
            prerequisites.append(object_fragment(throttle_group_props(disk), self.caps))
            filter_node = f"libvirt-{bundle.label}-throttle"
            nodes.append(
                Fragment.from_tree(throttle_filter_props(disk, filter_node, backing), self.caps, TreeKind.BLOCKDEV)
            )
            backing = filter_node

        bundle.emit_prerequisites(prerequisites)
        bundle.emit_backend(nodes)
        return backing

    def _legacy_drive(self, disk: Disk, bundle: AttachmentBundle) -> str:
        src = disk.source
        if src.backing is not None:
            logger.debug(
                "Legacy drive describes the top image only; backing chain comes from image metadata",
                extra={"alias": bundle.label},
            )
        bundle.emit_prerequisites(self.source_prerequisites(src))
        drive_id = drive_id_for(disk)
        tree = drive_props(disk, self.caps, drive_id)
        bundle.emit_backend([Fragment.from_tree(tree, self.caps, TreeKind.DRIVE)])
        return drive_id

    def chardev_bundle(
        self,
        label: str,
        tls: TlsInfo | None,
        backend: list[Fragment],
        device: Fragment | None,
        extra_prerequisites: list[Fragment] | None = None,
    ) -> AttachmentBundle:
        """Bundle for a character device (or any TLS-secured backend) and its consumer."""
        bundle = AttachmentBundle(label=label)
        bundle.emit_prerequisites([*(extra_prerequisites or []), *tls_prerequisites(tls, self.caps)])
        bundle.emit_backend(backend)
        bundle.emit_device(device)
        return bundle
