"""Display frontends (VNC, SPICE, SDL, egl-headless, D-Bus) and video devices."""

from __future__ import annotations

from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.audio import AudioMode, audio_alias, select_audio_mode
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.device_common import (
    device_label,
    finish_device,
    plain_device,
    require_address,
    require_alias,
    virtio_device,
)
from qemu_argv.devices import Graphics, Video
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.linking import AttachmentBundle, LinkingResolver
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition

logger = get_logger(__name__)

_DISPLAY_CAPS: dict[str, Cap] = {
    "vnc": Cap.VNC,
    "spice": Cap.SPICE,
    "sdl": Cap.SDL,
    "egl-headless": Cap.EGL_HEADLESS,
    "dbus": Cap.DBUS_DISPLAY,
}


def _require(caps: CapabilitySet, cap: Cap, label: str, what: str) -> None:
    if not caps.has(cap):
        raise ConfigUnsupportedError(
            f"{what} is not supported by this QEMU (device '{label}')",
            context={"alias": label, "capability": cap.value},
        )


def _audiodev(gfx: Graphics, caps: CapabilitySet) -> PropRef | None:
    if gfx.audio_id is None or select_audio_mode(caps) != AudioMode.AUDIODEV:
        return None
    return PropRef(audio_alias(gfx.audio_id))


def _listen_host(listen: str | None) -> str:
    host = listen or "127.0.0.1"
    return f"[{host}]" if ":" in host else host


# ============================================================================
# Displays
# ============================================================================


def vnc_props(gfx: Graphics, caps: CapabilitySet) -> PropTree:
    label = device_label(gfx)
    if gfx.socket:
        address = f"unix:{gfx.socket}"
    else:
        if gfx.port is None or gfx.port < constants.VNC_PORT_BASE:
            raise ConfigUnsupportedError(
                f"VNC port must be at least {constants.VNC_PORT_BASE} (device '{label}')",
                context={"alias": label, "port": gfx.port},
            )
        address = f"{_listen_host(gfx.listen)}:{gfx.port - constants.VNC_PORT_BASE}"
    tree = PropTree([("type", address)])
    tree.add("websocket", gfx.websocket)
    tree.add("share", gfx.share_policy)
    if gfx.tls is not None:
        tree.add("tls-creds", PropRef(gfx.tls.alias))
    if gfx.password:
        tree.add("password", True)
    tree.add("audiodev", _audiodev(gfx, caps))
    return tree


def spice_props(gfx: Graphics, caps: CapabilitySet) -> PropTree:
    tree = PropTree()
    if gfx.socket:
        tree.add("unix", True).add("addr", gfx.socket)
    else:
        tree.add("port", gfx.port).add("tls-port", gfx.tls_port)
        tree.add("addr", gfx.listen)
    if gfx.tls is not None:
        tree.add("x509-dir", gfx.tls.directory)
    if not gfx.password:
        tree.add("disable-ticketing", True)
    if gfx.gl:
        tree.add("gl", True).add("rendernode", gfx.rendernode)
    tree.add("seamless-migration", True)
    return tree


def _display_props(gfx: Graphics, caps: CapabilitySet) -> PropTree:
    tree = PropTree([("type", gfx.type)])
    match gfx.type:
        case "sdl":
            tree.add("gl", gfx.gl)
        case "egl-headless":
            tree.add("rendernode", gfx.rendernode)
        case "dbus":
            tree.add("addr", gfx.display)
            if gfx.gl:
                tree.add("gl", True).add("rendernode", gfx.rendernode)
            tree.add("audiodev", _audiodev(gfx, caps))
        case _:
            raise EnumRangeError.for_value("display type", gfx.type)
    return tree


def graphics_bundle(gfx: Graphics, caps: CapabilitySet, resolver: LinkingResolver) -> AttachmentBundle:
    """Display frontend bundled with its TLS credentials."""
    label = device_label(gfx)
    _require(caps, _DISPLAY_CAPS[gfx.type], label, f"{gfx.type} graphics")
    match gfx.type:
        case "vnc":
            fragment = Fragment.option("-vnc", vnc_props(gfx, caps))
        case "spice":
            fragment = Fragment.option("-spice", spice_props(gfx, caps))
        case "sdl" | "egl-headless" | "dbus":
            fragment = Fragment.option("-display", _display_props(gfx, caps))
        case _:
            raise EnumRangeError.for_value("graphics type", gfx.type)
    tls = gfx.tls if gfx.type == "vnc" else None
    return resolver.chardev_bundle(label, tls, [], fragment)


def graphics_environment(gfx: Graphics) -> dict[str, str]:
    if gfx.type == "sdl" and gfx.display:
        return {"DISPLAY": gfx.display}
    return {}


# ============================================================================
# Video
# ============================================================================


def _kib_to_mib(kib: int | None) -> int | None:
    return None if kib is None else kib // constants.KIB_PER_MIB


def _kib_to_bytes(kib: int | None) -> int | None:
    return None if kib is None else kib * constants.KIB


def _require_video(caps: CapabilitySet, cap: Cap, video: Video) -> None:
    _require(caps, cap, device_label(video), f"video model '{video.model}'")


def video_props(video: Video, vm: VmDefinition, caps: CapabilitySet) -> tuple[PropTree, str | None]:
    label = device_label(video)
    match video.model:
        case "vga":
            if not video.primary:
                raise ConfigUnsupportedError(
                    f"VGA can only be the primary video device (device '{label}')",
                    context={"alias": label},
                )
            _require_video(caps, Cap.DEVICE_VGA, video)
            tree, bus = plain_device("VGA", video, vm)
            if caps.has(Cap.VGA_VGAMEM):
                # vram sizes the VGA framebuffer unless vgamem is given.
                tree.add("vgamem_mb", _kib_to_mib(video.vgamem if video.vgamem is not None else video.vram))
        case "cirrus":
            _require_video(caps, Cap.DEVICE_CIRRUS_VGA, video)
            tree, bus = plain_device("cirrus-vga", video, vm)
        case "qxl":
            _require_video(caps, Cap.DEVICE_QXL, video)
            require_address(video, (AddressKind.PCI,), what="qxl")
            tree, bus = plain_device("qxl-vga" if video.primary else "qxl", video, vm)
            tree.add("ram_size", _kib_to_bytes(video.ram))
            tree.add("vram_size", _kib_to_bytes(video.vram))
            if caps.has(Cap.QXL_VRAM64):
                tree.add("vram64_size_mb", _kib_to_mib(video.vram64))
            if caps.has(Cap.QXL_VGAMEM):
                tree.add("vgamem_mb", _kib_to_mib(video.vgamem))
            tree.add("max_outputs", video.heads)
        case "virtio":
            if video.primary and video.info.address_kind == AddressKind.PCI and caps.has(Cap.DEVICE_VIRTIO_VGA):
                driver = "virtio-vga-gl" if video.accel3d else "virtio-vga"
                tree, bus = plain_device(driver, video, vm)
            else:
                _require_video(caps, Cap.DEVICE_VIRTIO_GPU, video)
                base = "virtio-gpu-gl" if video.accel3d else "virtio-gpu"
                tree, bus = virtio_device(base, video, vm, caps, options=video.virtio)
            if video.accel3d:
                _require_video(caps, Cap.VIRTIO_GPU_GL, video)
            tree.add("max_outputs", video.heads)
        case "bochs":
            _require_video(caps, Cap.DEVICE_BOCHS_DISPLAY, video)
            tree, bus = plain_device("bochs-display", video, vm)
            if video.vgamem is not None:
                tree.add("vgamem", f"{video.vgamem}k")
        case "ramfb":
            _require_video(caps, Cap.DEVICE_RAMFB, video)
            tree, bus = PropTree.device("ramfb"), None
        case _:
            raise EnumRangeError.for_value("video model", video.model)
    finish_device(tree, video, boot=False)
    return tree, bus


def video_fragment(video: Video, vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    if video.model == "none":
        return None
    require_alias(video)
    tree, bus = video_props(video, vm, caps)
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))


def ordered_videos(vm: VmDefinition) -> list[Video]:
    """Primary video first so it claims the legacy VGA ranges."""
    videos = vm.devices_of(Video)
    return sorted(videos, key=lambda v: not v.primary)
