"""TPM backends (-tpmdev) and their frontend devices.

Passthrough opens the host TPM node and its sysfs cancel file here and hands
both to the emulator through fdsets; the emulator backend talks to an
already running swtpm over a UNIX socket chardev.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.chardev import build_chardev
from qemu_argv.device_common import device_label, finish_device, plain_device, require_address, require_alias
from qemu_argv.devices import CharSource, CharSourceType, Tpm
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.linking import AttachmentBundle, LinkingResolver
from qemu_argv.props import PropRef, PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition
    from qemu_argv.resources import ResourceTracker

logger = get_logger(__name__)


def tpm_backend_alias(tpm: Tpm) -> str:
    return f"tpm-{require_alias(tpm)}"


def tpm_chardev_alias(tpm: Tpm) -> str:
    return f"chr{tpm_backend_alias(tpm)}"


def cancel_path_for(tpm: Tpm) -> str:
    """sysfs cancel file of the passthrough device, unless given explicitly."""
    if tpm.cancel_path:
        return tpm.cancel_path
    return constants.TPM_PASSTHROUGH_CANCEL_TEMPLATE.format(name=Path(tpm.device_path).name)


def _require(caps: CapabilitySet, cap: Cap, tpm: Tpm, what: str) -> None:
    if not caps.has(cap):
        raise ConfigUnsupportedError(
            f"{what} is not supported by this QEMU (device '{device_label(tpm)}')",
            context={"alias": device_label(tpm), "capability": cap.value},
        )


def select_tpm_driver(tpm: Tpm, vm: VmDefinition, caps: CapabilitySet) -> str:
    match tpm.model:
        case "tpm-tis":
            if vm.arch == "aarch64":
                _require(caps, Cap.DEVICE_TPM_TIS_DEVICE, tpm, "tpm-tis-device")
                return "tpm-tis-device"
            _require(caps, Cap.DEVICE_TPM_TIS, tpm, "tpm-tis")
            return "tpm-tis"
        case "tpm-crb":
            _require(caps, Cap.DEVICE_TPM_CRB, tpm, "tpm-crb")
            return "tpm-crb"
        case "tpm-spapr":
            _require(caps, Cap.DEVICE_TPM_SPAPR, tpm, "tpm-spapr")
            require_address(tpm, (AddressKind.SPAPR_VIO,), what="tpm-spapr")
            return "tpm-spapr"
        case _:
            raise EnumRangeError.for_value("TPM model", tpm.model)


async def tpm_bundle(
    tpm: Tpm,
    vm: VmDefinition,
    caps: CapabilitySet,
    resolver: LinkingResolver,
    tracker: ResourceTracker,
) -> AttachmentBundle:
    """-add-fd / -chardev prerequisites, the -tpmdev backend, then the device."""
    alias = require_alias(tpm)
    backend_alias = tpm_backend_alias(tpm)
    driver = select_tpm_driver(tpm, vm, caps)
    prerequisites: list[Fragment] = []
    backend: list[Fragment] = []

    tpmdev = PropTree([("type", tpm.backend), ("id", backend_alias)])
    match tpm.backend:
        case "passthrough":
            _require(caps, Cap.TPM_PASSTHROUGH, tpm, "TPM passthrough")
            device_fd = await tracker.open_device_node(Path(tpm.device_path))
            device_set = tracker.add_fdset(device_fd, opaque=f"{backend_alias}-device")
            cancel_fd = await tracker.open_device_node(Path(cancel_path_for(tpm)))
            cancel_set = tracker.add_fdset(cancel_fd, opaque=f"{backend_alias}-cancel")
            prerequisites.extend([device_set.add_fd_fragment(), cancel_set.add_fd_fragment()])
            tpmdev.add("path", device_set.path).add("cancel-path", cancel_set.path)
        case "emulator":
            _require(caps, Cap.TPM_EMULATOR, tpm, "TPM emulator")
            if not tpm.emulator_socket:
                raise ConfigUnsupportedError(
                    f"TPM emulator '{device_label(tpm)}' needs the swtpm socket path",
                    context={"alias": device_label(tpm)},
                )
            chr_alias = tpm_chardev_alias(tpm)
            source = CharSource(type=CharSourceType.UNIX, path=tpm.emulator_socket)
            backend.extend((await build_chardev(source, chr_alias, caps, tracker)).fragments)
            tpmdev.add("chardev", PropRef(chr_alias))
        case _:
            raise EnumRangeError.for_value("TPM backend", tpm.backend)
    backend.append(Fragment.option("-tpmdev", tpmdev))

    tree, bus = plain_device(driver, tpm, vm)
    tree.add("tpmdev", PropRef(backend_alias))
    finish_device(tree, tpm, boot=False)
    device = Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))
    logger.debug("TPM attached", extra={"alias": alias, "backend": tpm.backend, "driver": driver})
    return resolver.chardev_bundle(alias, None, backend, device, extra_prerequisites=prerequisites)
