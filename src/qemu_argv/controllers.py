"""Bus controllers, USB hubs and IOMMU devices.

Controllers the machine type creates on its own (implicit) emit nothing;
their aliases are declared to the command buffer so devices can reference
them. PCI controllers are emitted first in index order so every bridge's
parent bus exists before the bridge itself.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.device_common import (
    add_rom_props,
    device_label,
    finish_device,
    iothread_alias,
    plain_device,
    require_address,
    virtio_device,
)
from qemu_argv.devices import Controller, ControllerType, Hub, Iommu
from qemu_argv.emitter import TreeKind
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import Fragment
from qemu_argv.props import PropTree

if TYPE_CHECKING:
    from qemu_argv.domain import VmDefinition

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class _Model:
    driver: str
    cap: Cap | None = None


# Controller model -> emulator device. Root buses never appear here; they
# always come with the machine.
_PCI_MODELS: dict[str, _Model] = {
    "pci-bridge": _Model("pci-bridge", Cap.PCI_BRIDGE),
    "dmi-to-pci-bridge": _Model("i82801b11-bridge", Cap.DMI_TO_PCI_BRIDGE),
    "pcie-root-port": _Model("pcie-root-port", Cap.PCIE_ROOT_PORT),
    "pcie-switch-upstream-port": _Model("x3130-upstream"),
    "pcie-switch-downstream-port": _Model("xio3130-downstream"),
    "pci-expander-bus": _Model("pxb", Cap.PXB),
    "pcie-expander-bus": _Model("pxb-pcie", Cap.PXB_PCIE),
    "pcie-to-pci-bridge": _Model("pcie-pci-bridge", Cap.PCIE_PCI_BRIDGE),
}

_PCI_ROOT_MODELS = ("pci-root", "pcie-root")

_USB_MODELS: dict[str, _Model] = {
    "piix3-uhci": _Model("piix3-usb-uhci", Cap.PIIX3_USB_UHCI),
    "piix4-uhci": _Model("piix4-usb-uhci", Cap.PIIX4_USB_UHCI),
    "ehci": _Model("usb-ehci", Cap.USB_EHCI),
    "ich9-ehci1": _Model("ich9-usb-ehci1", Cap.ICH9_USB_EHCI1),
    "ich9-uhci1": _Model("ich9-usb-uhci1", Cap.ICH9_USB_EHCI1),
    "ich9-uhci2": _Model("ich9-usb-uhci2", Cap.ICH9_USB_EHCI1),
    "ich9-uhci3": _Model("ich9-usb-uhci3", Cap.ICH9_USB_EHCI1),
    "nec-xhci": _Model("nec-usb-xhci", Cap.NEC_USB_XHCI),
    "qemu-xhci": _Model("qemu-xhci", Cap.QEMU_XHCI),
}

_SCSI_MODELS: dict[str, _Model] = {
    "lsilogic": _Model("lsi", Cap.SCSI_LSI),
    "lsisas1068": _Model("mptsas1068", Cap.SCSI_MPTSAS1068),
    "lsisas1078": _Model("megasas", Cap.SCSI_MEGASAS),
    "ibmvscsi": _Model("spapr-vscsi"),
    "vmpvscsi": _Model("pvscsi"),
}

_EMIT_ORDER: tuple[ControllerType, ...] = (
    ControllerType.PCI,
    ControllerType.USB,
    ControllerType.SCSI,
    ControllerType.SATA,
    ControllerType.IDE,
    ControllerType.FDC,
    ControllerType.VIRTIO_SERIAL,
    ControllerType.CCID,
)


def _require_model(table: dict[str, _Model], ctrl: Controller, caps: CapabilitySet) -> _Model:
    label = device_label(ctrl)
    model = table.get(ctrl.model or "")
    if model is None:
        raise ConfigUnsupportedError(
            f"{ctrl.type} controller model '{ctrl.model}' is not supported (controller '{label}')",
            context={"alias": label, "type": str(ctrl.type), "model": ctrl.model},
        )
    if model.cap is not None and not caps.has(model.cap):
        raise ConfigUnsupportedError(
            f"{ctrl.type} controller model '{ctrl.model}' is not supported by this QEMU (controller '{label}')",
            context={"alias": label, "model": ctrl.model, "capability": model.cap.value},
        )
    return model


def ordered_controllers(vm: VmDefinition) -> list[Controller]:
    """Controllers in emission order: by type family, then index."""
    ctrls = vm.devices_of(Controller)
    rank = {t: i for i, t in enumerate(_EMIT_ORDER)}
    return sorted(ctrls, key=lambda c: (rank[c.type], c.index))


def is_implicit(ctrl: Controller) -> bool:
    return ctrl.implicit or (ctrl.type == ControllerType.PCI and ctrl.model in _PCI_ROOT_MODELS)


# ============================================================================
# Per-type builders
# ============================================================================


def _pci_controller_props(ctrl: Controller, vm: VmDefinition, caps: CapabilitySet) -> tuple[PropTree, str | None]:
    model = _require_model(_PCI_MODELS, ctrl, caps)
    require_address(ctrl, (AddressKind.PCI,), what=model.driver)
    tree, bus = plain_device(model.driver, ctrl, vm)
    match ctrl.model:
        case "pci-bridge":
            tree.add("chassis_nr", ctrl.chassis_nr if ctrl.chassis_nr is not None else ctrl.index)
        case "pcie-root-port" | "pcie-switch-downstream-port":
            tree.add("port", f"0x{ctrl.port:x}" if ctrl.port is not None else None)
            tree.add("chassis", ctrl.chassis if ctrl.chassis is not None else ctrl.index)
            if ctrl.hotplug is not None:
                tree.add("hotplug", ctrl.hotplug)
        case "pci-expander-bus" | "pcie-expander-bus":
            tree.add("bus_nr", ctrl.bus_nr).add("numa_node", ctrl.numa_node)
    return tree, bus


def _usb_companion_master(ctrl: Controller, vm: VmDefinition) -> str:
    for other in vm.devices_of(Controller):
        if (
            other.type == ControllerType.USB
            and other.index == ctrl.index
            and other.master_startport is None
            and other.info.alias
        ):
            return other.info.alias
    raise ConfigUnsupportedError(
        f"USB companion controller '{device_label(ctrl)}' has no master controller with index {ctrl.index}",
        context={"alias": device_label(ctrl), "index": ctrl.index},
    )


def _usb_controller_props(
    ctrl: Controller, vm: VmDefinition, caps: CapabilitySet
) -> tuple[PropTree, tuple[str | None, ...]]:
    model = _require_model(_USB_MODELS, ctrl, caps)
    require_address(ctrl, (AddressKind.PCI,), what=model.driver)
    tree, bus = plain_device(model.driver, ctrl, vm)
    if ctrl.master_startport is not None:
        master = _usb_companion_master(ctrl, vm)
        tree.add("masterbus", f"{master}.0").add("firstport", ctrl.master_startport)
        # Companions share the master's bus and carry no id of their own.
        return tree, (bus, master)
    if ctrl.ports is not None:
        if ctrl.model in ("nec-xhci", "qemu-xhci"):
            tree.add("p2", ctrl.ports).add("p3", ctrl.ports)
        else:
            logger.debug("Port count only applies to xHCI controllers", extra={"alias": device_label(ctrl)})
    add_rom_props(tree, ctrl)
    finish_device(tree, ctrl, boot=False)
    return tree, (bus,)


def _scsi_controller_props(ctrl: Controller, vm: VmDefinition, caps: CapabilitySet) -> tuple[PropTree, str | None]:
    if ctrl.model in (None, "virtio-scsi"):
        tree, bus = virtio_device("virtio-scsi", ctrl, vm, caps, model=ctrl.virtio_model, options=ctrl.virtio)
        tree.add("num_queues", ctrl.queues)
        tree.add("iothread", iothread_alias(ctrl.iothread, caps, device_label(ctrl)))
        return tree, bus
    model = _require_model(_SCSI_MODELS, ctrl, caps)
    accepted = (AddressKind.SPAPR_VIO,) if ctrl.model == "ibmvscsi" else (AddressKind.PCI,)
    require_address(ctrl, accepted, what=model.driver)
    return plain_device(model.driver, ctrl, vm)


def controller_fragment(ctrl: Controller, vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    """-device for `ctrl`, or None when the machine provides it."""
    if is_implicit(ctrl):
        return None
    label = device_label(ctrl)
    refs: tuple[str | None, ...]
    match ctrl.type:
        case ControllerType.PCI:
            tree, bus = _pci_controller_props(ctrl, vm, caps)
            refs = (bus,)
        case ControllerType.USB:
            if ctrl.model == "none":
                return None
            tree, refs = _usb_controller_props(ctrl, vm, caps)
            return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=refs)
        case ControllerType.SCSI:
            tree, bus = _scsi_controller_props(ctrl, vm, caps)
            refs = (bus,)
        case ControllerType.SATA:
            if not caps.has(Cap.ICH9_AHCI):
                raise ConfigUnsupportedError(
                    f"SATA controller '{label}' is not supported by this QEMU",
                    context={"alias": label, "capability": Cap.ICH9_AHCI.value},
                )
            require_address(ctrl, (AddressKind.PCI,), what="ich9-ahci")
            tree, bus = plain_device("ich9-ahci", ctrl, vm)
            refs = (bus,)
        case ControllerType.IDE:
            raise ConfigUnsupportedError(
                f"only the machine's built-in IDE controller is supported (controller '{label}')",
                context={"alias": label, "index": ctrl.index},
            )
        case ControllerType.FDC:
            tree, bus = plain_device("isa-fdc", ctrl, vm)
            refs = (bus,)
        case ControllerType.VIRTIO_SERIAL:
            tree, bus = virtio_device("virtio-serial", ctrl, vm, caps, model=ctrl.virtio_model, options=ctrl.virtio)
            tree.add("max_ports", ctrl.max_ports).add("vectors", ctrl.vectors)
            refs = (bus,)
        case ControllerType.CCID:
            require_address(ctrl, (AddressKind.USB,), what="usb-ccid")
            tree, bus = plain_device("usb-ccid", ctrl, vm)
            refs = (bus,)
        case _:
            raise EnumRangeError.for_value("controller type", ctrl.type)
    finish_device(tree, ctrl, boot=False)
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=refs)


def hub_fragment(hub: Hub, vm: VmDefinition, caps: CapabilitySet) -> Fragment:
    label = device_label(hub)
    if not caps.has(Cap.USB_HUB):
        raise ConfigUnsupportedError(
            f"USB hub '{label}' is not supported by this QEMU",
            context={"alias": label, "capability": Cap.USB_HUB.value},
        )
    require_address(hub, (AddressKind.USB,), what="usb-hub")
    tree, bus = plain_device("usb-hub", hub, vm)
    finish_device(tree, hub, boot=False)
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))


# ============================================================================
# IOMMU
# ============================================================================


def intel_iommu_fragment(iommu: Iommu, vm: VmDefinition, caps: CapabilitySet) -> Fragment:
    """intel-iommu; must precede every PCI device it translates for."""
    label = device_label(iommu)
    if not caps.has(Cap.DEVICE_INTEL_IOMMU):
        raise ConfigUnsupportedError(
            f"intel-iommu '{label}' is not supported by this QEMU",
            context={"alias": label, "capability": Cap.DEVICE_INTEL_IOMMU.value},
        )
    if not vm.is_q35:
        raise ConfigUnsupportedError(
            f"intel-iommu requires a q35 machine (device '{label}')",
            context={"alias": label, "machine": vm.machine},
        )
    tree = PropTree.device("intel-iommu").add("id", iommu.info.alias)
    tree.add("intremap", iommu.intremap).add("caching-mode", iommu.caching_mode)
    tree.add("eim", iommu.eim).add("device-iotlb", iommu.iotlb).add("aw-bits", iommu.aw_bits)
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE)


def virtio_iommu_fragment(iommu: Iommu, vm: VmDefinition, caps: CapabilitySet) -> Fragment:
    """virtio-iommu-pci; lives on a PCI bus so it follows the controllers."""
    label = device_label(iommu)
    if not caps.has(Cap.DEVICE_VIRTIO_IOMMU):
        raise ConfigUnsupportedError(
            f"virtio-iommu '{label}' is not supported by this QEMU",
            context={"alias": label, "capability": Cap.DEVICE_VIRTIO_IOMMU.value},
        )
    require_address(iommu, (AddressKind.PCI,), what="virtio-iommu")
    tree, bus = plain_device("virtio-iommu-pci", iommu, vm)
    finish_device(tree, iommu, boot=False)
    return Fragment.from_tree(tree, caps, TreeKind.DEVICE, references=(bus,))
