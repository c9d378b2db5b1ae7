"""Tests for host device assignment."""

import json
from collections.abc import Callable

import pytest

from qemu_argv.addresses import DeviceInfo, DriveAddress, PciAddress, UsbAddress
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import Controller, ControllerType, Hostdev
from qemu_argv.domain import VmDefinition
from qemu_argv.exceptions import ConfigUnsupportedError
from qemu_argv.hostdev import hostdev_fragments, scsi_generic_backend_alias

VmFactory = Callable[..., VmDefinition]

MDEV_UUID = "c2177883-f1bb-47f0-914d-32a22e3a8804"


def pci_hostdev(**fields) -> Hostdev:
    fields.setdefault("info", DeviceInfo(alias="hostdev0", address=PciAddress(slot=7)))
    return Hostdev(subsys="pci", **fields)


def values(frags: list) -> list[str | None]:
    return [f.value for f in frags]


# ============================================================================
# PCI and mediated devices
# ============================================================================


class TestVfioPci:
    def test_assignment(self, vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        dev = pci_hostdev(
            pci_address="0000:06:12.5",
            info=DeviceInfo(alias="hostdev0", address=PciAddress(slot=7), boot_index=2),
        )
        [frag] = hostdev_fragments(dev, vm, legacy_caps)
        assert frag.value == "vfio-pci,bus=pcie.0,addr=0x7,host=0000:06:12.5,id=hostdev0,bootindex=2"
        assert frag.defines == ("hostdev0",)

    def test_display(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        dev = pci_hostdev(pci_address="0000:06:12.5", display=True, ramfb=True)
        [frag] = hostdev_fragments(dev, vm, caps)
        assert json.loads(frag.value or "") == {
            "driver": "vfio-pci",
            "bus": "pcie.0",
            "addr": "0x7",
            "host": "0000:06:12.5",
            "display": True,
            "ramfb": True,
            "id": "hostdev0",
        }

    def test_display_needs_capability(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        dev = pci_hostdev(pci_address="0000:06:12.5", display=False)
        with pytest.raises(ConfigUnsupportedError, match="vfio display is not supported"):
            hostdev_fragments(dev, vm, caps.without_flags(Cap.VFIO_PCI_DISPLAY))

    def test_needs_host_address(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        with pytest.raises(ConfigUnsupportedError, match="has no host address"):
            hostdev_fragments(pci_hostdev(), vm, caps)

    def test_needs_vfio(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        with pytest.raises(ConfigUnsupportedError, match="vfio-pci is not supported"):
            hostdev_fragments(pci_hostdev(pci_address="0000:06:12.5"), vm, caps.without_flags(Cap.VFIO_PCI))


class TestMediatedDevices:
    def test_vfio_pci_mdev(self, vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        dev = Hostdev(
            subsys="mdev",
            mdev_uuid=MDEV_UUID,
            info=DeviceInfo(alias="hostdev0", address=PciAddress(slot=7)),
        )
        assert values(hostdev_fragments(dev, vm, legacy_caps)) == [
            f"vfio-pci,bus=pcie.0,addr=0x7,sysfsdev=/sys/bus/mdev/devices/{MDEV_UUID},id=hostdev0",
        ]

    def test_vfio_ap_has_no_address(self, vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        dev = Hostdev(subsys="mdev", mdev_model="vfio-ap", mdev_uuid=MDEV_UUID, info=DeviceInfo(alias="hostdev0"))
        assert values(hostdev_fragments(dev, vm, legacy_caps)) == [
            f"vfio-ap,sysfsdev=/sys/bus/mdev/devices/{MDEV_UUID},id=hostdev0",
        ]

    def test_vfio_ap_needs_capability(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        dev = Hostdev(subsys="mdev", mdev_model="vfio-ap", mdev_uuid=MDEV_UUID, info=DeviceInfo(alias="hostdev0"))
        with pytest.raises(ConfigUnsupportedError, match="vfio-ap is not supported"):
            hostdev_fragments(dev, vm, caps.without_flags(Cap.VFIO_AP))

    def test_needs_uuid(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        dev = Hostdev(subsys="mdev", info=DeviceInfo(alias="hostdev0", address=PciAddress(slot=7)))
        with pytest.raises(ConfigUnsupportedError, match="has no UUID"):
            hostdev_fragments(dev, vm, caps)


# ============================================================================
# USB and SCSI
# ============================================================================


class TestUsbHost:
    @pytest.fixture
    def usb_vm(self, vm_factory: VmFactory) -> VmDefinition:
        xhci = Controller(type=ControllerType.USB, model="qemu-xhci", info=DeviceInfo(alias="usb"))
        return vm_factory(xhci)

    def usb_hostdev(self, **fields) -> Hostdev:
        return Hostdev(subsys="usb", info=DeviceInfo(alias="hostdev1", address=UsbAddress(port="1")), **fields)

    def test_by_bus_and_device(self, usb_vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        frags = hostdev_fragments(self.usb_hostdev(usb_bus=1, usb_device=3), usb_vm, legacy_caps)
        assert values(frags) == ["usb-host,bus=usb.0,port=1,hostbus=1,hostaddr=3,id=hostdev1"]
        assert frags[0].references == ("usb",)

    def test_by_vendor_and_product(self, usb_vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        frags = hostdev_fragments(self.usb_hostdev(usb_vendor=0x046D, usb_product=0xC52B), usb_vm, legacy_caps)
        assert values(frags) == ["usb-host,bus=usb.0,port=1,vendorid=0x046d,productid=0xc52b,id=hostdev1"]

    def test_needs_a_selector(self, usb_vm: VmDefinition, caps: CapabilitySet) -> None:
        with pytest.raises(ConfigUnsupportedError, match="needs a bus/device pair or a vendor/product pair"):
            hostdev_fragments(self.usb_hostdev(usb_vendor=0x046D), usb_vm, caps)


class TestScsiGeneric:
    @pytest.fixture
    def scsi_vm(self, vm_factory: VmFactory) -> VmDefinition:
        ctrl = Controller(type=ControllerType.SCSI, model="virtio-scsi", info=DeviceInfo(alias="scsi0"))
        return vm_factory(ctrl)

    def scsi_hostdev(self, **fields) -> Hostdev:
        info = DeviceInfo(alias="hostdev2", address=DriveAddress(target=1, unit=0))
        return Hostdev(subsys="scsi", scsi_sg_path="/dev/sg2", info=info, **fields)

    def test_backend_alias(self) -> None:
        assert scsi_generic_backend_alias(self.scsi_hostdev()) == "libvirt-hostdev2-backend"

    def test_blockdev_backend(self, scsi_vm: VmDefinition, caps: CapabilitySet) -> None:
        backend, device = hostdev_fragments(self.scsi_hostdev(readonly=True), scsi_vm, caps)
        assert backend.flag == "-blockdev"
        assert json.loads(backend.value or "") == {
            "driver": "host_device",
            "node-name": "libvirt-hostdev2-backend",
            "filename": "/dev/sg2",
            "read-only": True,
        }
        assert json.loads(device.value or "") == {
            "driver": "scsi-generic",
            "bus": "scsi0.0",
            "channel": 0,
            "scsi-id": 1,
            "lun": 0,
            "drive": "libvirt-hostdev2-backend",
            "id": "hostdev2",
        }
        assert device.references == ("scsi0", "libvirt-hostdev2-backend")

    def test_legacy_drive_backend(self, scsi_vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        backend, device = hostdev_fragments(self.scsi_hostdev(), scsi_vm, legacy_caps)
        assert backend.tokens() == ["-drive", "file=/dev/sg2,if=none,format=raw,id=libvirt-hostdev2-backend"]
        assert device.value == (
            "scsi-generic,bus=scsi0.0,channel=0,scsi-id=1,lun=0,drive=libvirt-hostdev2-backend,id=hostdev2"
        )

    def test_needs_sg_path(self, scsi_vm: VmDefinition, caps: CapabilitySet) -> None:
        info = DeviceInfo(alias="hostdev2", address=DriveAddress())
        with pytest.raises(ConfigUnsupportedError, match="has no generic device path"):
            hostdev_fragments(Hostdev(subsys="scsi", info=info), scsi_vm, caps)
