"""Tests for -machine, firmware flash images and direct kernel boot."""

import json
from collections.abc import Callable

import pytest

from qemu_argv.addresses import DeviceInfo
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import Controller, ControllerType, Iommu, MemoryDevice, Sound, StorageSource
from qemu_argv.domain import (
    ClockInfo,
    Features,
    LaunchSecurity,
    Loader,
    MemoryInfo,
    OsInfo,
    Timer,
    VmDefinition,
)
from qemu_argv.exceptions import ConfigUnsupportedError
from qemu_argv.machine import (
    firmware_fragments,
    hpet_enabled,
    kernel_fragments,
    machine_fragment,
    machine_props,
    pflash_node_names,
)

VmFactory = Callable[..., VmDefinition]

OVMF_CODE = "/usr/share/OVMF/OVMF_CODE.fd"
OVMF_VARS = "/var/lib/qemu-argv/nvram/guest_VARS.fd"


def uefi(**loader_fields) -> OsInfo:
    return OsInfo(loader=Loader(path=OVMF_CODE, **loader_fields), nvram=StorageSource(path=OVMF_VARS))


# ============================================================================
# -machine
# ============================================================================


class TestMachine:
    """Tests for the -machine property list."""

    def test_default(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        assert machine_fragment(vm, caps).tokens() == ["-machine", "pc-q35-9.0,usb=off"]

    def test_accel_on_old_binary(self, vm: VmDefinition, legacy_caps: CapabilitySet) -> None:
        assert machine_fragment(vm, legacy_caps).value == "pc-q35-9.0,accel=kvm,usb=off"

    def test_usb_controller_keeps_usb(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(Controller(type=ControllerType.USB, model="qemu-xhci", info=DeviceInfo(alias="usb")))
        assert "usb" not in machine_props(vm, caps)

    def test_features(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(
            features=Features(vmport=False, smm=True, acpi=False),
            clock=ClockInfo(timers=(Timer(name="hpet", present=False),)),
        )
        assert machine_fragment(vm, caps).value == "pc-q35-9.0,usb=off,vmport=off,smm=on,hpet=off,acpi=off"

    def test_hpet_feature_wins_over_timer(self, vm_factory: VmFactory) -> None:
        vm = vm_factory(features=Features(hpet=True), clock=ClockInfo(timers=(Timer(name="hpet", present=False),)))
        assert hpet_enabled(vm) is True
        assert hpet_enabled(vm_factory()) is None

    def test_memory_and_device_switches(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(
            MemoryDevice(model="nvdimm", size=524288, source_path="/dev/pmem0", info=DeviceInfo(alias="nvdimm0")),
            Iommu(model="smmuv3"),
            memory=MemoryInfo(total=1048576, max=4194304, slots=4, dump_core=False, nosharepages=True),
        )
        props = machine_props(vm, caps)
        assert props.get("dump-guest-core") is False
        assert props.get("mem-merge") is False
        assert props.get("nvdimm") is True
        assert props.get("iommu") == "smmuv3"

    def test_ram_backend_and_speaker_are_late_aliases(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(
            Sound(model="pcspk", audio_id=2),
            memory=MemoryInfo(total=1048576, source="memfd"),
            launch_security=LaunchSecurity(type="sev", cbitpos=47, reduced_phys_bits=1),
        )
        frag = machine_fragment(vm, caps)
        assert frag.value == (
            "pc-q35-9.0,usb=off,memory-backend=pc.ram,pcspk-audiodev=audio2,confidential-guest-support=lsec0"
        )
        assert frag.references == ()

    def test_pflash_blockdev_references(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        frag = machine_fragment(vm_factory(os=uefi()), caps)
        assert frag.value == "pc-q35-9.0,usb=off,pflash0=libvirt-pflash0-format,pflash1=libvirt-pflash1-format"
        assert frag.references == ("libvirt-pflash0-format", "libvirt-pflash1-format")

    @pytest.mark.parametrize(
        ("features", "cap", "message"),
        [
            (Features(vmport=True), Cap.MACHINE_VMPORT_OPT, "vmport is not supported"),
            (Features(smm=True), Cap.MACHINE_SMM_OPT, "SMM is not supported"),
            (Features(gic_version="3"), Cap.GIC_VERSION, "selecting the GIC version is not supported"),
        ],
    )
    def test_unsupported_features(
        self, features: Features, cap: Cap, message: str, vm_factory: VmFactory, caps: CapabilitySet
    ) -> None:
        with pytest.raises(ConfigUnsupportedError, match=message):
            machine_props(vm_factory(features=features), caps.without_flags(cap))

    def test_smm_off_is_dropped_when_unsupported(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(features=Features(smm=False))
        assert "smm" not in machine_props(vm, caps.without_flags(Cap.MACHINE_SMM_OPT))

    def test_launch_security_needs_capability(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(launch_security=LaunchSecurity(type="s390-pv"))
        with pytest.raises(ConfigUnsupportedError, match="launch security is not supported"):
            machine_props(vm, caps.without_flags(Cap.MACHINE_CONFIDENTIAL_GUEST_SUPPORT))


# ============================================================================
# Firmware
# ============================================================================


class TestFirmware:
    def test_none(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        assert firmware_fragments(vm, caps) == []

    def test_rom(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(os=OsInfo(loader=Loader(path="/usr/share/seabios/bios.bin", type="rom")))
        assert [f.tokens() for f in firmware_fragments(vm, caps)] == [["-bios", "/usr/share/seabios/bios.bin"]]

    def test_node_names(self) -> None:
        assert pflash_node_names("pflash0") == ("libvirt-pflash0-storage", "libvirt-pflash0-format")

    def test_blockdev_chain(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        frags = firmware_fragments(vm_factory(os=uefi()), caps)
        assert [f.flag for f in frags] == ["-blockdev"] * 4
        code_storage, code_format, vars_storage, vars_format = (json.loads(f.value or "") for f in frags)
        assert code_storage == {
            "driver": "file",
            "node-name": "libvirt-pflash0-storage",
            "filename": OVMF_CODE,
            "read-only": True,
        }
        assert code_format == {
            "driver": "raw",
            "node-name": "libvirt-pflash0-format",
            "read-only": True,
            "file": "libvirt-pflash0-storage",
        }
        assert vars_storage["filename"] == OVMF_VARS
        assert vars_storage["read-only"] is False
        assert vars_format["node-name"] == "libvirt-pflash1-format"
        assert frags[1].references == ("libvirt-pflash0-storage",)

    def test_legacy_drives(self, vm_factory: VmFactory, legacy_caps: CapabilitySet) -> None:
        frags = firmware_fragments(vm_factory(os=uefi()), legacy_caps)
        assert [f.tokens() for f in frags] == [
            ["-drive", f"file={OVMF_CODE},if=pflash,format=raw,unit=0,readonly=on"],
            ["-drive", f"file={OVMF_VARS},if=pflash,format=raw,unit=1"],
        ]

    def test_secure_boot(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(os=uefi(secure=True), features=Features(smm=True))
        frags = firmware_fragments(vm, caps)
        assert frags[0].tokens() == ["-global", "driver=cfi.pflash01,property=secure,value=on"]
        assert len(frags) == 5

    def test_secure_boot_needs_smm(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        with pytest.raises(ConfigUnsupportedError, match="secure boot flash requires SMM"):
            firmware_fragments(vm_factory(os=uefi(secure=True)), caps)


# ============================================================================
# Kernel
# ============================================================================


class TestKernelBoot:
    def test_all_parts(self, vm_factory: VmFactory) -> None:
        vm = vm_factory(
            os=OsInfo(
                kernel="/boot/vmlinuz",
                initrd="/boot/initrd.img",
                cmdline="console=ttyS0 root=/dev/vda1",
                dtb="/boot/guest.dtb",
            )
        )
        assert [f.tokens() for f in kernel_fragments(vm)] == [
            ["-kernel", "/boot/vmlinuz"],
            ["-initrd", "/boot/initrd.img"],
            ["-append", "console=ttyS0 root=/dev/vda1"],
            ["-dtb", "/boot/guest.dtb"],
        ]

    def test_nothing_configured(self, vm: VmDefinition) -> None:
        assert kernel_fragments(vm) == []
