"""Tests for TPM backends and frontends."""

import json
from collections.abc import Callable

import pytest

from qemu_argv.addresses import DeviceInfo
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.devices import Tpm
from qemu_argv.domain import OsInfo, VmDefinition
from qemu_argv.exceptions import ConfigUnsupportedError, ResourceError
from qemu_argv.linking import LinkingResolver
from qemu_argv.resources import DryRunResourceBroker, ResourceTracker
from qemu_argv.tpm import cancel_path_for, select_tpm_driver, tpm_backend_alias, tpm_bundle

VmFactory = Callable[..., VmDefinition]


def tpm(backend: str, **fields) -> Tpm:
    fields.setdefault("info", DeviceInfo(alias="tpm0"))
    return Tpm(backend=backend, **fields)


class TestTpmDriver:
    def test_aliases(self) -> None:
        dev = tpm("passthrough")
        assert tpm_backend_alias(dev) == "tpm-tpm0"
        assert cancel_path_for(dev) == "/sys/class/tpm/tpm0/device/cancel"
        assert cancel_path_for(tpm("passthrough", cancel_path="/tmp/cancel")) == "/tmp/cancel"

    def test_tis_on_x86(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        assert select_tpm_driver(tpm("emulator"), vm, caps) == "tpm-tis"

    def test_tis_on_arm_is_sysbus_device(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(os=OsInfo(arch="aarch64", machine="virt-9.0"))
        assert select_tpm_driver(tpm("emulator"), vm, caps) == "tpm-tis-device"

    def test_crb_needs_capability(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        dev = tpm("emulator", model="tpm-crb")
        assert select_tpm_driver(dev, vm, caps) == "tpm-crb"
        with pytest.raises(ConfigUnsupportedError, match="tpm-crb is not supported"):
            select_tpm_driver(dev, vm, caps.without_flags(Cap.DEVICE_TPM_CRB))

    def test_spapr_needs_vio_address(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        with pytest.raises(ConfigUnsupportedError, match="not supported for tpm-spapr device"):
            select_tpm_driver(tpm("emulator", model="tpm-spapr"), vm, caps)


class TestTpmBundle:
    """Tests for backend acquisition and emission order."""

    async def test_passthrough_uses_fdsets(
        self,
        vm: VmDefinition,
        caps: CapabilitySet,
        resolver: LinkingResolver,
        broker: DryRunResourceBroker,
        tracker: ResourceTracker,
    ) -> None:
        bundle = await tpm_bundle(tpm("passthrough", model="tpm-crb"), vm, caps, resolver, tracker)
        frags = bundle.fragments()
        assert [f.tokens() for f in frags[:3]] == [
            ["-add-fd", "set=0,fd=100,opaque=tpm-tpm0-device"],
            ["-add-fd", "set=1,fd=101,opaque=tpm-tpm0-cancel"],
            ["-tpmdev", "passthrough,id=tpm-tpm0,path=/dev/fdset/0,cancel-path=/dev/fdset/1"],
        ]
        assert json.loads(frags[3].value or "") == {"driver": "tpm-crb", "tpmdev": "tpm-tpm0", "id": "tpm0"}
        assert broker.calls == [
            ("open_device_node", "/dev/tpm0"),
            ("open_device_node", "/sys/class/tpm/tpm0/device/cancel"),
        ]
        assert tracker.owned_fds == (100, 101)

    async def test_emulator_uses_chardev(
        self,
        vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        dev = tpm("emulator", emulator_socket="/run/swtpm/tpm0.sock")
        bundle = await tpm_bundle(dev, vm, legacy_caps, legacy_resolver, tracker)
        assert [f.tokens() for f in bundle.fragments()] == [
            ["-chardev", "socket,id=chrtpm-tpm0,path=/run/swtpm/tpm0.sock"],
            ["-tpmdev", "emulator,id=tpm-tpm0,chardev=chrtpm-tpm0"],
            ["-device", "tpm-tis,tpmdev=tpm-tpm0,id=tpm0"],
        ]
        assert tracker.owned_fds == ()

    async def test_emulator_needs_socket(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        with pytest.raises(ConfigUnsupportedError, match="needs the swtpm socket path"):
            await tpm_bundle(tpm("emulator"), vm, caps, resolver, tracker)

    async def test_passthrough_needs_capability(
        self,
        vm: VmDefinition,
        caps: CapabilitySet,
        resolver: LinkingResolver,
        broker: DryRunResourceBroker,
        tracker: ResourceTracker,
    ) -> None:
        with pytest.raises(ConfigUnsupportedError, match="TPM passthrough is not supported"):
            await tpm_bundle(tpm("passthrough"), vm, caps.without_flags(Cap.TPM_PASSTHROUGH), resolver, tracker)
        assert broker.calls == []

    async def test_open_failure_propagates(
        self,
        vm: VmDefinition,
        caps: CapabilitySet,
        resolver: LinkingResolver,
        failing_broker_factory: Callable,
    ) -> None:
        tracker = ResourceTracker(failing_broker_factory("open_device_node"))
        with pytest.raises(ResourceError):
            await tpm_bundle(tpm("passthrough"), vm, caps, resolver, tracker)
        assert tracker.owned_fds == ()
