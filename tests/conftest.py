"""Shared pytest fixtures for qemu-argv tests."""

from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest

from qemu_argv.addresses import DeviceInfo
from qemu_argv.capabilities import Cap, CapabilitySet, all_capabilities
from qemu_argv.devices import Controller, ControllerType
from qemu_argv.domain import MemoryInfo, VmDefinition
from qemu_argv.exceptions import ResourceError
from qemu_argv.linking import LinkingResolver
from qemu_argv.resources import DryRunResourceBroker, ResourceTracker
from qemu_argv.settings import Settings

VM_UUID = UUID("c7a5fdbd-edaf-9455-926a-d65c16db1809")

# Flags a 4.x-era binary lacks: no JSON syntax, no blockdev, no audiodev.
LEGACY_MISSING: tuple[Cap, ...] = (
    Cap.OBJECT_JSON,
    Cap.DEVICE_JSON,
    Cap.NETDEV_JSON,
    Cap.BLOCKDEV,
    Cap.AUDIODEV,
    Cap.AUDIODEV_JSON,
    Cap.CHARDEV_FD_PASS,
    Cap.CHARDEV_RECONNECT_MS,
    Cap.VIRTIO_PCI_TRANSITIONAL,
    Cap.SET_ACTION,
    Cap.ACCEL,
    Cap.MACHINE_MEMORY_BACKEND,
)


# ============================================================================
# Capability sets
# ============================================================================


@pytest.fixture
def caps() -> CapabilitySet:
    """Every known capability (a current binary)."""
    return all_capabilities()


@pytest.fixture
def legacy_caps() -> CapabilitySet:
    """An old binary: flat syntax only, -drive storage, QEMU_AUDIO_* env."""
    return all_capabilities((4, 2, 0)).without_flags(*LEGACY_MISSING)


# ============================================================================
# VM definitions
# ============================================================================


def pcie_root() -> Controller:
    return Controller(type=ControllerType.PCI, model="pcie-root", info=DeviceInfo(alias="pcie.0"))


def make_vm(*devices: Any, **overrides: Any) -> VmDefinition:
    """q35 guest with 1 GiB of RAM, an implicit pcie.0 root and `devices`."""
    fields: dict[str, Any] = {
        "name": "guest",
        "uuid": VM_UUID,
        "memory": MemoryInfo(total=1048576),
        "devices": (pcie_root(), *devices),
    }
    fields.update(overrides)
    return VmDefinition(**fields)


@pytest.fixture
def vm_factory() -> Callable[..., VmDefinition]:
    return make_vm


@pytest.fixture
def vm() -> VmDefinition:
    return make_vm()


# ============================================================================
# Runtime collaborators
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(emulator_binary="qemu-system-x86_64", state_dir=tmp_path / "state")


@pytest.fixture
def broker() -> DryRunResourceBroker:
    return DryRunResourceBroker()


@pytest.fixture
def tracker(broker: DryRunResourceBroker) -> ResourceTracker:
    return ResourceTracker(broker)


@pytest.fixture
def resolver(caps: CapabilitySet) -> LinkingResolver:
    return LinkingResolver(caps, Path("/run/pr-helper0.sock"))


@pytest.fixture
def legacy_resolver(legacy_caps: CapabilitySet) -> LinkingResolver:
    return LinkingResolver(legacy_caps, Path("/run/pr-helper0.sock"))


class FailingBroker(DryRunResourceBroker):
    """Dry-run broker whose acquisitions of one kind fail like the local broker does."""

    def __init__(self, fail_on: str, *, first_fd: int = 100) -> None:
        super().__init__(first_fd)
        self.fail_on = fail_on

    def _placeholder(self, op: str, target: object) -> int:
        if op == self.fail_on:
            self.calls.append((f"{op}:failed", str(target)))
            error = OSError(13, "Permission denied")
            raise ResourceError(f"{op} failed for '{target}'", os_error=error, path=str(target))
        return super()._placeholder(op, target)


@pytest.fixture
def failing_broker_factory() -> Callable[[str], FailingBroker]:
    return FailingBroker
