"""Device addresses and the per-device info record.

Addresses are assigned by the bus allocator before synthesis; builders only
read them. The `type` field is the discriminator that selects the address
formatting branch.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class AddressKind(StrEnum):
    """Bus families a device can be attached to."""

    PCI = "pci"
    USB = "usb"
    CCW = "ccw"
    ISA = "isa"
    DRIVE = "drive"
    VIRTIO_SERIAL = "virtio-serial"
    CCID = "ccid"
    VIRTIO_MMIO = "virtio-mmio"
    SPAPR_VIO = "spapr-vio"
    NONE = "none"


class _Address(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PciAddress(_Address):
    type: Literal["pci"] = "pci"
    domain: int = Field(default=0, ge=0)
    bus: int = Field(default=0, ge=0)
    slot: int = Field(ge=0, le=31)
    function: int = Field(default=0, ge=0, le=7)
    multifunction: bool | None = None


class UsbAddress(_Address):
    type: Literal["usb"] = "usb"
    bus: int = Field(default=0, ge=0)
    port: str | None = None
    """Dotted hub path, e.g. "1" or "1.2"."""


class CcwAddress(_Address):
    type: Literal["ccw"] = "ccw"
    cssid: int = Field(default=0xFE, ge=0, le=0xFE)
    ssid: int = Field(default=0, ge=0, le=3)
    devno: int = Field(ge=0, le=0xFFFF)


class IsaAddress(_Address):
    type: Literal["isa"] = "isa"
    iobase: int | None = Field(default=None, ge=0)
    irq: int | None = Field(default=None, ge=0)


class DriveAddress(_Address):
    type: Literal["drive"] = "drive"
    controller: int = Field(default=0, ge=0)
    bus: int = Field(default=0, ge=0)
    target: int = Field(default=0, ge=0)
    unit: int = Field(default=0, ge=0)


class VirtioSerialAddress(_Address):
    type: Literal["virtio-serial"] = "virtio-serial"
    controller: int = Field(default=0, ge=0)
    bus: int = Field(default=0, ge=0)
    port: int | None = Field(default=None, ge=0)


class CcidAddress(_Address):
    type: Literal["ccid"] = "ccid"
    controller: int = Field(default=0, ge=0)
    slot: int = Field(default=0, ge=0)


class VirtioMmioAddress(_Address):
    type: Literal["virtio-mmio"] = "virtio-mmio"


class SpaprVioAddress(_Address):
    type: Literal["spapr-vio"] = "spapr-vio"
    reg: int | None = Field(default=None, ge=0)


class NoAddress(_Address):
    type: Literal["none"] = "none"


Address = Annotated[
    PciAddress
    | UsbAddress
    | CcwAddress
    | IsaAddress
    | DriveAddress
    | VirtioSerialAddress
    | CcidAddress
    | VirtioMmioAddress
    | SpaprVioAddress
    | NoAddress,
    Field(discriminator="type"),
]


class RomSettings(BaseModel):
    """Option ROM tuning for PCI devices."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    bar: bool | None = None
    """Expose the ROM BAR (romBar=on/off)."""
    file: str | None = None
    """Replacement ROM image."""
    enabled: bool | None = None
    """False disables the ROM entirely (romfile="")."""


class DeviceInfo(BaseModel):
    """Allocator- and alias-assigned data common to every device.

    Attributes:
        address: Bus address assigned by the allocator.
        alias: Unique id used for cross-references (id=, bus=, drive=).
        boot_index: Per-device boot order (bootindex=).
        rom: Option ROM tuning.
        acpi_index: Stable ACPI index for PCI NICs.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    address: Address = Field(default_factory=NoAddress)
    alias: str | None = None
    boot_index: int | None = Field(default=None, ge=0)
    rom: RomSettings | None = None
    acpi_index: int | None = Field(default=None, ge=1)

    @property
    def address_kind(self) -> AddressKind:
        """Bus family of the assigned address."""
        return AddressKind(self.address.type)
