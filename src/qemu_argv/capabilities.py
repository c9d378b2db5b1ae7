"""Capability set describing what the target emulator binary supports.

Capability detection itself happens elsewhere (probing the binary over QMP
and caching the result); this module only models the result as an immutable
value that is passed explicitly to every builder.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, field_validator

from qemu_argv._logging import get_logger

logger = get_logger(__name__)


class Cap(StrEnum):
    """Named capability flags of the emulator binary."""

    # Argument syntax
    OBJECT_JSON = "object.qapified"
    DEVICE_JSON = "device.json"
    NETDEV_JSON = "netdev.json"
    AUDIODEV_JSON = "audiodev.json"
    BLOCKDEV = "blockdev"
    COMPAT_DEPRECATED = "compat-deprecated"
    NAME_DEBUG_THREADS = "name.debug-threads"
    ACCEL = "accel"
    SET_ACTION = "set-action"
    ENABLE_FIPS = "enable-fips"
    INCOMING_DEFER = "incoming-defer"
    SECCOMP_SANDBOX = "seccomp-sandbox"
    MSG_TIMESTAMP = "msg-timestamp"
    ASYNC_TEARDOWN = "run-with.async-teardown"
    OVERCOMMIT = "overcommit"
    FW_CFG = "fw_cfg"
    BOOT_STRICT = "boot-strict"

    # Secrets, TLS, reservations
    OBJECT_SECRET = "object.secret"
    OBJECT_TLS_CREDS_X509 = "tls-creds-x509"
    PR_MANAGER_HELPER = "pr-manager-helper"

    # Machine
    MACHINE_MEMORY_BACKEND = "machine.memory-backend"
    MACHINE_USB_OPT = "machine.usb"
    MACHINE_VMPORT_OPT = "machine.vmport"
    MACHINE_SMM_OPT = "machine.smm"
    MACHINE_HPET = "machine.hpet"
    MACHINE_ACPI = "machine.acpi"
    MACHINE_NVDIMM = "machine.nvdimm"
    MACHINE_CONFIDENTIAL_GUEST_SUPPORT = "machine.confidential-guest-support"
    DUMP_GUEST_CORE = "dump-guest-core"
    MEM_MERGE = "mem-merge"
    GIC_VERSION = "gic-version"

    # CPU / topology
    CPU_FEATURE_ON_OFF = "cpu.feature-on-off"
    SMP_DIES = "smp-dies"
    SMP_CLUSTERS = "smp-clusters"
    OBJECT_IOTHREAD = "iothread"
    IOTHREAD_POLLING = "iothread.poll-max-ns"
    IOTHREAD_THREAD_POOL = "iothread.thread-pool-max"

    # Memory
    OBJECT_MEMORY_FILE = "memory-backend-file"
    OBJECT_MEMORY_MEMFD = "memory-backend-memfd"
    OBJECT_MEMORY_MEMFD_HUGETLB = "memory-backend-memfd.hugetlb"
    OBJECT_MEMORY_FILE_DISCARD = "memory-backend-file.discard-data"
    OBJECT_MEMORY_FILE_ALIGN = "memory-backend-file.align"
    OBJECT_MEMORY_FILE_PMEM = "memory-backend-file.pmem"
    MEMORY_BACKEND_PREALLOC_THREADS = "memory-backend.prealloc-threads"
    MEMORY_BACKEND_RESERVE = "memory-backend.reserve"
    NUMA_MEMDEV = "numa.memdev"
    NUMA_DIST = "numa.dist"
    DEVICE_PC_DIMM = "pc-dimm"
    DEVICE_NVDIMM = "nvdimm"
    DEVICE_VIRTIO_PMEM = "virtio-pmem-pci"
    DEVICE_VIRTIO_MEM = "virtio-mem-pci"

    # Virtio
    VIRTIO_PCI_TRANSITIONAL = "virtio-pci-transitional"
    VIRTIO_PCI_DISABLE_LEGACY = "virtio-pci-disable-legacy"
    VIRTIO_PACKED_QUEUES = "virtio-packed"
    VIRTIO_EVENT_IDX = "virtio.event-idx"
    VIRTIO_BLK_NUM_QUEUES = "virtio-blk.num-queues"
    VIRTIO_BLK_QUEUE_SIZE = "virtio-blk.queue-size"
    VIRTIO_NET_RX_QUEUE_SIZE = "virtio-net.rx_queue_size"
    VIRTIO_NET_TX_QUEUE_SIZE = "virtio-net.tx_queue_size"
    VIRTIO_NET_HOST_MTU = "virtio-net.host_mtu"

    # Storage
    DISK_SHARE_RW = "disk.share-rw"
    DISK_WRITE_CACHE = "disk.write-cache"
    DISK_ROTATION_RATE = "disk.rotation_rate"
    SCSI_DISK_WWN = "scsi-disk.wwn"
    BLOCKIO_DISCARD_GRANULARITY = "disk.discard_granularity"
    DEVICE_FLOPPY = "floppy"
    USB_STORAGE = "usb-storage"
    VHOST_USER_BLK = "vhost-user-blk"
    AIO_IO_URING = "aio.io_uring"
    THROTTLE_GROUP = "throttle-group"
    NBD_TLS = "nbd-tls"

    # Controllers
    PIIX3_USB_UHCI = "piix3-usb-uhci"
    PIIX4_USB_UHCI = "piix4-usb-uhci"
    USB_EHCI = "usb-ehci"
    ICH9_USB_EHCI1 = "ich9-usb-ehci1"
    NEC_USB_XHCI = "nec-usb-xhci"
    QEMU_XHCI = "qemu-xhci"
    USB_HUB = "usb-hub"
    PCI_BRIDGE = "pci-bridge"
    PCIE_ROOT_PORT = "pcie-root-port"
    DMI_TO_PCI_BRIDGE = "i82801b11-bridge"
    PXB = "pxb"
    PXB_PCIE = "pxb-pcie"
    PCIE_PCI_BRIDGE = "pcie-pci-bridge"
    SCSI_LSI = "lsi"
    SCSI_MPTSAS1068 = "mptsas1068"
    SCSI_MEGASAS = "megasas"
    ICH9_AHCI = "ich9-ahci"
    DEVICE_INTEL_IOMMU = "intel-iommu"
    DEVICE_VIRTIO_IOMMU = "virtio-iommu-pci"

    # Character devices
    CHARDEV_FD_PASS = "chardev-fd-pass"
    CHARDEV_LOGFILE = "chardev-logfile"
    CHARDEV_RECONNECT_MS = "chardev.reconnect-ms"
    CHARDEV_SPICEVMC = "chardev.spicevmc"
    CHARDEV_SPICEPORT = "chardev.spiceport"
    CHARDEV_QEMU_VDAGENT = "chardev.qemu-vdagent"
    CHARDEV_DBUS = "chardev.dbus"
    CCID_EMULATED = "ccid-card-emulated"
    CCID_PASSTHRU = "ccid-card-passthru"

    # Network
    NETDEV_STREAM = "netdev.stream"
    NETDEV_VHOST_VDPA = "netdev.vhost-vdpa"

    # Graphics / video / audio
    VNC = "vnc"
    SPICE = "spice"
    SDL = "sdl"
    EGL_HEADLESS = "egl-headless"
    DBUS_DISPLAY = "display-dbus"
    DEVICE_VGA = "VGA"
    DEVICE_CIRRUS_VGA = "cirrus-vga"
    DEVICE_QXL = "qxl"
    DEVICE_VIRTIO_GPU = "virtio-gpu"
    DEVICE_VIRTIO_VGA = "virtio-vga"
    VIRTIO_GPU_GL = "virtio-gpu-gl"
    DEVICE_BOCHS_DISPLAY = "bochs-display"
    DEVICE_RAMFB = "ramfb"
    QXL_VRAM64 = "qxl.vram64_size_mb"
    QXL_VGAMEM = "qxl.vgamem_mb"
    VGA_VGAMEM = "VGA.vgamem_mb"
    AUDIODEV = "audiodev"

    # TPM
    DEVICE_TPM_TIS = "tpm-tis"
    DEVICE_TPM_TIS_DEVICE = "tpm-tis-device"
    DEVICE_TPM_CRB = "tpm-crb"
    DEVICE_TPM_SPAPR = "tpm-spapr"
    TPM_PASSTHROUGH = "tpm-passthrough"
    TPM_EMULATOR = "tpm-emulator"

    # Assorted devices
    INPUT_LINUX = "input-linux"
    USB_REDIR = "usb-redir"
    USB_REDIR_FILTER = "usb-redir.filter"
    USB_REDIR_BOOTINDEX = "usb-redir.bootindex"
    VFIO_PCI = "vfio-pci"
    VFIO_PCI_DISPLAY = "vfio-pci.display"
    VFIO_CCW = "vfio-ccw"
    VFIO_AP = "vfio-ap"
    USB_HOST_HOSTDEVICE = "usb-host.hostdevice"
    VIRTIO_BALLOON_AUTODEFLATE = "virtio-balloon.deflate-on-oom"
    VIRTIO_BALLOON_FREE_PAGE_REPORTING = "virtio-balloon.free-page-reporting"
    OBJECT_RNG_RANDOM = "rng-random"
    OBJECT_RNG_EGD = "rng-egd"
    OBJECT_RNG_BUILTIN = "rng-builtin"
    DEVICE_VMCOREINFO = "vmcoreinfo"
    SEV_GUEST = "sev-guest"
    SEV_SNP_GUEST = "sev-snp-guest"
    S390_PV_GUEST = "s390-pv-guest"
    DEVICE_PANIC = "pvpanic"
    DEVICE_PANIC_PCI = "pvpanic-pci"
    DEVICE_IVSHMEM_PLAIN = "ivshmem-plain"
    DEVICE_IVSHMEM_DOORBELL = "ivshmem-doorbell"
    DEVICE_VHOST_VSOCK = "vhost-vsock"
    VHOST_USER_FS = "vhost-user-fs"


# Default RAM object id per machine family, used when the binary did not
# report one. Matched by prefix, longest first.
_DEFAULT_RAM_IDS: dict[str, str] = {
    "pc": "pc.ram",
    "q35": "pc.ram",
    "microvm": "microvm.ram",
    "virt": "mach-virt.ram",
    "pseries": "ppc_spapr.ram",
    "s390-ccw-virtio": "s390.ram",
}


class CapabilitySet(BaseModel):
    """Immutable set of capability flags plus a few derived queries.

    Attributes:
        flags: Capability flags present in the target binary.
        version: Binary version as (major, minor, micro).
        default_ram_ids: Machine type (or prefix) to default RAM object id,
            as reported by the binary.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    flags: frozenset[Cap] = Field(default_factory=frozenset)
    version: tuple[int, int, int] = (0, 0, 0)
    default_ram_ids: dict[str, str] = Field(default_factory=dict)

    @field_validator("flags", mode="before")
    @classmethod
    def drop_unknown_flags(cls, v: Any) -> Any:
        """Ignore flag names this release does not know (newer cache files)."""
        if isinstance(v, (list, tuple, set, frozenset)):
            known = {c.value for c in Cap}
            unknown = [f for f in v if isinstance(f, str) and f not in known]
            if unknown:
                logger.debug("Ignoring unknown capability flags", extra={"flags": sorted(unknown)})
            return frozenset(Cap(f) for f in v if not isinstance(f, str) or f in known)
        return v

    def has(self, cap: Cap) -> bool:
        """Check whether `cap` is supported."""
        return cap in self.flags

    def has_all(self, *caps: Cap) -> bool:
        """Check whether every capability in `caps` is supported."""
        return all(c in self.flags for c in caps)

    def default_ram_id(self, machine: str) -> str | None:
        """Preferred default RAM object id for `machine`.

        Binary-reported ids win over the built-in family table; both are
        matched by longest prefix.
        """
        for table in (self.default_ram_ids, _DEFAULT_RAM_IDS):
            for prefix in sorted(table, key=len, reverse=True):
                if machine == prefix or machine.startswith(prefix + "-") or machine.startswith(prefix):
                    return table[prefix]
        return None

    def with_flags(self, *caps: Cap) -> CapabilitySet:
        """Copy with `caps` added."""
        return self.model_copy(update={"flags": self.flags | frozenset(caps)})

    def without_flags(self, *caps: Cap) -> CapabilitySet:
        """Copy with `caps` removed."""
        return self.model_copy(update={"flags": self.flags - frozenset(caps)})


def all_capabilities(version: tuple[int, int, int] = (9, 2, 0)) -> CapabilitySet:
    """Capability set with every known flag (a current binary)."""
    return CapabilitySet(flags=frozenset(Cap), version=version)


async def load_capabilities(path: Path) -> CapabilitySet:
    """Load a capability set from a JSON cache file.

    The file holds {"flags": [...], "version": [major, minor, micro],
    "default_ram_ids": {...}} as written by the capability query tool.
    """
    async with aiofiles.open(path, encoding="utf-8") as f:
        raw = await f.read()
    caps = CapabilitySet.model_validate_json(raw)
    logger.debug(
        "Loaded capability set",
        extra={"path": str(path), "flag_count": len(caps.flags), "version": caps.version},
    )
    return caps
