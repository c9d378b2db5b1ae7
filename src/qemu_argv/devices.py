"""Device definitions.

Each device kind is a frozen pydantic model with a `kind` discriminator and
a DeviceInfo record carrying the allocator-assigned address and alias. The
`Device` annotated union lets a whole VM definition be validated from JSON.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from qemu_argv.addresses import DeviceInfo


class _Model(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class _Device(_Model):
    info: DeviceInfo = Field(default_factory=DeviceInfo)

    @property
    def alias(self) -> str | None:
        return self.info.alias


# ============================================================================
# Virtio
# ============================================================================


class VirtioModel(StrEnum):
    DEFAULT = "virtio"
    TRANSITIONAL = "virtio-transitional"
    NON_TRANSITIONAL = "virtio-non-transitional"


class VirtioOptions(_Model):
    """Generic virtio transport options shared by every virtio device."""

    iommu_platform: bool | None = None
    ats: bool | None = None
    packed: bool | None = None
    page_per_vq: bool | None = None
    event_idx: bool | None = None


# ============================================================================
# Secrets, TLS, reservations
# ============================================================================


class SecretInfo(_Model):
    """A secret already prepared for the command line.

    When `iv` is set, `data` is base64 ciphertext encrypted with the domain
    master key; otherwise it is the plain base64 secret.
    """

    alias: str
    data: str
    iv: str | None = None

    @property
    def encrypted(self) -> bool:
        return self.iv is not None


class AuthInfo(_Model):
    username: str
    secret: SecretInfo


class EncryptionInfo(_Model):
    format: Literal["luks", "qcow"] = "luks"
    secret: SecretInfo


class TlsInfo(_Model):
    """x509 credentials directory plus optional key password secret."""

    alias: str
    directory: str
    endpoint: Literal["client", "server"] = "client"
    verify_peer: bool = True
    secret: SecretInfo | None = None


class ReservationInfo(_Model):
    """Persistent reservation manager; managed ones share one helper object."""

    managed: bool = True
    alias: str | None = None
    socket_path: str | None = None


# ============================================================================
# Storage
# ============================================================================


class StorageType(StrEnum):
    FILE = "file"
    BLOCK = "block"
    DIR = "dir"
    NETWORK = "network"
    NVME = "nvme"
    VHOST_USER = "vhostuser"


class NetProtocol(StrEnum):
    NBD = "nbd"
    ISCSI = "iscsi"
    RBD = "rbd"
    GLUSTER = "gluster"
    HTTP = "http"
    HTTPS = "https"
    FTP = "ftp"
    FTPS = "ftps"
    SSH = "ssh"


class StorageFormat(StrEnum):
    RAW = "raw"
    QCOW2 = "qcow2"
    QED = "qed"
    VMDK = "vmdk"
    VPC = "vpc"
    VHDX = "vhdx"
    VDI = "vdi"
    LUKS = "luks"


class HostEntry(_Model):
    transport: Literal["tcp", "unix", "rdma"] = "tcp"
    name: str | None = None
    port: int | None = Field(default=None, ge=0, le=65535)
    socket: str | None = None


class StorageSource(_Model):
    """One layer of a storage chain; `backing` is the next layer down.

    Attributes:
        type: Where the data lives.
        path: Local path (file/block/dir, vhost-user socket).
        protocol: Network protocol when type is NETWORK.
        name: Export / volume / image name ("pool/image", "iqn.../1").
        hosts: Network endpoints.
        format: Image format of this layer.
        node_index: Fixed N for libvirt-N-storage/format node names.
        nvme_address: Host PCI address of the NVMe controller.
        nvme_namespace: NVMe namespace number.
    """

    type: StorageType = StorageType.FILE
    path: str | None = None
    protocol: NetProtocol | None = None
    name: str | None = None
    query: str | None = None
    hosts: tuple[HostEntry, ...] = ()
    format: StorageFormat = StorageFormat.RAW
    readonly: bool = False
    auth: AuthInfo | None = None
    encryption: EncryptionInfo | None = None
    cookies: SecretInfo | None = None
    tls: TlsInfo | None = None
    reservations: ReservationInfo | None = None
    node_index: int | None = Field(default=None, ge=1)
    config_file: str | None = None
    sslverify: bool | None = None
    timeout: int | None = Field(default=None, ge=1)
    readahead: int | None = Field(default=None, ge=1)
    nvme_address: str | None = None
    nvme_namespace: int = Field(default=1, ge=1)
    backing: StorageSource | None = None

    def chain(self) -> list[StorageSource]:
        """Layers from this (top) one down to the innermost backing file."""
        layers: list[StorageSource] = []
        layer: StorageSource | None = self
        while layer is not None:
            layers.append(layer)
            layer = layer.backing
        return layers

    @property
    def is_empty(self) -> bool:
        """No media inserted: a local source without a path."""
        return self.type in (StorageType.FILE, StorageType.BLOCK) and self.path is None


class DiskBus(StrEnum):
    VIRTIO = "virtio"
    SCSI = "scsi"
    IDE = "ide"
    SATA = "sata"
    FDC = "fdc"
    USB = "usb"


class DiskDevice(StrEnum):
    DISK = "disk"
    CDROM = "cdrom"
    FLOPPY = "floppy"
    LUN = "lun"


class CacheMode(StrEnum):
    DEFAULT = "default"
    NONE = "none"
    WRITETHROUGH = "writethrough"
    WRITEBACK = "writeback"
    DIRECTSYNC = "directsync"
    UNSAFE = "unsafe"


class IoMode(StrEnum):
    NATIVE = "native"
    THREADS = "threads"
    IO_URING = "io_uring"


class ErrorPolicy(StrEnum):
    STOP = "stop"
    REPORT = "report"
    IGNORE = "ignore"
    ENOSPACE = "enospc"


class Throttle(_Model):
    total_bytes_sec: int | None = None
    read_bytes_sec: int | None = None
    write_bytes_sec: int | None = None
    total_iops_sec: int | None = None
    read_iops_sec: int | None = None
    write_iops_sec: int | None = None
    total_bytes_sec_max: int | None = None
    read_bytes_sec_max: int | None = None
    write_bytes_sec_max: int | None = None
    total_iops_sec_max: int | None = None
    read_iops_sec_max: int | None = None
    write_iops_sec_max: int | None = None
    size_iops_sec: int | None = None
    group_name: str | None = None

    @property
    def is_set(self) -> bool:
        return any(v for k, v in self.model_dump().items() if k != "group_name")


class Geometry(_Model):
    cylinders: int
    heads: int
    sectors: int
    trans: Literal["none", "lba", "auto"] | None = None


class BlockIo(_Model):
    logical_block_size: int | None = None
    physical_block_size: int | None = None
    discard_granularity: int | None = None


class Disk(_Device):
    kind: Literal["disk"] = "disk"
    bus: DiskBus
    device: DiskDevice = DiskDevice.DISK
    source: StorageSource
    model: VirtioModel = VirtioModel.DEFAULT
    cache: CacheMode = CacheMode.DEFAULT
    io: IoMode | None = None
    discard: Literal["unmap", "ignore"] | None = None
    detect_zeroes: Literal["off", "on", "unmap"] | None = None
    error_policy: ErrorPolicy | None = None
    rerror_policy: ErrorPolicy | None = None
    serial: str | None = None
    wwn: str | None = None
    vendor: str | None = None
    product: str | None = None
    rotation_rate: int | None = None
    removable: bool | None = None
    shareable: bool = False
    iothread: int | None = None
    queues: int | None = Field(default=None, ge=1)
    queue_size: int | None = Field(default=None, ge=1)
    geometry: Geometry | None = None
    blockio: BlockIo | None = None
    throttle: Throttle | None = None
    virtio: VirtioOptions | None = None
    drive_alias: str | None = None
    """Legacy -drive id; defaults to "drive-" + alias."""


# ============================================================================
# Controllers and hubs
# ============================================================================


class ControllerType(StrEnum):
    PCI = "pci"
    USB = "usb"
    SCSI = "scsi"
    IDE = "ide"
    SATA = "sata"
    FDC = "fdc"
    VIRTIO_SERIAL = "virtio-serial"
    CCID = "ccid"


class Controller(_Device):
    """Bus controller. `implicit` marks controllers the machine type creates."""

    kind: Literal["controller"] = "controller"
    type: ControllerType
    index: int = Field(default=0, ge=0)
    model: str | None = None
    implicit: bool = False
    # PCI
    chassis_nr: int | None = None
    chassis: int | None = None
    port: int | None = None
    bus_nr: int | None = None
    numa_node: int | None = None
    hotplug: bool | None = None
    # USB
    ports: int | None = None
    master_startport: int | None = None
    # SCSI / virtio-serial
    queues: int | None = None
    iothread: int | None = None
    max_ports: int | None = None
    vectors: int | None = None
    virtio_model: VirtioModel = VirtioModel.DEFAULT
    virtio: VirtioOptions | None = None


class Hub(_Device):
    kind: Literal["hub"] = "hub"
    type: Literal["usb"] = "usb"


# ============================================================================
# Filesystems
# ============================================================================


class Filesystem(_Device):
    kind: Literal["filesystem"] = "filesystem"
    driver: Literal["virtiofs", "path", "handle"] = "virtiofs"
    source_dir: str
    target: str
    readonly: bool = False
    access_mode: Literal["passthrough", "mapped", "squash"] = "passthrough"
    socket_path: str | None = None
    """vhost-user socket of the external virtiofsd."""
    queue_size: int | None = None
    multidevs: Literal["default", "remap", "forbid", "warn"] | None = None
    model: VirtioModel = VirtioModel.DEFAULT
    virtio: VirtioOptions | None = None


# ============================================================================
# Network
# ============================================================================


class InterfaceType(StrEnum):
    USER = "user"
    ETHERNET = "ethernet"
    BRIDGE = "bridge"
    NETWORK = "network"
    DIRECT = "direct"
    VHOSTUSER = "vhostuser"
    VDPA = "vdpa"
    MCAST = "mcast"
    CLIENT = "client"
    SERVER = "server"
    UDP = "udp"
    NULL = "null"


class PortForward(_Model):
    protocol: Literal["tcp", "udp"] = "tcp"
    host_address: str | None = None
    host_port: int
    guest_address: str | None = None
    guest_port: int


class Offloads(_Model):
    csum: bool | None = None
    gso: bool | None = None
    tso4: bool | None = None
    tso6: bool | None = None
    ecn: bool | None = None
    ufo: bool | None = None
    mrg_rxbuf: bool | None = None


class Interface(_Device):
    """Guest NIC plus its host-side backend.

    Tap-style backends (ethernet/bridge/network/direct) consume descriptors
    the caller opened beforehand (`tap_fds`, `vhost_fds`); they are passed
    through to the child, not owned by synthesis.
    """

    kind: Literal["interface"] = "interface"
    type: InterfaceType
    model: str = "virtio"
    mac: str
    tap_fds: tuple[int, ...] = ()
    vhost_fds: tuple[int, ...] = ()
    vhost: bool | None = None
    queues: int | None = Field(default=None, ge=1)
    rx_queue_size: int | None = None
    tx_queue_size: int | None = None
    mtu: int | None = None
    host_offloads: Offloads | None = None
    guest_offloads: Offloads | None = None
    link_up: bool | None = None
    # user
    ipv4_address: str | None = None
    ipv4_prefix: int | None = None
    port_forwards: tuple[PortForward, ...] = ()
    # socket / mcast / udp
    address: str | None = None
    port: int | None = None
    local_address: str | None = None
    local_port: int | None = None
    # vhost-user
    socket_path: str | None = None
    socket_mode: Literal["client", "server"] = "client"
    # vdpa
    vdpa_device: str | None = None
    virtio_model: VirtioModel = VirtioModel.DEFAULT
    virtio: VirtioOptions | None = None


# ============================================================================
# Character devices and their frontends
# ============================================================================


class CharSourceType(StrEnum):
    NULL = "null"
    VC = "vc"
    PTY = "pty"
    DEV = "dev"
    FILE = "file"
    PIPE = "pipe"
    STDIO = "stdio"
    UDP = "udp"
    TCP = "tcp"
    UNIX = "unix"
    SPICEVMC = "spicevmc"
    SPICEPORT = "spiceport"
    QEMU_VDAGENT = "qemu-vdagent"
    DBUS = "dbus"


class CharSource(_Model):
    type: CharSourceType = CharSourceType.PTY
    path: str | None = None
    host: str | None = None
    service: str | None = None
    bind_host: str | None = None
    bind_service: str | None = None
    listen: bool = False
    telnet: bool = False
    tls: TlsInfo | None = None
    reconnect_seconds: int | None = Field(default=None, ge=0)
    append: bool | None = None
    log_file: str | None = None
    log_append: bool | None = None
    channel: str | None = None
    """spiceport channel name / spicevmc channel type / dbus name."""
    clipboard: bool | None = None
    mouse: bool | None = None


class Serial(_Device):
    kind: Literal["serial"] = "serial"
    source: CharSource = Field(default_factory=CharSource)
    target_type: Literal[
        "isa-serial", "usb-serial", "pci-serial", "spapr-vio-serial", "system-serial", "sclp-serial"
    ] = "isa-serial"
    target_model: str | None = None
    port: int = 0


class Parallel(_Device):
    kind: Literal["parallel"] = "parallel"
    source: CharSource = Field(default_factory=CharSource)
    port: int = 0


class Channel(_Device):
    kind: Literal["channel"] = "channel"
    source: CharSource
    target_type: Literal["virtio", "guestfwd"] = "virtio"
    name: str | None = None
    guestfwd_address: str | None = None
    guestfwd_port: int | None = None


class Console(_Device):
    kind: Literal["console"] = "console"
    source: CharSource = Field(default_factory=CharSource)
    target_type: Literal["serial", "virtio", "sclp", "sclplm"] = "serial"


class Smartcard(_Device):
    kind: Literal["smartcard"] = "smartcard"
    mode: Literal["host", "host-certificates", "passthrough"]
    certificates: tuple[str, ...] = ()
    database: str | None = None
    source: CharSource | None = None


# ============================================================================
# TPM
# ============================================================================


class Tpm(_Device):
    kind: Literal["tpm"] = "tpm"
    model: Literal["tpm-tis", "tpm-crb", "tpm-spapr"] = "tpm-tis"
    backend: Literal["passthrough", "emulator"]
    device_path: str = "/dev/tpm0"
    cancel_path: str | None = None
    emulator_socket: str | None = None


# ============================================================================
# Input, audio, graphics, video, sound
# ============================================================================


class Input(_Device):
    kind: Literal["input"] = "input"
    type: Literal["mouse", "tablet", "keyboard", "passthrough", "evdev"]
    bus: Literal["ps2", "usb", "virtio"] = "usb"
    evdev: str | None = None
    grab_all: bool | None = None
    repeat: bool | None = None
    grab_toggle: str | None = None
    model: VirtioModel = VirtioModel.DEFAULT
    virtio: VirtioOptions | None = None


class AudioStream(_Model):
    mixing_engine: bool | None = None
    fixed_settings: bool | None = None
    voices: int | None = None
    buffer_length: int | None = None
    dev: str | None = None
    name: str | None = None


class AudioBackend(_Device):
    kind: Literal["audio"] = "audio"
    id: int = Field(default=1, ge=1)
    type: Literal["none", "alsa", "coreaudio", "jack", "oss", "pulseaudio", "sdl", "spice", "file", "dbus", "pipewire"]
    path: str | None = None
    server: str | None = None
    timer_period: int | None = None
    input: AudioStream | None = None
    output: AudioStream | None = None


class Graphics(_Device):
    kind: Literal["graphics"] = "graphics"
    type: Literal["vnc", "spice", "sdl", "egl-headless", "dbus"]
    listen: str | None = None
    port: int | None = None
    tls_port: int | None = None
    socket: str | None = None
    websocket: int | None = None
    password: bool = False
    share_policy: Literal["allow-exclusive", "force-shared", "ignore"] | None = None
    tls: TlsInfo | None = None
    gl: bool | None = None
    rendernode: str | None = None
    audio_id: int | None = None
    display: str | None = None
    """SDL X display / dbus address."""


class Video(_Device):
    kind: Literal["video"] = "video"
    model: Literal["vga", "cirrus", "qxl", "virtio", "bochs", "ramfb", "none"]
    primary: bool = False
    ram: int | None = None
    """KiB"""
    vram: int | None = None
    """KiB"""
    vram64: int | None = None
    """KiB"""
    vgamem: int | None = None
    """KiB"""
    heads: int | None = None
    accel3d: bool | None = None
    virtio: VirtioOptions | None = None


class Codec(_Model):
    type: Literal["duplex", "micro", "output"]
    cad: int | None = None


class Sound(_Device):
    kind: Literal["sound"] = "sound"
    model: Literal["ich6", "ich7", "ich9", "ac97", "es1370", "sb16", "usb", "pcspk"]
    codecs: tuple[Codec, ...] = ()
    audio_id: int | None = None


# ============================================================================
# Assorted devices
# ============================================================================


class Watchdog(_Device):
    kind: Literal["watchdog"] = "watchdog"
    model: Literal["i6300esb", "ib700", "diag288", "itco"]
    action: Literal["reset", "shutdown", "poweroff", "pause", "none", "dump", "inject-nmi"] = "reset"


class Redirdev(_Device):
    kind: Literal["redirdev"] = "redirdev"
    bus: Literal["usb"] = "usb"
    source: CharSource
    filters: tuple[str, ...] = ()
    """usbredir filter rules, already in "class:vendor:product:version:allow" form."""


class Hostdev(_Device):
    kind: Literal["hostdev"] = "hostdev"
    subsys: Literal["pci", "usb", "scsi", "mdev"]
    pci_address: str | None = None
    """Host PCI address, e.g. "0000:06:12.5"."""
    usb_vendor: int | None = None
    usb_product: int | None = None
    usb_bus: int | None = None
    usb_device: int | None = None
    scsi_sg_path: str | None = None
    readonly: bool = False
    mdev_uuid: str | None = None
    mdev_model: Literal["vfio-pci", "vfio-ccw", "vfio-ap"] = "vfio-pci"
    display: bool | None = None
    ramfb: bool | None = None


class Memballoon(_Device):
    kind: Literal["memballoon"] = "memballoon"
    model: Literal["virtio", "virtio-transitional", "virtio-non-transitional", "none"] = "virtio"
    autodeflate: bool | None = None
    free_page_reporting: bool | None = None
    virtio: VirtioOptions | None = None


class Rng(_Device):
    kind: Literal["rng"] = "rng"
    model: VirtioModel = VirtioModel.DEFAULT
    backend: Literal["random", "egd", "builtin"] = "random"
    source_path: str = "/dev/urandom"
    egd_source: CharSource | None = None
    rate_bytes: int | None = None
    rate_period: int | None = None
    virtio: VirtioOptions | None = None


class Nvram(_Device):
    kind: Literal["nvram"] = "nvram"


class Panic(_Device):
    kind: Literal["panic"] = "panic"
    model: Literal["isa", "pseries", "hyperv", "s390", "pvpanic"] = "isa"


class Shmem(_Device):
    kind: Literal["shmem"] = "shmem"
    name: str
    size: int | None = None
    """Bytes"""
    model: Literal["ivshmem-plain", "ivshmem-doorbell"] = "ivshmem-plain"
    server_path: str | None = None
    vectors: int | None = None
    ioeventfd: bool | None = None


class Vsock(_Device):
    kind: Literal["vsock"] = "vsock"
    cid: int = Field(ge=3)
    vhost_fd: int | None = None
    model: VirtioModel = VirtioModel.DEFAULT
    virtio: VirtioOptions | None = None


class MemoryDevice(_Device):
    kind: Literal["memory"] = "memory"
    model: Literal["dimm", "nvdimm", "virtio-pmem", "virtio-mem"]
    size: int
    """KiB"""
    node: int | None = None
    source_path: str | None = None
    pagesize: int | None = None
    """KiB; hugepage size backing a dimm"""
    access: Literal["shared", "private"] | None = None
    label_size: int | None = None
    """KiB"""
    readonly: bool | None = None
    block_size: int | None = None
    """KiB (virtio-mem)"""
    requested_size: int | None = None
    """KiB (virtio-mem)"""
    pmem: bool | None = None


class Iommu(_Device):
    kind: Literal["iommu"] = "iommu"
    model: Literal["intel", "virtio", "smmuv3"]
    intremap: bool | None = None
    caching_mode: bool | None = None
    eim: bool | None = None
    iotlb: bool | None = None
    aw_bits: int | None = None


Device = Annotated[
    Disk
    | Controller
    | Hub
    | Filesystem
    | Interface
    | Smartcard
    | Serial
    | Parallel
    | Channel
    | Console
    | Tpm
    | Input
    | AudioBackend
    | Graphics
    | Video
    | Sound
    | Watchdog
    | Redirdev
    | Hostdev
    | Memballoon
    | Rng
    | Nvram
    | Panic
    | Shmem
    | Vsock
    | MemoryDevice
    | Iommu,
    Field(discriminator="kind"),
]
