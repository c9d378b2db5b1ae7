"""Tests for chardev backends and the serial/parallel/channel/console/smartcard frontends."""

import json
from collections.abc import Callable

import pytest

from qemu_argv.addresses import CcidAddress, DeviceInfo, IsaAddress, PciAddress, VirtioSerialAddress
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.chardev import ReconnectSyntax, build_chardev, chardev_alias, select_reconnect_syntax
from qemu_argv.consoles import (
    channel_bundle,
    console_bundle,
    parallel_bundle,
    serial_bundle,
    smartcard_bundle,
)
from qemu_argv.devices import (
    Channel,
    CharSource,
    CharSourceType,
    Console,
    Controller,
    ControllerType,
    Parallel,
    Serial,
    Smartcard,
    TlsInfo,
)
from qemu_argv.domain import VmDefinition
from qemu_argv.exceptions import ConfigUnsupportedError, InternalError
from qemu_argv.fragments import FdPolicy, PassedFd
from qemu_argv.linking import LinkingResolver
from qemu_argv.resources import ResourceTracker

VmFactory = Callable[..., VmDefinition]


def tokens(fragments) -> list[list[str]]:
    return [f.tokens() for f in fragments]


def virtio_serial_controller() -> Controller:
    return Controller(type=ControllerType.VIRTIO_SERIAL, info=DeviceInfo(alias="virtio-serial0"))


# ============================================================================
# Chardev backends
# ============================================================================


class TestBuildChardev:
    """Tests for -chardev rendering per source type."""

    async def test_pty(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        backend = await build_chardev(CharSource(), "charserial0", caps, tracker)
        assert backend.alias == "charserial0"
        assert tokens(backend.fragments) == [["-chardev", "pty,id=charserial0"]]
        assert backend.fragments[0].defines == ("charserial0",)

    @pytest.mark.parametrize(
        ("path", "backend"),
        [("/dev/ttyS0", "serial"), ("/dev/parport0", "parallel")],
    )
    async def test_host_device(
        self, caps: CapabilitySet, tracker: ResourceTracker, path: str, backend: str
    ) -> None:
        result = await build_chardev(CharSource(type=CharSourceType.DEV, path=path), "chr0", caps, tracker)
        assert result.fragments[0].value == f"{backend},id=chr0,path={path}"

    async def test_file_through_fdset(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        source = CharSource(type=CharSourceType.FILE, path="/var/log/guest/serial.log", append=True)
        backend = await build_chardev(source, "charserial0", caps, tracker)
        assert tokens(backend.fragments) == [
            ["-add-fd", "set=0,fd=100,opaque=charserial0-source"],
            ["-chardev", "file,id=charserial0,path=/dev/fdset/0,append=on"],
        ]
        assert tracker.owned_fds == (100,)
        assert tracker.passed_fds() == (PassedFd(fd=100, policy=FdPolicy.CLOSE_PARENT),)

    async def test_file_by_path_without_fd_passing(
        self, legacy_caps: CapabilitySet, tracker: ResourceTracker
    ) -> None:
        source = CharSource(type=CharSourceType.FILE, path="/var/log/guest/serial.log")
        backend = await build_chardev(source, "charserial0", legacy_caps, tracker)
        assert tokens(backend.fragments) == [["-chardev", "file,id=charserial0,path=/var/log/guest/serial.log"]]
        assert tracker.owned_fds == ()

    async def test_listening_unix_socket_is_passed(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        source = CharSource(type=CharSourceType.UNIX, path="/run/guest/monitor.sock", listen=True)
        backend = await build_chardev(source, "charmonitor", caps, tracker)
        assert backend.fragments[0].value == "socket,id=charmonitor,fd=100,server=on,wait=off"
        assert tracker.owned_fds == (100,)

    async def test_listening_unix_socket_by_path(
        self, legacy_caps: CapabilitySet, tracker: ResourceTracker
    ) -> None:
        source = CharSource(type=CharSourceType.UNIX, path="/run/guest/monitor.sock", listen=True)
        backend = await build_chardev(source, "charmonitor", legacy_caps, tracker)
        assert backend.fragments[0].value == "socket,id=charmonitor,path=/run/guest/monitor.sock,server=on,wait=off"

    async def test_tcp_telnet_server_with_tls(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        source = CharSource(
            type=CharSourceType.TCP,
            host="127.0.0.1",
            service="4555",
            listen=True,
            telnet=True,
            tls=TlsInfo(alias="objcharserial0_tls0", directory="/etc/pki/qemu", endpoint="server"),
        )
        backend = await build_chardev(source, "charserial0", caps, tracker)
        assert backend.fragments[0].value == (
            "socket,id=charserial0,host=127.0.0.1,port=4555,telnet=on,server=on,wait=off,"
            "tls-creds=objcharserial0_tls0"
        )
        assert backend.fragments[0].references == ("objcharserial0_tls0",)

    async def test_reconnect_in_milliseconds(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        source = CharSource(type=CharSourceType.TCP, host="example.org", service="9999", reconnect_seconds=5)
        backend = await build_chardev(source, "chr0", caps, tracker)
        assert backend.fragments[0].value == "socket,id=chr0,host=example.org,port=9999,reconnect-ms=5000"

    async def test_reconnect_in_seconds(self, legacy_caps: CapabilitySet, tracker: ResourceTracker) -> None:
        source = CharSource(type=CharSourceType.TCP, host="example.org", service="9999", reconnect_seconds=5)
        backend = await build_chardev(source, "chr0", legacy_caps, tracker)
        assert backend.fragments[0].value == "socket,id=chr0,host=example.org,port=9999,reconnect=5"

    async def test_udp(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        source = CharSource(
            type=CharSourceType.UDP, host="127.0.0.1", service="1234", bind_host="0.0.0.0", bind_service="1235"
        )
        backend = await build_chardev(source, "chr0", caps, tracker)
        assert backend.fragments[0].value == "udp,id=chr0,host=127.0.0.1,port=1234,localaddr=0.0.0.0,localport=1235"

    async def test_log_file_through_fdset(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        source = CharSource(log_file="/var/log/guest/console.log", log_append=False)
        backend = await build_chardev(source, "charserial0", caps, tracker)
        assert tokens(backend.fragments) == [
            ["-add-fd", "set=0,fd=100,opaque=charserial0-log"],
            ["-chardev", "pty,id=charserial0,logfile=/dev/fdset/0,logappend=off"],
        ]

    async def test_log_file_requires_capability(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        source = CharSource(log_file="/var/log/guest/console.log")
        with pytest.raises(ConfigUnsupportedError, match="chardev log file"):
            await build_chardev(source, "chr0", caps.without_flags(Cap.CHARDEV_LOGFILE), tracker)

    async def test_spicevmc(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        backend = await build_chardev(CharSource(type=CharSourceType.SPICEVMC), "charredir0", caps, tracker)
        assert backend.fragments[0].value == "spicevmc,id=charredir0,name=vdagent"
        with pytest.raises(ConfigUnsupportedError, match="spicevmc is not supported"):
            await build_chardev(
                CharSource(type=CharSourceType.SPICEVMC),
                "charredir0",
                caps.without_flags(Cap.CHARDEV_SPICEVMC),
                tracker,
            )

    def test_reconnect_syntax(self, caps: CapabilitySet, legacy_caps: CapabilitySet) -> None:
        assert select_reconnect_syntax(caps) == ReconnectSyntax.MILLISECONDS
        assert select_reconnect_syntax(legacy_caps) == ReconnectSyntax.SECONDS

    def test_alias(self) -> None:
        assert chardev_alias("serial0") == "charserial0"


# ============================================================================
# Serial and parallel
# ============================================================================




class TestSerial:
    """Tests for serial port bundles."""

    async def test_isa_serial_flat(
        self,
        vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        serial = Serial(info=DeviceInfo(alias="serial0"))
        bundle = await serial_bundle(serial, vm, legacy_caps, legacy_resolver, tracker)
        assert tokens(bundle.fragments()) == [
            ["-chardev", "pty,id=charserial0"],
            ["-device", "isa-serial,chardev=charserial0,id=serial0"],
        ]

    async def test_isa_serial_json(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        serial = Serial(info=DeviceInfo(alias="serial1", address=IsaAddress(iobase=0x2F8, irq=3)))
        bundle = await serial_bundle(serial, vm, caps, resolver, tracker)
        chardev, device = bundle.fragments()
        assert chardev.value == "pty,id=charserial1"
        assert json.loads(device.value) == {
            "driver": "isa-serial",
            "iobase": "0x2f8",
            "irq": 3,
            "chardev": "charserial1",
            "id": "serial1",
        }
        assert device.references == ("charserial1",)

    async def test_machine_uart_is_positional(
        self,
        vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        serial = Serial(target_type="system-serial", info=DeviceInfo(alias="serial0"))
        bundle = await serial_bundle(serial, vm, legacy_caps, legacy_resolver, tracker)
        assert tokens(bundle.fragments())[-1] == ["-serial", "chardev:charserial0"]

    async def test_tls_objects_precede_chardev(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        source = CharSource(
            type=CharSourceType.TCP,
            host="0.0.0.0",
            service="4555",
            listen=True,
            tls=TlsInfo(alias="objcharserial0_tls0", directory="/etc/pki/qemu", endpoint="server"),
        )
        serial = Serial(source=source, info=DeviceInfo(alias="serial0"))
        bundle = await serial_bundle(serial, vm, caps, resolver, tracker)
        flags = [f.flag for f in bundle.fragments()]
        assert flags == ["-object", "-chardev", "-device"]
        assert json.loads(bundle.fragments()[0].value) == {
            "qom-type": "tls-creds-x509",
            "id": "objcharserial0_tls0",
            "dir": "/etc/pki/qemu",
            "endpoint": "server",
            "verify-peer": True,
        }

    async def test_serial_needs_alias(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        with pytest.raises(InternalError, match="no alias assigned"):
            await serial_bundle(Serial(), vm, caps, resolver, tracker)

    async def test_isa_serial_rejects_pci(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        serial = Serial(info=DeviceInfo(alias="serial0", address=PciAddress(slot=3)))
        with pytest.raises(ConfigUnsupportedError, match="isa-serial device 'serial0'"):
            await serial_bundle(serial, vm, caps, resolver, tracker)


class TestParallel:
    async def test_isa_parallel(
        self,
        vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        parallel = Parallel(
            source=CharSource(type=CharSourceType.DEV, path="/dev/parport0"),
            info=DeviceInfo(alias="parallel0"),
        )
        bundle = await parallel_bundle(parallel, vm, legacy_caps, legacy_resolver, tracker)
        assert tokens(bundle.fragments()) == [
            ["-chardev", "parallel,id=charparallel0,path=/dev/parport0"],
            ["-device", "isa-parallel,chardev=charparallel0,id=parallel0"],
        ]


# ============================================================================
# Channels and consoles
# ============================================================================


class TestChannel:
    """Tests for virtio-serial and guestfwd channels."""

    async def test_virtio_channel(
        self,
        vm_factory: VmFactory,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        channel = Channel(
            source=CharSource(type=CharSourceType.UNIX, path="/run/guest/agent.sock", listen=True),
            name="org.qemu.guest_agent.0",
            info=DeviceInfo(alias="channel0", address=VirtioSerialAddress(port=1)),
        )
        vm = vm_factory(virtio_serial_controller(), channel)
        bundle = await channel_bundle(channel, vm, legacy_caps, legacy_resolver, tracker)
        assert tokens(bundle.fragments()) == [
            ["-chardev", "socket,id=charchannel0,path=/run/guest/agent.sock,server=on,wait=off"],
            [
                "-device",
                "virtserialport,bus=virtio-serial0.0,nr=1,chardev=charchannel0,id=channel0,"
                "name=org.qemu.guest_agent.0",
            ],
        ]
        assert bundle.fragments()[1].references == ("virtio-serial0", "charchannel0")

    async def test_guestfwd_json(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        channel = Channel(
            source=CharSource(type=CharSourceType.PIPE, path="/tmp/guestfwd"),
            target_type="guestfwd",
            guestfwd_address="10.0.2.1",
            guestfwd_port=4600,
            info=DeviceInfo(alias="channel0"),
        )
        bundle = await channel_bundle(channel, vm, caps, resolver, tracker)
        chardev, netdev = bundle.fragments()
        assert chardev.value == "pipe,id=charchannel0,path=/tmp/guestfwd"
        assert netdev.flag == "-netdev"
        assert json.loads(netdev.value) == {
            "type": "user",
            "id": "channel0",
            "guestfwd": [{"str": "tcp:10.0.2.1:4600-chardev:charchannel0"}],
        }

    async def test_guestfwd_flat(
        self,
        vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        channel = Channel(
            source=CharSource(),
            target_type="guestfwd",
            guestfwd_address="10.0.2.1",
            guestfwd_port=4600,
            info=DeviceInfo(alias="channel0"),
        )
        bundle = await channel_bundle(channel, vm, legacy_caps, legacy_resolver, tracker)
        assert bundle.fragments()[-1].value == "user,id=channel0,guestfwd=tcp:10.0.2.1:4600-chardev:charchannel0"

    async def test_guestfwd_needs_target(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        channel = Channel(source=CharSource(), target_type="guestfwd", info=DeviceInfo(alias="channel0"))
        with pytest.raises(ConfigUnsupportedError, match="needs a target address and port"):
            await channel_bundle(channel, vm, caps, resolver, tracker)


class TestConsole:
    """Tests for console bundles."""

    async def test_serial_console_has_no_bundle(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        console = Console(info=DeviceInfo(alias="console0"))
        assert await console_bundle(console, vm, caps, resolver, tracker) is None

    async def test_virtio_console(
        self,
        vm_factory: VmFactory,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        console = Console(target_type="virtio", info=DeviceInfo(alias="console1", address=VirtioSerialAddress(port=0)))
        vm = vm_factory(virtio_serial_controller(), console)
        bundle = await console_bundle(console, vm, legacy_caps, legacy_resolver, tracker)
        assert bundle is not None
        assert tokens(bundle.fragments()) == [
            ["-chardev", "pty,id=charconsole1"],
            ["-device", "virtconsole,bus=virtio-serial0.0,nr=0,chardev=charconsole1,id=console1"],
        ]

    async def test_sclp_console(
        self,
        vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        console = Console(target_type="sclplm", info=DeviceInfo(alias="console1"))
        bundle = await console_bundle(console, vm, legacy_caps, legacy_resolver, tracker)
        assert bundle is not None
        assert bundle.fragments()[-1].value == "sclplmconsole,chardev=charconsole1,id=console1"

    async def test_virtio_console_needs_port_address(
        self, vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        console = Console(target_type="virtio", info=DeviceInfo(alias="console1"))
        with pytest.raises(ConfigUnsupportedError, match="virtconsole device 'console1'"):
            await console_bundle(console, vm, caps, resolver, tracker)


# ============================================================================
# Smartcard
# ============================================================================


class TestSmartcard:
    """Tests for CCID smartcards."""

    @pytest.fixture
    def ccid_vm(self, vm_factory: VmFactory) -> VmDefinition:
        return vm_factory(Controller(type=ControllerType.CCID, info=DeviceInfo(alias="ccid0")))

    async def test_host_emulated(
        self,
        ccid_vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        card = Smartcard(mode="host", info=DeviceInfo(alias="smartcard0", address=CcidAddress()))
        bundle = await smartcard_bundle(card, ccid_vm, legacy_caps, legacy_resolver, tracker)
        assert tokens(bundle.fragments()) == [
            ["-device", "ccid-card-emulated,bus=ccid0.0,backend=nss-emulated,id=smartcard0"],
        ]

    async def test_host_certificates(
        self,
        ccid_vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        card = Smartcard(
            mode="host-certificates",
            certificates=("cert1", "cert2", "cert3"),
            info=DeviceInfo(alias="smartcard0", address=CcidAddress()),
        )
        bundle = await smartcard_bundle(card, ccid_vm, legacy_caps, legacy_resolver, tracker)
        assert bundle.fragments()[0].value == (
            "ccid-card-emulated,bus=ccid0.0,backend=certificates,cert1=cert1,cert2=cert2,cert3=cert3,"
            "db=/etc/pki/nssdb,id=smartcard0"
        )

    async def test_wrong_certificate_count(
        self, ccid_vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        card = Smartcard(
            mode="host-certificates",
            certificates=("cert1",),
            info=DeviceInfo(alias="smartcard0", address=CcidAddress()),
        )
        with pytest.raises(ConfigUnsupportedError, match="needs exactly 3 certificates"):
            await smartcard_bundle(card, ccid_vm, caps, resolver, tracker)

    async def test_passthrough(
        self,
        ccid_vm: VmDefinition,
        legacy_caps: CapabilitySet,
        legacy_resolver: LinkingResolver,
        tracker: ResourceTracker,
    ) -> None:
        card = Smartcard(
            mode="passthrough",
            source=CharSource(type=CharSourceType.SPICEVMC, channel="smartcard"),
            info=DeviceInfo(alias="smartcard0", address=CcidAddress()),
        )
        bundle = await smartcard_bundle(card, ccid_vm, legacy_caps, legacy_resolver, tracker)
        assert tokens(bundle.fragments()) == [
            ["-chardev", "spicevmc,id=charsmartcard0,name=smartcard"],
            ["-device", "ccid-card-passthru,bus=ccid0.0,chardev=charsmartcard0,id=smartcard0"],
        ]

    async def test_passthrough_needs_source(
        self, ccid_vm: VmDefinition, caps: CapabilitySet, resolver: LinkingResolver, tracker: ResourceTracker
    ) -> None:
        card = Smartcard(mode="passthrough", info=DeviceInfo(alias="smartcard0", address=CcidAddress()))
        with pytest.raises(ConfigUnsupportedError, match="needs a character device source"):
            await smartcard_bundle(card, ccid_vm, caps, resolver, tracker)
