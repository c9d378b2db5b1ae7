"""Tests for global switches: identity, sysinfo, monitor, clock, PM, boot and sandbox."""

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest

from qemu_argv import constants
from qemu_argv.addresses import DeviceInfo
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.config import SynthesisOptions
from qemu_argv.devices import Graphics, Interface, InterfaceType
from qemu_argv.domain import (
    ClockInfo,
    FwCfgEntry,
    Lifecycle,
    OsInfo,
    PmInfo,
    SysInfo,
    Timer,
    VirtType,
    VmDefinition,
)
from qemu_argv.exceptions import ConfigUnsupportedError
from qemu_argv.fragments import ClockNormalization, FdPolicy, PassedFd
from qemu_argv.resources import DryRunResourceBroker, ResourceTracker
from qemu_argv.settings import Settings
from qemu_argv.system import (
    SandboxMode,
    boot_fragments,
    clock_fragments,
    compat_fragment,
    compute_clock,
    defaults_fragments,
    fips_fragment,
    incoming_fragment,
    loadvm_fragment,
    message_fragments,
    name_fragment,
    pm_fragments,
    rtc_fragment,
    sandbox_fragment,
    select_sandbox_mode,
    sysinfo_fragments,
    timer_fragments,
    uuid_fragment,
)

VmFactory = Callable[..., VmDefinition]

NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)


def tokens(fragments: list) -> list[list[str]]:
    return [f.tokens() for f in fragments]


# ============================================================================
# Identity
# ============================================================================


class TestIdentity:
    def test_name_with_debug_threads(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        assert name_fragment(vm, caps).tokens() == ["-name", "guest=guest,debug-threads=on"]

    def test_plain_name_escapes_commas(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(name="web,01")
        old = caps.without_flags(Cap.NAME_DEBUG_THREADS)
        assert name_fragment(vm, old).tokens() == ["-name", "web,,01"]

    def test_uuid(self, vm: VmDefinition) -> None:
        assert uuid_fragment(vm).tokens() == ["-uuid", "c7a5fdbd-edaf-9455-926a-d65c16db1809"]

    @pytest.mark.parametrize(
        ("behavior", "expected"),
        [
            ("none", None),
            ("omit", "deprecated-output=hide"),
            ("reject", "deprecated-input=reject,deprecated-output=hide"),
            ("crash", "deprecated-input=crash,deprecated-output=hide"),
        ],
    )
    def test_compat(self, behavior: str, expected: str | None, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        frag = compat_fragment(vm_factory(deprecation_behavior=behavior), caps)
        assert (frag.value if frag else None) == expected

    def test_compat_silently_omitted(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(deprecation_behavior="reject")
        assert compat_fragment(vm, caps.without_flags(Cap.COMPAT_DEPRECATED)) is None

    def test_fips(self, caps: CapabilitySet) -> None:
        options = SynthesisOptions(enable_fips=True)
        assert fips_fragment(options, caps).tokens() == ["-enable-fips"]
        assert fips_fragment(options, caps.without_flags(Cap.ENABLE_FIPS)) is None
        assert fips_fragment(SynthesisOptions(), caps) is None


# ============================================================================
# SMBIOS and fw_cfg
# ============================================================================


class TestSysinfo:
    def test_smbios_tables(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        info = SysInfo(bios={"vendor": "Acme"}, system={"manufacturer": "Acme, Inc."}, oem_strings=("role=db",))
        vm = vm_factory(smbios_mode="sysinfo", sysinfo=(info,))
        assert tokens(sysinfo_fragments(vm, caps)) == [
            ["-smbios", "type=0,vendor=Acme"],
            ["-smbios", "type=1,manufacturer=Acme,, Inc.,uuid=c7a5fdbd-edaf-9455-926a-d65c16db1809"],
            ["-smbios", "type=11,value=role=db"],
        ]

    def test_explicit_system_uuid_wins(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        info = SysInfo(system={"uuid": "00000000-0000-0000-0000-000000000001"})
        vm = vm_factory(smbios_mode="sysinfo", sysinfo=(info,))
        assert tokens(sysinfo_fragments(vm, caps)) == [
            ["-smbios", "type=1,uuid=00000000-0000-0000-0000-000000000001"],
        ]

    def test_emulate_mode_skips_tables(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(smbios_mode="emulate", sysinfo=(SysInfo(bios={"vendor": "Acme"}),))
        assert sysinfo_fragments(vm, caps) == []

    def test_fw_cfg(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        info = SysInfo(
            type="fwcfg",
            fw_cfg=(
                FwCfgEntry(name="opt/com.example/role", value="db"),
                FwCfgEntry(name="opt/com.example/blob", file="/var/lib/blob.bin"),
            ),
        )
        vm = vm_factory(sysinfo=(info,))
        assert tokens(sysinfo_fragments(vm, caps)) == [
            ["-fw_cfg", "name=opt/com.example/role,string=db"],
            ["-fw_cfg", "name=opt/com.example/blob,file=/var/lib/blob.bin"],
        ]

    def test_fw_cfg_needs_capability(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(sysinfo=(SysInfo(type="fwcfg", fw_cfg=(FwCfgEntry(name="opt/x", value="1"),)),))
        with pytest.raises(ConfigUnsupportedError, match="fw_cfg entries are not supported"):
            sysinfo_fragments(vm, caps.without_flags(Cap.FW_CFG))

    def test_host_mode_is_unsupported(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        with pytest.raises(ConfigUnsupportedError, match="host SMBIOS tables"):
            sysinfo_fragments(vm_factory(smbios_mode="host"), caps)


# ============================================================================
# Defaults and monitor
# ============================================================================


class TestDefaultsAndMonitor:
    async def test_standalone_has_no_monitor(
        self, vm: VmDefinition, caps: CapabilitySet, settings: Settings, tracker: ResourceTracker
    ) -> None:
        frags = await defaults_fragments(vm, caps, SynthesisOptions(standalone=True), settings, tracker)
        assert tokens(frags) == [["-display", "none"], ["-no-user-config"], ["-nodefaults"]]

    async def test_local_display_keeps_display(
        self, vm_factory: VmFactory, caps: CapabilitySet, settings: Settings, tracker: ResourceTracker
    ) -> None:
        vm = vm_factory(Graphics(type="sdl", info=DeviceInfo(alias="graphics0")))
        frags = await defaults_fragments(vm, caps, SynthesisOptions(standalone=True), settings, tracker)
        assert tokens(frags) == [["-no-user-config"], ["-nodefaults"]]

    async def test_monitor_socket_is_preopened(
        self,
        vm: VmDefinition,
        caps: CapabilitySet,
        settings: Settings,
        broker: DryRunResourceBroker,
        tracker: ResourceTracker,
    ) -> None:
        frags = await defaults_fragments(vm, caps, SynthesisOptions(), settings, tracker)
        assert tokens(frags[3:]) == [
            ["-chardev", "socket,id=charmonitor,fd=100,server=on,wait=off"],
            ["-mon", "chardev=charmonitor,id=monitor,mode=control"],
        ]
        assert frags[4].references == (constants.MONITOR_CHARDEV_ALIAS,)
        expected = settings.state_dir / "domain" / "guest" / "monitor.sock"
        assert broker.calls == [("create_unix_listen_socket", str(expected))]

    async def test_explicit_monitor_path_on_old_binary(
        self, vm: VmDefinition, legacy_caps: CapabilitySet, settings: Settings, tracker: ResourceTracker
    ) -> None:
        options = SynthesisOptions(monitor_socket=Path("/run/qmp.sock"))
        frags = await defaults_fragments(vm, legacy_caps, options, settings, tracker)
        assert frags[3].tokens() == ["-chardev", "socket,id=charmonitor,path=/run/qmp.sock,server=on,wait=off"]
        assert tracker.owned_fds == ()


# ============================================================================
# Clock
# ============================================================================


class TestClock:
    """Tests for clock normalization and the -rtc/timer options."""

    @pytest.mark.parametrize(("offset", "base"), [("utc", "utc"), ("localtime", "localtime")])
    def test_fixed_offsets(self, offset: str, base: str, vm_factory: VmFactory) -> None:
        clock = compute_clock(vm_factory(clock=ClockInfo(offset=offset)), NOW)
        assert clock == ClockNormalization(rtc_base=base)

    def test_timezone(self, vm_factory: VmFactory) -> None:
        clock = compute_clock(vm_factory(clock=ClockInfo(offset="timezone", timezone="Europe/Paris")), NOW)
        assert clock == ClockNormalization(rtc_base="localtime", timezone="Europe/Paris")

    def test_timezone_needs_name(self, vm_factory: VmFactory) -> None:
        with pytest.raises(ConfigUnsupportedError, match="needs a timezone name"):
            compute_clock(vm_factory(clock=ClockInfo(offset="timezone")), NOW)

    def test_variable_offset_is_absolute(self, vm_factory: VmFactory) -> None:
        clock = compute_clock(vm_factory(clock=ClockInfo(offset="variable", adjustment=3600)), NOW)
        assert clock == ClockNormalization(adjustment=3600, rtc_base="2024-01-02T04:04:05")

    def test_naive_now_is_utc(self, vm_factory: VmFactory) -> None:
        vm = vm_factory(clock=ClockInfo(offset="variable", adjustment=-5))
        clock = compute_clock(vm, datetime(2024, 1, 2, 3, 4, 5))
        assert clock.rtc_base == "2024-01-02T03:04:00"

    def test_definition_is_not_touched(self, vm_factory: VmFactory) -> None:
        vm = vm_factory(clock=ClockInfo(offset="variable", adjustment=60))
        compute_clock(vm, NOW)
        assert vm.clock.adjustment == 60

    def test_rtc_with_timer(self, vm_factory: VmFactory) -> None:
        vm = vm_factory(clock=ClockInfo(timers=(Timer(name="rtc", track="guest", tickpolicy="catchup"),)))
        assert rtc_fragment(vm, ClockNormalization()).tokens() == ["-rtc", "base=utc,clock=vm,driftfix=slew"]

    def test_rtc_rejects_merge(self, vm_factory: VmFactory) -> None:
        vm = vm_factory(clock=ClockInfo(timers=(Timer(name="rtc", tickpolicy="merge"),)))
        with pytest.raises(ConfigUnsupportedError, match="unsupported rtc timer tickpolicy 'merge'"):
            rtc_fragment(vm, ClockNormalization())

    def test_pit_policy_on_kvm(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(clock=ClockInfo(timers=(Timer(name="pit", tickpolicy="catchup"),)))
        assert tokens(timer_fragments(vm, caps)) == [["-global", "kvm-pit.lost_tick_policy=slew"]]

    def test_pit_policy_ignored_on_tcg(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(virt_type=VirtType.QEMU, clock=ClockInfo(timers=(Timer(name="pit", tickpolicy="delay"),)))
        assert timer_fragments(vm, caps) == []

    def test_no_hpet_on_old_binary(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(clock=ClockInfo(timers=(Timer(name="hpet", present=False),)))
        assert timer_fragments(vm, caps) == []
        assert tokens(timer_fragments(vm, caps.without_flags(Cap.MACHINE_HPET))) == [["-no-hpet"]]

    def test_clock_fragments(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        assert tokens(clock_fragments(vm, caps, ClockNormalization(rtc_base="localtime"))) == [
            ["-rtc", "base=localtime"],
        ]


# ============================================================================
# PM, lifecycle, boot
# ============================================================================


class TestPowerManagement:
    def test_q35(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(pm=PmInfo(suspend_to_mem=False, suspend_to_disk=True))
        assert tokens(pm_fragments(vm, caps)) == [
            ["-global", "ICH9-LPC.disable_s3=1"],
            ["-global", "ICH9-LPC.disable_s4=0"],
        ]

    def test_i440fx(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(os=OsInfo(machine="pc-i440fx-9.0"), pm=PmInfo(suspend_to_mem=False))
        assert tokens(pm_fragments(vm, caps)) == [["-global", "PIIX4_PM.disable_s3=1"]]

    def test_other_machines_reject_pm(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(os=OsInfo(arch="aarch64", machine="virt-9.0"), pm=PmInfo(suspend_to_mem=True))
        with pytest.raises(ConfigUnsupportedError, match="setting ACPI disable_s3 is not supported"):
            pm_fragments(vm, caps)

    def test_reboot_destroy(self, vm_factory: VmFactory, caps: CapabilitySet, legacy_caps: CapabilitySet) -> None:
        vm = vm_factory(lifecycle=Lifecycle(on_reboot="destroy"))
        assert tokens(pm_fragments(vm, caps)) == [["-action", "reboot=shutdown"]]
        assert tokens(pm_fragments(vm, legacy_caps)) == [["-no-reboot"]]


class TestBoot:
    def test_nothing_configured(self, vm: VmDefinition, caps: CapabilitySet) -> None:
        assert boot_fragments(vm, caps) == []

    def test_order_and_menu(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        os_info = OsInfo(boot_devices=("cdrom", "hd"), boot_menu=True, boot_menu_timeout=3000, reboot_timeout=0)
        vm = vm_factory(os=os_info)
        assert tokens(boot_fragments(vm, caps)) == [["-boot", "order=dc,menu=on,splash-time=3000,reboot-timeout=0"]]

    def test_per_device_boot_wins(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        nic = Interface(
            type=InterfaceType.USER,
            mac="52:54:00:12:34:56",
            info=DeviceInfo(alias="net0", boot_index=1),
        )
        vm = vm_factory(nic, os=OsInfo(boot_devices=("hd",)))
        assert tokens(boot_fragments(vm, caps)) == [["-boot", "strict=on"]]

    def test_bios_serial(self, vm_factory: VmFactory, caps: CapabilitySet) -> None:
        vm = vm_factory(os=OsInfo(bios_serial=True, boot_menu=False))
        assert tokens(boot_fragments(vm, caps)) == [["-boot", "menu=off"], ["-device", "sga"]]


# ============================================================================
# Migration, sandbox, messages
# ============================================================================


class TestIncoming:
    def test_none(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        assert incoming_fragment(SynthesisOptions(), caps, tracker) is None

    def test_uri(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        frag = incoming_fragment(SynthesisOptions(incoming="tcp:0.0.0.0:49152"), caps, tracker)
        assert frag.tokens() == ["-incoming", "tcp:0.0.0.0:49152"]

    def test_fd_is_passed_through(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        frag = incoming_fragment(SynthesisOptions(incoming_fd=7), caps, tracker)
        assert frag.tokens() == ["-incoming", "fd:7"]
        assert tracker.passed_fds() == (PassedFd(fd=7, policy=FdPolicy.KEEP_PARENT),)

    def test_defer_needs_capability(self, caps: CapabilitySet, tracker: ResourceTracker) -> None:
        options = SynthesisOptions(incoming="defer")
        assert incoming_fragment(options, caps, tracker).value == "defer"
        with pytest.raises(ConfigUnsupportedError, match="deferred incoming migration"):
            incoming_fragment(options, caps.without_flags(Cap.INCOMING_DEFER), tracker)

    def test_empty_uri_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-empty URI"):
            SynthesisOptions(incoming="  ")

    def test_loadvm(self) -> None:
        assert loadvm_fragment(SynthesisOptions()) is None
        assert loadvm_fragment(SynthesisOptions(snapshot="clean")).tokens() == ["-loadvm", "clean"]


class TestSandbox:
    @pytest.mark.parametrize(
        ("setting", "mode", "expected"),
        [
            (-1, SandboxMode.DEFAULT, None),
            (0, SandboxMode.OFF, ["-sandbox", "off"]),
            (1, SandboxMode.ON, ["-sandbox", constants.SANDBOX_ON_OPTIONS]),
        ],
    )
    def test_modes(self, setting: int, mode: SandboxMode, expected: list[str] | None, caps: CapabilitySet) -> None:
        settings = Settings(emulator_binary="qemu-system-x86_64", seccomp_sandbox=setting)
        assert select_sandbox_mode(settings, caps) == mode
        frag = sandbox_fragment(settings, caps)
        assert (frag.tokens() if frag else None) == expected

    def test_disable_without_support_is_default(self, caps: CapabilitySet) -> None:
        settings = Settings(emulator_binary="qemu-system-x86_64", seccomp_sandbox=0)
        assert sandbox_fragment(settings, caps.without_flags(Cap.SECCOMP_SANDBOX)) is None

    def test_enable_without_support(self, caps: CapabilitySet) -> None:
        settings = Settings(emulator_binary="qemu-system-x86_64", seccomp_sandbox=1)
        with pytest.raises(ConfigUnsupportedError, match="seccomp sandbox is not supported"):
            sandbox_fragment(settings, caps.without_flags(Cap.SECCOMP_SANDBOX))


def test_message_fragments(caps: CapabilitySet) -> None:
    assert tokens(message_fragments(caps)) == [["-msg", "timestamp=on"], ["-run-with", "async-teardown=on"]]
    assert message_fragments(caps.without_flags(Cap.MSG_TIMESTAMP, Cap.ASYNC_TEARDOWN)) == []
