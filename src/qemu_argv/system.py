"""Global switches: name, compat policy, identity, monitor, clock, PM, boot,
migration, sandbox and message formatting.

Clock normalization is computed once per pass by compute_clock() and
returned as a side-output; the VM definition is never touched.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from qemu_argv import constants
from qemu_argv._logging import get_logger
from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.chardev import build_chardev
from qemu_argv.devices import CharSource, CharSourceType, Graphics
from qemu_argv.domain import VirtType
from qemu_argv.emitter import emit_flat, escape_commas, flat_join
from qemu_argv.exceptions import ConfigUnsupportedError, EnumRangeError
from qemu_argv.fragments import ClockNormalization, FdPolicy, Fragment
from qemu_argv.machine import hpet_enabled
from qemu_argv.props import PropTree

if TYPE_CHECKING:
    from qemu_argv.config import SynthesisOptions
    from qemu_argv.domain import SysInfo, Timer, VmDefinition
    from qemu_argv.resources import ResourceTracker
    from qemu_argv.settings import Settings

logger = get_logger(__name__)

LOCAL_DISPLAYS: tuple[str, ...] = ("sdl", "egl-headless", "dbus")
"""Graphics types rendered through -display; VNC and SPICE are remote."""


# ============================================================================
# Name, compat, FIPS, UUID
# ============================================================================


def name_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment:
    if not caps.has(Cap.NAME_DEBUG_THREADS):
        return Fragment("-name", escape_commas(vm.name))
    return Fragment.option("-name", PropTree([("guest", vm.name), ("debug-threads", True)]))


def compat_fragment(vm: VmDefinition, caps: CapabilitySet) -> Fragment | None:
    """-compat for the deprecation policy; silently omitted when unsupported."""
    behavior = vm.deprecation_behavior
    if behavior == "none" or not caps.has(Cap.COMPAT_DEPRECATED):
        return None
    tree = PropTree()
    match behavior:
        case "omit":
            pass
        case "reject" | "crash":
            tree.add("deprecated-input", behavior)
        case _:
            raise EnumRangeError.for_value("deprecation behavior", behavior)
    tree.add("deprecated-output", "hide")
    return Fragment.option("-compat", tree)


def fips_fragment(options: SynthesisOptions, caps: CapabilitySet) -> Fragment | None:
    if not options.enable_fips:
        return None
    if not caps.has(Cap.ENABLE_FIPS):
        logger.info("Host is in FIPS mode but this QEMU has no -enable-fips")
        return None
    return Fragment("-enable-fips")


def uuid_fragment(vm: VmDefinition) -> Fragment:
    return Fragment("-uuid", str(vm.uuid))


# ============================================================================
# SMBIOS / fw_cfg
# ============================================================================

_SMBIOS_TABLES: tuple[tuple[int, str], ...] = (
    (0, "bios"),
    (1, "system"),
    (2, "baseboard"),
    (3, "chassis"),
)


def _smbios_table(table: int, entries: dict[str, str], extra: tuple[tuple[str, str], ...] = ()) -> Fragment:
    tree = PropTree((*entries.items(), *extra))
    # type= is a keyword here, not the bare leading token.
    return Fragment("-smbios", flat_join([f"type={table}", emit_flat(tree)]))


def _smbios_fragments(info: SysInfo, vm: VmDefinition) -> list[Fragment]:
    out: list[Fragment] = []
    for table, field_name in _SMBIOS_TABLES:
        entries: dict[str, str] = getattr(info, field_name)
        extra: tuple[tuple[str, str], ...] = ()
        if table == 1 and "uuid" not in entries:
            extra = (("uuid", str(vm.uuid)),)
        if entries or extra:
            out.append(_smbios_table(table, entries, extra))
    for value in info.oem_strings:
        out.append(Fragment("-smbios", f"type=11,value={escape_commas(value)}"))
    return out


def _fw_cfg_fragments(info: SysInfo, caps: CapabilitySet) -> list[Fragment]:
    if not info.fw_cfg:
        return []
    if not caps.has(Cap.FW_CFG):
        raise ConfigUnsupportedError(
            "fw_cfg entries are not supported by this QEMU",
            context={"capability": Cap.FW_CFG.value},
        )
    out = []
    for entry in info.fw_cfg:
        tree = PropTree([("name", entry.name)])
        if entry.file is not None:
            tree.add("file", entry.file)
        else:
            tree.add("string", entry.value or "")
        out.append(Fragment.option("-fw_cfg", tree))
    return out


def sysinfo_fragments(vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    """-smbios tables for "sysinfo" mode and every fw_cfg entry."""
    out: list[Fragment] = []
    for info in vm.sysinfo:
        if info.type == "fwcfg":
            out.extend(_fw_cfg_fragments(info, caps))
        elif vm.smbios_mode == "sysinfo":
            out.extend(_smbios_fragments(info, vm))
    if vm.smbios_mode == "host":
        raise ConfigUnsupportedError(
            "copying host SMBIOS tables needs the host sysinfo, which is not part of the definition",
            context={"smbios_mode": vm.smbios_mode},
        )
    return out


# ============================================================================
# Display defaults and monitor
# ============================================================================


async def defaults_fragments(
    vm: VmDefinition,
    caps: CapabilitySet,
    options: SynthesisOptions,
    settings: Settings,
    tracker: ResourceTracker,
) -> list[Fragment]:
    """-display none (unless a local display is configured), -no-user-config, -nodefaults and the QMP monitor."""
    out: list[Fragment] = []
    if not any(g.type in LOCAL_DISPLAYS for g in vm.devices_of(Graphics)):
        out.append(Fragment("-display", "none"))
    out.append(Fragment("-no-user-config"))
    out.append(Fragment("-nodefaults"))

    if options.standalone:
        return out
    socket_path = options.monitor_socket or settings.monitor_socket_path(vm.name)
    source = CharSource(type=CharSourceType.UNIX, path=str(socket_path), listen=True)
    chardev = await build_chardev(source, constants.MONITOR_CHARDEV_ALIAS, caps, tracker)
    out.extend(chardev.fragments)
    mon = PropTree([("chardev", constants.MONITOR_CHARDEV_ALIAS), ("id", constants.MONITOR_ALIAS)])
    mon.add("mode", "control")
    out.append(Fragment.option("-mon", mon, references=(constants.MONITOR_CHARDEV_ALIAS,)))
    return out


# ============================================================================
# Clock
# ============================================================================

_RTC_TRACK: dict[str, str | None] = {"boot": None, "guest": "vm", "wall": "host", "realtime": "rt"}


def _as_utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now.astimezone(UTC)


def compute_clock(vm: VmDefinition, now: datetime | None) -> ClockNormalization:
    """Resolve the clock offset into an absolute -rtc base.

    A variable offset is relative to boot time, so it is turned into a
    fixed start timestamp from `now`; localtime basis adds the host's
    offset from UTC at `now`.
    """
    clock = vm.clock
    match clock.offset:
        case "utc":
            return ClockNormalization(rtc_base="utc")
        case "localtime":
            return ClockNormalization(rtc_base="localtime")
        case "timezone":
            if not clock.timezone:
                raise ConfigUnsupportedError("timezone clock offset needs a timezone name", context={"vm": vm.name})
            return ClockNormalization(rtc_base="localtime", timezone=clock.timezone)
        case "variable":
            utc_now = _as_utc(now)
            adjustment = clock.adjustment
            if clock.basis == "localtime":
                local_offset = utc_now.astimezone().utcoffset() or timedelta()
                adjustment += int(local_offset.total_seconds())
            start = utc_now + timedelta(seconds=adjustment)
            return ClockNormalization(adjustment=adjustment, rtc_base=start.strftime("%Y-%m-%dT%H:%M:%S"))
        case _:
            raise EnumRangeError.for_value("clock offset", clock.offset)


def _timer(vm: VmDefinition, name: str) -> Timer | None:
    return next((t for t in vm.clock.timers if t.name == name), None)


def rtc_fragment(vm: VmDefinition, clock: ClockNormalization) -> Fragment:
    tree = PropTree([("base", clock.rtc_base)])
    rtc = _timer(vm, "rtc")
    if rtc is not None:
        if rtc.track is not None:
            tree.add("clock", _RTC_TRACK[rtc.track])
        match rtc.tickpolicy:
            case None | "delay":
                pass
            case "catchup":
                tree.add("driftfix", "slew")
            case _:
                raise ConfigUnsupportedError(
                    f"unsupported rtc timer tickpolicy '{rtc.tickpolicy}'",
                    context={"timer": "rtc", "tickpolicy": rtc.tickpolicy},
                )
    return Fragment.option("-rtc", tree)


_PIT_POLICY = {"delay": "delay", "catchup": "slew", "discard": "discard"}


def timer_fragments(vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    out: list[Fragment] = []
    pit = _timer(vm, "pit")
    if pit is not None and pit.tickpolicy is not None:
        policy = _PIT_POLICY.get(pit.tickpolicy)
        if policy is None:
            raise ConfigUnsupportedError(
                f"unsupported pit tickpolicy '{pit.tickpolicy}'",
                context={"timer": "pit", "tickpolicy": pit.tickpolicy},
            )
        if vm.virt_type == VirtType.KVM:
            out.append(Fragment("-global", f"kvm-pit.lost_tick_policy={policy}"))
        else:
            logger.debug("Ignoring pit tickpolicy without in-kernel PIT", extra={"vm": vm.name})
    if hpet_enabled(vm) is False and not caps.has(Cap.MACHINE_HPET):
        out.append(Fragment("-no-hpet"))
    return out


def clock_fragments(vm: VmDefinition, caps: CapabilitySet, clock: ClockNormalization) -> list[Fragment]:
    return [rtc_fragment(vm, clock), *timer_fragments(vm, caps)]


# ============================================================================
# Power management, lifecycle and boot
# ============================================================================


def _pm_global(vm: VmDefinition, prop: str, enabled: bool) -> Fragment:
    if vm.is_q35:
        owner = "ICH9-LPC"
    elif vm.is_i440fx:
        owner = "PIIX4_PM"
    else:
        raise ConfigUnsupportedError(
            f"setting ACPI {prop} is not supported for machine '{vm.machine}'",
            context={"machine": vm.machine, "property": prop},
        )
    return Fragment("-global", f"{owner}.{prop}={0 if enabled else 1}")


def pm_fragments(vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    out: list[Fragment] = []
    if vm.pm.suspend_to_mem is not None:
        out.append(_pm_global(vm, "disable_s3", vm.pm.suspend_to_mem))
    if vm.pm.suspend_to_disk is not None:
        out.append(_pm_global(vm, "disable_s4", vm.pm.suspend_to_disk))

    if vm.lifecycle.on_reboot == "destroy":
        if caps.has(Cap.SET_ACTION):
            out.append(Fragment("-action", "reboot=shutdown"))
        else:
            out.append(Fragment("-no-reboot"))
    return out


_BOOT_ORDER = {"hd": "c", "cdrom": "d", "network": "n", "fd": "a"}


def boot_fragments(vm: VmDefinition, caps: CapabilitySet) -> list[Fragment]:
    """-boot options; the order string only when no device has a boot index."""
    os_info = vm.os
    tree = PropTree()
    per_device = any(d.info.boot_index is not None for d in vm.devices)
    if os_info.boot_devices and not per_device:
        tree.add("order", "".join(_BOOT_ORDER[d] for d in os_info.boot_devices))
    if os_info.boot_menu is not None:
        tree.add("menu", os_info.boot_menu)
        if os_info.boot_menu and os_info.boot_menu_timeout is not None:
            tree.add("splash-time", os_info.boot_menu_timeout)
    tree.add("reboot-timeout", os_info.reboot_timeout)
    if per_device and caps.has(Cap.BOOT_STRICT):
        tree.add("strict", True)

    out: list[Fragment] = []
    if len(tree):
        out.append(Fragment.option("-boot", tree))
    if os_info.bios_serial:
        out.append(Fragment("-device", "sga"))
    return out


# ============================================================================
# Migration, snapshots, sandbox, messages
# ============================================================================


def incoming_fragment(options: SynthesisOptions, caps: CapabilitySet, tracker: ResourceTracker) -> Fragment | None:
    if options.incoming_fd is not None:
        handle = tracker.pass_fd(options.incoming_fd, FdPolicy.KEEP_PARENT)
        return Fragment("-incoming", f"fd:{handle.render()}")
    if options.incoming is None:
        return None
    if options.incoming == "defer" and not caps.has(Cap.INCOMING_DEFER):
        raise ConfigUnsupportedError(
            "deferred incoming migration is not supported by this QEMU",
            context={"capability": Cap.INCOMING_DEFER.value},
        )
    return Fragment("-incoming", options.incoming)


def loadvm_fragment(options: SynthesisOptions) -> Fragment | None:
    if options.snapshot is None:
        return None
    return Fragment("-loadvm", options.snapshot)


class SandboxMode(StrEnum):
    """Seccomp policy for the emulator process."""

    DEFAULT = "default"
    ON = "on"
    OFF = "off"


def select_sandbox_mode(settings: Settings, caps: CapabilitySet) -> SandboxMode:
    match settings.seccomp_sandbox:
        case -1:
            return SandboxMode.DEFAULT
        case 0:
            return SandboxMode.OFF if caps.has(Cap.SECCOMP_SANDBOX) else SandboxMode.DEFAULT
        case 1:
            if not caps.has(Cap.SECCOMP_SANDBOX):
                raise ConfigUnsupportedError(
                    "seccomp sandbox is not supported by this QEMU",
                    context={"capability": Cap.SECCOMP_SANDBOX.value},
                )
            return SandboxMode.ON
        case _:
            raise EnumRangeError.for_value("seccomp sandbox setting", settings.seccomp_sandbox)


def sandbox_fragment(settings: Settings, caps: CapabilitySet) -> Fragment | None:
    match select_sandbox_mode(settings, caps):
        case SandboxMode.DEFAULT:
            return None
        case SandboxMode.OFF:
            return Fragment("-sandbox", "off")
        case SandboxMode.ON:
            return Fragment("-sandbox", constants.SANDBOX_ON_OPTIONS)


def message_fragments(caps: CapabilitySet) -> list[Fragment]:
    out: list[Fragment] = []
    if caps.has(Cap.MSG_TIMESTAMP):
        out.append(Fragment("-msg", "timestamp=on"))
    if caps.has(Cap.ASYNC_TEARDOWN):
        out.append(Fragment("-run-with", "async-teardown=on"))
    return out
