"""Command assembler: runs every builder in a fixed order into one buffer.

The phase table below is the emission order. Each phase appends fragments
through CommandBuffer, which rejects any reference to an alias that has not
been defined yet, so a reordering that breaks dependency order fails loudly
instead of producing a command line the emulator rejects.

Between phases the assembler yields to the event loop, checks the caller's
cancellation event and the overall timeout. Any failure rolls back every
resource acquired so far and propagates; no partial result is returned.

Example:
    ```python
    from qemu_argv import DryRunResourceBroker, build_command_line

    result = await build_command_line(vm, caps, broker=DryRunResourceBroker())
    print(" ".join(result.argv))
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from qemu_argv import consoles, controllers, cpu, graphics, machine, memory, peripherals, system
from qemu_argv._logging import get_logger
from qemu_argv.addresses import AddressKind
from qemu_argv.audio import AudioPlan, plan_audio, sound_fragments
from qemu_argv.capabilities import CapabilitySet
from qemu_argv.config import SynthesisOptions
from qemu_argv.devices import (
    Channel,
    Console,
    Controller,
    Disk,
    Filesystem,
    Graphics,
    Hostdev,
    Hub,
    Input,
    Interface,
    Iommu,
    Memballoon,
    MemoryDevice,
    Nvram,
    Panic,
    Parallel,
    Redirdev,
    Rng,
    Serial,
    Shmem,
    Smartcard,
    Sound,
    Tpm,
    Vsock,
)
from qemu_argv.disk import disk_device_fragment, is_vhost_user, vhost_user_disk_bundle
from qemu_argv.domain import VmDefinition
from qemu_argv.exceptions import SynthesisCancelledError
from qemu_argv.filesystems import filesystem_fragments
from qemu_argv.fragments import ArgumentSequence, ClockNormalization, CommandBuffer, Fragment
from qemu_argv.hostdev import hostdev_fragments
from qemu_argv.linking import AttachmentBundle, LinkingResolver
from qemu_argv.network import interface_bundle
from qemu_argv.numa import numa_fragments
from qemu_argv.resources import ResourceBroker, ResourceTracker
from qemu_argv.secret_objects import master_key_fragment, pr_manager_fragment
from qemu_argv.settings import Settings
from qemu_argv.tpm import tpm_bundle

logger = get_logger(__name__)


# ============================================================================
# Per-pass state
# ============================================================================


@dataclass
class _Pass:
    """Everything one synthesis pass threads through its phases."""

    vm: VmDefinition
    caps: CapabilitySet
    options: SynthesisOptions
    settings: Settings
    tracker: ResourceTracker
    resolver: LinkingResolver
    clock: ClockNormalization
    buffer: CommandBuffer = field(default_factory=CommandBuffer)
    audio: AudioPlan | None = None
    phase: str = ""

    def add(self, fragment: Fragment | None) -> None:
        if fragment is not None:
            self.buffer.add(fragment)

    def extend(self, fragments: list[Fragment]) -> None:
        if fragments:
            self.buffer.commit(fragments)

    def attach(self, bundle: AttachmentBundle | None) -> None:
        if bundle is not None:
            self.buffer.commit(bundle.fragments())


Phase = Callable[[_Pass], Awaitable[None]]


# ============================================================================
# Phases
# ============================================================================


async def _name(p: _Pass) -> None:
    p.add(system.name_fragment(p.vm, p.caps))


async def _paused(p: _Pass) -> None:
    if p.options.start_paused:
        p.buffer.add_switch("-S")


async def _compat(p: _Pass) -> None:
    p.add(system.compat_fragment(p.vm, p.caps))


async def _master_key(p: _Pass) -> None:
    key_path = p.vm.master_key_path or p.settings.master_key_path(p.vm.name)
    p.add(master_key_fragment(p.caps, Path(key_path)))
    for disk in p.vm.devices_of(Disk):
        res = next((layer.reservations for layer in disk.source.chain() if layer.reservations), None)
        if res is not None and res.managed:
            # One shared helper serves every managed disk.
            p.add(pr_manager_fragment(res, p.caps, p.settings.pr_helper_socket_path(p.vm.name)))
            break


async def _fips(p: _Pass) -> None:
    p.add(system.fips_fragment(p.options, p.caps))


async def _firmware(p: _Pass) -> None:
    p.extend(machine.firmware_fragments(p.vm, p.caps))


async def _machine(p: _Pass) -> None:
    p.add(machine.machine_fragment(p.vm, p.caps))


async def _accel(p: _Pass) -> None:
    p.add(cpu.accel_fragment(p.vm, p.caps))


async def _cpu(p: _Pass) -> None:
    p.add(cpu.cpu_fragment(p.vm, p.caps))


async def _memory(p: _Pass) -> None:
    p.extend(memory.main_ram_fragments(p.vm, p.caps, p.settings))
    p.add(memory.memory_size_fragment(p.vm))
    p.add(memory.memory_lock_fragment(p.vm, p.caps))


async def _smp(p: _Pass) -> None:
    p.add(cpu.smp_fragment(p.vm, p.caps))


async def _iothreads(p: _Pass) -> None:
    p.extend(cpu.iothread_fragments(p.vm, p.caps))


def _on_pci(dev: MemoryDevice) -> bool:
    return dev.info.address_kind == AddressKind.PCI


async def _numa(p: _Pass) -> None:
    p.extend(numa_fragments(p.vm, p.caps, p.settings))
    for dev in p.vm.devices_of(MemoryDevice):
        if not _on_pci(dev):
            p.extend(memory.memory_device_fragments(dev, p.vm, p.caps, p.settings))


async def _uuid(p: _Pass) -> None:
    p.add(system.uuid_fragment(p.vm))


async def _sysinfo(p: _Pass) -> None:
    p.extend(system.sysinfo_fragments(p.vm, p.caps))


async def _defaults(p: _Pass) -> None:
    p.extend(await system.defaults_fragments(p.vm, p.caps, p.options, p.settings, p.tracker))


async def _clock(p: _Pass) -> None:
    p.extend(system.clock_fragments(p.vm, p.caps, p.clock))
    if p.clock.timezone:
        p.buffer.set_env("TZ", p.clock.timezone)


async def _pm(p: _Pass) -> None:
    p.extend(system.pm_fragments(p.vm, p.caps))


async def _boot(p: _Pass) -> None:
    p.extend(system.boot_fragments(p.vm, p.caps))
    p.extend(machine.kernel_fragments(p.vm))


async def _iommu(p: _Pass) -> None:
    for iommu in p.vm.devices_of(Iommu):
        match iommu.model:
            case "intel":
                p.add(controllers.intel_iommu_fragment(iommu, p.vm, p.caps))
            case "virtio":
                p.add(controllers.virtio_iommu_fragment(iommu, p.vm, p.caps))
            case _:
                # smmuv3 is a -machine property
                pass


async def _controllers(p: _Pass) -> None:
    for ctrl in controllers.ordered_controllers(p.vm):
        p.add(controllers.controller_fragment(ctrl, p.vm, p.caps))
    for hub in p.vm.devices_of(Hub):
        p.add(controllers.hub_fragment(hub, p.vm, p.caps))
    # Memory devices on PCI buses must follow the bridges they plug into.
    for dev in p.vm.devices_of(MemoryDevice):
        if _on_pci(dev):
            p.extend(memory.memory_device_fragments(dev, p.vm, p.caps, p.settings))


async def _storage(p: _Pass) -> None:
    for disk in p.vm.devices_of(Disk):
        if is_vhost_user(disk):
            p.attach(await vhost_user_disk_bundle(disk, p.vm, p.caps, p.resolver, p.tracker))
            continue

        def frontend(backend: str | None, disk: Disk = disk) -> Fragment | None:
            return disk_device_fragment(disk, p.vm, p.caps, backend)

        p.attach(p.resolver.disk_bundle(disk, frontend))


async def _filesystems(p: _Pass) -> None:
    for fs in p.vm.devices_of(Filesystem):
        p.extend(await filesystem_fragments(fs, p.vm, p.caps, p.resolver, p.tracker))


async def _network(p: _Pass) -> None:
    for iface in p.vm.devices_of(Interface):
        p.attach(await interface_bundle(iface, p.vm, p.caps, p.resolver, p.tracker))


async def _smartcard(p: _Pass) -> None:
    for card in p.vm.devices_of(Smartcard):
        p.attach(await consoles.smartcard_bundle(card, p.vm, p.caps, p.resolver, p.tracker))


async def _serial(p: _Pass) -> None:
    for serial in p.vm.devices_of(Serial):
        p.attach(await consoles.serial_bundle(serial, p.vm, p.caps, p.resolver, p.tracker))


async def _parallel(p: _Pass) -> None:
    for parallel in p.vm.devices_of(Parallel):
        p.attach(await consoles.parallel_bundle(parallel, p.vm, p.caps, p.resolver, p.tracker))


async def _channels(p: _Pass) -> None:
    for channel in p.vm.devices_of(Channel):
        p.attach(await consoles.channel_bundle(channel, p.vm, p.caps, p.resolver, p.tracker))


async def _console(p: _Pass) -> None:
    for console in p.vm.devices_of(Console):
        p.attach(await consoles.console_bundle(console, p.vm, p.caps, p.resolver, p.tracker))


async def _tpm(p: _Pass) -> None:
    for tpm in p.vm.devices_of(Tpm):
        p.attach(await tpm_bundle(tpm, p.vm, p.caps, p.resolver, p.tracker))


async def _input(p: _Pass) -> None:
    for dev in p.vm.devices_of(Input):
        p.add(peripherals.input_fragment(dev, p.vm, p.caps))


async def _audio(p: _Pass) -> None:
    p.audio = plan_audio(p.vm, p.caps)
    p.extend(p.audio.fragments)
    for name, value in p.audio.env.items():
        p.buffer.set_env(name, value)


async def _graphics(p: _Pass) -> None:
    for gfx in p.vm.devices_of(Graphics):
        p.attach(graphics.graphics_bundle(gfx, p.caps, p.resolver))
        for name, value in graphics.graphics_environment(gfx).items():
            p.buffer.set_env(name, value)


async def _video(p: _Pass) -> None:
    for video in graphics.ordered_videos(p.vm):
        p.add(graphics.video_fragment(video, p.vm, p.caps))


async def _sound(p: _Pass) -> None:
    assert p.audio is not None
    for sound in p.vm.devices_of(Sound):
        p.extend(sound_fragments(sound, p.vm, p.caps, p.audio.mode))


async def _watchdog(p: _Pass) -> None:
    p.extend(peripherals.watchdog_fragments(p.vm, p.caps))


async def _redirdev(p: _Pass) -> None:
    for dev in p.vm.devices_of(Redirdev):
        p.attach(await peripherals.redirdev_bundle(dev, p.vm, p.caps, p.resolver, p.tracker))


async def _hostdev(p: _Pass) -> None:
    for dev in p.vm.devices_of(Hostdev):
        p.extend(hostdev_fragments(dev, p.vm, p.caps))


async def _incoming(p: _Pass) -> None:
    p.add(system.incoming_fragment(p.options, p.caps, p.tracker))


async def _balloon(p: _Pass) -> None:
    for dev in p.vm.devices_of(Memballoon):
        p.add(peripherals.balloon_fragment(dev, p.vm, p.caps))


async def _rng(p: _Pass) -> None:
    for dev in p.vm.devices_of(Rng):
        p.attach(await peripherals.rng_bundle(dev, p.vm, p.caps, p.resolver, p.tracker))


async def _nvram(p: _Pass) -> None:
    for dev in p.vm.devices_of(Nvram):
        p.add(peripherals.nvram_fragment(dev, p.vm, p.caps))


async def _vmcoreinfo(p: _Pass) -> None:
    p.add(peripherals.vmcoreinfo_fragment(p.vm, p.caps))


async def _launch_security(p: _Pass) -> None:
    p.add(peripherals.launch_security_fragment(p.vm, p.caps))


async def _loadvm(p: _Pass) -> None:
    p.add(system.loadvm_fragment(p.options))


async def _sandbox(p: _Pass) -> None:
    p.add(system.sandbox_fragment(p.settings, p.caps))


async def _panic(p: _Pass) -> None:
    for dev in p.vm.devices_of(Panic):
        p.add(peripherals.panic_fragment(dev, p.vm, p.caps))


async def _shmem(p: _Pass) -> None:
    for dev in p.vm.devices_of(Shmem):
        p.attach(await peripherals.shmem_bundle(dev, p.vm, p.caps, p.resolver, p.tracker))


async def _vsock(p: _Pass) -> None:
    for dev in p.vm.devices_of(Vsock):
        p.add(peripherals.vsock_fragment(dev, p.vm, p.caps, p.tracker))


async def _messages(p: _Pass) -> None:
    p.extend(system.message_fragments(p.caps))


PHASES: tuple[tuple[str, Phase], ...] = (
    ("name", _name),
    ("paused", _paused),
    ("compat", _compat),
    ("master-key", _master_key),
    ("fips", _fips),
    ("firmware", _firmware),
    ("machine", _machine),
    ("accel", _accel),
    ("cpu", _cpu),
    ("memory", _memory),
    ("smp", _smp),
    ("iothreads", _iothreads),
    ("numa", _numa),
    ("uuid", _uuid),
    ("sysinfo", _sysinfo),
    ("defaults", _defaults),
    ("clock", _clock),
    ("pm", _pm),
    ("boot", _boot),
    ("iommu", _iommu),
    ("controllers", _controllers),
    ("storage", _storage),
    ("filesystems", _filesystems),
    ("network", _network),
    ("smartcard", _smartcard),
    ("serial", _serial),
    ("parallel", _parallel),
    ("channels", _channels),
    ("console", _console),
    ("tpm", _tpm),
    ("input", _input),
    ("audio", _audio),
    ("graphics", _graphics),
    ("video", _video),
    ("sound", _sound),
    ("watchdog", _watchdog),
    ("redirdev", _redirdev),
    ("hostdev", _hostdev),
    ("incoming", _incoming),
    ("balloon", _balloon),
    ("rng", _rng),
    ("nvram", _nvram),
    ("vmcoreinfo", _vmcoreinfo),
    ("launch-security", _launch_security),
    ("loadvm", _loadvm),
    ("sandbox", _sandbox),
    ("panic", _panic),
    ("shmem", _shmem),
    ("vsock", _vsock),
    ("messages", _messages),
)
"""Emission order. Later phases may reference aliases defined by earlier ones."""


# ============================================================================
# Entry point
# ============================================================================


def _declare_implicit_buses(vm: VmDefinition, buffer: CommandBuffer) -> None:
    """Register aliases of controllers the machine type creates itself."""
    for ctrl in vm.devices_of(Controller):
        if ctrl.info.alias and controllers.is_implicit(ctrl):
            buffer.declare_implicit(ctrl.info.alias)


async def _run_phases(p: _Pass, cancel: asyncio.Event | None) -> None:
    for name, phase in PHASES:
        await asyncio.sleep(0)
        if cancel is not None and cancel.is_set():
            raise SynthesisCancelledError(name)
        p.phase = name
        logger.debug("Synthesis phase", extra={"vm": p.vm.name, "phase": name})
        await phase(p)


async def build_command_line(
    vm: VmDefinition,
    caps: CapabilitySet,
    *,
    broker: ResourceBroker,
    options: SynthesisOptions | None = None,
    settings: Settings | None = None,
    cancel: asyncio.Event | None = None,
) -> ArgumentSequence:
    """Synthesize the complete emulator invocation for `vm`.

    Args:
        vm: Validated VM definition with every address and alias assigned
        caps: Capability set of the target emulator binary
        broker: Performs the OS operations (log files, sockets, device nodes)
        options: Per-pass launch options (paused start, incoming migration, ...)
        settings: Runtime configuration; read from the environment by default
        cancel: Set to abort synthesis at the next phase boundary

    Returns:
        ArgumentSequence with argv, descriptors to pass, environment and
        the clock normalization computed for this pass

    Raises:
        ConfigUnsupportedError: The definition cannot be expressed for `caps`
        InternalError: Alias or allocation invariant violated
        ResourceError: Acquiring a descriptor or socket failed
        SynthesisCancelledError: `cancel` was set or the timeout elapsed
    """
    options = options or SynthesisOptions()
    settings = settings or Settings()
    tracker = ResourceTracker(broker)
    resolver = LinkingResolver(caps, settings.pr_helper_socket_path(vm.name))
    clock = system.compute_clock(vm, options.now or datetime.now(UTC))
    p = _Pass(
        vm=vm,
        caps=caps,
        options=options,
        settings=settings,
        tracker=tracker,
        resolver=resolver,
        clock=clock,
    )
    _declare_implicit_buses(vm, p.buffer)

    timeout = options.timeout_seconds or settings.default_timeout_seconds
    logger.info(
        "Synthesizing command line",
        extra={
            "vm": vm.name,
            "machine": vm.machine,
            "devices": len(vm.devices),
            "version": ".".join(map(str, caps.version)),
        },
    )
    try:
        if timeout is None:
            await _run_phases(p, cancel)
        else:
            try:
                async with asyncio.timeout(timeout):
                    await _run_phases(p, cancel)
            except TimeoutError as e:
                raise SynthesisCancelledError(p.phase, reason="timed out") from e
    except BaseException:
        # Shielded so a cancelled caller still gets its descriptors closed.
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.shield(tracker.rollback())
        raise

    argv = [settings.emulator_binary, *p.buffer.argv()]
    logger.info(
        "Command line synthesized",
        extra={"vm": vm.name, "args": len(argv), "fds": len(tracker.passed_fds())},
    )
    return ArgumentSequence(
        argv=tuple(argv),
        fds=tracker.passed_fds(),
        env=tuple(sorted(p.buffer.env.items())),
        clock=clock,
    )
