"""qemu-argv: emulator command-line synthesis for resolved VM definitions.

Turns a fully resolved VM definition (addresses and aliases assigned) plus
the capability set of the target emulator binary into the exact argument
vector, inherited descriptors and environment the emulator is launched with.
Dependency order between backends and the devices consuming them is
enforced while the command line is built.

Quick Start:
    ```python
    from qemu_argv import DryRunResourceBroker, all_capabilities, build_command_line, load_definition

    vm = await load_definition(Path("vm.json"))
    result = await build_command_line(vm, all_capabilities(), broker=DryRunResourceBroker())
    print(result.argv)
    ```

Against an older binary:
    ```python
    from qemu_argv import Cap, all_capabilities

    caps = all_capabilities((4, 2, 0)).without_flags(Cap.BLOCKDEV, Cap.OBJECT_JSON)
    result = await build_command_line(vm, caps, broker=broker)  # -drive, flat -object
    ```

Live launch (real log files, listening sockets and device nodes):
    ```python
    from qemu_argv import LocalResourceBroker, SynthesisOptions

    options = SynthesisOptions(start_paused=True)
    result = await build_command_line(vm, caps, broker=LocalResourceBroker(), options=options)
    ```

Requirements:
    - Python 3.12+
"""

from qemu_argv.assembler import PHASES, build_command_line
from qemu_argv.capabilities import Cap, CapabilitySet, all_capabilities, load_capabilities
from qemu_argv.config import SynthesisOptions
from qemu_argv.domain import VmDefinition, load_definition
from qemu_argv.emitter import TreeKind, emit, emit_flat
from qemu_argv.exceptions import (
    ConfigUnsupported,
    ConfigUnsupportedError,
    EnumRangeError,
    InternalError,
    ResourceError,
    SynthesisCancelledError,
    SynthesisError,
)
from qemu_argv.fragments import ArgumentSequence, ClockNormalization, CommandBuffer, FdPolicy, Fragment, PassedFd
from qemu_argv.props import Bitmap, PropRef, PropTree
from qemu_argv.resources import DryRunResourceBroker, LocalResourceBroker, ResourceBroker, ResourceTracker
from qemu_argv.settings import Settings

__all__ = [
    "PHASES",
    "ArgumentSequence",
    "Bitmap",
    "Cap",
    "CapabilitySet",
    "ClockNormalization",
    "CommandBuffer",
    "ConfigUnsupported",
    "ConfigUnsupportedError",
    "DryRunResourceBroker",
    "EnumRangeError",
    "FdPolicy",
    "Fragment",
    "InternalError",
    "LocalResourceBroker",
    "PassedFd",
    "PropRef",
    "PropTree",
    "ResourceBroker",
    "ResourceError",
    "ResourceTracker",
    "Settings",
    "SynthesisCancelledError",
    "SynthesisError",
    "SynthesisOptions",
    "TreeKind",
    "VmDefinition",
    "all_capabilities",
    "build_command_line",
    "emit",
    "emit_flat",
    "load_capabilities",
    "load_definition",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qemu-argv")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
