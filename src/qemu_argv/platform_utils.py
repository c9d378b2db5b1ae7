"""Host platform detection.

Uses psutil's OS constants for platform identification; the architecture
comes from the interpreter's view of the machine.
"""

import platform
from enum import Enum, auto
from functools import cache

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (KVM, security labels, fd passing)."""

    MACOS = auto()
    """macOS (HVF, no security labels)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


class HostArch(Enum):
    """Host CPU architectures with a matching emulator binary."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"
    PPC64 = "ppc64"
    S390X = "s390x"
    UNKNOWN = "unknown"


_MACHINE_ALIASES: dict[str, HostArch] = {
    "x86_64": HostArch.X86_64,
    "amd64": HostArch.X86_64,
    "aarch64": HostArch.AARCH64,
    "arm64": HostArch.AARCH64,
    "ppc64le": HostArch.PPC64,
    "ppc64": HostArch.PPC64,
    "s390x": HostArch.S390X,
}


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    """Detect current host CPU architecture."""
    return _MACHINE_ALIASES.get(platform.machine().lower(), HostArch.UNKNOWN)


def default_emulator_binary(arch: HostArch | None = None) -> str:
    """Name of the system emulator binary for `arch` (host arch by default)."""
    arch = arch or detect_host_arch()
    if arch == HostArch.UNKNOWN:
        arch = HostArch.X86_64
    return f"qemu-system-{arch.value}"
