"""Constants for qemu-argv command synthesis."""

from typing import Final

# ============================================================================
# Unit Conversions
# ============================================================================

KIB: Final[int] = 1024
"""Bytes per KiB. Memory sizes in the VM definition are KiB; backends want bytes."""

KIB_PER_MIB: Final[int] = 1024
"""KiB per MiB. Video RAM fields in the definition are KiB; some devices want MiB."""

VNC_PORT_BASE: Final[int] = 5900
"""VNC display N listens on TCP port 5900 + N."""

# ============================================================================
# Well-known Aliases and Identifiers
# ============================================================================

MASTER_KEY_ALIAS: Final[str] = "masterKey0"
"""Secret object carrying the per-domain master key used to decrypt other secrets."""

MANAGED_PR_MANAGER_ALIAS: Final[str] = "pr-helper0"
"""Alias of the pr-manager-helper object shared by all managed reservations."""

MONITOR_CHARDEV_ALIAS: Final[str] = "charmonitor"
"""Chardev carrying the QMP monitor."""

MONITOR_ALIAS: Final[str] = "monitor"
"""Monitor instance bound to the QMP chardev."""

LAUNCH_SECURITY_ALIAS: Final[str] = "lsec0"
"""Confidential guest support object id referenced from -machine."""

DEFAULT_AUDIO_ALIAS: Final[str] = "audio1"
"""First audio backend id when none is assigned."""

# ============================================================================
# Secure Boot / Sandbox Defaults
# ============================================================================

SANDBOX_ON_OPTIONS: Final[str] = "on,obsolete=deny,elevateprivileges=deny,spawn=deny,resourcecontrol=deny"
"""Seccomp sandbox argument used when the sandbox is enabled."""

# ============================================================================
# Virtio
# ============================================================================

VIRTIO_NET_VECTORS_PER_QUEUE: Final[int] = 2
"""MSI-X vectors per queue pair for multiqueue virtio-net (plus config + control)."""

VIRTIO_NET_EXTRA_VECTORS: Final[int] = 2
"""Config and control virtqueue vectors added on top of per-queue vectors."""

VIRTIOFS_DEFAULT_QUEUE_SIZE: Final[int] = 1024
"""vhost-user-fs request queue size."""

# ============================================================================
# Storage
# ============================================================================

NODE_NAME_PREFIX: Final[str] = "libvirt"
"""Prefix for generated blockdev node names (libvirt-N-storage / libvirt-N-format)."""

LEGACY_DRIVE_ALIAS_PREFIX: Final[str] = "drive-"
"""Prefix for legacy -drive ids derived from the disk alias."""

# ============================================================================
# Misc
# ============================================================================

TPM_PASSTHROUGH_CANCEL_TEMPLATE: Final[str] = "/sys/class/tpm/{name}/device/cancel"
"""sysfs cancel file matching a TPM passthrough device node."""

DEFAULT_PHASE_YIELD_SECONDS: Final[float] = 0
"""Sleep between phases; zero yields to the event loop without delaying."""
