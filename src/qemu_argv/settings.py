"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from qemu_argv.platform_utils import default_emulator_binary


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with QEMU_ARGV_ prefix.
    Example: QEMU_ARGV_SECCOMP_SANDBOX=0
    """

    model_config = SettingsConfigDict(
        env_prefix="QEMU_ARGV_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Emulator
    emulator_binary: str = Field(default_factory=default_emulator_binary)

    # Per-domain state: monitor socket, master key, chardev sockets
    state_dir: Path = Path("/var/lib/qemu-argv")

    # Memory backing
    memory_backing_dir: Path = Path("/var/lib/qemu-argv/ram")
    hugetlbfs_mount: Path = Path("/dev/hugepages")

    # Seccomp sandbox policy: -1 leaves the emulator default, 0 disables, 1 enables
    seccomp_sandbox: int = Field(default=-1, ge=-1, le=1)

    # Whole-pass timeout when SynthesisOptions does not set one
    default_timeout_seconds: float | None = None

    def domain_state_dir(self, name: str) -> Path:
        """Per-domain directory under state_dir."""
        return self.state_dir / "domain" / name

    def monitor_socket_path(self, name: str) -> Path:
        """Default QMP monitor socket path for domain `name`."""
        return self.domain_state_dir(name) / "monitor.sock"

    def master_key_path(self, name: str) -> Path:
        """Default master key file path for domain `name`."""
        return self.domain_state_dir(name) / "master-key.aes"

    def pr_helper_socket_path(self, name: str) -> Path:
        """Socket of the managed persistent reservation helper for domain `name`."""
        return self.domain_state_dir(name) / "pr-helper0.sock"
