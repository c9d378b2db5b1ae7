"""Per-pass synthesis options.

SynthesisOptions carries the launch-attempt parameters that are not part of
the VM definition itself: whether the guest starts paused, whether this is an
incoming migration or snapshot restore, and the fixed clock used for
normalization.

Example:
    ```python
    from qemu_argv import SynthesisOptions, build_command_line

    options = SynthesisOptions(start_paused=True, incoming="defer")
    result = await build_command_line(vm, caps, broker=broker, options=options)
    ```
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SynthesisOptions(BaseModel):
    """Options for one synthesis pass.

    Attributes:
        start_paused: Emit -S so vCPUs stay stopped until resumed over QMP.
        standalone: Produce a command line without a monitor (for
            export to a plain shell script).
        enable_fips: Host is in FIPS mode; emit -enable-fips when supported.
        incoming: Incoming migration URI, or "defer" for `-incoming defer`.
        incoming_fd: Pre-opened migration stream descriptor; rendered as
            `-incoming fd:N` and passed to the child.
        snapshot: Internal snapshot name to restore via -loadvm.
        monitor_socket: QMP monitor socket path. Defaults to the per-domain
            path from Settings.
        now: Fixed wall clock used for clock normalization. Defaults to the
            current UTC time; tests pin it for determinism.
        timeout_seconds: Overall synthesis timeout. None disables it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    start_paused: bool = False
    standalone: bool = False
    enable_fips: bool = False
    incoming: str | None = None
    incoming_fd: int | None = Field(default=None, ge=0)
    snapshot: str | None = None
    monitor_socket: Path | None = None
    now: datetime | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("incoming")
    @classmethod
    def validate_incoming(cls, v: str | None) -> str | None:
        """Reject empty migration URIs."""
        if v is not None and not v.strip():
            raise ValueError("incoming must be a non-empty URI or 'defer'")
        return v

    @property
    def is_incoming(self) -> bool:
        """True when this pass starts the destination of a migration."""
        return self.incoming is not None or self.incoming_fd is not None
