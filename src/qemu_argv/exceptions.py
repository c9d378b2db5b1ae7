"""Exception hierarchy for qemu-argv.

All exceptions inherit from SynthesisError.

Hierarchy:
    SynthesisError (base)
    ├── ConfigUnsupportedError   ← no valid expression for this capability set
    ├── InternalError            ← upstream invariant violated (allocator, aliases)
    ├── ResourceError            ← OS failure acquiring a descriptor or socket
    ├── EnumRangeError           ← unhandled tagged-union variant
    └── SynthesisCancelledError  ← cancellation or timeout observed between phases

Any of these aborts the whole synthesis pass: the caller receives either a
complete argument sequence or exactly one of these errors.

Short aliases:
    ConfigUnsupported = ConfigUnsupportedError
"""

from __future__ import annotations

from typing import Any


class SynthesisError(Exception):
    """Base exception for all synthesis errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ConfigUnsupportedError(SynthesisError):
    """Requested feature or variant cannot be expressed for the target binary.

    Raised when a configuration asks for something the capability set has
    no syntax for (e.g. a non-transitional virtio model on a binary that has
    neither the transitional device names nor disable-legacy), or when a
    device is attached to an address kind its builder does not accept.
    Never retried.
    """


class InternalError(SynthesisError):
    """An invariant guaranteed by validation or address allocation is violated.

    Examples: a PCI address referring to a bus index with no controller, a
    controller without an alias, a property tree without its type key.
    Treated as a defect signal.
    """


class ResourceError(SynthesisError):
    """Acquiring a local OS resource failed.

    Raised when opening a log file or device node, or creating a listening
    UNIX socket fails. Triggers rollback of every resource already acquired
    in the same pass.

    Attributes:
        os_error: The underlying OSError (if any)
        path: Path involved in the failed operation (if any)
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        os_error: OSError | None = None,
        path: str | None = None,
    ):
        ctx = context or {}
        if os_error is not None:
            ctx.setdefault("errno", os_error.errno)
            ctx.setdefault("strerror", os_error.strerror)
        if path is not None:
            ctx.setdefault("path", path)
        super().__init__(message, ctx)
        self.os_error = os_error
        self.path = path


class EnumRangeError(SynthesisError):
    """A tagged-union variant reached a dispatch that does not handle it.

    Programming-contract violation; unreachable in a complete implementation.
    """

    @classmethod
    def for_value(cls, what: str, value: object) -> EnumRangeError:
        """Build the error for an unhandled `value` of the tagged union `what`."""
        return cls(
            f"unexpected {what} value '{value}'",
            context={"what": what, "value": str(value)},
        )


class SynthesisCancelledError(SynthesisError):
    """Synthesis was cancelled by the caller, or timed out, between two phases."""

    def __init__(self, phase: str, reason: str = "cancelled"):
        super().__init__(
            f"command synthesis {reason} before phase '{phase}'",
            context={"phase": phase, "reason": reason},
        )
        self.phase = phase
        self.reason = reason


ConfigUnsupported = ConfigUnsupportedError
