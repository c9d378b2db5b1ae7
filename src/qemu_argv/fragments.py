"""Fragments, the command buffer and the terminal argument sequence."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from qemu_argv.capabilities import CapabilitySet
from qemu_argv.emitter import TreeKind, emit, emit_flat
from qemu_argv.exceptions import InternalError
from qemu_argv.props import PropTree


@dataclass(frozen=True, slots=True)
class Fragment:
    """One emitted unit: a flag, its optional value and alias bookkeeping.

    Attributes:
        flag: Option name, e.g. "-device".
        value: Option argument, or None for bare switches like "-S".
        defines: Aliases this fragment introduces (its id / node-name).
        references: Aliases this fragment consumes (bus=, drive=, ...).
    """

    flag: str
    value: str | None = None
    defines: tuple[str, ...] = ()
    references: tuple[str, ...] = ()

    @classmethod
    def from_tree(
        cls,
        tree: PropTree,
        caps: CapabilitySet,
        kind: TreeKind,
        *,
        references: Iterable[str | None] = (),
    ) -> Fragment:
        ident = tree.identity()
        refs = [r for r in references if r]
        refs.extend(r for r in tree.references() if r not in refs)
        return cls(
            flag=kind.flag,
            value=emit(tree, caps, kind),
            defines=(ident,) if ident else (),
            references=tuple(refs),
        )

    @classmethod
    def option(cls, flag: str, tree: PropTree, *, references: Iterable[str | None] = ()) -> Fragment:
        """Flat-only option (-machine, -smp, -fsdev, ...) rendered from `tree`."""
        ident = tree.identity()
        refs = [r for r in references if r]
        refs.extend(r for r in tree.references() if r not in refs)
        return cls(
            flag=flag,
            value=emit_flat(tree, TreeKind.OPTION),
            defines=(ident,) if ident else (),
            references=tuple(refs),
        )

    def tokens(self) -> list[str]:
        return [self.flag] if self.value is None else [self.flag, self.value]


class FdPolicy(StrEnum):
    """What happens to a passed descriptor in the parent after spawn."""

    CLOSE_PARENT = "close-parent"
    """Owned by synthesis: closed in the parent once the child holds it."""

    KEEP_PARENT = "keep-parent"
    """Owned by the caller: inherited by the child, left open in the parent."""


class PassedFd(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    fd: int
    policy: FdPolicy


class ClockNormalization(BaseModel):
    """Clock basis computed once per pass instead of mutating the definition.

    Attributes:
        adjustment: Guest RTC offset from host UTC in seconds.
        rtc_base: Value rendered after -rtc base=.
        timezone: TZ environment value, when the offset is a named zone.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    adjustment: int = 0
    rtc_base: str = "utc"
    timezone: str | None = None


class ArgumentSequence(BaseModel):
    """Terminal result of a synthesis pass. Nothing downstream mutates it."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    argv: tuple[str, ...]
    fds: tuple[PassedFd, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    clock: ClockNormalization | None = None


@dataclass
class CommandBuffer:
    """Ordered fragment accumulator enforcing alias-before-use.

    Implicit aliases (buses the machine type creates on its own) are
    declared without emitting anything so later references resolve.
    """

    fragments: list[Fragment] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    _defined: dict[str, int] = field(default_factory=dict)

    def is_defined(self, alias: str) -> bool:
        return alias in self._defined

    def declare_implicit(self, alias: str) -> None:
        self._defined.setdefault(alias, -1)

    def add(self, fragment: Fragment) -> None:
        self.commit([fragment])

    def add_switch(self, flag: str, value: str | None = None) -> None:
        self.commit([Fragment(flag, value)])

    def commit(self, fragments: Iterable[Fragment]) -> None:
        """Append `fragments` atomically after checking their references.

        References may point at aliases defined earlier in the buffer or
        earlier in the same batch. On failure nothing is appended.
        """
        batch = list(fragments)
        pending: dict[str, int] = {}
        position = len(self.fragments)
        for offset, fragment in enumerate(batch):
            for ref in fragment.references:
                if ref not in self._defined and ref not in pending:
                    raise InternalError(
                        f"alias '{ref}' referenced by {fragment.flag} before it is defined",
                        context={"alias": ref, "flag": fragment.flag, "value": fragment.value},
                    )
            for alias in fragment.defines:
                if alias in pending or self._defined.get(alias, -1) >= 0:
                    raise InternalError(
                        f"alias '{alias}' defined twice",
                        context={"alias": alias, "flag": fragment.flag},
                    )
                pending[alias] = position + offset
        self.fragments.extend(batch)
        self._defined.update(pending)

    def set_env(self, name: str, value: str) -> None:
        self.env[name] = value

    def argv(self) -> list[str]:
        out: list[str] = []
        for fragment in self.fragments:
            out.extend(fragment.tokens())
        return out
