"""Ordered property trees describing backend objects and devices.

A PropTree is built by the fragment builders and rendered by the emitter in
either the structured JSON form or the legacy flat `key=value` form. Keys
keep insertion order because the legacy grammar is positional for the
identifying keys.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any, Union

from qemu_argv.exceptions import InternalError


@dataclass(frozen=True, slots=True)
class Bitmap:
    """Set of non-negative integers rendered as ranges ("0-3", "5")."""

    bits: frozenset[int]

    @classmethod
    def of(cls, values: Iterable[int]) -> Bitmap:
        bits = frozenset(values)
        if any(b < 0 for b in bits):
            raise InternalError("bitmap members must be non-negative", context={"bits": sorted(bits)})
        return cls(bits)

    @classmethod
    def parse(cls, text: str) -> Bitmap:
        """Parse the "0-3,^2,5" cpuset syntax."""
        include: set[int] = set()
        exclude: set[int] = set()
        for part in filter(None, (p.strip() for p in text.split(","))):
            target = exclude if part.startswith("^") else include
            part = part.lstrip("^")
            if "-" in part:
                lo, hi = part.split("-", 1)
                target.update(range(int(lo), int(hi) + 1))
            else:
                target.add(int(part))
        return cls.of(include - exclude)

    def ranges(self) -> list[tuple[int, int]]:
        """Maximal runs of consecutive members, ascending."""
        out: list[tuple[int, int]] = []
        for b in sorted(self.bits):
            if out and out[-1][1] == b - 1:
                out[-1] = (out[-1][0], b)
            else:
                out.append((b, b))
        return out

    def range_strings(self) -> list[str]:
        return [str(lo) if lo == hi else f"{lo}-{hi}" for lo, hi in self.ranges()]

    def format(self) -> str:
        return ",".join(self.range_strings())

    def __bool__(self) -> bool:
        return bool(self.bits)


@dataclass(frozen=True, slots=True)
class PropRef:
    """Reference to another object, rendered as that object's id."""

    alias: str

    @classmethod
    def to(cls, tree: PropTree) -> PropRef:
        ident = tree.identity()
        if ident is None:
            raise InternalError("cannot reference a property tree without an id", context={"keys": tree.keys()})
        return cls(ident)


class JsonNull:
    """Explicit JSON null (e.g. "backing": null); distinct from an absent key."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "JSON_NULL"


JSON_NULL = JsonNull()

PropValue = Union[str, int, bool, "PropTree", list[Any], Bitmap, PropRef, JsonNull]

_IDENTITY_KEYS = ("id", "node-name")


class PropTree:
    """Ordered key -> typed value mapping.

    Values are str, int, bool, nested PropTree, lists (of scalars or trees),
    Bitmap or PropRef. Adding a None value is a no-op so optional settings
    can be passed straight through.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[tuple[str, PropValue | None]] = ()) -> None:
        self._items: dict[str, PropValue] = {}
        for key, value in items:
            self.add(key, value)

    # Identifying-key constructors

    @classmethod
    def object(cls, qom_type: str, ident: str) -> PropTree:
        return cls([("qom-type", qom_type), ("id", ident)])

    @classmethod
    def device(cls, driver: str) -> PropTree:
        return cls([("driver", driver)])

    @classmethod
    def netdev(cls, netdev_type: str, ident: str) -> PropTree:
        return cls([("type", netdev_type), ("id", ident)])

    @classmethod
    def blockdev(cls, driver: str, node_name: str | None = None) -> PropTree:
        return cls([("driver", driver), ("node-name", node_name)])

    @classmethod
    def audiodev(cls, driver: str, ident: str) -> PropTree:
        return cls([("driver", driver), ("id", ident)])

    @classmethod
    def chardev(cls, backend: str, ident: str) -> PropTree:
        return cls([("backend", backend), ("id", ident)])

    # Mutation

    def add(self, key: str, value: PropValue | None) -> PropTree:
        """Append `key`; None values are skipped. Returns self for chaining."""
        if value is None:
            return self
        if key in self._items:
            raise InternalError(f"duplicate property '{key}'", context={"key": key})
        if isinstance(value, tuple):
            value = list(value)
        self._items[key] = value
        return self

    def add_if(self, condition: bool, key: str, value: PropValue | None) -> PropTree:
        if condition:
            self.add(key, value)
        return self

    def set(self, key: str, value: PropValue) -> PropTree:
        """Replace an existing key in place, or append it."""
        self._items[key] = value
        return self

    def update(self, other: PropTree | Iterable[tuple[str, PropValue | None]]) -> PropTree:
        for key, value in other.items() if isinstance(other, PropTree) else other:
            self.add(key, value)
        return self

    def remove(self, key: str) -> PropValue | None:
        return self._items.pop(key, None)

    def copy(self) -> PropTree:
        return PropTree(self._items.items())

    # Access

    def get(self, key: str, default: Any = None) -> Any:
        return self._items.get(key, default)

    def keys(self) -> list[str]:
        return list(self._items)

    def items(self) -> list[tuple[str, PropValue]]:
        return list(self._items.items())

    def identity(self) -> str | None:
        """Value of the id (or node-name) key, if present."""
        for key in _IDENTITY_KEYS:
            value = self._items.get(key)
            if isinstance(value, str):
                return value
        return None

    def references(self) -> list[str]:
        """Aliases of every PropRef in the tree, depth first, in order."""
        out: list[str] = []
        for value in self._items.values():
            _collect_refs(value, out)
        return out

    def to_json_value(self) -> dict[str, Any]:
        """Plain dict for JSON encoding; refs become ids, bitmaps lists."""
        return {key: _json_value(value) for key, value in self._items.items()}

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PropTree):
            return NotImplemented
        return list(self._items.items()) == list(other._items.items())

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"PropTree({self.items()!r})"


def _json_value(value: PropValue) -> Any:
    if isinstance(value, PropTree):
        return value.to_json_value()
    if isinstance(value, PropRef):
        return value.alias
    if isinstance(value, Bitmap):
        return sorted(value.bits)
    if isinstance(value, JsonNull):
        return None
    if isinstance(value, list):
        return [_json_value(v) for v in value]
    return value


def _collect_refs(value: PropValue, out: list[str]) -> None:
    if isinstance(value, PropRef):
        out.append(value.alias)
    elif isinstance(value, PropTree):
        out.extend(value.references())
    elif isinstance(value, list):
        for item in value:
            _collect_refs(item, out)
