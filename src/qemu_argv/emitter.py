"""Structured-object emitter.

Renders a PropTree either as compact JSON (when the target binary accepts
JSON for that option) or as the legacy flat form:

    memory-backend-file,id=ram-node0,mem-path=/dev/hugepages,size=1073741824

Legacy rules: the type key is a bare leading token, remaining keys follow in
tree order as key=value; booleans are on/off; nested trees flatten into
dotted keys; scalar lists are colon-joined; lists of trees are numbered
(key.0.x=...); bitmaps become one key=range pair per run; references render
as the referenced id; every string value has its commas doubled.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from qemu_argv.capabilities import Cap, CapabilitySet
from qemu_argv.exceptions import InternalError
from qemu_argv.props import Bitmap, JsonNull, PropRef, PropTree, PropValue


@dataclass(frozen=True, slots=True)
class _KindSpec:
    flag: str
    type_key: str | None
    type_required: bool
    json_cap: Cap | None = None
    json_only: bool = False
    flat_only: bool = False


class TreeKind(Enum):
    """Which option a tree renders for; names its type key and JSON gate."""

    OBJECT = _KindSpec("-object", "qom-type", True, json_cap=Cap.OBJECT_JSON)
    DEVICE = _KindSpec("-device", "driver", True, json_cap=Cap.DEVICE_JSON)
    NETDEV = _KindSpec("-netdev", "type", True, json_cap=Cap.NETDEV_JSON)
    BLOCKDEV = _KindSpec("-blockdev", "driver", True, json_only=True)
    AUDIODEV = _KindSpec("-audiodev", "driver", True, json_cap=Cap.AUDIODEV_JSON)
    CHARDEV = _KindSpec("-chardev", "backend", True, flat_only=True)
    DRIVE = _KindSpec("-drive", None, False, flat_only=True)
    OPTION = _KindSpec("", "type", False, flat_only=True)

    @property
    def flag(self) -> str:
        return self.value.flag


def escape_commas(text: str) -> str:
    """Double every comma so the value survives the flat option parser."""
    return text.replace(",", ",,")


def split_escaped(text: str) -> list[str]:
    """Split a flat option string on single commas, undoing escape_commas.

    Doubled commas are consumed greedily left to right as a literal comma.
    """
    parts: list[str] = []
    current: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == ",":
            if i + 1 < len(text) and text[i + 1] == ",":
                current.append(",")
                i += 2
                continue
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    parts.append("".join(current))
    return parts


def flat_join(parts: Iterable[str]) -> str:
    """Join already-escaped option items with commas, skipping empty ones."""
    return ",".join(p for p in parts if p)


def format_scalar(value: str | int | bool) -> str:
    """Legacy text of a scalar value (escaped)."""
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, int):
        return str(value)
    return escape_commas(value)


def _flatten(key: str, value: PropValue) -> list[str]:
    if isinstance(value, PropTree):
        out: list[str] = []
        for sub_key, sub_value in value.items():
            out.extend(_flatten(f"{key}.{sub_key}", sub_value))
        return out
    if isinstance(value, PropRef):
        return [f"{key}={escape_commas(value.alias)}"]
    if isinstance(value, Bitmap):
        return [f"{key}={r}" for r in value.range_strings()]
    if isinstance(value, JsonNull):
        return [f"{key}="]
    if isinstance(value, list):
        if not value:
            return []
        if all(isinstance(v, PropTree) for v in value):
            out = []
            for index, item in enumerate(value):
                out.extend(_flatten(f"{key}.{index}", item))
            return out
        return [f"{key}=" + ":".join(format_scalar(_scalar(v)) for v in value)]
    return [f"{key}={format_scalar(value)}"]


def _scalar(value: PropValue) -> str | int | bool:
    if isinstance(value, PropRef):
        return value.alias
    if isinstance(value, str | int | bool):
        return value
    raise InternalError("mixed list values cannot be flattened", context={"value": repr(value)})


def emit_flat(tree: PropTree, kind: TreeKind = TreeKind.OPTION) -> str:
    """Legacy flat rendering regardless of capabilities."""
    layout = kind.value
    parts: list[str] = []
    type_key = layout.type_key
    if type_key is not None:
        type_value = tree.get(type_key)
        if type_value is None:
            if layout.type_required:
                raise InternalError(
                    f"property tree for {layout.flag} is missing its '{type_key}' key",
                    context={"kind": kind.name, "keys": tree.keys()},
                )
        else:
            parts.append(format_scalar(type_value))
    for key, value in tree.items():
        if key == type_key:
            continue
        parts.extend(_flatten(key, value))
    return flat_join(parts)


def emit_json(tree: PropTree, kind: TreeKind) -> str:
    """Compact JSON rendering preserving key order."""
    type_key = kind.value.type_key
    if type_key is not None and kind.value.type_required and type_key not in tree:
        raise InternalError(
            f"property tree for {kind.flag} is missing its '{type_key}' key",
            context={"kind": kind.name, "keys": tree.keys()},
        )
    return json.dumps(tree.to_json_value(), separators=(",", ":"))


def uses_json(caps: CapabilitySet, kind: TreeKind) -> bool:
    """Whether `kind` renders as JSON for this capability set."""
    layout = kind.value
    if layout.flat_only:
        return False
    if layout.json_only:
        return True
    return layout.json_cap is not None and caps.has(layout.json_cap)


def emit(tree: PropTree, caps: CapabilitySet, kind: TreeKind) -> str:
    """Render `tree` for the option `kind` in the form `caps` selects."""
    if uses_json(caps, kind):
        return emit_json(tree, kind)
    return emit_flat(tree, kind)
