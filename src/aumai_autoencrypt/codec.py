"""Canonical JSON encoding shared by cache keys, ciphertext payloads and the CLI.

Bytes are carried as ``{"$binary": "<base64>"}`` and object keys are sorted,
so two equivalent structures always encode to the same text.
"""

from __future__ import annotations

import base64
import json
from typing import Any

__all__ = ["canonical_dumps", "dumps", "loads"]

_BINARY_TAG = "$binary"


def _default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BINARY_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True, exclude_none=True)
    raise TypeError(f"Object of type {type(value).__name__} is not serialisable")


def _object_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and _BINARY_TAG in obj and isinstance(obj[_BINARY_TAG], str):
        return base64.b64decode(obj[_BINARY_TAG])
    return obj


def canonical_dumps(value: Any) -> str:
    """Return an order-insensitive, whitespace-free encoding of *value*."""
    return json.dumps(
        value,
        default=_default,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def dumps(value: Any, indent: int | None = 2) -> str:
    """Human-readable encoding used for files written by the CLI."""
    return json.dumps(value, default=_default, indent=indent, ensure_ascii=False)


def loads(text: str | bytes) -> Any:
    """Decode text produced by :func:`dumps` or :func:`canonical_dumps`."""
    return json.loads(text, object_hook=_object_hook)
