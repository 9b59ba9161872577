"""Deterministic JSON encoding for signed license data.

The signer signs exactly these bytes and the plugin reconstructs them to
verify, so the output must not depend on how a dict was built:

- object keys sorted at every nesting level
- arrays keep their order
- compact separators, no whitespace
- UTF-8, non-ASCII characters emitted as-is
- one representation per number (``repr`` for floats, decimal for ints)
"""

from __future__ import annotations

import json
import math
import unicodedata
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from fedlicense.errors import CanonicalizationError


def _normalize_key(key: Any, where: str) -> str:
    if isinstance(key, bool) or not isinstance(key, (str, int)):
        raise CanonicalizationError(f"Unsupported key type {type(key).__name__} at {where}")
    return str(key)


def _normalize(value: Any, where: str = "$") -> Any:
    """Convert `value` to plain JSON types, rejecting anything ambiguous."""
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")

    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise CanonicalizationError(f"Non-finite number at {where}: {value!r}")
        return value

    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        seen: dict[str, str] = {}
        for raw_key, item in value.items():
            key = _normalize_key(raw_key, where)
            folded = unicodedata.normalize("NFC", key)
            if folded in seen:
                raise CanonicalizationError(
                    f"Keys {seen[folded]!r} and {key!r} collide at {where}"
                )
            seen[folded] = key
            out[key] = _normalize(item, f"{where}.{key}")
        return out

    if isinstance(value, (list, tuple)):
        return [_normalize(item, f"{where}[{i}]") for i, item in enumerate(value)]

    raise CanonicalizationError(f"Unsupported type {type(value).__name__} at {where}")


def canonicalize(record: Any) -> bytes:
    """Render `record` as canonical JSON bytes."""
    normalized = _normalize(record)
    text = json.dumps(
        normalized,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )
    return text.encode("utf-8")
