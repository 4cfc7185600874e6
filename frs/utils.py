# FILE: frs/utils.py
from __future__ import annotations

import hashlib
import json
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

# ---------------------------------------------------------------------------
# JSON sanitization helpers
# ---------------------------------------------------------------------------

_SANITIZE_MAX_DEPTH = 8
_SANITIZE_MAX_LIST_LEN = 512
_SANITIZE_MAX_STR_LEN = 2048


def sanitize_floats(obj: Any, *, default: float = 0.0, _depth: int = 0) -> Any:
    """
    Recursively replace NaN / +/-inf floats with `default`.

    Mappings and sequences are walked up to `_SANITIZE_MAX_DEPTH`; other
    values are returned unchanged.
    """
    if _depth > _SANITIZE_MAX_DEPTH:
        return obj

    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return float(default)
        return obj

    if isinstance(obj, Mapping):
        return {k: sanitize_floats(v, default=default, _depth=_depth + 1) for k, v in obj.items()}

    if isinstance(obj, (list, tuple)):
        seq = [sanitize_floats(x, default=default, _depth=_depth + 1) for x in obj]
        return tuple(seq) if isinstance(obj, tuple) else seq

    return obj


def prune_large_values(
    obj: Any,
    *,
    max_depth: int = _SANITIZE_MAX_DEPTH,
    max_list_len: int = _SANITIZE_MAX_LIST_LEN,
    max_str_len: int = _SANITIZE_MAX_STR_LEN,
    _depth: int = 0,
) -> Any:
    """
    Recursively prune overly large structures to keep logs and
    `last_error` diagnostics compact.

      - Strings longer than `max_str_len` are truncated and suffixed with "…".
      - Lists / tuples longer than `max_list_len` are truncated.
      - Branches deeper than `max_depth` become a small marker.
    """
    if _depth > max_depth:
        return {"_truncated": True, "_depth": _depth}

    if isinstance(obj, str):
        if len(obj) > max_str_len:
            return obj[: max_str_len - 1] + "…"
        return obj

    if isinstance(obj, (int, float, bool)) or obj is None:
        return obj

    if isinstance(obj, (bytes, bytearray)):
        return "0x" + bytes(obj[:max_str_len]).hex()

    if isinstance(obj, Mapping):
        out: Dict[Any, Any] = {}
        for k, v in obj.items():
            out[str(k)] = prune_large_values(
                v,
                max_depth=max_depth,
                max_list_len=max_list_len,
                max_str_len=max_str_len,
                _depth=_depth + 1,
            )
        return out

    if isinstance(obj, (list, tuple)):
        seq = list(obj)[:max_list_len]
        return [
            prune_large_values(
                x,
                max_depth=max_depth,
                max_list_len=max_list_len,
                max_str_len=max_str_len,
                _depth=_depth + 1,
            )
            for x in seq
        ]

    return str(obj)


# ---------------------------------------------------------------------------
# Canonical JSON + hashing helpers
# ---------------------------------------------------------------------------


def canonical_json_dumps(obj: Any, *, ensure_ascii: bool = False) -> str:
    """
    Serialize `obj` to a canonical (sorted, compact) JSON string.

    NaN/Inf are sanitized and large structures pruned first, so the output
    is always valid JSON and bounded in size.
    """
    data = prune_large_values(sanitize_floats(obj))
    return json.dumps(
        data,
        ensure_ascii=ensure_ascii,
        sort_keys=True,
        separators=(",", ":"),
    )


def blake2s_hex(
    data: Any,
    *,
    digest_size: int = 16,
    canonical: bool = True,
    domain: Optional[str] = None,
) -> str:
    """
    Compute a Blake2s hex digest for `data`.

    canonical=True serializes via `canonical_json_dumps` first; otherwise
    `data` is hashed as raw bytes / str. `domain` is mixed in as a prefixed
    tag for domain separation.
    """
    if digest_size < 1 or digest_size > 32:
        raise ValueError("digest_size must be in [1, 32] bytes for blake2s.")

    h = hashlib.blake2s(digest_size=digest_size)
    if domain:
        h.update(b"domain:")
        h.update(domain.encode("utf-8", errors="ignore"))
        h.update(b"\x00")

    if canonical:
        h.update(canonical_json_dumps(data).encode("utf-8", errors="ignore"))
    elif isinstance(data, (bytes, bytearray)):
        h.update(data)
    else:
        h.update(str(data).encode("utf-8", errors="ignore"))
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Chain value helpers
# ---------------------------------------------------------------------------


def uint_str(value: Any) -> str:
    """
    Render an on-chain integer as a decimal string.

    uint256 values do not fit SQLite INTEGER, so they are stored as text.
    Accepts ints, decimal strings and 0x-prefixed hex strings.
    """
    if isinstance(value, bool):
        raise ValueError("bool is not a chain integer")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"negative chain integer: {value}")
        return str(value)
    if isinstance(value, str):
        v = value.strip()
        if v.lower().startswith("0x"):
            return str(int(v, 16))
        if v.isdigit():
            return str(int(v))
    raise ValueError(f"not a chain integer: {value!r}")


def hex_str(value: Any) -> Optional[str]:
    """Normalize bytes / HexBytes / str into a 0x-prefixed hex string."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    s = str(value)
    return s if s.startswith("0x") else "0x" + s


def utc_now_iso() -> str:
    # RFC3339, millisecond precision, UTC Z
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def unix_now() -> int:
    return int(time.time())


__all__ = [
    "sanitize_floats",
    "prune_large_values",
    "canonical_json_dumps",
    "blake2s_hex",
    "uint_str",
    "hex_str",
    "utc_now_iso",
    "unix_now",
]
