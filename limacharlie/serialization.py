# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Structural JSON/YAML normalization.

Both decoders feed the same walk so that the in-memory shape is identical
whichever format the data came from:

- maps are string-keyed (a YAML map with any other key type is an error)
- numbers without a fractional part are ints within 64-bit range,
  numbers with one are floats
- lists are plain Python lists (YAML sequences and tuples included)
- scalars are bool, str, None, int or float
- YAML timestamps become their ISO-8601 text

Errors carry the path of the offending node, e.g. "$.rules.r1.detect[2]".

Usage:
    from limacharlie.serialization import loads_json, loads_yaml, canonical_json

    tree = loads_json(b'{"oid": "...", "count": 18446744073709551615}')
    assert isinstance(tree["count"], int)

    conf = loads_yaml(open("org.yaml").read())
    if canonical_json(conf["rules"]) == canonical_json(remote_rules):
        ...
"""

import datetime
import json
import math
import unicodedata
from typing import Any

import yaml

from .errors import DecodeError

# A JSON tree after normalization
JsonValue = dict | list | str | int | float | bool | None

INT64_MIN = -(2 ** 63)
UINT64_MAX = 2 ** 64 - 1


def normalize(value: Any, path: str = "$") -> JsonValue:
    """
    Recursively coerce a decoded tree into the canonical in-memory shape.

    Raises:
        DecodeError: on non-string map keys, out-of-range integers or
            values that have no JSON equivalent
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        # Negative values must fit a signed 64-bit slot, others an unsigned one.
        if value < INT64_MIN or value > UINT64_MAX:
            raise DecodeError(f"integer out of 64-bit range: {value}", path)
        return value
    if isinstance(value, float):
        return value
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise DecodeError(f"unsupported key type: {type(k).__name__} ({k!r})", path)
            out[k] = normalize(v, f"{path}.{k}")
        return out
    if isinstance(value, (list, tuple)):
        return [normalize(v, f"{path}[{i}]") for i, v in enumerate(value)]
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    raise DecodeError(f"unsupported value type: {type(value).__name__}", path)


def loads_json(data: bytes | str) -> JsonValue:
    """Decode JSON text and normalize it."""
    try:
        decoded = json.loads(data)
    except (ValueError, UnicodeDecodeError) as e:
        raise DecodeError(f"invalid json: {e}") from e
    return normalize(decoded)


def loads_yaml(data: bytes | str) -> JsonValue:
    """Decode YAML text with safe_load and normalize it."""
    try:
        decoded = yaml.safe_load(data)
    except yaml.YAMLError as e:
        detail = " ".join(str(e).split())
        raise DecodeError(f"invalid yaml: {detail}") from e
    return normalize(decoded)


def dumps_yaml(value: JsonValue) -> str:
    """Render a normalized tree as block-style YAML, keys in insertion order."""
    return yaml.safe_dump(value, sort_keys=False, allow_unicode=True, default_flow_style=False)


def _nfc(obj: Any) -> Any:
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, dict):
        return {unicodedata.normalize("NFC", k) if isinstance(k, str) else k: _nfc(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_nfc(v) for v in obj]
    if isinstance(obj, float) and math.isfinite(obj) and obj.is_integer():
        # 1.0 and 1 compare equal remotely once the server stores them.
        return int(obj)
    return obj


def canonical_json(obj: Any) -> str:
    """
    Deterministic JSON text used for equality checks.

    Keys are sorted, whitespace removed and strings NFC-normalized, so two
    structurally equal trees always render identically regardless of key
    order or which decoder produced them.

    Example:
        >>> canonical_json({"b": 1, "a": [1.0, "x"]})
        '{"a":[1,"x"],"b":1}'
    """
    return json.dumps(_nfc(obj), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def dumps_json(obj: Any) -> str:
    """Compact JSON for request bodies and form fields."""
    return json.dumps(obj, separators=(",", ":"))
