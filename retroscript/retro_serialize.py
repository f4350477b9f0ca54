from __future__ import annotations

import json
from typing import Any, Optional
import collections.abc

import yaml


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        enc = encoding or 'utf-8'
        try:
            return data.decode(enc, errors='replace')
        except LookupError:
            return data.decode('utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _to_builtin(obj: Any) -> Any:
    # Tuples (macro event lists, statement args) become plain lists.
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): _to_builtin(v) for k, v in obj.items()}
    return obj


def detect_format(path: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml'. Uses the file extension first; falls back to
    simple data sniffing if provided.
    """
    p = (path or "").lower()
    if p.endswith('.json'):
        return 'json'
    if p.endswith('.yaml') or p.endswith('.yml'):
        return 'yaml'

    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        # YAML is a superset of JSON, so it is the fallback for anything else.
        return 'yaml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                path: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert text (or bytes) to native Python structures.
    Supported fmt: 'json', 'yaml'. If fmt is None, uses the path extension,
    then sniffing. Returns the raw text when it cannot be parsed.
    """
    text = _norm_text(data)
    f = (fmt or detect_format(path, text))
    if f == 'json':
        try:
            return json.loads(text)
        except ValueError:
            # Declared JSON but written YAML-style
            try:
                return yaml.safe_load(text)
            except yaml.YAMLError:
                return text
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError:
            return text
    return text


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True) -> str:
    """
    Convert a native value into text.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
]
