"""
Engine configuration.

Values are layered: dataclass defaults, then an optional YAML/JSON file
(the `path` argument or the RETRO_CONFIG environment variable), then the
RETRO_TIMEOUT_MS, RETRO_MAX_LOOP_ITERS and RETRO_DEBUG environment variables.
"""
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from retroscript.retro_serialize import deserialize


@dataclass
class EngineConfig:
    timeout_ms: int = 30000           # 0 = unlimited
    max_loop_iterations: int = 100000
    command_timeout_ms: int = 5000
    confirm_timeout_ms: int = 60000
    prompt_timeout_ms: int = 120000
    debug: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'EngineConfig':
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = key.replace('-', '_')
            if name not in known:
                raise ValueError(f"Unknown config option: {key}")
            values[name] = _coerce(name, known[name].type, value)
        return cls(**values)

    @classmethod
    def load(cls, path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> 'EngineConfig':
        env = os.environ if environ is None else environ
        config = cls()
        path = path or env.get("RETRO_CONFIG")
        if path:
            data = deserialize(Path(path).read_text(encoding='utf-8'), path=str(path))
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise ValueError(f"Config file {path} must contain a mapping")
            config = cls.from_mapping(data)

        overrides: Dict[str, Any] = {}
        if env.get("RETRO_TIMEOUT_MS") is not None:
            overrides['timeout_ms'] = _coerce('timeout_ms', int, env["RETRO_TIMEOUT_MS"])
        if env.get("RETRO_MAX_LOOP_ITERS") is not None:
            overrides['max_loop_iterations'] = _coerce('max_loop_iterations', int, env["RETRO_MAX_LOOP_ITERS"])
        if env.get("RETRO_DEBUG"):
            overrides['debug'] = _coerce('debug', bool, env["RETRO_DEBUG"])
        return replace(config, **overrides) if overrides else config


def _coerce(name: str, kind: Any, value: Any) -> Any:
    if kind in (bool, 'bool'):
        if isinstance(value, str):
            return value.strip().lower() not in ('', '0', 'false', 'no', 'off')
        return bool(value)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Config option {name} must be an integer, got {value!r}") from None
    if number < 0:
        raise ValueError(f"Config option {name} must not be negative")
    return number
