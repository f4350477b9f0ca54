# retro_runtime.py

import inspect
import itertools
import math
import random
import time
import datetime
import collections.abc
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from retroscript.retro_commands import CommandBus
from retroscript.retro_config import EngineConfig
from retroscript.retro_datatypes import (
    RetroError, ParseError, ScriptRuntimeError, ScriptTimeoutError, IterationLimitError,
    HandlerError, ExecutionContext,
)
from retroscript.retro_events import EventBus
from retroscript.retro_host import RetroHost, install_host_commands
from retroscript.retro_interpreter import Interpreter
from retroscript.retro_parser import Parser
from retroscript.retro_printer import to_display
from retroscript.retro_values import to_number, normalize_number, loose_equals, truthy


def _camel(name: str) -> str:
    head, *rest = name.split('_')
    return head + ''.join(part.capitalize() for part in rest)


def _flatten_args(args):
    if len(args) == 1 and isinstance(args[0], list):
        return args[0]
    return list(args)


def _flat(items, depth):
    out = []
    for x in items:
        if isinstance(x, list) and depth > 0:
            out.extend(_flat(x, depth - 1))
        else:
            out.append(x)
    return out


# ===================================================================
# 1. The Standard Library
# ===================================================================

class StdLib:
    """Python implementations of the RetroScript builtin functions."""

    def __init__(self, engine: 'ScriptEngine'):
        self.engine = engine

    # --- Math ---
    def _random(self, lo=0, hi=1):
        lo, hi = int(to_number(lo)), int(to_number(hi))
        return random.randint(min(lo, hi), max(lo, hi))

    def _abs(self, x): return normalize_number(abs(to_number(x)))
    def _round(self, x): return math.floor(to_number(x) + 0.5)  # half-up
    def _floor(self, x): return math.floor(to_number(x))
    def _ceil(self, x): return math.ceil(to_number(x))

    def _min(self, *args):
        values = _flatten_args(args)
        return normalize_number(min(to_number(v) for v in values)) if values else None

    def _max(self, *args):
        values = _flatten_args(args)
        return normalize_number(max(to_number(v) for v in values)) if values else None

    # --- Strings ---
    def _concat(self, *args): return ''.join(to_display(a) for a in args)
    def _upper(self, s): return to_display(s).upper()
    def _lower(self, s): return to_display(s).lower()
    def _trim(self, s): return to_display(s).strip()

    def _length(self, s):
        if isinstance(s, (list, dict)):
            return len(s)
        return len(to_display(s))

    def _substr(self, s, start, length=None):
        s = to_display(s)
        start = max(int(to_number(start)), 0)
        if length is None:
            return s[start:]
        return s[start:start + max(int(to_number(length)), 0)]

    def _replace(self, s, search, replacement): return to_display(s).replace(to_display(search), to_display(replacement), 1)
    def _replace_all(self, s, search, replacement): return to_display(s).replace(to_display(search), to_display(replacement))

    def _split(self, s, separator=''):
        s, separator = to_display(s), to_display(separator)
        if separator == '':
            return list(s)
        return s.split(separator)

    def _join(self, items, separator=''):
        if isinstance(items, list):
            return to_display(separator).join(to_display(x) for x in items)
        return to_display(items)

    def _contains(self, haystack, needle):
        if isinstance(haystack, list):
            return any(loose_equals(x, needle) for x in haystack)
        return to_display(needle) in to_display(haystack)

    def _starts_with(self, s, prefix): return to_display(s).startswith(to_display(prefix))
    def _ends_with(self, s, suffix): return to_display(s).endswith(to_display(suffix))
    def _repeat(self, s, count): return to_display(s) * max(int(to_number(count)), 0)

    def _reverse(self, value):
        if isinstance(value, list):
            return list(reversed(value))
        return to_display(value)[::-1]

    def _pad_start(self, s, length, pad=' '):
        s, pad, length = to_display(s), to_display(pad) or ' ', int(to_number(length))
        missing = length - len(s)
        return (pad * missing)[:missing] + s if missing > 0 else s

    def _pad_end(self, s, length, pad=' '):
        s, pad, length = to_display(s), to_display(pad) or ' ', int(to_number(length))
        missing = length - len(s)
        return s + (pad * missing)[:missing] if missing > 0 else s

    def _index_of(self, haystack, needle, start=0):
        start = int(to_number(start))
        if isinstance(haystack, list):
            for i in range(max(start, 0), len(haystack)):
                if loose_equals(haystack[i], needle):
                    return i
            return -1
        return to_display(haystack).find(to_display(needle), start)

    def _last_index_of(self, haystack, needle, start=None):
        if isinstance(haystack, list):
            stop = len(haystack) - 1 if start is None else min(int(to_number(start)), len(haystack) - 1)
            for i in range(stop, -1, -1):
                if loose_equals(haystack[i], needle):
                    return i
            return -1
        s, needle = to_display(haystack), to_display(needle)
        if start is None:
            return s.rfind(needle)
        return s.rfind(needle, 0, max(int(to_number(start)), 0) + len(needle))

    def _trim_start(self, s): return to_display(s).lstrip()
    def _trim_end(self, s): return to_display(s).rstrip()

    def _char_at(self, s, index):
        s, i = to_display(s), int(to_number(index))
        return s[i] if 0 <= i < len(s) else ''

    def _char_code(self, s, index=0):
        s, i = to_display(s), int(to_number(index))
        return ord(s[i]) if 0 <= i < len(s) else None

    def _from_char_code(self, *codes): return ''.join(chr(int(to_number(c))) for c in codes)

    def _substring(self, s, start, end=None):
        s = to_display(s)
        # Negative bounds clamp to 0; reversed bounds swap.
        lo = min(max(int(to_number(start)), 0), len(s))
        hi = len(s) if end is None else min(max(int(to_number(end)), 0), len(s))
        return s[min(lo, hi):max(lo, hi)]

    # --- Arrays ---
    def _count(self, value):
        if isinstance(value, (list, dict)):
            return len(value)
        if value is None:
            return 0
        return len(to_display(value))

    def _first(self, items): return items[0] if isinstance(items, list) and items else None
    def _last(self, items): return items[-1] if isinstance(items, list) and items else None

    def _at(self, items, index):
        if not isinstance(items, list):
            return None
        i = int(to_number(index))
        return items[i] if -len(items) <= i < len(items) else None

    def _push(self, items, *values):
        return list(items) + list(values) if isinstance(items, list) else items

    def _pop(self, items): return items[-1] if isinstance(items, list) and items else None

    def _includes(self, items, value):
        return isinstance(items, list) and any(loose_equals(x, value) for x in items)

    def _sort(self, items):
        if not isinstance(items, list):
            return items
        if all(isinstance(x, (int, float)) and not isinstance(x, bool) for x in items):
            return sorted(items)
        return sorted(items, key=to_display)

    def _unique(self, items):
        if not isinstance(items, list):
            return items
        out = []
        for x in items:
            if x not in out:
                out.append(x)
        return out

    def _range(self, start, end=None, step=1):
        if end is None:
            start, end = 0, start
        s, e = to_number(start), to_number(end)
        st = to_number(step) or 1
        out = []
        i = s
        while (st > 0 and i < e) or (st < 0 and i > e):
            out.append(normalize_number(i))
            i += st
        return out

    def _sum(self, items):
        return normalize_number(sum(to_number(x) for x in items)) if isinstance(items, list) else 0

    def _avg(self, items):
        if not isinstance(items, list) or not items:
            return 0
        return normalize_number(sum(to_number(x) for x in items) / len(items))

    def _slice(self, value, start, end=None):
        start = int(to_number(start))
        if isinstance(value, list):
            return value[start:] if end is None else value[start:int(to_number(end))]
        s = to_display(value)
        return s[start:] if end is None else s[start:int(to_number(end))]

    def _keys(self, d): return list(d.keys()) if isinstance(d, collections.abc.Mapping) else []
    def _values(self, d): return list(d.values()) if isinstance(d, collections.abc.Mapping) else []

    def _shift(self, items): return items[0] if isinstance(items, list) and items else None

    def _unshift(self, items, *values):
        return list(values) + list(items) if isinstance(items, list) else items

    def _find(self, items, value):
        if not isinstance(items, list):
            return None
        return next((x for x in items if loose_equals(x, value)), None)

    def _find_index(self, items, value):
        return self._index_of(items, value) if isinstance(items, list) else -1

    def _sort_desc(self, items):
        if not isinstance(items, list):
            return items
        return list(reversed(self._sort(items)))

    def _flatten(self, items, depth=1):
        return _flat(items, int(to_number(depth))) if isinstance(items, list) else items

    def _fill(self, count, value=None): return [value] * max(int(to_number(count)), 0)

    def _product(self, items):
        if not isinstance(items, list):
            return 0
        return normalize_number(math.prod(to_number(x) for x in items))

    # filter/reject/map take a value or an operation name, not a callback.
    def _filter(self, items, value):
        return [x for x in items if loose_equals(x, value)] if isinstance(items, list) else []

    def _reject(self, items, value):
        return [x for x in items if not loose_equals(x, value)] if isinstance(items, list) else []

    def _map(self, items, operation):
        if not isinstance(items, list):
            return []
        match operation:
            case 'double':
                return [normalize_number(to_number(x) * 2) for x in items]
            case 'square':
                return [normalize_number(to_number(x) ** 2) for x in items]
            case 'string':
                return [to_display(x) for x in items]
            case 'number':
                return [to_number(x) for x in items]
            case 'boolean':
                return [truthy(x) for x in items]
            case _:
                return list(items)

    def _splice(self, items, start, delete_count=None, *values):
        if not isinstance(items, list):
            return items
        start = int(to_number(start))
        if start < 0:
            start = max(len(items) + start, 0)
        start = min(start, len(items))
        end = len(items) if delete_count is None else start + max(int(to_number(delete_count)), 0)
        return items[:start] + list(values) + items[end:]

    def _array_concat(self, *arrays):
        out = []
        for a in arrays:
            if isinstance(a, list):
                out.extend(a)
            else:
                out.append(a)
        return out

    # --- Time ---
    def _now(self): return int(time.time() * 1000)
    def _time(self): return datetime.datetime.now().strftime('%H:%M:%S')
    def _date(self): return datetime.date.today().isoformat()

    # --- System ---
    async def _query(self, topic, payload=None):
        if not isinstance(payload, dict):
            payload = {} if payload is None else {'args': payload}
        return await self.engine.commands.query(to_display(topic), payload, self.engine.config.command_timeout_ms)

    async def _exec(self, command, payload=None):
        if not isinstance(payload, dict):
            payload = {} if payload is None else {'args': payload}
        return await self.engine.commands.execute(to_display(command), payload)

    def _get_windows(self):
        host = self.engine.host
        windows = host.get_state('windows') if host is not None else None
        return [
            {k: w.get(k) for k in ('id', 'appId', 'title', 'minimized', 'maximized')}
            for w in windows or []
        ]

    def _get_env(self):
        return {
            'platform': 'RetrOS',
            'version': '5.0',
            'language': 'RetroScript',
            'timestamp': self._now(),
        }

    def _get_apps(self):
        host = self.engine.host
        return [dict(app) for app in host.list_apps()] if host is not None else []

    def _get_storage(self, key):
        host = self.engine.host
        return host.get_storage(to_display(key)) if host is not None else None

    def _set_storage(self, key, value):
        host = self.engine.host
        return host.set_storage(to_display(key), value) if host is not None else False

    def _copy_to_clipboard(self, text):
        host = self.engine.host
        return host.copy_to_clipboard(to_display(text)) if host is not None else False


# ===================================================================
# 2. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    success: bool
    value: Any = None
    error: Optional[str] = None
    line: Optional[int] = None
    stack: List[str] = field(default_factory=list)
    side_effects: List[Dict] = field(default_factory=list)
    details: Optional[str] = None

    def format_error(self) -> str:
        """The formatted report (location, source excerpt, stacktrace); empty on success."""
        if self.success:
            return ""
        if self.details:
            return self.details
        msg = str(self.error or "Unknown error")
        if self.line is not None and not msg.startswith("Error on line "):
            return f"Error on line {self.line}: {msg}"
        return msg

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {'success': True, 'result': self.value}
        return {'success': False, 'error': self.error, 'line': self.line, 'stack': list(self.stack)}


class ScriptEngine:
    """Parses and executes RetroScript against a CommandBus and an optional host."""

    _ids = itertools.count(1)

    def __init__(self, events: Optional[EventBus] = None, commands: Optional[CommandBus] = None,
                 host: Optional[RetroHost] = None, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()
        self.events = events or EventBus(debug=self.config.debug)
        self.commands = commands or CommandBus(self.events, debug=self.config.debug)
        self.host = host
        self.parser = Parser()
        self.interpreter = Interpreter(self.events, self.commands, host, self.config)
        self.running = False

        if host is not None and commands is None:
            install_host_commands(self.commands, host)

        stdlib = StdLib(self)
        for name, member in inspect.getmembers(stdlib):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                self.interpreter.functions[_camel(name[1:])] = member
        self._bind_host_api_methods()
        self._reset_globals()

    def _reset_globals(self):
        self.interpreter.globals.update({'TRUE': True, 'FALSE': False, 'NULL': None})

    def _bind_host_api_methods(self):
        """Bind @script_api methods of the host into the function table (camelCase)."""
        host = self.host
        if not host:
            return
        for name, member in inspect.getmembers(host):
            if not callable(member):
                continue
            is_api = getattr(member, "_is_script_api", False)
            if not is_api:
                func = getattr(member, "__func__", None)
                if func is not None:
                    is_api = getattr(func, "_is_script_api", False)
            if not is_api:
                continue
            self.interpreter.functions[_camel(name)] = member

    @property
    def side_effects(self) -> List[Dict]:
        return self.interpreter.side_effects

    # --- Embedding surface --------------------------------------------

    def define_function(self, name: str, fn: Callable):
        self.interpreter.functions[name] = fn

    def get_variable(self, name: str) -> Any:
        return self.interpreter.globals.get(name)

    def set_variable(self, name: str, value: Any):
        self.interpreter.globals[name] = value

    def set_timeout(self, ms: int):
        self.config.timeout_ms = max(int(ms), 0)

    def stop(self):
        self.interpreter.stop()

    def cleanup(self) -> int:
        """Release `on` subscriptions made by scripts."""
        return self.interpreter.cleanup()

    async def run_file(self, path, context: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        files = getattr(self.host, 'files', None) if self.host is not None else None
        try:
            if files is None:
                raise ScriptRuntimeError("No file system available")
            source = files.read_file(path)
        except (OSError, RetroError) as e:
            message = e.message if isinstance(e, RetroError) else str(e)
            self.side_effects.append({'topics': ['stderr'], 'message': message})
            return ExecutionResult(False, error=message, side_effects=list(self.side_effects))
        return await self.run(source, context)

    async def run(self, source: str, context: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """The main entry point to execute a script. Never raises for script errors."""
        script_id = f"script_{next(self._ids)}"
        self.side_effects.clear()
        self._source = source
        if context:
            self.interpreter.globals.update(context)
        ctx = self.interpreter.new_context(self.config.timeout_ms)
        self.interpreter.context = ctx
        self.running = True
        self.events.emit('script:execute', {'scriptId': script_id})
        try:
            statements = self.parser.parse(source)
            value = await self.interpreter.run(statements, ctx)
        except RetroError as e:
            return self._report(script_id, e, source, ctx)
        except Exception as e:
            return self._report(script_id, ScriptRuntimeError(str(e) or type(e).__name__,
                                                             line=ctx.current_line or None,
                                                             stack=list(ctx.call_stack)), source, ctx)
        finally:
            self.running = False
        self.events.emit('script:complete', {'scriptId': script_id, 'result': value})
        return ExecutionResult(True, value=value, side_effects=list(self.side_effects))

    # --- Error reporting ----------------------------------------------

    def _report(self, script_id: str, e: RetroError, source: str, ctx: ExecutionContext) -> ExecutionResult:
        stack = list(e.stack or [])
        details = self._format_error(e, source, stack)
        # Consolidated stderr side effect
        self.side_effects.append({'topics': ['stderr'], 'message': details})
        self.events.emit('script:error', {'scriptId': script_id, 'error': e.message, 'line': e.line, 'stack': stack})
        return ExecutionResult(False, error=e.message, line=e.line, stack=stack,
                               side_effects=list(self.side_effects), details=details)

    def _format_error(self, e: RetroError, source: str, stack: List[str]) -> str:
        match e:
            case ParseError():
                msg = f"ParseError: {e.message}"
            case IterationLimitError():
                msg = f"IterationLimit: {e.message}"
            case ScriptTimeoutError():
                msg = f"Timeout: {e.message}"
            case HandlerError():
                msg = f"CommandError: {e.command}: {e.message}"
            case ScriptRuntimeError():
                msg = f"RuntimeError: {e.message}"
            case _:
                msg = f"InternalError: {e.message}"

        if e.line is not None:
            msg = f"{msg} (line {e.line})"
            excerpt = self._source_context(source, e.line)
            if excerpt:
                msg = f"{msg}\n{excerpt}"

        st = self._format_stacktrace(stack)
        if st:
            msg += "\n" + st
        return msg

    def _source_context(self, source: str, line: int, radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            content = lines[i - 1]
            out.append(f"{prefix} {ln} | {content}")
            if i == line:
                indent = len(content) - len(content.lstrip())
                out.append(f"  {' ' * width} | {' ' * indent}^")
        return "\n".join(out)

    def _format_stacktrace(self, stack: List[str]) -> str:
        if not stack:
            return ""
        return "RetroScript stacktrace: " + " ".join(f"({name})" for name in stack)
