"""
Converts RetroScript values into the text scripts see when a value is
printed or interpolated into a string.
"""
import collections.abc
import json
import math

from retroscript.retro_datatypes import UserFunction


class Printer:
    """Formats RetroScript values into display strings."""

    def __init__(self, indent_width=None):
        self._indent = indent_width
        self._handlers = self._create_handlers()

    def pformat(self, obj):
        """Public entry point to format a value."""
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, str):
            return self._pformat_str
        if isinstance(obj, collections.abc.Mapping) or isinstance(obj, (list, tuple)):
            return self._pformat_structure
        return lambda o: str(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            bool: self._pformat_bool,
            int: self._pformat_int,
            float: self._pformat_float,
            type(None): self._pformat_none,
            list: self._pformat_structure,
            tuple: self._pformat_structure,
            dict: self._pformat_structure,
            UserFunction: repr,
        }

    def _pformat_str(self, s):
        return s

    def _pformat_bool(self, b):
        return "true" if b else "false"

    def _pformat_none(self, _):
        return "null"

    def _pformat_int(self, i):
        return str(i)

    def _pformat_float(self, f):
        if math.isnan(f):
            return "NaN"
        if math.isinf(f):
            return "Infinity" if f > 0 else "-Infinity"
        if f.is_integer():
            return str(int(f))
        return repr(f)

    def _pformat_structure(self, obj):
        return json.dumps(self._to_plain(obj), ensure_ascii=False, indent=self._indent)

    def _to_plain(self, obj):
        # Integral floats render as ints inside structures as well.
        if isinstance(obj, float) and obj.is_integer():
            return int(obj)
        if isinstance(obj, collections.abc.Mapping):
            return {str(k): self._to_plain(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple)):
            return [self._to_plain(x) for x in obj]
        if obj is None or isinstance(obj, (str, bool, int, float)):
            return obj
        return self.pformat(obj)


_default = Printer()


def to_display(value) -> str:
    """Shortcut used by interpolation and `print`."""
    return _default.pformat(value)
