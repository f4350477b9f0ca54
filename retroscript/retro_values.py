"""
Value parsing and resolution for RetroScript.

Parsing (`parse_value`, `parse_literal`, `parse_condition`) turns source
text into plain values or placeholders. Resolution (`ValueResolver`) turns
placeholders into plain values against the live variable environment.
"""
import math
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from retroscript.retro_datatypes import (
    VariableRef, Expression, FunctionCall, ArrayLiteral, ObjectLiteral,
    Comparison, Logical, Negation, ParseError,
)
from retroscript.retro_printer import to_display

ARITHMETIC_OPS = ('+', '-', '*', '/', '%')
COMPARISON_OPS = ('==', '!=', '>=', '<=', '>', '<')

_NUMBER_RE = re.compile(r'^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$')
_INT_RE = re.compile(r'^[+-]?\d+$')
_VAR_RE = re.compile(r'^\$([A-Za-z_]\w*)((?:\.\w+|\[[^\]]*\])*)$')
_ACCESSOR_RE = re.compile(r'\.(\w+)|\[([^\]]*)\]')
_CALL_RE = re.compile(r'^([A-Za-z_][\w:.]*)\((.*)\)$', re.DOTALL)
_INTERP_RE = re.compile(r'\$(\w+)')

_OPENERS = {'[': ']', '(': ')', '{': '}'}
_CLOSERS = {']', ')', '}'}


# ===================================================================
# 1. Splitting helpers
# ===================================================================

def split_terms(text: str) -> List[str]:
    """Split on whitespace outside quotes and outside ()/[]/{} nesting. Quotes are kept."""
    terms: List[str] = []
    current: List[str] = []
    quote = None
    depth = 0
    for ch in text:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
        elif ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
        elif ch.isspace() and depth <= 0:
            if current:
                terms.append(''.join(current))
                current = []
            continue
        current.append(ch)
    if current:
        terms.append(''.join(current))
    return terms


def split_top_level(text: str, sep: str = ',') -> List[str]:
    """Split on `sep` outside quotes and nesting; empty items are dropped."""
    parts: List[str] = []
    current: List[str] = []
    quote = None
    depth = 0
    for ch in text:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ('"', "'"):
            quote = ch
        elif ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append(''.join(current).strip())
            current = []
            continue
        current.append(ch)
    parts.append(''.join(current).strip())
    return [p for p in parts if p]


def _find_top_level(text: str, token: str) -> int:
    """Index of the first occurrence of token outside quotes and nesting, or -1."""
    quote = None
    depth = 0
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch in _OPENERS:
            depth += 1
        elif ch in _CLOSERS:
            depth -= 1
        elif depth == 0 and text.startswith(token, i):
            return i
        i += 1
    return -1


def is_quoted(term: str) -> bool:
    return len(term) >= 2 and term[0] == term[-1] and term[0] in ('"', "'")


# ===================================================================
# 2. Literal and expression parsing
# ===================================================================

def parse_literal(term: Optional[str]) -> Any:
    """
    Recognise one term. Order: quoted string, variable reference, number,
    boolean, null, array literal, object literal, call, group, opaque string.
    """
    if term is None:
        return None
    term = term.strip()
    if term == '':
        return None
    if is_quoted(term):
        return term[1:-1]
    if term.startswith('$'):
        m = _VAR_RE.match(term)
        if m:
            return VariableRef(m.group(1), _parse_accessors(m.group(2)))
    if _NUMBER_RE.match(term):
        return int(term) if _INT_RE.match(term) else float(term)
    lowered = term.lower()
    if lowered == 'true':
        return True
    if lowered == 'false':
        return False
    if lowered == 'null':
        return None
    if term.startswith('[') and term.endswith(']'):
        return ArrayLiteral(tuple(parse_value(item) for item in split_top_level(term[1:-1])))
    if term.startswith('{') and term.endswith('}'):
        return _parse_object(term[1:-1])
    m = _CALL_RE.match(term)
    if m:
        args = tuple(parse_value(a) for a in split_top_level(m.group(2)))
        return FunctionCall(m.group(1), args)
    if term.startswith('(') and term.endswith(')'):
        return parse_value(term[1:-1])
    return term


def _parse_accessors(text: str) -> tuple:
    path = []
    for key, index in _ACCESSOR_RE.findall(text or ''):
        if key:
            path.append(key)
        else:
            path.append(parse_literal(index))
    return tuple(path)


def _parse_object(inner: str) -> ObjectLiteral:
    entries = []
    for item in split_top_level(inner):
        colon = _find_top_level(item, ':')
        if colon < 0:
            raise ParseError(f"Invalid object entry: {item!r}")
        key = item[:colon].strip()
        if is_quoted(key):
            key = key[1:-1]
        entries.append((key, parse_value(item[colon + 1:])))
    return ObjectLiteral(tuple(entries))


def _is_opaque(value: Any) -> bool:
    return isinstance(value, str)


def parse_value(text: Optional[str], strict_operands: bool = False) -> Any:
    """
    Parse the right-hand side of an assignment (or any value position).

    Handles `call fn args...`, binary arithmetic over terms separated by
    whitespace, single literals, and falls back to the raw text. With
    strict_operands, bare words never form an arithmetic expression, so
    `print Loading - please wait` stays text.
    """
    if text is None:
        return None
    text = text.strip()
    if text == '':
        return None
    terms = split_terms(text)
    if len(terms) >= 2 and terms[0].lower() == 'call':
        return FunctionCall(terms[1], tuple(parse_literal(t) for t in terms[2:]))
    if len(terms) == 1:
        return parse_literal(terms[0])
    expr = _parse_arithmetic(terms, strict_operands)
    if expr is not None:
        return expr
    return text[1:-1] if is_quoted(text) else text


def _parse_arithmetic(terms: List[str], strict_operands: bool) -> Any:
    if len(terms) < 3 or len(terms) % 2 == 0:
        return None
    operands = terms[0::2]
    operators = terms[1::2]
    if not all(op in ARITHMETIC_OPS for op in operators):
        return None
    values = [parse_literal(t) for t in operands]
    if strict_operands and any(_is_opaque(v) and not is_quoted(t) for v, t in zip(values, operands)):
        return None
    # Two precedence levels, both left-associative.
    stack_vals = [values[0]]
    stack_ops: List[str] = []
    for op, val in zip(operators, values[1:]):
        if op in ('*', '/', '%'):
            stack_vals[-1] = Expression(op, stack_vals[-1], val)
        else:
            stack_ops.append(op)
            stack_vals.append(val)
    result = stack_vals[0]
    for op, val in zip(stack_ops, stack_vals[1:]):
        result = Expression(op, result, val)
    return result


def parse_message(text: Optional[str]) -> Any:
    """Message position (print, alert, notify, throw): expression if it looks like one, else text."""
    return parse_value(text, strict_operands=True)


def parse_condition(text: str) -> Any:
    """
    Parse a condition: `||` binds loosest, then `&&`, then a single
    comparison, then `!` negation, then a plain value (bare truthiness).
    """
    text = text.strip()
    if text == '':
        raise ParseError("Missing condition")
    for op in ('||', '&&'):
        idx = _find_top_level(text, op)
        if idx >= 0:
            return Logical(op, parse_condition(text[:idx]), parse_condition(text[idx + len(op):]))
    for op in COMPARISON_OPS:
        idx = _find_top_level(text, op)
        if idx >= 0:
            left, right = text[:idx].strip(), text[idx + len(op):].strip()
            if not left or not right:
                raise ParseError(f"Incomplete comparison: {text!r}")
            return Comparison(op, parse_value(left), parse_value(right))
    if text.startswith('!') and not text.startswith('!='):
        return Negation(parse_condition(text[1:]))
    if text.lower().startswith('not '):
        return Negation(parse_condition(text[4:]))
    return parse_value(text)


# ===================================================================
# 3. Explicit conversions
# ===================================================================

def normalize_number(x):
    if isinstance(x, float) and x.is_integer() and not math.isinf(x):
        return int(x)
    return x


def strict_number(value: Any) -> Optional[float]:
    """Number for numeric-looking values, None otherwise."""
    match value:
        case bool():
            return 1 if value else 0
        case int() | float():
            return value
        case str() if _NUMBER_RE.match(value.strip()):
            s = value.strip()
            return int(s) if _INT_RE.match(s) else float(s)
        case _:
            return None


def to_number(value: Any):
    """Numeric coercion; anything non-numeric becomes 0."""
    if value is None:
        return 0
    n = strict_number(value)
    return 0 if n is None else n


def truthy(value: Any) -> bool:
    match value:
        case None:
            return False
        case bool():
            return value
        case int() | float():
            return value != 0 and not (isinstance(value, float) and math.isnan(value))
        case str():
            return value != ''
        case _:
            return True


def loose_equals(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if isinstance(a, (int, float, bool)) or isinstance(b, (int, float, bool)):
        na, nb = strict_number(a), strict_number(b)
        if na is None or nb is None:
            return False
        return na == nb
    return a == b


def compare(op: str, a: Any, b: Any) -> bool:
    match op:
        case '==':
            return loose_equals(a, b)
        case '!=':
            return not loose_equals(a, b)
    if isinstance(a, str) and isinstance(b, str):
        left, right = a, b
    else:
        left, right = to_number(a), to_number(b)
    match op:
        case '>':
            return left > right
        case '<':
            return left < right
        case '>=':
            return left >= right
        case '<=':
            return left <= right
    raise ParseError(f"Unknown comparison operator: {op}")


def apply_binary(op: str, a: Any, b: Any):
    """Arithmetic that never fails: string concat for '+', otherwise numeric."""
    if op == '+' and (isinstance(a, str) or isinstance(b, str)):
        return to_display(a) + to_display(b)
    x, y = to_number(a), to_number(b)
    match op:
        case '+':
            result = x + y
        case '-':
            result = x - y
        case '*':
            result = x * y
        case '/':
            if y == 0:
                return 0
            result = x / y
        case '%':
            if y == 0:
                return 0
            result = math.fmod(x, y)
        case _:
            raise ParseError(f"Unknown operator: {op}")
    return normalize_number(result)


def interpolate(text: str, variables: Dict[str, Any]) -> str:
    """Replace `$name` with the bound value's display form; unbound names stay verbatim."""
    if '$' not in text:
        return text

    def _sub(m):
        name = m.group(1)
        if name in variables:
            return to_display(variables[name])
        return m.group(0)

    return _INTERP_RE.sub(_sub, text)


def access(value: Any, key: Any) -> Any:
    """One `.key` / `[index]` step; missing keys resolve to None."""
    if isinstance(value, dict):
        return value.get(key if isinstance(key, str) else to_display(key))
    if isinstance(value, (list, str)):
        if isinstance(key, str) and key == 'length':
            return len(value)
        n = strict_number(key)
        if n is None:
            return None
        idx = int(n)
        if -len(value) <= idx < len(value):
            return value[idx]
    return None


# ===================================================================
# 4. Resolution against the live environment
# ===================================================================

class ValueResolver:
    """Resolves placeholders. Function calls are delegated to the interpreter."""

    def __init__(self, get_variables: Callable[[], Dict[str, Any]],
                 call_function: Callable[..., Awaitable[Any]]):
        self._get_variables = get_variables
        self._call_function = call_function

    async def resolve(self, value: Any) -> Any:
        match value:
            case str():
                return interpolate(value, self._get_variables())
            case VariableRef(name=name, path=path):
                result = self._get_variables().get(name)
                for step in path:
                    if not isinstance(step, (str, int, float)):
                        step = await self.resolve(step)
                    result = access(result, step)
                return result
            case Expression(op=op, left=left, right=right):
                return apply_binary(op, await self.resolve(left), await self.resolve(right))
            case FunctionCall(name=name, args=args):
                resolved = [await self.resolve(a) for a in args]
                return await self._call_function(name, resolved)
            case ArrayLiteral(items=items):
                return [await self.resolve(item) for item in items]
            case ObjectLiteral(entries=entries):
                return {key: await self.resolve(val) for key, val in entries}
            case Comparison() | Logical() | Negation():
                return await self.evaluate_condition(value)
            case list():
                return [await self.resolve(item) for item in value]
            case _:
                return value

    async def evaluate_condition(self, condition: Any) -> bool:
        match condition:
            case None:
                return False
            case bool():
                return condition
            case Logical(op='&&', left=left, right=right):
                return await self.evaluate_condition(left) and await self.evaluate_condition(right)
            case Logical(op='||', left=left, right=right):
                return await self.evaluate_condition(left) or await self.evaluate_condition(right)
            case Negation(operand=operand):
                return not await self.evaluate_condition(operand)
            case Comparison(op=op, left=left, right=right):
                return compare(op, await self.resolve(left), await self.resolve(right))
            case _:
                return truthy(await self.resolve(condition))
