
"""
Defines the core data types for the RetroScript runtime.

This module provides the error taxonomy, the unresolved value placeholders
produced by the parser, and one immutable statement class per statement kind.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# =================================================================
# Errors
# =================================================================

class RetroError(Exception):
    """Base class for every error a script can raise."""
    fatal = False

    def __init__(self, message: str, line: Optional[int] = None, stack: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.stack = stack


class ParseError(RetroError):
    """Malformed syntax. Raised before anything executes."""


class ScriptRuntimeError(RetroError):
    """Unknown function/command, failed assert, user throw, host function failure."""


class ScriptTimeoutError(RetroError, TimeoutError):
    """The whole run exceeded its configured timeout."""
    fatal = True


class CommandTimeoutError(ScriptTimeoutError):
    """A single command round trip expired."""
    fatal = False


class RequestTimeoutError(ScriptTimeoutError):
    """A request/response event round trip expired."""
    fatal = False


class IterationLimitError(ScriptRuntimeError):
    """A while loop ran past the iteration ceiling."""
    fatal = True


class HandlerError(RetroError):
    """A registered command handler raised or reported failure."""

    def __init__(self, command: str, message: str):
        super().__init__(message)
        self.command = command


# =================================================================
# Value placeholders (resolved at execution time)
# =================================================================

@dataclass(frozen=True)
class VariableRef:
    """`$name`, optionally followed by `.key` / `[index]` accessors."""
    name: str
    path: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Expression:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class ArrayLiteral:
    items: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class ObjectLiteral:
    entries: Tuple[Tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class Comparison:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Logical:
    op: str  # '&&' or '||'
    left: Any
    right: Any


@dataclass(frozen=True)
class Negation:
    operand: Any


# =================================================================
# Statements
# =================================================================

Body = Tuple['Statement', ...]


@dataclass(frozen=True)
class Statement:
    line: int = field(default=0, kw_only=True)

    @property
    def kind(self) -> str:
        return type(self).__name__.lower()


@dataclass(frozen=True)
class Block(Statement):
    statements: Body


@dataclass(frozen=True)
class Launch(Statement):
    app: Any
    params: Tuple[Tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class Close(Statement):
    target: Any = None


@dataclass(frozen=True)
class Wait(Statement):
    duration: Any


@dataclass(frozen=True)
class Set(Statement):
    name: str
    value: Any


@dataclass(frozen=True)
class Print(Statement):
    message: Any


@dataclass(frozen=True)
class Emit(Statement):
    event: str
    payload: Tuple[Tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class On(Statement):
    event: str
    body: Body


@dataclass(frozen=True)
class If(Statement):
    condition: Any
    then_body: Body
    else_body: Body = ()


@dataclass(frozen=True)
class Loop(Statement):
    count: Any
    body: Body


@dataclass(frozen=True)
class While(Statement):
    condition: Any
    body: Body


@dataclass(frozen=True)
class ForEach(Statement):
    var: str
    iterable: Any
    body: Body


@dataclass(frozen=True)
class FunctionDef(Statement):
    name: str
    params: Tuple[str, ...]
    body: Body


@dataclass(frozen=True)
class Call(Statement):
    name: str
    args: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Return(Statement):
    value: Any = None


@dataclass(frozen=True)
class Break(Statement):
    pass


@dataclass(frozen=True)
class Continue(Statement):
    pass


@dataclass(frozen=True)
class Dialog(Statement):
    """alert / confirm / prompt."""
    mode: str
    message: Any
    default: Any = None
    into: Optional[str] = None


@dataclass(frozen=True)
class Notify(Statement):
    message: Any


@dataclass(frozen=True)
class WindowOp(Statement):
    """focus / minimize / maximize."""
    op: str
    target: Any


@dataclass(frozen=True)
class Play(Statement):
    sound: Any


@dataclass(frozen=True)
class Write(Statement):
    content: Any
    path: Any


@dataclass(frozen=True)
class Read(Statement):
    path: Any
    into: str = "result"


@dataclass(frozen=True)
class Mkdir(Statement):
    path: Any


@dataclass(frozen=True)
class Delete(Statement):
    path: Any


@dataclass(frozen=True)
class Try(Statement):
    body: Body
    error_var: str = "error"
    catch_body: Body = ()


@dataclass(frozen=True)
class Throw(Statement):
    message: Any


@dataclass(frozen=True)
class Assert(Statement):
    condition: Any
    message: Any = None


@dataclass(frozen=True)
class Command(Statement):
    """Anything the parser does not recognise; forwarded to Command Dispatch."""
    name: str
    args: Tuple[Any, ...] = ()


# =================================================================
# Runtime-only types
# =================================================================

@dataclass
class UserFunction:
    """A function defined by a script with `def`/`func`/`function`."""
    name: str
    params: Tuple[str, ...]
    body: Body

    def __repr__(self) -> str:
        return f"<func {self.name}({', '.join(self.params)})>"


@dataclass
class ExecutionContext:
    """Per-run interpreter state. Created by `run`, discarded on completion."""
    timeout_ms: int = 30000
    started_at: float = 0.0
    running: bool = True
    break_requested: bool = False
    loop_break: bool = False
    continue_requested: bool = False
    returning: bool = False
    return_value: Any = None
    loop_depth: int = 0
    call_stack: List[str] = field(default_factory=list)
    current_line: int = 0
    last_result: Any = None

    @property
    def interrupted(self) -> bool:
        """True when the current statement sequence must stop."""
        return (self.break_requested or self.loop_break
                or self.continue_requested or self.returning)


Payload = Dict[str, Any]
