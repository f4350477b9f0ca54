"""
Turns RetroScript source text into a tuple of Statement objects.

Each logical line is dispatched on its first word. Block statements
(`if`, `loop`, `on`, `def`, ...) may be followed by more statements on the
same logical line; those are parsed into the same sequence.
"""
import re
from typing import Any, List, Optional, Tuple

from retroscript.retro_datatypes import (
    Statement, Block, Launch, Close, Wait, Set, Print, Emit, On, If, Loop, While,
    ForEach, FunctionDef, Call, Return, Break, Continue, Dialog, Notify, WindowOp,
    Play, Write, Read, Mkdir, Delete, Try, Throw, Assert, Command,
    ParseError, VariableRef,
)
from retroscript.retro_tokenizer import (
    split_logical_lines, split_statements, tokenize, find_word, match_brace,
)
from retroscript.retro_values import (
    parse_value, parse_literal, parse_message, parse_condition, split_terms, split_top_level,
)

_KEYWORD_RE = re.compile(r'[^\s{(]+')
_SET_RE = re.compile(r'^\$?([A-Za-z_]\w*)\s*=(?!=)\s*(.*)$', re.DOTALL)
_CONTINUES = {'else': 'if', 'catch': 'try'}
_FUNC_RE = re.compile(r'^(?:def|func|function)\s+([A-Za-z_][\w:.]*)\s*(?:\(([^)]*)\))?\s*(?=\{)', re.IGNORECASE)
_VARNAME_RE = re.compile(r'^\$?([A-Za-z_]\w*)$')

# Parsed result of one rule: the statement plus any trailing text after its block.
Parsed = Tuple[Statement, str]


class Parser:
    """Parses RetroScript source. Stateless; one instance can be shared."""

    def parse(self, text: str, first_line: int = 1) -> Tuple[Statement, ...]:
        """Parse a whole script (or block body). Raises ParseError on the first problem."""
        statements: List[Statement] = []
        for lineno, logical in self._join_continuations(split_logical_lines(text, first_line)):
            statements.extend(self._parse_logical(logical, lineno))
        return tuple(statements)

    def _join_continuations(self, logical_lines):
        # `else { ... }` continues an `if`, `catch { ... }` continues a `try`.
        out: List[List] = []
        for lineno, text in logical_lines:
            head = self._head(text)
            if out and _CONTINUES.get(head) == self._head(out[-1][1]):
                out[-1][1] = out[-1][1] + '\n' + text
            else:
                out.append([lineno, text])
        return [(ln, t) for ln, t in out]

    @staticmethod
    def _head(text: str) -> str:
        m = _KEYWORD_RE.match(text.lstrip())
        return m.group(0).lower() if m else ''

    def _parse_logical(self, text: str, lineno: int) -> List[Statement]:
        pieces = split_statements(text)
        if len(pieces) <= 1:
            return self._parse_sequence(pieces[0] if pieces else '', lineno)
        statements: List[Statement] = []
        pos = 0
        for piece in pieces:
            found = text.find(piece, pos)
            piece_line = lineno + text.count('\n', 0, max(found, 0))
            pos = found + len(piece) if found >= 0 else pos
            statements.extend(self._parse_sequence(piece, piece_line))
        return [Block(tuple(statements), line=lineno)]

    def _parse_sequence(self, text: str, lineno: int) -> List[Statement]:
        text = text.strip()
        if not text:
            return []
        stmt, rest = self._parse_statement(text, lineno)
        out = [stmt]
        rest = rest.strip() if rest else ''
        if rest:
            consumed = text[:len(text) - len(rest)] if text.endswith(rest) else text
            out.extend(self._parse_logical(rest, lineno + consumed.count('\n')))
        return out

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _parse_statement(self, text: str, lineno: int) -> Parsed:
        m = _KEYWORD_RE.match(text)
        raw_kw = m.group(0) if m else ''
        kw = raw_kw.lower()
        rest = text[len(raw_kw):].strip()

        match kw:
            case 'launch' | 'open':
                return self._parse_launch(text, rest, lineno), ''
            case 'close':
                terms = split_terms(rest)
                return Close(parse_literal(terms[0]) if terms else None, line=lineno), ''
            case 'wait' | 'sleep':
                terms = split_terms(rest)
                return Wait(parse_literal(terms[0]) if terms else 1000, line=lineno), ''
            case 'set':
                return self._parse_set(rest, lineno), ''
            case 'print' | 'log':
                return Print(parse_message(rest) if rest else '', line=lineno), ''
            case 'emit':
                return self._parse_emit(rest, lineno), ''
            case 'on':
                return self._parse_on(text, rest, lineno)
            case 'if':
                return self._parse_if(text, lineno)
            case 'loop' | 'repeat':
                return self._parse_loop(text, rest, lineno)
            case 'while':
                return self._parse_while(text, len(raw_kw), lineno)
            case 'foreach' | 'for':
                return self._parse_foreach(text, rest, lineno)
            case 'def' | 'func' | 'function':
                return self._parse_function(text, lineno)
            case 'call':
                terms = split_terms(rest)
                if not terms:
                    raise ParseError("call: missing function name", line=lineno)
                return Call(terms[0], tuple(parse_literal(t) for t in terms[1:]), line=lineno), ''
            case 'return':
                return Return(parse_value(rest) if rest else None, line=lineno), ''
            case 'break':
                return Break(line=lineno), ''
            case 'continue':
                return Continue(line=lineno), ''
            case 'alert' | 'confirm' | 'prompt':
                return self._parse_dialog(kw, rest, lineno), ''
            case 'notify':
                return Notify(parse_message(rest) if rest else '', line=lineno), ''
            case 'focus' | 'minimize' | 'maximize':
                terms = split_terms(rest)
                if not terms:
                    raise ParseError(f"{kw}: missing target", line=lineno)
                return WindowOp(kw, parse_literal(terms[0]), line=lineno), ''
            case 'play':
                terms = split_terms(rest)
                if not terms:
                    raise ParseError("play: missing sound", line=lineno)
                return Play(parse_literal(terms[0]), line=lineno), ''
            case 'write':
                return self._parse_write(rest, lineno), ''
            case 'read':
                return self._parse_read(rest, lineno), ''
            case 'mkdir':
                return Mkdir(self._required_path(kw, rest, lineno), line=lineno), ''
            case 'delete' | 'rm':
                return Delete(self._required_path(kw, rest, lineno), line=lineno), ''
            case 'try':
                return self._parse_try(text, lineno)
            case 'throw':
                return Throw(parse_message(rest) if rest else 'Error', line=lineno), ''
            case 'assert':
                return self._parse_assert(rest, lineno), ''
            case 'else' | 'catch':
                raise ParseError(f"Unexpected '{kw}'", line=lineno)

        if '=' in text:
            m = _SET_RE.match(text)
            if m:
                return Set(m.group(1), parse_value(m.group(2)), line=lineno), ''
        terms = split_terms(text)
        return Command(terms[0].lower(), tuple(parse_literal(t) for t in terms[1:]), line=lineno), ''

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _block(self, text: str, start: int, lineno: int, what: str) -> Tuple[Tuple[Statement, ...], int]:
        """Parse the `{ ... }` block opening at or after `start`. Returns (body, index after '}')."""
        open_idx = text.find('{', start)
        if open_idx < 0:
            raise ParseError(f"{what}: expected '{{'", line=lineno)
        close_idx = match_brace(text, open_idx)
        if close_idx < 0:
            raise ParseError(f"{what}: unclosed block", line=lineno)
        body_line = lineno + text.count('\n', 0, open_idx)
        body = self.parse(text[open_idx + 1:close_idx], body_line)
        return body, close_idx + 1

    def _pairs(self, tokens: List[str]) -> Tuple[Tuple[str, Any], ...]:
        pairs = []
        for tok in tokens:
            if '=' in tok:
                key, value = tok.split('=', 1)
                pairs.append((key, parse_literal(value)))
        return tuple(pairs)

    def _var_name(self, token: Optional[str], what: str, lineno: int) -> str:
        m = _VARNAME_RE.match(token or '')
        if not m:
            raise ParseError(f"{what}: invalid variable name {token!r}", line=lineno)
        return m.group(1)

    def _required_path(self, kw: str, rest: str, lineno: int) -> Any:
        terms = split_terms(rest)
        if not terms:
            raise ParseError(f"{kw}: missing path", line=lineno)
        return parse_literal(terms[0])

    # ------------------------------------------------------------------
    # Simple statements
    # ------------------------------------------------------------------

    def _parse_launch(self, text: str, rest: str, lineno: int) -> Launch:
        tokens = tokenize(rest, keep_quotes=True)
        if not tokens:
            raise ParseError("launch: missing app name", line=lineno)
        params: Tuple = ()
        lowered = [t.lower() for t in tokens]
        if 'with' in lowered:
            params = self._pairs(tokens[lowered.index('with') + 1:])
        return Launch(parse_literal(tokens[0]), params, line=lineno)

    def _parse_set(self, rest: str, lineno: int) -> Set:
        m = _SET_RE.match(rest)
        if not m:
            raise ParseError("set: expected 'set $name = value'", line=lineno)
        return Set(m.group(1), parse_value(m.group(2)), line=lineno)

    def _parse_emit(self, rest: str, lineno: int) -> Emit:
        tokens = tokenize(rest, keep_quotes=True)
        if not tokens:
            raise ParseError("emit: missing event name", line=lineno)
        return Emit(tokens[0], self._pairs(tokens[1:]), line=lineno)

    def _parse_dialog(self, kw: str, rest: str, lineno: int) -> Dialog:
        into = None
        default = None
        idx = find_word(rest, 'into')
        if idx >= 0:
            into = self._var_name(rest[idx + 4:].strip(), kw, lineno)
            rest = rest[:idx].strip()
        if kw == 'prompt':
            idx = find_word(rest, 'default')
            if idx >= 0:
                default = parse_value(rest[idx + 7:])
                rest = rest[:idx].strip()
        return Dialog(kw, parse_message(rest) if rest else '', default, into, line=lineno)

    def _parse_write(self, rest: str, lineno: int) -> Write:
        idx = -1
        pos = find_word(rest, 'to')
        while pos >= 0:
            idx = pos
            pos = find_word(rest, 'to', pos + 2)
        if idx < 0:
            raise ParseError("write: missing 'to'", line=lineno)
        target = split_terms(rest[idx + 2:])
        if not target:
            raise ParseError("write: missing path", line=lineno)
        content = rest[:idx].strip()
        return Write(parse_message(content) if content else '', parse_literal(target[0]), line=lineno)

    def _parse_read(self, rest: str, lineno: int) -> Read:
        terms = split_terms(rest)
        if not terms:
            raise ParseError("read: missing path", line=lineno)
        into = 'result'
        lowered = [t.lower() for t in terms]
        if 'into' in lowered:
            pos = lowered.index('into')
            into = self._var_name(terms[pos + 1] if pos + 1 < len(terms) else None, 'read', lineno)
        return Read(parse_literal(terms[0]), into, line=lineno)

    def _parse_assert(self, rest: str, lineno: int) -> Assert:
        parts = split_top_level(rest)
        if not parts:
            raise ParseError("assert: missing condition", line=lineno)
        message = parse_message(parts[1]) if len(parts) > 1 else None
        return Assert(parse_condition(parts[0]), message, line=lineno)

    # ------------------------------------------------------------------
    # Block statements
    # ------------------------------------------------------------------

    def _parse_on(self, text: str, rest: str, lineno: int) -> Parsed:
        terms = split_terms(rest)
        if not terms or terms[0].startswith('{'):
            raise ParseError("on: missing event name", line=lineno)
        body, end = self._block(text, text.find(terms[0], 2) + len(terms[0]), lineno, 'on')
        return On(terms[0], body, line=lineno), text[end:]

    def _parse_if(self, text: str, lineno: int) -> Parsed:
        then_idx = find_word(text, 'then')
        if then_idx < 0:
            raise ParseError("if: missing 'then'", line=lineno)
        condition = parse_condition(text[2:then_idx])
        then_body, end = self._block(text, then_idx + 4, lineno, 'if')
        rest = text[end:]
        stripped = rest.lstrip()
        else_body: Tuple = ()
        if find_word(stripped, 'else') == 0:
            after = stripped[4:].lstrip()
            else_line = lineno + text.count('\n', 0, len(text) - len(after))
            if find_word(after, 'if') == 0:
                nested, rest = self._parse_if(after, else_line)
                else_body = (nested,)
            else:
                else_body, end = self._block(after, 0, else_line, 'else')
                if after[:after.find('{')].strip():
                    raise ParseError("else: expected '{'", line=else_line)
                rest = after[end:]
        return If(condition, then_body, else_body, line=lineno), rest

    def _parse_loop(self, text: str, rest: str, lineno: int) -> Parsed:
        terms = split_terms(rest)
        if not terms:
            raise ParseError("loop: missing count", line=lineno)
        if terms[0].lower() == 'while':
            return self._parse_while(text, text.lower().find('while') + 5, lineno)
        count = parse_literal(terms[0].split('{', 1)[0])
        if not isinstance(count, (int, float, VariableRef)) or isinstance(count, bool):
            raise ParseError(f"loop: invalid count {terms[0]!r}", line=lineno)
        body, end = self._block(text, 0, lineno, 'loop')
        return Loop(count, body, line=lineno), text[end:]

    def _parse_while(self, text: str, cond_start: int, lineno: int) -> Parsed:
        open_idx = text.find('{', cond_start)
        if open_idx < 0:
            raise ParseError("while: expected '{'", line=lineno)
        condition = parse_condition(text[cond_start:open_idx])
        body, end = self._block(text, open_idx, lineno, 'while')
        return While(condition, body, line=lineno), text[end:]

    def _parse_foreach(self, text: str, rest: str, lineno: int) -> Parsed:
        in_idx = find_word(text, 'in')
        if in_idx < 0:
            raise ParseError("foreach: missing 'in'", line=lineno)
        terms = split_terms(rest)
        var = self._var_name(terms[0] if terms else None, 'foreach', lineno)
        open_idx = text.find('{', in_idx)
        if open_idx < 0:
            raise ParseError("foreach: expected '{'", line=lineno)
        iterable_text = text[in_idx + 2:open_idx].strip()
        if not iterable_text:
            raise ParseError("foreach: missing collection", line=lineno)
        body, end = self._block(text, open_idx, lineno, 'foreach')
        return ForEach(var, parse_value(iterable_text), body, line=lineno), text[end:]

    def _parse_function(self, text: str, lineno: int) -> Parsed:
        m = _FUNC_RE.match(text)
        if not m:
            raise ParseError("Malformed function definition", line=lineno)
        params = tuple(
            p.strip().lstrip('$') for p in (m.group(2) or '').split(',') if p.strip()
        )
        body, end = self._block(text, m.end(), lineno, 'function')
        return FunctionDef(m.group(1), params, body, line=lineno), text[end:]

    def _parse_try(self, text: str, lineno: int) -> Parsed:
        body, end = self._block(text, 3, lineno, 'try')
        rest = text[end:].lstrip()
        if find_word(rest, 'catch') != 0:
            raise ParseError("try: missing 'catch'", line=lineno)
        catch_line = lineno + text.count('\n', 0, len(text) - len(rest))
        after = rest[5:]
        open_idx = after.find('{')
        if open_idx < 0:
            raise ParseError("catch: expected '{'", line=catch_line)
        error_var = 'error'
        head = after[:open_idx].strip()
        if head:
            error_var = self._var_name(head, 'catch', catch_line)
        catch_body, end = self._block(after, open_idx, catch_line, 'catch')
        return Try(body, error_var, catch_body, line=lineno), after[end:]


def parse(text: str) -> Tuple[Statement, ...]:
    """Module-level convenience wrapper."""
    return Parser().parse(text)
