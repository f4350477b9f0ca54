"""
Splits RetroScript source text into logical lines, statements and tokens.
"""
from typing import List, Tuple

from retroscript.retro_datatypes import ParseError

QUOTES = ('"', "'")


def strip_inline_comment(line: str) -> str:
    # Only safe when the line has no quote at all; a '#' may live inside a string.
    if '"' in line or "'" in line:
        return line
    idx = line.find('#')
    if idx > 0:
        return line[:idx].rstrip()
    return line


def split_logical_lines(text: str, first_line: int = 1) -> List[Tuple[int, str]]:
    """
    Group source lines into logical lines.

    A logical line is either one source line or a `{ ... }` block spanning
    several source lines, joined with newlines. Returns `(line_number, text)`
    pairs where line_number is where the logical line starts.
    """
    out: List[Tuple[int, str]] = []
    buf: List[str] = []
    depth = 0
    start = first_line

    for offset, raw in enumerate(text.split('\n')):
        lineno = first_line + offset
        line = raw.strip()
        if depth == 0:
            if not line or line.startswith('#'):
                continue
            line = strip_inline_comment(line)
            if not line:
                continue
            start = lineno
        # Braces inside quoted strings are counted too.
        depth += line.count('{') - line.count('}')
        if depth < 0:
            raise ParseError("Unexpected '}'", line=lineno)
        buf.append(line)
        if depth == 0:
            out.append((start, '\n'.join(buf)))
            buf = []

    if buf:
        raise ParseError("Unclosed block: missing '}'", line=start)
    return out


def split_statements(line: str) -> List[str]:
    """Split on ';' outside quotes and outside braces."""
    parts: List[str] = []
    current: List[str] = []
    quote = None
    depth = 0
    for ch in line:
        if quote:
            if ch == quote:
                quote = None
        elif ch in QUOTES:
            quote = ch
        elif ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
        elif ch == ';' and depth == 0:
            parts.append(''.join(current).strip())
            current = []
            continue
        current.append(ch)
    parts.append(''.join(current).strip())
    return [p for p in parts if p]


def tokenize(line: str, keep_quotes: bool = False) -> List[str]:
    """
    Split on unquoted whitespace.

    A quoted run joins the token it appears in; the quotes themselves are
    dropped unless keep_quotes is set:

        tokenize('launch notepad with file="a b.txt"')
        -> ['launch', 'notepad', 'with', 'file=a b.txt']
    """
    tokens: List[str] = []
    current: List[str] = []
    quote = None
    in_token = False
    for ch in line:
        if quote:
            if ch == quote:
                quote = None
                if keep_quotes:
                    current.append(ch)
            else:
                current.append(ch)
        elif ch in QUOTES:
            quote = ch
            in_token = True
            if keep_quotes:
                current.append(ch)
        elif ch.isspace():
            if in_token:
                tokens.append(''.join(current))
                current = []
                in_token = False
        else:
            current.append(ch)
            in_token = True
    if in_token:
        tokens.append(''.join(current))
    return tokens


def find_word(text: str, word: str, start: int = 0) -> int:
    """
    Index of `word` as a whole, unquoted, top-level (brace depth 0) word in
    text, or -1. Matching is case-insensitive.
    """
    lowered = text.lower()
    target = word.lower()
    quote = None
    depth = 0
    n = len(text)
    i = 0
    while i < n:
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
        elif ch in QUOTES:
            quote = ch
        elif ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
        elif (i >= start and depth == 0 and lowered.startswith(target, i)
              and (i == 0 or text[i - 1].isspace() or text[i - 1] == '}')):
            end = i + len(target)
            if end == n or text[end].isspace() or text[end] == '{':
                return i
        i += 1
    return -1


def match_brace(text: str, open_idx: int) -> int:
    """Index of the '}' closing the '{' at open_idx, or -1."""
    depth = 0
    for i in range(open_idx, len(text)):
        ch = text[i]
        if ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
            if depth == 0:
                return i
    return -1
