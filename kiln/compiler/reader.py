"""
kiln.compiler.reader - Tokenizer and Reader for Kiln source code

This module handles Phase 1 of compilation: reading source text and
converting it into Kiln forms (S-expressions with source location tracking).

Components:
- Token: A token with its source location
- SourceList: A list that carries source location information
- tokenize(): Lazily converts source text to tokens
- Reader: Converts tokens to forms (S-expressions)
- iter_forms(): Lazy, restartable iteration over top-level forms
- read_str(): Convenience function to read a source string to forms

The reader produces forms using types from kiln.runtime.types:
- Symbol: Variable/function names
- Keyword: Self-evaluating names (:keyword)
- VectorLiteral: [...] syntax
- MapLiteral: {...} syntax
- SetLiteral: #{...} syntax
- SourceList: (...) lists with location info

Reading is purely syntactic: arity, scoping and the meaning of special
forms are checked by the expander and the code generator.
"""

from dataclasses import dataclass
from typing import Any, Iterator, Optional

from kiln.compiler.errors import KilnSyntaxError
from kiln.runtime.types import Keyword, MapLiteral, SetLiteral, Symbol, VectorLiteral

# =============================================================================
# Source Location Tracking
# =============================================================================


@dataclass
class Token:
    """A token with its source location."""

    value: Any  # str for delimiters and atoms, tuple for STRING / UNQUOTE / ...
    line: int  # 1-based line number
    col: int  # 0-based column offset
    offset: int  # character offset into the source

    def __repr__(self):
        return f"Token({self.value!r}, {self.line}:{self.col})"


class SourceList(list):
    """A list subclass that carries source location information.

    Used to represent S-expressions (parenthesized lists) while
    preserving source location for error messages. Equality is plain
    list equality, so location never affects structural comparison.
    """

    __slots__ = ("file", "line", "col", "offset")

    def __init__(self, items=None, file="<string>", line=0, col=0, offset=0):
        super().__init__(items if items is not None else [])
        self.file = file
        self.line = line
        self.col = col
        self.offset = offset

    def with_items(self, items) -> "SourceList":
        """Return a new SourceList at the same location holding items."""
        return SourceList(items, self.file, self.line, self.col, self.offset)


def located(items, node, default_file: str = "<string>") -> SourceList:
    """Build a SourceList positioned at node (or unpositioned if node has none)."""
    return SourceList(
        items,
        getattr(node, "file", default_file),
        getattr(node, "line", 0),
        getattr(node, "col", 0),
        getattr(node, "offset", 0),
    )


# Sentinel returned for #_ discarded forms
DISCARD = object()

# Reader macro prefix -> symbol name of the wrapping form
QUOTE_MARKERS = {
    "'": "quote",
    "`": "quasiquote",
    "~": "unquote",
    "~@": "unquote-splicing",
}

CLOSING = {"(": ")", "[": "]", "{": "}", "#{": "}"}


# =============================================================================
# Tokenizer
# =============================================================================


def tokenize(src: str, file: str = "<string>") -> Iterator[Token]:
    """
    Tokenize source code lazily, yielding Tokens with source locations.

    Commas are whitespace. Tokenization errors are raised only when the
    offending token is reached, so earlier tokens are always delivered.
    """
    i = 0
    n = len(src)
    line = 1
    line_start = 0

    WHITESPACE = " \t\r\n,"
    delimiters = set("()[]{}")

    while i < n:
        c = src[i]
        if c == "\n":
            i += 1
            line += 1
            line_start = i
            continue
        if c in WHITESPACE:
            i += 1
            continue
        if c == ";":
            # comment to end of line
            while i < n and src[i] != "\n":
                i += 1
            continue

        tok_line = line
        tok_col = i - line_start
        tok_offset = i

        if c in "'`":
            yield Token(c, tok_line, tok_col, tok_offset)
            i += 1
            continue
        if c == "~":
            if i + 1 < n and src[i + 1] == "@":
                yield Token("~@", tok_line, tok_col, tok_offset)
                i += 2
            else:
                yield Token("~", tok_line, tok_col, tok_offset)
                i += 1
            continue
        if c == "#":
            if i + 1 < n and src[i + 1] == "{":
                yield Token("#{", tok_line, tok_col, tok_offset)
                i += 2
                continue
            if i + 1 < n and src[i + 1] == "_":
                yield Token("#_", tok_line, tok_col, tok_offset)
                i += 2
                continue
            # Otherwise fall through: '#' may end a symbol (auto-gensym)
        if c in delimiters:
            yield Token(c, tok_line, tok_col, tok_offset)
            i += 1
            continue
        if c == '"':
            i += 1
            buf = []
            while i < n:
                ch = src[i]
                if ch == "\\" and i + 1 < n:
                    esc = src[i + 1]
                    if esc == "n":
                        buf.append("\n")
                    elif esc == "t":
                        buf.append("\t")
                    elif esc == "r":
                        buf.append("\r")
                    elif esc == "\n":
                        line += 1
                        line_start = i + 2
                    else:
                        buf.append(esc)
                    i += 2
                elif ch == '"':
                    i += 1
                    break
                else:
                    if ch == "\n":
                        line += 1
                        line_start = i + 1
                    buf.append(ch)
                    i += 1
            else:
                raise KilnSyntaxError(
                    "unterminated string",
                    file,
                    tok_line,
                    tok_col,
                    tok_offset,
                    expected='"',
                )
            yield Token(("STRING", "".join(buf)), tok_line, tok_col, tok_offset)
            continue
        # symbol / number / keyword
        start = i
        while (
            i < n
            and src[i] not in WHITESPACE
            and src[i] not in delimiters
            and src[i] not in "\";"
        ):
            i += 1
        yield Token(src[start:i], tok_line, tok_col, tok_offset)


# =============================================================================
# Reader
# =============================================================================


class Reader:
    """
    Reader that parses a token stream into forms with source location tracking.

    The token stream is consumed lazily with one token of lookahead.
    """

    def __init__(self, tokens: Iterator[Token], file: str = "<string>", src: str = ""):
        self.tokens = iter(tokens)
        self.file = file
        self.src_len = len(src)
        self._peeked: Optional[Token] = None
        self._last: Optional[Token] = None

    def peek(self) -> Optional[Token]:
        if self._peeked is None:
            self._peeked = next(self.tokens, None)
        return self._peeked

    def eof(self) -> bool:
        return self.peek() is None

    def next(self) -> Optional[Token]:
        tok = self.peek()
        self._peeked = None
        self._last = tok
        return tok

    def error(self, message: str, tok: Optional[Token], expected: Optional[str] = None):
        if tok is None:
            line = self._last.line if self._last else 1
            col = self._last.col if self._last else 0
            return KilnSyntaxError(
                message, self.file, line, col, self.src_len, expected=expected
            )
        return KilnSyntaxError(
            message, self.file, tok.line, tok.col, tok.offset, expected=expected
        )

    def read(self) -> Iterator[Any]:
        """Yield top-level forms one at a time, skipping discarded ones."""
        while not self.eof():
            form = self.read_form()
            if form is not DISCARD:
                yield form

    def read_form(self):
        """Read a single form from the token stream."""
        tok = self.next()
        if tok is None:
            raise self.error("unexpected end of input", None, expected="form")
        value = tok.value

        if isinstance(value, str) and value in QUOTE_MARKERS:
            inner = self.read_required(tok)
            marker = Symbol(QUOTE_MARKERS[value], self.file, tok.line, tok.col, tok.offset)
            return SourceList([marker, inner], self.file, tok.line, tok.col, tok.offset)

        if value == "#_":
            self.read_required(tok)
            return DISCARD

        if value == "(":
            items = self.read_until(tok)
            return SourceList(items, self.file, tok.line, tok.col, tok.offset)
        if value == "[":
            items = self.read_until(tok)
            return VectorLiteral(items, self.file, tok.line, tok.col, tok.offset)
        if value == "{":
            items = self.read_until(tok)
            if len(items) % 2 != 0:
                raise self.error(
                    "map literal must have an even number of forms",
                    tok,
                    expected="value for every key",
                )
            pairs = [(items[j], items[j + 1]) for j in range(0, len(items), 2)]
            return MapLiteral(pairs, self.file, tok.line, tok.col, tok.offset)
        if value == "#{":
            items = self.read_until(tok)
            return SetLiteral(items, self.file, tok.line, tok.col, tok.offset)
        if value in (")", "]", "}"):
            raise self.error(f"unexpected '{value}'", tok, expected="form")
        if isinstance(value, tuple) and value[0] == "STRING":
            # Strings are plain Python values without location info
            return value[1]
        return self.read_atom(tok)

    def read_required(self, prefix: Token):
        """Read the form following a reader-macro prefix such as ' or #_."""
        nxt = self.peek()
        if nxt is None or (isinstance(nxt.value, str) and nxt.value in (")", "]", "}")):
            raise self.error(
                f"'{prefix.value}' must be followed by a form", nxt, expected="form"
            )
        form = self.read_form()
        if form is DISCARD:
            return self.read_required(prefix)
        return form

    def read_until(self, open_tok: Token) -> list:
        """Read forms up to the delimiter closing open_tok."""
        end_delim = CLOSING[open_tok.value]
        items = []
        while True:
            tok = self.peek()
            if tok is None:
                raise self.error(
                    f"unterminated '{open_tok.value}' opened at line {open_tok.line}",
                    None,
                    expected=end_delim,
                )
            if tok.value == end_delim:
                self.next()
                return items
            if isinstance(tok.value, str) and tok.value in (")", "]", "}"):
                raise self.error(
                    f"mismatched '{tok.value}' closing '{open_tok.value}' "
                    f"opened at line {open_tok.line}",
                    tok,
                    expected=end_delim,
                )
            form = self.read_form()
            if form is not DISCARD:
                items.append(form)

    def read_atom(self, tok: Token):
        """Read an atomic value (number, boolean, nil, keyword, or symbol)."""
        text = tok.value

        # numbers
        body = text[1:] if text[0] in "+-" and len(text) > 1 else text
        if body[0].isdigit() or (body[0] == "." and len(body) > 1 and body[1].isdigit()):
            try:
                if body.lower().startswith("0x"):
                    return int(text, 16)
                if any(ch in text for ch in ".eE"):
                    return float(text)
                return int(text)
            except ValueError:
                raise self.error(
                    f"invalid number '{text}'", tok, expected="number"
                ) from None

        if text == "true":
            return True
        if text == "false":
            return False
        if text == "nil":
            return None

        if text.startswith(":"):
            if len(text) == 1 or text[1] == ":":
                raise self.error(
                    f"invalid keyword '{text}'", tok, expected="keyword name"
                )
            return Keyword(text[1:], self.file, tok.line, tok.col, tok.offset)

        return Symbol(text, self.file, tok.line, tok.col, tok.offset)


# =============================================================================
# Convenience Functions
# =============================================================================


def iter_forms(src: str, file: str = "<string>") -> Iterator[Any]:
    """
    Lazily read top-level forms from source text.

    Each form is yielded as soon as it is complete, so a malformed later
    form never prevents earlier ones from being returned. Calling again
    restarts from the beginning of the text.
    """
    return Reader(tokenize(src, file), file, src).read()


def read_str(src: str, file: str = "<string>") -> list:
    """Phase 1: Read - tokenize and parse all top-level forms of src."""
    return list(iter_forms(src, file))


def is_source_language(text: str) -> bool:
    """Heuristic: Kiln source starts with an open-list or open-vector delimiter."""
    return text.strip().startswith(("(", "["))


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "Token",
    "SourceList",
    "located",
    "DISCARD",
    "tokenize",
    "Reader",
    "iter_forms",
    "read_str",
    "is_source_language",
]
