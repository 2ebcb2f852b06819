"""
kiln.runtime.types - Core type definitions for Kiln

This module contains the fundamental types shared by the compiler stages:
- Symbol: Represents symbolic identifiers in Kiln code
- Keyword: Self-evaluating names (:keyword), compiled to their name string
- VectorLiteral: AST representation of vector literals [...]
- MapLiteral: AST representation of map literals {...}
- SetLiteral: AST representation of set literals #{...}
- normalize_name: Converts Lisp-style names to valid JavaScript identifiers

Composite nodes carry the file, line, column and character offset they were
read from. Strings, numbers, booleans and nil are plain Python values.
"""

from dataclasses import dataclass
from typing import Any

# JavaScript reserved words that cannot be used as binding names
JS_RESERVED = frozenset(
    {
        "break",
        "case",
        "catch",
        "class",
        "const",
        "continue",
        "debugger",
        "default",
        "delete",
        "do",
        "else",
        "enum",
        "export",
        "extends",
        "false",
        "finally",
        "for",
        "function",
        "if",
        "import",
        "in",
        "instanceof",
        "let",
        "new",
        "null",
        "return",
        "super",
        "switch",
        "this",
        "throw",
        "true",
        "try",
        "typeof",
        "var",
        "void",
        "while",
        "with",
        "yield",
        "await",
        "static",
        "implements",
        "interface",
        "package",
        "private",
        "protected",
        "public",
    }
)


def normalize_name(name: str) -> str:
    """
    Normalize a Lisp-style identifier to a valid JavaScript identifier.

    Converts hyphens to underscores and special characters to safe suffixes.
    This is the single source of truth used by the code generator for
    bindings, parameters, imports and exports.
    """
    # Operator names used as values
    SPECIAL_NAMES = {
        "+": "_plus_",
        "-": "_minus_",
        "*": "_star_",
        "/": "_slash_",
        "=": "_eq_",
        "<": "_lt_",
        ">": "_gt_",
        "<=": "_lte_",
        ">=": "_gte_",
        "!=": "_neq_",
        "==": "_eqeq_",
    }

    if name in SPECIAL_NAMES:
        return SPECIAL_NAMES[name]

    result = name.replace("-", "_")

    # Predicates like even?, nil?
    if result.endswith("?"):
        result = result[:-1] + "_q"

    # Mutators like set!, swap!
    if result.endswith("!"):
        result = result[:-1] + "_bang"

    result = result.replace("?", "_q_")
    result = result.replace("!", "_bang_")
    result = result.replace("*", "_star_")
    result = result.replace("+", "_plus_")
    result = result.replace("'", "_prime_")
    result = result.replace("<", "_lt_")
    result = result.replace(">", "_gt_")
    result = result.replace("=", "_eq_")
    result = result.replace("/", "_slash_")
    result = result.replace("%", "_pct_")
    result = result.replace("&", "_amp_")
    result = result.replace("#", "_hash_")

    if result and result[0].isdigit():
        result = "_" + result
    if result in JS_RESERVED:
        result = result + "_"

    return result


@dataclass(eq=False)
class Symbol:
    """
    Represents a symbolic identifier in Kiln code.

    Symbols compare equal by name only (source location is ignored), so
    trees read from different places still compare structurally.

    Attributes:
        name: The string name of the symbol
        file: Source file the symbol was read from
        line: Source line number (1-based)
        col: Source column number (0-based)
        offset: Character offset into the source text
    """

    name: str
    file: str = "<string>"
    line: int = 0
    col: int = 0
    offset: int = 0

    def __repr__(self):
        return self.name

    def __eq__(self, other):
        if isinstance(other, Symbol):
            return self.name == other.name
        return False

    def __hash__(self):
        return hash(("Symbol", self.name))


@dataclass(eq=False)
class Keyword:
    """
    Keyword type - a self-evaluating name such as :else or :name.

    Keywords compare equal by name only. In generated code a keyword
    becomes its name as a string.
    """

    name: str
    file: str = "<string>"
    line: int = 0
    col: int = 0
    offset: int = 0

    def __repr__(self):
        return f":{self.name}"

    def __str__(self):
        return f":{self.name}"

    def __eq__(self, other):
        if isinstance(other, Keyword):
            return self.name == other.name
        return False

    def __hash__(self):
        return hash(("Keyword", self.name))


@dataclass(eq=False)
class VectorLiteral:
    """
    AST node representing a vector literal [...] in source code.

    Attributes:
        items: List of elements in the vector
        file: Source file
        line: Source line number
        col: Source column number
        offset: Character offset into the source text
    """

    items: list[Any]
    file: str = "<string>"
    line: int = 0
    col: int = 0
    offset: int = 0

    def __repr__(self):
        return f"VectorLiteral({self.items!r})"

    def __iter__(self):
        return iter(self.items)

    def __len__(self):
        return len(self.items)

    def __getitem__(self, index):
        return self.items[index]

    def __eq__(self, other):
        if isinstance(other, VectorLiteral):
            return self.items == other.items
        return False

    __hash__ = None  # type: ignore[assignment]

    def with_items(self, items: list[Any]) -> "VectorLiteral":
        """Return a new VectorLiteral with the same location and new items."""
        return VectorLiteral(items, self.file, self.line, self.col, self.offset)


@dataclass(eq=False)
class MapLiteral:
    """
    Represents a map literal that preserves the order of its key-value pairs.

    Attributes:
        pairs: List of (key, value) tuples in the order they appeared
    """

    pairs: list[tuple[Any, Any]]
    file: str = "<string>"
    line: int = 0
    col: int = 0
    offset: int = 0

    def __repr__(self):
        return f"MapLiteral({self.pairs!r})"

    def __eq__(self, other):
        if isinstance(other, MapLiteral):
            return self.pairs == other.pairs
        return False

    __hash__ = None  # type: ignore[assignment]

    def with_pairs(self, pairs: list[tuple[Any, Any]]) -> "MapLiteral":
        """Return a new MapLiteral with the same location and new pairs."""
        return MapLiteral(pairs, self.file, self.line, self.col, self.offset)


@dataclass(eq=False)
class SetLiteral:
    """AST node representing a set literal #{...} in source code."""

    items: list[Any]
    file: str = "<string>"
    line: int = 0
    col: int = 0
    offset: int = 0

    def __repr__(self):
        return f"SetLiteral({self.items!r})"

    def __iter__(self):
        return iter(self.items)

    def __len__(self):
        return len(self.items)

    def __eq__(self, other):
        if isinstance(other, SetLiteral):
            return self.items == other.items
        return False

    __hash__ = None  # type: ignore[assignment]

    def with_items(self, items: list[Any]) -> "SetLiteral":
        """Return a new SetLiteral with the same location and new items."""
        return SetLiteral(items, self.file, self.line, self.col, self.offset)


# Type exports
__all__ = [
    "Symbol",
    "Keyword",
    "VectorLiteral",
    "MapLiteral",
    "SetLiteral",
    "JS_RESERVED",
    "normalize_name",
]
