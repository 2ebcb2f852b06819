"""
kiln.compiler.macros - Macro system for Kiln

This module implements Kiln's macro system, including:
- MacroDefinition: a parsed (defmacro ...) or (macro ...) form
- MacroRegistry: the per-module three-tier registry (local, imported, global)
- MacroEvaluator: the compile-time interpreter that runs macro bodies
- MacroExpander: rewrite-to-fixpoint expansion over a module's forms

Macro definitions:
    (defmacro name (params...) body...)   ; global, visible to every later module
    (macro name (params...) body...)      ; local to the defining module
    (export [name])                       ; promotes a local macro to exported

Lookup order for a head symbol: the module's own macros, then macros it
imported (by local alias), then the session's global macros.

Macros are compile-time transformations that convert Kiln forms into
other Kiln forms before code generation.
"""

import enum
import itertools
import logging
import operator
from dataclasses import dataclass, replace
from functools import reduce
from typing import Any, Callable, Optional

from kiln.compiler.errors import (
    KilnSyntaxError,
    MacroError,
    MacroExpansionLimitExceeded,
)
from kiln.compiler.reader import SourceList, located
from kiln.runtime.types import Keyword, MapLiteral, SetLiteral, Symbol, VectorLiteral

logger = logging.getLogger(__name__)

# Forms whose bodies are never scanned for macro invocations
NO_EXPAND_FORMS = frozenset({"quote", "quasiquote", "import"})

# Forms whose leading parameter or name positions are bindings, not code.
# Value is the number of leading items (head included) kept as written.
BINDING_HEADS = {"defn": 3, "catch": 2}

# Ceiling on nested expansions along one path of the tree
MAX_NESTING = 200

_MISSING = object()


class Visibility(enum.Enum):
    LOCAL = "local"
    EXPORTED = "exported"
    GLOBAL = "global"


# Definition form head -> visibility of the macro it defines
MACRO_DEFINERS = {
    "defmacro": Visibility.GLOBAL,
    "macro": Visibility.LOCAL,
}


# =============================================================================
# Macro Definitions
# =============================================================================


@dataclass
class MacroDefinition:
    """
    A macro: parameter pattern plus the body evaluated at expansion time.

    Attributes:
        name: Macro name as written
        params: Fixed parameter names
        rest: Name capturing remaining arguments (after &), if any
        body: Body forms, evaluated by MacroEvaluator
        visibility: LOCAL, EXPORTED or GLOBAL
        file, line, col: Definition site
    """

    name: str
    params: list[str]
    rest: Optional[str]
    body: list[Any]
    visibility: Visibility
    file: str = "<string>"
    line: int = 0
    col: int = 0

    @property
    def site(self) -> str:
        return f"{self.file}:{self.line}:{self.col}"

    def exported(self) -> "MacroDefinition":
        """Return this definition promoted to EXPORTED (globals stay global)."""
        if self.visibility is Visibility.LOCAL:
            return replace(self, visibility=Visibility.EXPORTED)
        return self


def is_symbol(x, name=None):
    """Check if x is a Symbol, optionally with a specific name."""
    if isinstance(x, Symbol):
        if name is None:
            return True
        return x.name == name
    return False


def is_macro_definition(form) -> bool:
    return (
        isinstance(form, list)
        and len(form) > 0
        and isinstance(form[0], Symbol)
        and form[0].name in MACRO_DEFINERS
    )


def _syntax_error(message: str, node, expected: Optional[str] = None):
    return KilnSyntaxError(
        message,
        getattr(node, "file", None),
        getattr(node, "line", 0),
        getattr(node, "col", 0),
        getattr(node, "offset", 0),
        expected=expected,
    )


def parse_macro_definition(form) -> MacroDefinition:
    """Parse (defmacro name (params) body...) or (macro name (params) body...)."""
    kind = form[0].name
    if len(form) < 4:
        raise _syntax_error(
            f"{kind} requires a name, a parameter list and a body",
            form,
            expected="(" + kind + " name (params...) body...)",
        )
    name_form, params_form = form[1], form[2]
    if not isinstance(name_form, Symbol):
        raise _syntax_error(f"{kind} name must be a symbol", form, expected="symbol")
    if not isinstance(params_form, (list, VectorLiteral)):
        raise _syntax_error(
            f"{kind} parameters must be a list or vector", form, expected="parameter list"
        )

    params: list[str] = []
    rest: Optional[str] = None
    items = list(params_form)
    i = 0
    while i < len(items):
        item = items[i]
        if not isinstance(item, Symbol):
            raise _syntax_error(
                f"{kind} {name_form.name}: parameters must be symbols", form, "symbol"
            )
        if item.name == "&":
            if i + 2 != len(items) or not isinstance(items[i + 1], Symbol):
                raise _syntax_error(
                    f"{kind} {name_form.name}: '&' must be followed by exactly one name",
                    form,
                    "rest parameter name",
                )
            rest = items[i + 1].name
            break
        params.append(item.name)
        i += 1

    return MacroDefinition(
        name=name_form.name,
        params=params,
        rest=rest,
        body=list(form[3:]),
        visibility=MACRO_DEFINERS[kind],
        file=getattr(form, "file", "<string>"),
        line=getattr(form, "line", 0),
        col=getattr(form, "col", 0),
    )


def collect_macro_definitions(forms) -> tuple[list[MacroDefinition], list]:
    """
    First pass: pull top-level macro definitions out of a module's forms.

    Returns (definitions, remaining_forms). Definitions generate no code.
    """
    definitions = []
    remaining = []
    for form in forms:
        if is_macro_definition(form):
            definitions.append(parse_macro_definition(form))
        else:
            remaining.append(form)
    return definitions, remaining


# =============================================================================
# Macro Registry
# =============================================================================


class MacroRegistry:
    """
    A module's view of the macros it may expand.

    The local and imported tiers belong to this registry alone; the global
    tier is a dict shared by every registry in a compilation session.
    """

    def __init__(
        self,
        global_macros: Optional[dict[str, MacroDefinition]] = None,
        module: str = "<string>",
    ):
        self.module = module
        self.local: dict[str, MacroDefinition] = {}
        self.imported: dict[str, MacroDefinition] = {}
        self.global_macros = global_macros if global_macros is not None else {}

    def define(self, definition: MacroDefinition) -> None:
        """Register a macro defined in this module."""
        if definition.visibility is Visibility.GLOBAL:
            self.global_macros[definition.name] = definition
        else:
            self.local[definition.name] = definition
        logger.debug(
            "%s: defined %s macro '%s'",
            self.module,
            definition.visibility.value,
            definition.name,
        )

    def export(self, name: str) -> Optional[MacroDefinition]:
        """Promote a local macro to EXPORTED; returns None if name is not a macro here."""
        if name in self.local:
            promoted = self.local[name].exported()
            self.local[name] = promoted
            return promoted
        definition = self.global_macros.get(name)
        if definition is not None and definition.file == self.module:
            return definition
        return None

    def import_macro(self, alias: str, definition: MacroDefinition) -> None:
        """Make an exported macro of another module available under alias."""
        self.imported[alias] = definition

    def lookup(self, name: str) -> Optional[MacroDefinition]:
        if name in self.local:
            return self.local[name]
        if name in self.imported:
            return self.imported[name]
        return self.global_macros.get(name)

    def __contains__(self, name: str) -> bool:
        return self.lookup(name) is not None

    def visible_names(self) -> set[str]:
        return set(self.local) | set(self.imported) | set(self.global_macros)

    def visible_count(self) -> int:
        return len(self.visible_names())

    def exports(self) -> dict[str, MacroDefinition]:
        return {
            name: d
            for name, d in self.local.items()
            if d.visibility is Visibility.EXPORTED
        }


# =============================================================================
# Macro-time Builtins
# =============================================================================


def _truthy(x) -> bool:
    return x is not None and x is not False


def _seq(x) -> list:
    if x is None:
        return []
    if isinstance(x, (list, VectorLiteral, SetLiteral)):
        return list(x)
    if isinstance(x, MapLiteral):
        return [VectorLiteral([k, v]) for k, v in x.pairs]
    if isinstance(x, str):
        return list(x)
    raise TypeError(f"cannot use {x!r} as a sequence")


def _to_str(x) -> str:
    if x is None:
        return ""
    if x is True:
        return "true"
    if x is False:
        return "false"
    if isinstance(x, Symbol):
        return x.name
    if isinstance(x, Keyword):
        return f":{x.name}"
    return str(x)


def _nth(coll, index, default=_MISSING):
    items = _seq(coll)
    if 0 <= index < len(items):
        return items[index]
    if default is _MISSING:
        raise IndexError(f"index {index} out of range for sequence of {len(items)}")
    return default


def _hash_map(*kvs):
    if len(kvs) % 2 != 0:
        raise ValueError("hash-map requires an even number of arguments")
    return MapLiteral([(kvs[i], kvs[i + 1]) for i in range(0, len(kvs), 2)])


def _name(x) -> str:
    if isinstance(x, (Symbol, Keyword)):
        return x.name
    if isinstance(x, str):
        return x
    raise TypeError(f"cannot take the name of {x!r}")


def _minus(*args):
    if len(args) == 1:
        return -args[0]
    return reduce(operator.sub, args)


def _divide(*args):
    if len(args) == 1:
        return 1 / args[0]
    return reduce(operator.truediv, args)


def _chain(op):
    def compare(*args):
        return all(op(a, b) for a, b in zip(args, args[1:]))

    return compare


MACRO_BUILTINS: dict[str, Callable] = {
    # Construction
    "list": lambda *items: SourceList(list(items)),
    "vector": lambda *items: VectorLiteral(list(items)),
    "hash-map": _hash_map,
    "concat": lambda *seqs: SourceList([x for s in seqs for x in _seq(s)]),
    "cons": lambda x, coll: SourceList([x] + _seq(coll)),
    # Access
    "first": lambda coll: _nth(coll, 0, None),
    "second": lambda coll: _nth(coll, 1, None),
    "rest": lambda coll: SourceList(_seq(coll)[1:]),
    "nth": _nth,
    "count": lambda coll: len(_seq(coll)),
    "reverse": lambda coll: SourceList(list(reversed(_seq(coll)))),
    "last": lambda coll: (_seq(coll) or [None])[-1],
    "butlast": lambda coll: SourceList(_seq(coll)[:-1]),
    # Predicates
    "empty?": lambda coll: len(_seq(coll)) == 0,
    "nil?": lambda x: x is None,
    "symbol?": lambda x: isinstance(x, Symbol),
    "keyword?": lambda x: isinstance(x, Keyword),
    "list?": lambda x: isinstance(x, list),
    "vector?": lambda x: isinstance(x, VectorLiteral),
    "map?": lambda x: isinstance(x, MapLiteral),
    "string?": lambda x: isinstance(x, str),
    "number?": lambda x: isinstance(x, (int, float)) and not isinstance(x, bool),
    # Names
    "symbol": lambda name: Symbol(_to_str(name)),
    "keyword": lambda name: Keyword(_name(name)),
    "name": _name,
    "str": lambda *parts: "".join(_to_str(p) for p in parts),
    # Arithmetic and comparison
    "+": lambda *args: reduce(operator.add, args, 0),
    "-": _minus,
    "*": lambda *args: reduce(operator.mul, args, 1),
    "/": _divide,
    "inc": lambda x: x + 1,
    "dec": lambda x: x - 1,
    "=": _chain(operator.eq),
    "not=": lambda a, b: a != b,
    "<": _chain(operator.lt),
    ">": _chain(operator.gt),
    "<=": _chain(operator.le),
    ">=": _chain(operator.ge),
    "not": lambda x: not _truthy(x),
}


# =============================================================================
# Macro Evaluator
# =============================================================================


@dataclass
class _Frame:
    definition: MacroDefinition
    invocation: Any
    gensyms: dict[str, Symbol]


class MacroEvaluator:
    """
    Compile-time interpreter for macro bodies.

    Values are Kiln forms: symbols, lists, vectors, maps and literals.
    Supports quote, quasiquote with unquote/unquote-splicing, if, cond,
    let, do, and, or, calls to MACRO_BUILTINS, and nested macro calls.
    """

    def __init__(
        self,
        registry: MacroRegistry,
        gensym: Optional[Callable[[str], str]] = None,
    ):
        self.registry = registry
        if gensym is None:
            counter = itertools.count(1)

            def gensym(prefix: str) -> str:
                return f"{prefix}__{next(counter)}"

        self._gensym = gensym
        self._frames: list[_Frame] = []
        self.builtins = dict(MACRO_BUILTINS)
        self.builtins["gensym"] = self._gensym_builtin
        self._special: dict[str, Callable[[list, dict], Any]] = {
            "quote": self._eval_quote,
            "quasiquote": self._eval_quasiquote,
            "if": self._eval_if,
            "cond": self._eval_cond,
            "let": self._eval_let,
            "do": self._eval_do,
            "and": self._eval_and,
            "or": self._eval_or,
        }

    def _gensym_builtin(self, prefix="G") -> Symbol:
        return Symbol(self._gensym(_to_str(prefix)))

    def error(self, message: str, node=None) -> MacroError:
        frame = self._frames[-1]
        invocation = frame.invocation
        if node is not None and node is not invocation and getattr(node, "line", 0):
            message = f"{message} (at {node.file}:{node.line}:{node.col})"
        return MacroError(
            message,
            frame.definition.name,
            frame.definition.site,
            getattr(invocation, "file", None),
            getattr(invocation, "line", 0),
            getattr(invocation, "col", 0),
        )

    def bind_arguments(self, definition: MacroDefinition, args: list, invocation) -> dict:
        """Bind unevaluated argument forms to the macro's parameter pattern."""
        n_fixed = len(definition.params)
        if len(args) < n_fixed or (definition.rest is None and len(args) > n_fixed):
            expected = f"{n_fixed}" if definition.rest is None else f"at least {n_fixed}"
            raise MacroError(
                f"expected {expected} argument(s), got {len(args)}",
                definition.name,
                definition.site,
                getattr(invocation, "file", None),
                getattr(invocation, "line", 0),
                getattr(invocation, "col", 0),
            )
        env = dict(zip(definition.params, args))
        if definition.rest is not None:
            env[definition.rest] = SourceList(list(args[n_fixed:]))
        return env

    def apply(self, definition: MacroDefinition, args: list, invocation) -> Any:
        """Run a macro on unevaluated argument forms and return its expansion."""
        env = self.bind_arguments(definition, args, invocation)
        self._frames.append(_Frame(definition, invocation, {}))
        try:
            result = None
            for form in definition.body:
                result = self.evaluate(form, env)
            return result
        finally:
            self._frames.pop()

    def evaluate(self, form, env: dict) -> Any:
        if isinstance(form, Symbol):
            if form.name in env:
                return env[form.name]
            if form.name in self.builtins:
                return self.builtins[form.name]
            raise self.error(f"unbound symbol '{form.name}'", form)

        if isinstance(form, list):
            if not form:
                return form
            head = form[0]
            if isinstance(head, Symbol) and head.name not in env:
                special = self._special.get(head.name)
                if special is not None:
                    return special(form, env)
                definition = self.registry.lookup(head.name)
                if definition is not None:
                    expansion = self.apply(definition, list(form[1:]), form)
                    return self.evaluate(expansion, env)
            fn = self.evaluate(head, env)
            if not callable(fn):
                raise self.error(f"cannot call {fn!r} at expansion time", form)
            args = [self.evaluate(arg, env) for arg in form[1:]]
            try:
                return fn(*args)
            except (TypeError, ValueError, IndexError, ZeroDivisionError) as exc:
                raise self.error(f"{head!r}: {exc}", form) from exc

        if isinstance(form, VectorLiteral):
            return form.with_items([self.evaluate(x, env) for x in form.items])
        if isinstance(form, MapLiteral):
            return form.with_pairs(
                [(self.evaluate(k, env), self.evaluate(v, env)) for k, v in form.pairs]
            )
        if isinstance(form, SetLiteral):
            return form.with_items([self.evaluate(x, env) for x in form.items])
        return form

    # -------------------------------------------------------------------------
    # Special forms
    # -------------------------------------------------------------------------

    def _arity(self, form, n: int):
        if len(form) != n + 1:
            raise self.error(f"{form[0].name} expects {n} argument(s)", form)

    def _eval_quote(self, form, env):
        self._arity(form, 1)
        return form[1]

    def _eval_quasiquote(self, form, env):
        self._arity(form, 1)
        return self._quasi(form[1], env)

    def _quasi(self, form, env):
        if isinstance(form, Symbol):
            if len(form.name) > 1 and form.name.endswith("#"):
                gensyms = self._frames[-1].gensyms
                if form.name not in gensyms:
                    base = form.name[:-1]
                    gensyms[form.name] = Symbol(
                        self._gensym(base), form.file, form.line, form.col, form.offset
                    )
                return gensyms[form.name]
            return form
        if isinstance(form, list):
            if form and is_symbol(form[0], "unquote"):
                self._arity(form, 1)
                return self.evaluate(form[1], env)
            if form and is_symbol(form[0], "unquote-splicing"):
                raise self.error("unquote-splicing used outside a list", form)
            return located(self._quasi_items(form, env), form)
        if isinstance(form, VectorLiteral):
            return form.with_items(self._quasi_items(form.items, env))
        if isinstance(form, SetLiteral):
            return form.with_items(self._quasi_items(form.items, env))
        if isinstance(form, MapLiteral):
            return form.with_pairs(
                [(self._quasi(k, env), self._quasi(v, env)) for k, v in form.pairs]
            )
        return form

    def _quasi_items(self, items, env) -> list:
        out = []
        for item in items:
            if isinstance(item, list) and item and is_symbol(item[0], "unquote-splicing"):
                self._arity(item, 1)
                value = self.evaluate(item[1], env)
                if value is None:
                    continue
                if not isinstance(value, (list, VectorLiteral, SetLiteral)):
                    raise self.error(
                        f"unquote-splicing requires a sequence, got {value!r}", item
                    )
                out.extend(value)
            else:
                out.append(self._quasi(item, env))
        return out

    def _eval_if(self, form, env):
        if len(form) not in (3, 4):
            raise self.error("if expects a test, a then branch and an optional else", form)
        if _truthy(self.evaluate(form[1], env)):
            return self.evaluate(form[2], env)
        if len(form) == 4:
            return self.evaluate(form[3], env)
        return None

    def _eval_cond(self, form, env):
        clauses = form[1:]
        if len(clauses) % 2 != 0:
            raise self.error("cond requires test/expression pairs", form)
        for i in range(0, len(clauses), 2):
            test = clauses[i]
            if isinstance(test, Keyword) or is_symbol(test, "else"):
                return self.evaluate(clauses[i + 1], env)
            if _truthy(self.evaluate(test, env)):
                return self.evaluate(clauses[i + 1], env)
        return None

    def _eval_let(self, form, env):
        if len(form) < 2 or not isinstance(form[1], (list, VectorLiteral)):
            raise self.error("let requires a binding list", form)
        bindings = list(form[1])
        if len(bindings) % 2 != 0:
            raise self.error("let bindings must be name/value pairs", form)
        scope = dict(env)
        for i in range(0, len(bindings), 2):
            name = bindings[i]
            if not isinstance(name, Symbol):
                raise self.error("let binding names must be symbols", form)
            scope[name.name] = self.evaluate(bindings[i + 1], scope)
        return self._eval_body(form[2:], scope)

    def _eval_do(self, form, env):
        return self._eval_body(form[1:], env)

    def _eval_body(self, forms, env):
        result = None
        for f in forms:
            result = self.evaluate(f, env)
        return result

    def _eval_and(self, form, env):
        result = True
        for f in form[1:]:
            result = self.evaluate(f, env)
            if not _truthy(result):
                return result
        return result

    def _eval_or(self, form, env):
        result = None
        for f in form[1:]:
            result = self.evaluate(f, env)
            if _truthy(result):
                return result
        return result


# =============================================================================
# Macro Expansion
# =============================================================================


class MacroExpander:
    """
    Rewrites forms to fixpoint against a MacroRegistry.

    Scanning is pre-order, left-most and outer-most: a macro call is
    rewritten (repeatedly, at the same position) before its arguments are
    visited, so macros always see their arguments unexpanded.
    """

    def __init__(
        self,
        registry: MacroRegistry,
        gensym: Optional[Callable[[str], str]] = None,
        limit: Optional[int] = None,
    ):
        self.registry = registry
        self.evaluator = MacroEvaluator(registry, gensym)
        self._limit = limit
        self.expansions = 0

    @property
    def limit(self) -> int:
        """Rewrites allowed at one position: the number of visible macros unless overridden."""
        if self._limit is not None:
            return self._limit
        return max(self.registry.visible_count(), 1)

    def is_macro_call(self, form) -> bool:
        if not isinstance(form, list) or len(form) == 0:
            return False
        head = form[0]
        return isinstance(head, Symbol) and head.name in self.registry

    def expand_1(self, form):
        """Expand form once if it's a macro call."""
        if not self.is_macro_call(form):
            return form
        definition = self.registry.lookup(form[0].name)
        expansion = self.evaluator.apply(definition, list(form[1:]), form)
        self.expansions += 1
        if isinstance(expansion, list):
            # Diagnostics on the expansion point at the invocation
            return located(expansion, form)
        return expansion

    def expand(self, form):
        """Expand the macro call at this position until it is no longer one."""
        return self._expand_position(form, ())[0]

    def expand_all(self, forms) -> list:
        """Expand every top-level form; definitions produced by expansion are registered."""
        result = []
        for form in forms:
            expanded = self._expand_tree(form, ())
            if is_macro_definition(expanded):
                self.registry.define(parse_macro_definition(expanded))
                continue
            result.append(expanded)
        return result

    def _raise_limit(self, form, reason: str, limit: int):
        head = form[0]
        raise MacroExpansionLimitExceeded(
            head.name,
            limit,
            getattr(form, "file", None) or getattr(head, "file", None),
            getattr(form, "line", 0) or getattr(head, "line", 0),
            getattr(form, "col", 0) or getattr(head, "col", 0),
            reason=reason,
        )

    def _expand_position(self, form, trail: tuple) -> tuple[Any, tuple]:
        chain: list = []
        limit = self.limit
        while self.is_macro_call(form):
            if any(form == seen for seen in trail) or any(form == seen for seen in chain):
                self._raise_limit(
                    form, "expansion re-invokes itself with unchanged arguments", limit
                )
            if len(chain) >= limit:
                self._raise_limit(form, "too many successive expansions", limit)
            chain.append(form)
            form = self.expand_1(form)
        return form, trail + tuple(chain)

    @staticmethod
    def _binding_prefix(form) -> int:
        """Number of leading items of form that name bindings rather than code."""
        name = form[0].name
        if name in BINDING_HEADS:
            return min(BINDING_HEADS[name], len(form))
        if name in ("fn", "lambda"):
            if len(form) > 1 and isinstance(form[1], Symbol):
                return min(3, len(form))
            return min(2, len(form))
        if name in ("let", "loop") and len(form) > 1:
            # (let name value): only the name is a binding
            if isinstance(form[1], Symbol):
                return 2
            return 1
        return 0

    def _expand_bindings(self, bindings, trail: tuple):
        """Expand the value positions of a (name value ...) binding list."""
        items = [
            item if i % 2 == 0 else self._expand_tree(item, trail)
            for i, item in enumerate(bindings)
        ]
        if isinstance(bindings, VectorLiteral):
            return bindings.with_items(items)
        return located(items, bindings)

    def _expand_binding_form(self, form, keep: int, trail: tuple):
        head = list(form[:keep])
        rest = list(form[keep:])
        if form[0].name in ("let", "loop") and keep == 1 and rest:
            if isinstance(rest[0], (list, VectorLiteral)):
                rest[0] = self._expand_bindings(rest[0], trail)
                return located(
                    head + rest[:1] + [self._expand_tree(f, trail) for f in rest[1:]], form
                )
        return located(head + [self._expand_tree(f, trail) for f in rest], form)

    def _expand_tree(self, form, trail: tuple):
        if len(trail) > MAX_NESTING:
            self._raise_limit(trail[-1], "expansion nested too deeply", MAX_NESTING)
        form, trail = self._expand_position(form, trail)

        if isinstance(form, list):
            if not form:
                return form
            head = form[0]
            if isinstance(head, Symbol):
                if head.name in NO_EXPAND_FORMS:
                    return form
                if head.name == "export" and len(form) > 1 and isinstance(
                    form[1], VectorLiteral
                ):
                    return form
                if head.name in MACRO_DEFINERS:
                    return form
                keep = self._binding_prefix(form)
                if keep:
                    return self._expand_binding_form(form, keep, trail)
            return located([self._expand_tree(f, trail) for f in form], form)
        if isinstance(form, VectorLiteral):
            return form.with_items([self._expand_tree(f, trail) for f in form.items])
        if isinstance(form, MapLiteral):
            return form.with_pairs(
                [
                    (self._expand_tree(k, trail), self._expand_tree(v, trail))
                    for k, v in form.pairs
                ]
            )
        if isinstance(form, SetLiteral):
            return form.with_items([self._expand_tree(f, trail) for f in form.items])
        return form


# =============================================================================
# Convenience Functions
# =============================================================================


def macroexpand_1(form, registry: MacroRegistry):
    """Expand form once if it's a macro call."""
    return MacroExpander(registry).expand_1(form)


def macroexpand(form, registry: MacroRegistry):
    """Expand the outermost macro call of form to fixpoint."""
    return MacroExpander(registry).expand(form)


def macroexpand_all(forms, registry: MacroRegistry) -> list:
    """Apply macroexpansion to all forms recursively."""
    return MacroExpander(registry).expand_all(forms)


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    "Visibility",
    "MacroDefinition",
    "MACRO_DEFINERS",
    "MACRO_BUILTINS",
    "MAX_NESTING",
    "is_symbol",
    "is_macro_definition",
    "parse_macro_definition",
    "collect_macro_definitions",
    "MacroRegistry",
    "MacroEvaluator",
    "MacroExpander",
    "macroexpand_1",
    "macroexpand",
    "macroexpand_all",
]
