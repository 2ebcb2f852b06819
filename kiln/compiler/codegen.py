"""
kiln.compiler.codegen - Code generation (Kiln Forms -> JavaScript text)

This module handles the last phase of compilation: translating fully
macro-expanded Kiln forms into ES module source text.

Every form is compiled in one of three modes:
- expression (compile_expr): returns a JavaScript expression string
- statement (compile_stmt): returns statement lines, value discarded
- tail (compile_tail): returns statement lines that `return` the value

Blocks that appear in expression position (let, do, loop, try) become
arrow-function IIFEs. loop/recur becomes `while (true)` with
destructuring reassignment and `continue`.
"""

import itertools
import json
import logging
import math
import re
import warnings
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from kiln.compiler.errors import GenerationError, UnresolvedReferenceWarning
from kiln.compiler.macros import MACRO_DEFINERS, is_symbol
from kiln.project.config import CompilerOptions
from kiln.runtime import HELPER_CALLS, runtime_prelude
from kiln.runtime.ns import (
    ImportSpec,
    is_export_form,
    is_import_form,
    output_specifier,
    parse_export_form,
    parse_import_form,
)
from kiln.runtime.types import (
    JS_RESERVED,
    Keyword,
    MapLiteral,
    SetLiteral,
    Symbol,
    VectorLiteral,
    normalize_name,
)

logger = logging.getLogger(__name__)

# Host globals that may be referenced without a binding
JS_GLOBALS = frozenset(
    {
        "Array",
        "BigInt",
        "Boolean",
        "Date",
        "Error",
        "Infinity",
        "Intl",
        "JSON",
        "Map",
        "Math",
        "NaN",
        "Number",
        "Object",
        "Promise",
        "Proxy",
        "RangeError",
        "Reflect",
        "RegExp",
        "Set",
        "String",
        "Symbol",
        "SyntaxError",
        "TextDecoder",
        "TextEncoder",
        "TypeError",
        "URL",
        "WeakMap",
        "WeakSet",
        "arguments",
        "clearInterval",
        "clearTimeout",
        "console",
        "document",
        "fetch",
        "globalThis",
        "isFinite",
        "isNaN",
        "parseFloat",
        "parseInt",
        "process",
        "queueMicrotask",
        "require",
        "setInterval",
        "setTimeout",
        "structuredClone",
        "this",
        "undefined",
        "window",
    }
)

ARITH_OPS = {"+": "+", "-": "-", "*": "*", "/": "/", "%": "%", "mod": "%"}
COMPARE_OPS = {
    "=": "===",
    "==": "==",
    "not=": "!==",
    "!=": "!==",
    "<": "<",
    ">": ">",
    "<=": "<=",
    ">=": ">=",
}

_IDENT_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")


def is_identifier(name: str) -> bool:
    return bool(_IDENT_RE.match(name)) and name not in JS_RESERVED


def js_string(s: str) -> str:
    return json.dumps(s)


def indent(lines: list[str], level: int = 1) -> list[str]:
    """Indent statement lines (which may themselves span several lines)."""
    pad = "  " * level
    out = []
    for line in lines:
        for sub in line.split("\n"):
            out.append(pad + sub if sub else sub)
    return out


def block(header: str, body: list[str], footer: str = "}") -> list[str]:
    return [header] + indent(body) + [footer]


# =============================================================================
# Compilation Context
# =============================================================================


@dataclass
class GeneratedModule:
    """
    Output of code generation for one module.

    Attributes:
        path: Source path of the module
        text: JavaScript program text
        exports: Names the module's namespace object exposes
        imports: Module specifiers the text imports
        unresolved: Free symbols emitted as-is
    """

    path: str
    text: str
    exports: list[str] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


@dataclass
class LoopContext:
    """Context for tracking loop variables during loop/recur compilation."""

    var_names: list[str]  # JavaScript names of the loop bindings


class CompilationContext:
    """Per-module state: scopes, imports, exports and the helpers in use."""

    def __init__(
        self,
        file: str = "<string>",
        options: Optional[CompilerOptions] = None,
        imports: Optional[list[ImportSpec]] = None,
        macro_names: Optional[set[str]] = None,
    ):
        self.file = file
        self.options = options or CompilerOptions()
        self.toplevel: dict[str, str] = {}  # kiln name -> js name
        self.hoisted: dict[str, str] = {}  # module bindings defined inside top-level blocks
        self.scope_stack: list[dict[str, str]] = []
        self.loop: Optional[LoopContext] = None
        self.used_helpers: set[str] = set()
        self.unresolved: list[str] = []
        self.import_lines: list[str] = []
        self.import_specifiers: list[str] = []
        self.export_names: list[str] = []
        self.macro_names = macro_names or set()
        self.resolved_imports = {
            (spec.line, spec.col, spec.source_path): spec for spec in imports or []
        }
        self._counter = itertools.count(1)

    def push_scope(self, variables: Optional[dict[str, str]] = None):
        """Push a new scope level with optional initial variables."""
        self.scope_stack.append(variables if variables else {})

    def pop_scope(self):
        """Pop the current scope level."""
        if self.scope_stack:
            self.scope_stack.pop()

    def lookup(self, name: str) -> Optional[str]:
        """JavaScript name of a visible binding, innermost scope first."""
        for scope in reversed(self.scope_stack):
            if name in scope:
                return scope[name]
        return self.toplevel.get(name)

    def fresh(self, prefix: str) -> str:
        return f"{prefix}_{next(self._counter)}"

    def declare(self, name: str) -> str:
        """Declare a binding in the current scope (module scope when no scope is open)."""
        if not self.scope_stack:
            js = self.toplevel.get(name) or normalize_name(name)
            self.toplevel[name] = js
            return js
        js = normalize_name(name)
        if self.lookup(name) is not None:
            # Shadowing: a fresh name avoids redeclaration and TDZ self-reference
            js = self.fresh(js)
        self.scope_stack[-1][name] = js
        return js

    def declare_param(self, name: str) -> str:
        js = normalize_name(name)
        if name in self.scope_stack[-1]:
            js = self.fresh(js)
        self.scope_stack[-1][name] = js
        return js

    def use_helper(self, helper: str) -> str:
        self.used_helpers.add(helper)
        return helper

    def report_unresolved(self, sym: Symbol):
        if sym.name in self.unresolved:
            return
        self.unresolved.append(sym.name)
        where = f"{sym.file}:{sym.line}:{sym.col}" if sym.line else self.file
        message = f"{where}: unresolved reference '{sym.name}' emitted as-is"
        logger.warning(message)
        warnings.warn(message, UnresolvedReferenceWarning, stacklevel=2)


# Thread-safe compilation context using contextvars
_compile_context_var: ContextVar[Optional[CompilationContext]] = ContextVar(
    "_compile_context", default=None
)


def get_compile_context() -> CompilationContext:
    """Get the current compilation context, creating one if needed."""
    ctx = _compile_context_var.get()
    if ctx is None:
        ctx = CompilationContext()
        _compile_context_var.set(ctx)
    return ctx


def _error(message: str, form) -> GenerationError:
    ctx = get_compile_context()
    return GenerationError(
        message,
        file=getattr(form, "file", None) or ctx.file,
        line=getattr(form, "line", 0),
        col=getattr(form, "col", 0),
    )


def _head_name(form) -> Optional[str]:
    if isinstance(form, list) and form and isinstance(form[0], Symbol):
        return form[0].name
    return None


# =============================================================================
# Module Compilation
# =============================================================================


def compile_module(
    forms,
    file: str = "<string>",
    options: Optional[CompilerOptions] = None,
    imports: Optional[list[ImportSpec]] = None,
    macro_names: Optional[set[str]] = None,
) -> GeneratedModule:
    """
    Compile a module's fully expanded top-level forms to JavaScript.

    Args:
        forms: Expanded top-level forms
        file: Source path (for diagnostics)
        options: Compiler options
        imports: Resolved import specs of the module (carry specifiers and
            which imported names are macros)
        macro_names: Names that denote macros in this module; they are
            skipped in export lists
    """
    ctx = CompilationContext(file, options, imports, macro_names)
    token = _compile_context_var.set(ctx)
    try:
        collect_toplevel_names(forms)
        body: list[str] = [f"let {js};" for js in ctx.hoisted.values()]
        for form in forms:
            body.extend(compile_toplevel(form))
    finally:
        _compile_context_var.reset(token)

    sections = []
    header = list(ctx.import_lines)
    if ctx.used_helpers and not ctx.options.inline_runtime:
        names = ", ".join(sorted(ctx.used_helpers))
        header.append(f"import {{ {names} }} from {js_string(ctx.options.runtime_module)};")
    if header:
        sections.append("\n".join(header))
    if ctx.used_helpers and ctx.options.inline_runtime:
        sections.append(runtime_prelude(ctx.used_helpers))
    if body:
        sections.append("\n".join(body))

    return GeneratedModule(
        path=file,
        text="\n\n".join(sections) + "\n",
        exports=list(ctx.export_names),
        imports=list(ctx.import_specifiers),
        unresolved=list(ctx.unresolved),
    )


DEFINING_FORMS = ("def", "var", "defn", "let")


def collect_toplevel_names(forms):
    """
    Pre-pass: register module-level bindings so forward references resolve.

    Definitions inside top-level if/cond/try/do forms still bind at module
    scope. Those nested inside a block are recorded in ctx.hoisted, declared
    once ahead of the module body and assigned where they appear.

    Raises:
        GenerationError: if a name is defined twice at module scope (two
            definitions in separate conditional branches are allowed)
    """
    ctx = get_compile_context()
    defined: dict[str, bool] = {}  # kiln name -> defined inside a block

    def visit(form, nested: bool):
        name = _head_name(form)
        if name in DEFINING_FORMS and len(form) > 1 and isinstance(form[1], Symbol):
            sym = form[1].name
            if sym in defined and not (nested and defined[sym]):
                raise _error(f"duplicate definition of '{sym}'", form)
            defined[sym] = nested
            ctx.toplevel[sym] = normalize_name(sym)
            if nested:
                ctx.hoisted[sym] = ctx.toplevel[sym]
        elif name == "import" and not nested:
            spec = _import_spec(form)
            if spec.namespace:
                ctx.toplevel[spec.namespace] = normalize_name(spec.namespace)
            for _, alias in spec.value_bindings:
                ctx.toplevel[alias] = normalize_name(alias)
        elif name == "do":
            for item in form[1:]:
                visit(item, nested)
        elif name == "if":
            for item in form[2:]:
                visit(item, True)
        elif name == "cond":
            for item in list(form[1:])[1::2]:
                visit(item, True)
        elif name == "try":
            # catch handlers open their own scope
            for item in form[1:]:
                head = _head_name(item)
                if head == "finally":
                    for sub in item[1:]:
                        visit(sub, True)
                elif head != "catch":
                    visit(item, True)

    for form in forms:
        visit(form, False)


def compile_toplevel(form) -> list[str]:
    """Compile a top-level form; imports are hoisted into the module header."""
    if form is None:
        return []
    if is_import_form(form):
        compile_import(form)
        return []
    if is_export_form(form):
        return compile_export(form)
    return compile_stmt(form)


def _import_spec(form) -> ImportSpec:
    ctx = get_compile_context()
    spec = parse_import_form(form)
    return ctx.resolved_imports.get((spec.line, spec.col, spec.source_path), spec)


def _import_name(name: str) -> str:
    return name if is_identifier(name) else js_string(name)


def compile_import(form):
    ctx = get_compile_context()
    spec = _import_spec(form)
    if spec.is_external:
        specifier = spec.source_path
    else:
        specifier = spec.specifier or output_specifier(
            spec.source_path, ctx.options.output_extension
        )
    quoted = js_string(specifier)

    if spec.namespace:
        ctx.import_lines.append(
            f"import * as {normalize_name(spec.namespace)} from {quoted};"
        )
    elif spec.bindings:
        values = spec.value_bindings
        if not values:
            # Only macros were imported: nothing exists at runtime
            return
        parts = []
        for name, alias in values:
            js = normalize_name(alias)
            parts.append(js if name == js and is_identifier(name) else f"{_import_name(name)} as {js}")
        ctx.import_lines.append(f"import {{ {', '.join(parts)} }} from {quoted};")
    else:
        ctx.import_lines.append(f"import {quoted};")
    ctx.import_specifiers.append(specifier)


def compile_export(form) -> list[str]:
    ctx = get_compile_context()
    spec = parse_export_form(form)

    if spec.is_value:
        exported = spec.names[0]
        ctx.export_names.append(exported)
        if exported == "default":
            return [f"export default {compile_expr(spec.expression)};"]
        if isinstance(spec.expression, Symbol) and ctx.lookup(spec.expression.name):
            local = ctx.lookup(spec.expression.name)
            return [f"export {{ {local} as {_import_name(exported)} }};"]
        tmp = ctx.fresh("__kiln_export")
        return [
            f"const {tmp} = {compile_expr(spec.expression)};",
            f"export {{ {tmp} as {_import_name(exported)} }};",
        ]

    parts = []
    for local, exported in spec.entries:
        js = ctx.lookup(local)
        if js is None:
            if local in ctx.macro_names:
                continue
            raise _error(f"cannot export '{local}': no such binding", form)
        ctx.export_names.append(exported)
        parts.append(js if js == exported else f"{js} as {_import_name(exported)}")
    if not parts:
        return []
    return [f"export {{ {', '.join(parts)} }};"]


# =============================================================================
# Statements
# =============================================================================


def compile_stmt(form) -> list[str]:
    """Compile a form in statement context (its value is discarded)."""
    name = _head_name(form)
    if name is not None:
        handler = STMT_FORMS.get(name)
        if handler is not None:
            return handler(form)
    expr = compile_expr(form)
    if expr.startswith("{"):
        expr = f"({expr})"
    return [expr + ";"]


def compile_tail(form) -> list[str]:
    """Compile a form in tail position: the lines return its value."""
    name = _head_name(form)
    if name is not None:
        handler = TAIL_FORMS.get(name)
        if handler is not None:
            return handler(form)
    return [f"return {compile_expr(form)};"]


def compile_body_stmts(forms) -> list[str]:
    lines = []
    for f in forms:
        lines.extend(compile_stmt(f))
    return lines


def compile_body_tail(forms) -> list[str]:
    """Compile a body whose last form's value is returned."""
    if not forms:
        return ["return null;"]
    return compile_body_stmts(forms[:-1]) + compile_tail(forms[-1])


def compile_iife(body: Callable[[], list[str]]) -> str:
    """Wrap a block in an arrow-function IIFE so it can be used as an expression."""
    ctx = get_compile_context()
    prev_loop = ctx.loop
    ctx.loop = None
    try:
        lines = body()
    finally:
        ctx.loop = prev_loop
    return "\n".join(["(() => {"] + indent(lines) + ["})()"])


# -----------------------------------------------------------------------------
# Bindings
# -----------------------------------------------------------------------------


def _binding_name(form, what: str) -> Symbol:
    if len(form) < 2 or not isinstance(form[1], Symbol):
        raise _error(f"{what} requires a symbol name", form)
    _check_binding_name(form[1], what, form)
    return form[1]


def _check_binding_name(sym: Symbol, what: str, form):
    """Reject names that do not normalize to a JavaScript identifier (e.g. `a.b`)."""
    if not is_identifier(normalize_name(sym.name)):
        raise _error(f"invalid {what} name '{sym.name}'", form)


def compile_def(form, keyword: str = "const") -> list[str]:
    """(def name value) -> const name = value;"""
    head = form[0].name
    sym = _binding_name(form, head)
    if len(form) > 3:
        raise _error(f"{head} takes a name and at most one value", form)
    ctx = get_compile_context()
    value = compile_expr(form[2]) if len(form) == 3 else "null"
    js = ctx.declare(sym.name)
    if _is_hoisted(sym):
        return [f"{js} = {value};"]
    return [f"{keyword} {js} = {value};"]


def _is_hoisted(sym: Symbol) -> bool:
    """True for a module binding whose declaration was moved ahead of the body."""
    ctx = get_compile_context()
    return not ctx.scope_stack and sym.name in ctx.hoisted


def compile_var(form) -> list[str]:
    """(var name value) -> let name = value; (reassignable with set!)"""
    return compile_def(form, "let")


def compile_defn(form) -> list[str]:
    """(defn name (params) body...) -> function declaration."""
    sym = _binding_name(form, "defn")
    if len(form) < 3:
        raise _error("defn requires a parameter list", form)
    ctx = get_compile_context()
    js = ctx.declare(sym.name)
    if _is_hoisted(sym):
        return [f"{js} = {compile_function(js, form[2], list(form[3:]), form)};"]
    return [compile_function(js, form[2], list(form[3:]), form)]


def _declaration_tail(compile_decl: Callable) -> Callable:
    """Tail-position variant of a declaration: declare, then return the bound value."""

    def tail(form) -> list[str]:
        lines = compile_decl(form)
        js = get_compile_context().lookup(form[1].name)
        return lines + [f"return {js};"]

    return tail


def compile_let_bindings(bindings_form, form) -> list[str]:
    """Declare let bindings in the current (already pushed) scope."""
    if not isinstance(bindings_form, (list, VectorLiteral)):
        raise _error("let requires a binding list", form)
    items = list(bindings_form)
    if len(items) % 2 != 0:
        raise _error("let bindings must be name/value pairs", form)
    ctx = get_compile_context()
    lines = []
    for i in range(0, len(items), 2):
        sym = items[i]
        if not isinstance(sym, Symbol):
            raise _error("let binding names must be symbols", form)
        _check_binding_name(sym, "binding", form)
        value = compile_expr(items[i + 1])
        js = ctx.declare(sym.name)
        lines.append(f"let {js} = {value};")
    return lines


def _let_block(form, compile_body: Callable[[list], list[str]]) -> list[str]:
    ctx = get_compile_context()
    ctx.push_scope()
    try:
        lines = compile_let_bindings(form[1], form)
        lines.extend(compile_body(list(form[2:])))
    finally:
        ctx.pop_scope()
    return lines


def _is_simple_let(form) -> bool:
    return len(form) > 1 and isinstance(form[1], Symbol)


def compile_let_stmt(form) -> list[str]:
    """(let name v) declares a const; (let (a 1 b 2) body...) opens a block."""
    if _is_simple_let(form):
        return compile_def(form)
    return block("{", _let_block(form, compile_body_stmts))


def compile_let_tail(form) -> list[str]:
    if _is_simple_let(form):
        return _declaration_tail(compile_def)(form)
    return block("{", _let_block(form, compile_body_tail))


def compile_let_expr(form) -> str:
    if _is_simple_let(form):
        raise _error("(let name value) is only valid in statement position", form)
    return compile_iife(lambda: _let_block(form, compile_body_tail))


def _set_parts(form) -> tuple[str, str]:
    if len(form) != 3 or not isinstance(form[1], Symbol):
        raise _error("set! requires a symbol target and a value", form)
    return compile_symbol(form[1], lvalue=True), compile_expr(form[2])


def compile_set(form) -> str:
    """(set! target value) -> (target = value)"""
    target, value = _set_parts(form)
    return f"({target} = {value})"


def compile_set_stmt(form) -> list[str]:
    target, value = _set_parts(form)
    return [f"{target} = {value};"]


# -----------------------------------------------------------------------------
# Functions
# -----------------------------------------------------------------------------


def compile_params(params_form, form) -> str:
    """Compile a parameter list; `& rest` becomes a rest parameter."""
    if not isinstance(params_form, (list, VectorLiteral)):
        raise _error("parameters must be a list or vector", form)
    ctx = get_compile_context()
    items = list(params_form)
    params = []
    i = 0
    while i < len(items):
        item = items[i]
        if not isinstance(item, Symbol):
            raise _error("parameters must be symbols", form)
        _check_binding_name(item, "parameter", form)
        if item.name == "&":
            if i + 2 != len(items) or not isinstance(items[i + 1], Symbol):
                raise _error("'&' must be followed by exactly one parameter name", form)
            _check_binding_name(items[i + 1], "parameter", form)
            params.append("..." + ctx.declare_param(items[i + 1].name))
            break
        params.append(ctx.declare_param(item.name))
        i += 1
    return ", ".join(params)


def compile_function(js_name: Optional[str], params_form, body_forms, form) -> str:
    """Compile a function expression/declaration with an implicit return."""
    ctx = get_compile_context()
    # A leading docstring is dropped
    if len(body_forms) > 1 and isinstance(body_forms[0], str):
        body_forms = body_forms[1:]
    ctx.push_scope()
    prev_loop = ctx.loop
    ctx.loop = None
    try:
        params = compile_params(params_form, form)
        body = compile_body_tail(body_forms)
    finally:
        ctx.loop = prev_loop
        ctx.pop_scope()
    name = f" {js_name}" if js_name else ""
    return "\n".join([f"function{name}({params}) {{"] + indent(body) + ["}"])


def compile_fn(form) -> str:
    """(fn (params) body...) or (fn name (params) body...) -> function expression."""
    args = list(form[1:])
    ctx = get_compile_context()
    if args and isinstance(args[0], Symbol):
        ctx.push_scope()
        try:
            js = ctx.declare(args[0].name)
            text = compile_function(js, args[1] if len(args) > 1 else None, args[2:], form)
        finally:
            ctx.pop_scope()
        return f"({text})"
    if not args:
        raise _error(f"{form[0].name} requires a parameter list", form)
    return f"({compile_function(None, args[0], args[1:], form)})"


def compile_defn_expr(form) -> str:
    sym = _binding_name(form, "defn")
    if len(form) < 3:
        raise _error("defn requires a parameter list", form)
    return f"({compile_function(normalize_name(sym.name), form[2], list(form[3:]), form)})"


# -----------------------------------------------------------------------------
# Control flow
# -----------------------------------------------------------------------------


def _if_parts(form):
    if len(form) not in (3, 4):
        raise _error("if requires a test, a then branch and an optional else branch", form)
    return form[1], form[2], form[3] if len(form) == 4 else None


def compile_if_expr(form) -> str:
    test, then, else_ = _if_parts(form)
    return f"({compile_expr(test)} ? {compile_expr(then)} : {compile_expr(else_)})"


def _compile_if_block(form, compile_branch: Callable) -> list[str]:
    test, then, else_ = _if_parts(form)
    lines = block(f"if ({compile_expr(test)}) {{", compile_branch(then))
    if len(form) == 4 or compile_branch is compile_tail:
        lines[-1] = "} else {"
        lines += indent(compile_branch(else_)) + ["}"]
    return lines


def compile_if_stmt(form) -> list[str]:
    return _compile_if_block(form, compile_stmt)


def compile_if_tail(form) -> list[str]:
    return _compile_if_block(form, compile_tail)


def _is_else_test(test) -> bool:
    return isinstance(test, Keyword) or is_symbol(test, "else") or test is True


def _cond_clauses(form) -> list[tuple[Any, Any]]:
    clauses = list(form[1:])
    if len(clauses) % 2 != 0:
        raise _error("cond requires test/expression pairs", form)
    return [(clauses[i], clauses[i + 1]) for i in range(0, len(clauses), 2)]


def compile_cond_expr(form) -> str:
    result = "null"
    for test, expr in reversed(_cond_clauses(form)):
        if _is_else_test(test):
            result = compile_expr(expr)
        else:
            result = f"({compile_expr(test)} ? {compile_expr(expr)} : {result})"
    return result


def _compile_cond_block(form, compile_branch: Callable) -> list[str]:
    lines: list[str] = []
    has_else = False
    for test, expr in _cond_clauses(form):
        if _is_else_test(test):
            body = compile_branch(expr)
            if lines:
                lines[-1] = "} else {"
                lines += indent(body) + ["}"]
            else:
                lines = body
            has_else = True
            break
        header = f"if ({compile_expr(test)}) {{"
        if lines:
            lines[-1] = "} else " + header
            lines += indent(compile_branch(expr)) + ["}"]
        else:
            lines = block(header, compile_branch(expr))
    if not has_else and compile_branch is compile_tail:
        lines.append("return null;")
    return lines


def compile_cond_stmt(form) -> list[str]:
    return _compile_cond_block(form, compile_stmt)


def compile_cond_tail(form) -> list[str]:
    return _compile_cond_block(form, compile_tail)


def compile_do_expr(form) -> str:
    body = list(form[1:])
    if not body:
        return "null"
    if len(body) == 1:
        return compile_expr(body[0])
    return compile_iife(lambda: compile_body_tail(body))


def compile_do_stmt(form) -> list[str]:
    return compile_body_stmts(list(form[1:]))


def compile_do_tail(form) -> list[str]:
    return compile_body_tail(list(form[1:]))


def compile_loop_tail(form) -> list[str]:
    """
    Compile (loop (bindings) body...) in tail position.

    (loop (i 0 acc 1)
      (if (< i 5)
        (recur (+ i 1) (* acc 2))
        acc))

    Compiles to:
    {
      let i = 0;
      let acc = 1;
      while (true) {
        const i_1 = i;
        const acc_2 = acc;
        if ((i_1 < 5)) {
          [i, acc] = [(i_1 + 1), (acc_2 * 2)];
          continue;
        } else {
          return acc_2;
        }
      }
    }

    Each iteration reads its bindings through fresh consts, so closures
    created in the body capture that iteration's values.
    """
    if len(form) < 2:
        raise _error("loop requires a binding list", form)
    ctx = get_compile_context()
    ctx.push_scope()
    prev_loop = ctx.loop
    try:
        lines = compile_let_bindings(form[1], form)
        symbols = list(form[1])[::2]
        names = [ctx.lookup(sym.name) for sym in symbols]
        ctx.push_scope()
        try:
            body = []
            for sym, state in zip(symbols, names):
                body.append(f"const {ctx.declare(sym.name)} = {state};")
            ctx.loop = LoopContext(names)
            body += compile_body_tail(list(form[2:]))
        finally:
            ctx.pop_scope()
    finally:
        ctx.loop = prev_loop
        ctx.pop_scope()
    lines += block("while (true) {", body)
    return block("{", lines)


def compile_loop_expr(form) -> str:
    return compile_iife(lambda: compile_loop_tail(form))


def compile_loop_stmt(form) -> list[str]:
    return [compile_loop_expr(form) + ";"]


def compile_recur_tail(form) -> list[str]:
    ctx = get_compile_context()
    if ctx.loop is None:
        raise _error("recur must be in tail position of a loop", form)
    args = [compile_expr(a) for a in form[1:]]
    names = ctx.loop.var_names
    if len(args) != len(names):
        raise _error(
            f"recur expects {len(names)} argument(s), got {len(args)}", form
        )
    if not names:
        return ["continue;"]
    if len(names) == 1:
        return [f"{names[0]} = {args[0]};", "continue;"]
    return [f"[{', '.join(names)}] = [{', '.join(args)}];", "continue;"]


def compile_recur_expr(form):
    raise _error("recur must be in tail position of a loop", form)


def compile_return(form) -> list[str]:
    if len(form) > 2:
        raise _error("return takes at most one value", form)
    if len(form) == 1:
        return ["return;"]
    return [f"return {compile_expr(form[1])};"]


def compile_throw(form) -> list[str]:
    if len(form) != 2:
        raise _error("throw requires exactly one value", form)
    return [f"throw {compile_expr(form[1])};"]


def compile_throw_expr(form) -> str:
    return compile_iife(lambda: compile_throw(form))


def _try_parts(form):
    body, catch, finally_ = [], None, None
    for item in form[1:]:
        name = _head_name(item)
        if name == "catch":
            if len(item) < 2 or not isinstance(item[1], Symbol):
                raise _error("catch requires a binding symbol", item)
            catch = item
        elif name == "finally":
            finally_ = item
        elif catch is not None or finally_ is not None:
            raise _error("try body forms must precede catch and finally", form)
        else:
            body.append(item)
    return body, catch, finally_


def _compile_try_block(form, compile_body: Callable[[list], list[str]]) -> list[str]:
    body, catch, finally_ = _try_parts(form)
    if catch is None and finally_ is None:
        return compile_body(body)
    ctx = get_compile_context()
    lines = block("try {", compile_body(body))
    if catch is not None:
        ctx.push_scope()
        try:
            err = ctx.declare_param(catch[1].name)
            handler = compile_body(list(catch[2:]))
        finally:
            ctx.pop_scope()
        lines[-1] = f"}} catch ({err}) {{"
        lines += indent(handler) + ["}"]
    if finally_ is not None:
        lines[-1] = "} finally {"
        lines += indent(compile_body_stmts(list(finally_[1:]))) + ["}"]
    return lines


def compile_try_stmt(form) -> list[str]:
    return _compile_try_block(form, compile_body_stmts)


def compile_try_tail(form) -> list[str]:
    return _compile_try_block(form, compile_body_tail)


def compile_try_expr(form) -> str:
    return compile_iife(lambda: _compile_try_block(form, compile_body_tail))


def _statement_only(what: str):
    def reject(form):
        raise _error(f"{what} is only valid in statement position", form)

    return reject


def _toplevel_only(form):
    raise _error(f"{form[0].name} is only valid at the top level of a module", form)


def _tail_from_expr(compile_fn_expr: Callable[[Any], str]) -> Callable[[Any], list[str]]:
    def tail(form) -> list[str]:
        return [f"return {compile_fn_expr(form)};"]

    return tail


# =============================================================================
# Expressions
# =============================================================================


def compile_literal(form) -> str:
    if form is None:
        return "null"
    if form is True:
        return "true"
    if form is False:
        return "false"
    if isinstance(form, float):
        if math.isnan(form):
            return "NaN"
        if math.isinf(form):
            return "Infinity" if form > 0 else "-Infinity"
        return repr(form)
    if isinstance(form, int):
        return str(form)
    if isinstance(form, str):
        return js_string(form)
    raise _error(f"no translation for literal {form!r}", form)


def compile_symbol(sym: Symbol, lvalue: bool = False) -> str:
    """
    Compile a symbol reference.

    Dotted symbols become member access; a hyphenated member name becomes
    a call to the property-get helper since JavaScript member syntax
    cannot spell it.
    """
    ctx = get_compile_context()
    name = sym.name
    if "." in name and not name.startswith(".") and not name.endswith("."):
        parts = name.split(".")
        if any(not p for p in parts):
            raise _error(f"malformed member access '{name}'", sym)
        out = compile_symbol(Symbol(parts[0], sym.file, sym.line, sym.col, sym.offset))
        for seg in parts[1:]:
            if _IDENT_RE.match(seg):
                out = f"{out}.{seg}"
            elif "-" in seg and not lvalue:
                out = f"{ctx.use_helper('__kiln_get')}({out}, {js_string(seg)})"
            else:
                out = f"{out}[{js_string(seg)}]"
        return out

    js = ctx.lookup(name)
    if js is not None:
        return js
    if name in JS_GLOBALS:
        return name
    ctx.report_unresolved(sym)
    return normalize_name(name)


def compile_quote(form) -> str:
    """Compile quoted data: symbols and keywords become strings, lists arrays."""
    if isinstance(form, (Symbol, Keyword)):
        return js_string(form.name)
    if isinstance(form, (list, VectorLiteral)):
        return "[" + ", ".join(compile_quote(x) for x in form) + "]"
    if isinstance(form, SetLiteral):
        return "new Set([" + ", ".join(compile_quote(x) for x in form.items) + "])"
    if isinstance(form, MapLiteral):
        return _compile_object([(k, compile_quote(v)) for k, v in form.pairs], quoted=True)
    return compile_literal(form)


def compile_quasiquote(form) -> str:
    """Runtime quasiquote: unquote evaluates, unquote-splicing spreads."""
    if isinstance(form, list) and form and is_symbol(form[0], "unquote"):
        return compile_expr(form[1])
    if isinstance(form, list) and form and is_symbol(form[0], "unquote-splicing"):
        raise _error("unquote-splicing used outside a list", form)
    if isinstance(form, (list, VectorLiteral, SetLiteral)):
        items = []
        for item in form:
            if isinstance(item, list) and item and is_symbol(item[0], "unquote-splicing"):
                items.append("..." + compile_expr(item[1]))
            else:
                items.append(compile_quasiquote(item))
        array = "[" + ", ".join(items) + "]"
        return f"new Set({array})" if isinstance(form, SetLiteral) else array
    if isinstance(form, MapLiteral):
        return _compile_object([(k, compile_quasiquote(v)) for k, v in form.pairs], quoted=True)
    return compile_quote(form)


def _compile_object(pairs, quoted: bool = False) -> str:
    if not pairs:
        return "{}"
    entries = []
    for key, value in pairs:
        if isinstance(key, (Keyword, str)) or (quoted and isinstance(key, Symbol)):
            name = key if isinstance(key, str) else key.name
            entries.append(f"{js_string(name)}: {value}")
        elif isinstance(key, (int, float)) and not isinstance(key, bool):
            entries.append(f"{compile_literal(key)}: {value}")
        else:
            entries.append(f"[{compile_expr(key)}]: {value}")
    return "{ " + ", ".join(entries) + " }"


def compile_args(forms) -> str:
    return ", ".join(compile_expr(f) for f in forms)


def compile_arith(op: str, form) -> str:
    js_op = ARITH_OPS[op]
    args = [compile_expr(a) for a in form[1:]]
    if not args:
        if js_op == "+":
            return "0"
        if js_op == "*":
            return "1"
        raise _error(f"{op} requires at least one argument", form)
    if len(args) == 1:
        if js_op == "-":
            return f"(-{args[0]})"
        if js_op == "/":
            return f"(1 / {args[0]})"
        return args[0]
    return "(" + f" {js_op} ".join(args) + ")"


def compile_compare(op: str, form) -> str:
    js_op = COMPARE_OPS[op]
    args = [compile_expr(a) for a in form[1:]]
    if not args:
        raise _error(f"{op} requires at least one argument", form)
    if len(args) == 1:
        return "true"
    pairs = [f"{a} {js_op} {b}" for a, b in zip(args, args[1:])]
    return "(" + " && ".join(pairs) + ")"


def compile_and(form) -> str:
    args = [compile_expr(a) for a in form[1:]]
    if not args:
        return "true"
    return args[0] if len(args) == 1 else "(" + " && ".join(args) + ")"


def compile_or(form) -> str:
    args = [compile_expr(a) for a in form[1:]]
    if not args:
        return "null"
    return args[0] if len(args) == 1 else "(" + " || ".join(args) + ")"


def compile_not(form) -> str:
    if len(form) != 2:
        raise _error("not requires exactly one argument", form)
    return f"(!{compile_expr(form[1])})"


def compile_new(form) -> str:
    """(new Cls args...) -> new Cls(args...)"""
    if len(form) < 2:
        raise _error(f"{form[0].name} requires a constructor", form)
    return f"new {compile_expr(form[1])}({compile_args(form[2:])})"


def _member(obj: str, key_form) -> str:
    if isinstance(key_form, str) and is_identifier(key_form):
        return f"{obj}.{key_form}"
    return f"{obj}[{compile_expr(key_form)}]"


def compile_js_get(form) -> str:
    """(js-get obj key) -> obj[key]"""
    if len(form) != 3:
        raise _error("js-get requires an object and a key", form)
    return _member(compile_expr(form[1]), form[2])


def compile_js_call(form) -> str:
    """(js-call obj method args...) -> obj[method](args...)"""
    if len(form) < 3:
        raise _error("js-call requires an object and a method", form)
    return f"{_member(compile_expr(form[1]), form[2])}({compile_args(form[3:])})"


def compile_js_set(form) -> str:
    """(js-set obj key value) -> (obj[key] = value)"""
    if len(form) != 4:
        raise _error("js-set requires an object, a key and a value", form)
    return f"({_member(compile_expr(form[1]), form[2])} = {compile_expr(form[3])})"


def compile_typeof(form) -> str:
    if len(form) != 2:
        raise _error("typeof requires exactly one argument", form)
    return f"(typeof {compile_expr(form[1])})"


def compile_instanceof(form) -> str:
    if len(form) != 3:
        raise _error("instanceof requires a value and a constructor", form)
    return f"({compile_expr(form[1])} instanceof {compile_expr(form[2])})"


def compile_method_call(form) -> str:
    """(.method obj args...) -> obj.method(args...)"""
    method = form[0].name[1:]
    if len(form) < 2:
        raise _error(f"method call .{method} requires a target object", form)
    target = compile_expr(form[1])
    if is_identifier(method):
        return f"{target}.{method}({compile_args(form[2:])})"
    return f"{target}[{js_string(method)}]({compile_args(form[2:])})"


def compile_helper_call(helper: str, form) -> str:
    ctx = get_compile_context()
    return f"{ctx.use_helper(helper)}({compile_args(form[1:])})"


def compile_keyword_call(form) -> str:
    """(:key m default?) -> __kiln_get(m, "key", default)"""
    if len(form) not in (2, 3):
        raise _error("keyword lookup takes a collection and an optional default", form)
    ctx = get_compile_context()
    args = [compile_expr(form[1]), js_string(form[0].name)]
    if len(form) == 3:
        args.append(compile_expr(form[2]))
    return f"{ctx.use_helper('__kiln_get')}({', '.join(args)})"


def _unquote_outside(form):
    raise _error(f"{form[0].name} used outside of quasiquote", form)


def _arity_1(compile_fn: Callable[[Any], str], what: str) -> Callable[[Any], str]:
    def compile_checked(form) -> str:
        if len(form) != 2:
            raise _error(f"{what} requires exactly one argument", form)
        return compile_fn(form[1])

    return compile_checked


def compile_call(form) -> str:
    head = form[0]
    if isinstance(head, (list, Symbol)):
        return f"{compile_expr(head)}({compile_args(form[1:])})"
    raise _error(f"cannot call {head!r}: not a function", form)


def compile_expr(form) -> str:
    """Compile a form in expression context, returning JavaScript source."""
    if isinstance(form, Symbol):
        return compile_symbol(form)
    if isinstance(form, Keyword):
        return js_string(form.name)
    if isinstance(form, VectorLiteral):
        return "[" + compile_args(form.items) + "]"
    if isinstance(form, SetLiteral):
        return "new Set([" + compile_args(form.items) + "])"
    if isinstance(form, MapLiteral):
        return _compile_object([(k, compile_expr(v)) for k, v in form.pairs])
    if isinstance(form, list):
        if not form:
            return "[]"
        head = form[0]
        if isinstance(head, Keyword):
            return compile_keyword_call(form)
        if isinstance(head, Symbol):
            name = head.name
            handler = EXPR_FORMS.get(name)
            if handler is not None:
                return handler(form)
            ctx = get_compile_context()
            if ctx.lookup(name) is None:
                if name in ARITH_OPS:
                    return compile_arith(name, form)
                if name in COMPARE_OPS:
                    return compile_compare(name, form)
                if name in HELPER_CALLS:
                    return compile_helper_call(HELPER_CALLS[name], form)
                if name.startswith(".") and len(name) > 1:
                    return compile_method_call(form)
        return compile_call(form)
    return compile_literal(form)


# Special form name -> expression compiler
EXPR_FORMS: dict[str, Callable[[Any], str]] = {
    "quote": _arity_1(compile_quote, "quote"),
    "quasiquote": _arity_1(compile_quasiquote, "quasiquote"),
    "unquote": _unquote_outside,
    "unquote-splicing": _unquote_outside,
    "if": compile_if_expr,
    "cond": compile_cond_expr,
    "do": compile_do_expr,
    "let": compile_let_expr,
    "fn": compile_fn,
    "lambda": compile_fn,
    "defn": compile_defn_expr,
    "def": _statement_only("def"),
    "var": _statement_only("var"),
    "return": _statement_only("return"),
    "import": _toplevel_only,
    "export": _toplevel_only,
    "loop": compile_loop_expr,
    "recur": compile_recur_expr,
    "set!": compile_set,
    "throw": compile_throw_expr,
    "try": compile_try_expr,
    "and": compile_and,
    "or": compile_or,
    "not": compile_not,
    "new": compile_new,
    "js-new": compile_new,
    "js-get": compile_js_get,
    "js-call": compile_js_call,
    "js-set": compile_js_set,
    "typeof": compile_typeof,
    "instanceof": compile_instanceof,
}
for _definer in MACRO_DEFINERS:
    EXPR_FORMS[_definer] = _toplevel_only

# Special form name -> statement compiler
STMT_FORMS: dict[str, Callable[[Any], list[str]]] = {
    "def": compile_def,
    "var": compile_var,
    "defn": compile_defn,
    "let": compile_let_stmt,
    "if": compile_if_stmt,
    "cond": compile_cond_stmt,
    "do": compile_do_stmt,
    "loop": compile_loop_stmt,
    "set!": compile_set_stmt,
    "return": compile_return,
    "throw": compile_throw,
    "try": compile_try_stmt,
}

# Special form name -> tail-position compiler
TAIL_FORMS: dict[str, Callable[[Any], list[str]]] = {
    "def": _declaration_tail(compile_def),
    "var": _declaration_tail(compile_var),
    "defn": _declaration_tail(compile_defn),
    "let": compile_let_tail,
    "if": compile_if_tail,
    "cond": compile_cond_tail,
    "do": compile_do_tail,
    "loop": compile_loop_tail,
    "recur": compile_recur_tail,
    "set!": _tail_from_expr(compile_set),
    "return": compile_return,
    "throw": compile_throw,
    "try": compile_try_tail,
}


__all__ = [
    "GeneratedModule",
    "CompilationContext",
    "LoopContext",
    "JS_GLOBALS",
    "get_compile_context",
    "compile_module",
    "compile_toplevel",
    "compile_import",
    "compile_export",
    "compile_stmt",
    "compile_tail",
    "compile_expr",
    "compile_symbol",
    "compile_quote",
    "compile_quasiquote",
    "compile_function",
    "is_identifier",
]
