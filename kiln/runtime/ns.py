"""
Kiln Module System - import/export declarations and source path resolution.

This module provides the infrastructure shared by the module resolver and
the code generator:
- ImportSpec / ExportSpec: parsed (import ...) and (export ...) declarations
- parse_import_form / parse_export_form: declaration parsers
- scan_declarations: collects a module's top-level imports and exports
- init_source_roots: ordered directories searched for imported .kiln files
- resolve_import_path: maps an import path to a canonical file path

Supported declarations:
    (import [a b as c] from "./lib.kiln")   ; named values and/or macros
    (import lib from "./lib.kiln")          ; namespace object
    (import "./setup.kiln")                 ; side effects only
    (export [a b])                          ; export local bindings or macros
    (export "name" expr)                    ; export an expression under name
"""

import os
from dataclasses import dataclass, field
from typing import Any, Optional

from kiln.runtime.types import Symbol, VectorLiteral

SOURCE_EXTENSION = ".kiln"

# Environment variable with extra source roots (os.pathsep separated)
PATH_ENV_VAR = "KILN_PATH"


@dataclass
class ImportSpec:
    """
    A parsed import declaration.

    Attributes:
        source_path: The path as written in the source
        bindings: (imported_name, local_alias) pairs
        namespace: Alias bound to the whole module (import * as), if any
        resolved: Arena index of the target ModuleRecord once resolved
        deferred: True when the edge closes an import cycle
        macro_names: Imported names that are macros (erased from output)
        specifier: Module specifier the generated import uses
    """

    source_path: str
    bindings: list[tuple[str, str]] = field(default_factory=list)
    namespace: Optional[str] = None
    line: int = 0
    col: int = 0
    resolved: Optional[int] = None
    deferred: bool = False
    macro_names: set[str] = field(default_factory=set)
    specifier: Optional[str] = None

    @property
    def is_external(self) -> bool:
        """Imports of non-Kiln paths are passed through to the host untouched."""
        return not self.source_path.endswith(SOURCE_EXTENSION)

    @property
    def value_bindings(self) -> list[tuple[str, str]]:
        return [(name, alias) for name, alias in self.bindings if name not in self.macro_names]


@dataclass
class ExportSpec:
    """
    A parsed export declaration.

    entries holds (local_name, exported_name) pairs for (export [...]).
    For (export "name" expr), entries is [(None, name)] and expression is expr.
    """

    entries: list[tuple[Optional[str], str]]
    expression: Any = None
    line: int = 0
    col: int = 0

    @property
    def is_value(self) -> bool:
        return bool(self.entries) and self.entries[0][0] is None

    @property
    def names(self) -> list[str]:
        return [exported for _, exported in self.entries]


def _error(message: str, form, expected: str):
    # Import here to avoid circular imports
    from kiln.compiler.errors import KilnSyntaxError

    return KilnSyntaxError(
        message,
        getattr(form, "file", None),
        getattr(form, "line", 0),
        getattr(form, "col", 0),
        getattr(form, "offset", 0),
        expected=expected,
    )


def _is_head(form, name: str) -> bool:
    return (
        isinstance(form, list)
        and len(form) > 0
        and isinstance(form[0], Symbol)
        and form[0].name == name
    )


def is_import_form(form) -> bool:
    return _is_head(form, "import")


def is_export_form(form) -> bool:
    return _is_head(form, "export")


def _parse_name_list(vec: VectorLiteral, form, keyword: str) -> list[tuple[str, str]]:
    """Parse [a b as c] into [("a", "a"), ("b", "c")]."""
    items = vec.items
    pairs = []
    i = 0
    while i < len(items):
        item = items[i]
        if not isinstance(item, Symbol) or item.name == "as":
            raise _error(f"{keyword}: expected a name", form, expected="symbol")
        if i + 1 < len(items) and isinstance(items[i + 1], Symbol) and items[i + 1].name == "as":
            if i + 2 >= len(items) or not isinstance(items[i + 2], Symbol):
                raise _error(f"{keyword}: 'as' requires an alias", form, expected="alias")
            pairs.append((item.name, items[i + 2].name))
            i += 3
        else:
            pairs.append((item.name, item.name))
            i += 1
    return pairs


def parse_import_form(form) -> ImportSpec:
    """Parse an (import ...) declaration."""
    args = form[1:]
    line = getattr(form, "line", 0)
    col = getattr(form, "col", 0)

    if len(args) == 1 and isinstance(args[0], str):
        return ImportSpec(args[0], line=line, col=col)

    if (
        len(args) != 3
        or not isinstance(args[1], Symbol)
        or args[1].name != "from"
        or not isinstance(args[2], str)
    ):
        raise _error(
            "malformed import",
            form,
            expected='(import [names...] from "path") or (import alias from "path")',
        )

    target, source = args[0], args[2]
    if isinstance(target, VectorLiteral):
        return ImportSpec(source, _parse_name_list(target, form, "import"), line=line, col=col)
    if isinstance(target, Symbol):
        return ImportSpec(source, namespace=target.name, line=line, col=col)
    raise _error("import target must be a vector or a symbol", form, expected="[names...] or alias")


def parse_export_form(form) -> ExportSpec:
    """Parse an (export ...) declaration."""
    args = form[1:]
    line = getattr(form, "line", 0)
    col = getattr(form, "col", 0)

    if len(args) == 1 and isinstance(args[0], VectorLiteral):
        return ExportSpec(_parse_name_list(args[0], form, "export"), line=line, col=col)
    if len(args) == 2 and isinstance(args[0], str):
        return ExportSpec([(None, args[0])], expression=args[1], line=line, col=col)
    raise _error(
        "malformed export",
        form,
        expected='(export [names...]) or (export "name" expr)',
    )


def scan_declarations(forms) -> tuple[list[ImportSpec], list[ExportSpec]]:
    """Collect the top-level import and export declarations of a module."""
    imports = []
    exports = []
    for form in forms:
        if is_import_form(form):
            imports.append(parse_import_form(form))
        elif is_export_form(form):
            exports.append(parse_export_form(form))
    return imports, exports


# =============================================================================
# Source Path Resolution
# =============================================================================


def init_source_roots(
    current_file: Optional[str] = None,
    extra_paths: Optional[list[str]] = None,
) -> list[str]:
    """
    Build the ordered list of directories searched for imported files.

    Order: extra paths (from configuration), $KILN_PATH entries, then the
    directory of current_file.
    """
    roots: list[str] = []

    for p in extra_paths or []:
        p = os.path.abspath(p)
        if p not in roots:
            roots.append(p)

    kiln_path = os.environ.get(PATH_ENV_VAR, "")
    if kiln_path:
        for p in kiln_path.split(os.pathsep):
            p = p.strip()
            if p and os.path.isdir(p):
                p = os.path.abspath(p)
                if p not in roots:
                    roots.append(p)

    if current_file:
        file_dir = os.path.dirname(os.path.abspath(current_file))
        if file_dir not in roots:
            roots.append(file_dir)

    return roots


def resolve_import_path(
    source_path: str,
    importer: Optional[str] = None,
    roots: Optional[list[str]] = None,
) -> str:
    """
    Resolve an import path to a canonical (realpath) file path.

    Relative paths are tried against the importer's directory first,
    then against each source root.

    Raises:
        FileNotFoundError: If no candidate file exists.
    """
    candidates = []
    if os.path.isabs(source_path):
        candidates.append(source_path)
    else:
        if importer:
            candidates.append(os.path.join(os.path.dirname(importer), source_path))
        for root in roots or []:
            candidates.append(os.path.join(root, source_path))

    for candidate in candidates:
        if os.path.isfile(candidate):
            return os.path.realpath(candidate)

    raise FileNotFoundError(f"Cannot resolve import '{source_path}'")


def output_specifier(source_path: str, extension: str) -> str:
    """The specifier a generated module uses to import another generated module."""
    if source_path.endswith(SOURCE_EXTENSION):
        source_path = source_path[: -len(SOURCE_EXTENSION)] + extension
    return source_path


__all__ = [
    "SOURCE_EXTENSION",
    "PATH_ENV_VAR",
    "ImportSpec",
    "ExportSpec",
    "is_import_form",
    "is_export_form",
    "parse_import_form",
    "parse_export_form",
    "scan_declarations",
    "init_source_roots",
    "resolve_import_path",
    "output_specifier",
]
