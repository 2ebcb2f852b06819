"""
kiln.compiler.loader - Module resolution, compilation sessions and builds

This module handles:
- CompilationSession: the state of one compilation run (module arena,
  shared global macro tier, dependency graph, read counts)
- ModuleResolver: depth-first discovery of imported modules; each module
  is read, expanded and generated exactly once per session
- DependencyGraph: import edges, cycle detection, topological order
- build: compiles an entry module and writes every generated module

Module states move Unresolved -> Resolving -> Resolved. Reaching a module
that is still Resolving means the import closes a cycle: that one edge is
deferred (ES module live bindings fill it in at run time) instead of
recursing again.
"""

import enum
import itertools
import logging
import os
import tempfile
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from kiln.compiler.codegen import GeneratedModule, compile_module
from kiln.compiler.errors import UnresolvedImportError
from kiln.compiler.macros import (
    MacroDefinition,
    MacroExpander,
    MacroRegistry,
    Visibility,
    collect_macro_definitions,
)
from kiln.compiler.reader import read_str
from kiln.project.config import CompilerOptions
from kiln.runtime import runtime_module_source
from kiln.runtime.ns import (
    SOURCE_EXTENSION,
    ExportSpec,
    ImportSpec,
    init_source_roots,
    output_specifier,
    resolve_import_path,
    scan_declarations,
)

logger = logging.getLogger(__name__)

# Global macros loaded into every session unless options.prelude is False
PRELUDE_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "std", "prelude.kiln"
)


class ModuleState(enum.Enum):
    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    RESOLVED = "resolved"


@dataclass
class ValueExport:
    """A runtime binding a module exposes: exported name, local binding, and the declaring node."""

    name: str
    local: Optional[str]
    node: object = None


@dataclass
class ModuleRecord:
    """
    Everything the session knows about one source file.

    Records live in the session's arena (CompilationSession.records) and
    refer to each other by index, never by object reference.
    """

    path: str
    index: int
    forms: list = field(default_factory=list)
    imports: list[ImportSpec] = field(default_factory=list)
    exports: list[ExportSpec] = field(default_factory=list)
    macro_defs: list[MacroDefinition] = field(default_factory=list)
    macro_exports: dict[str, MacroDefinition] = field(default_factory=dict)
    value_exports: dict[str, ValueExport] = field(default_factory=dict)
    registry: Optional[MacroRegistry] = None
    output: Optional[GeneratedModule] = None
    state: ModuleState = ModuleState.UNRESOLVED
    error: Optional[Exception] = None

    @property
    def export_names(self) -> set[str]:
        return set(self.value_exports) | set(self.macro_exports)


# =============================================================================
# Dependency Graph
# =============================================================================


class DependencyGraph:
    """Directed import graph over arena indices."""

    def __init__(self):
        self.nodes: list[int] = []
        self.edges: dict[int, list[tuple[int, bool]]] = {}

    def add_node(self, index: int):
        if index not in self.edges:
            self.nodes.append(index)
            self.edges[index] = []

    def add_edge(self, importer: int, target: int, deferred: bool = False):
        self.add_node(importer)
        self.add_node(target)
        if (target, deferred) not in self.edges[importer]:
            self.edges[importer].append((target, deferred))

    def dependencies(self, index: int, include_deferred: bool = True) -> list[int]:
        return [t for t, deferred in self.edges.get(index, []) if include_deferred or not deferred]

    def find_cycles(self) -> list[list[int]]:
        """Strongly connected components that form import cycles (Tarjan)."""
        counter = itertools.count()
        index_of: dict[int, int] = {}
        lowlink: dict[int, int] = {}
        stack: list[int] = []
        on_stack: set[int] = set()
        cycles: list[list[int]] = []

        def connect(v: int):
            index_of[v] = lowlink[v] = next(counter)
            stack.append(v)
            on_stack.add(v)
            for w in self.dependencies(v):
                if w not in index_of:
                    connect(w)
                    lowlink[v] = min(lowlink[v], lowlink[w])
                elif w in on_stack:
                    lowlink[v] = min(lowlink[v], index_of[w])
            if lowlink[v] == index_of[v]:
                component = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w)
                    component.append(w)
                    if w == v:
                        break
                if len(component) > 1 or v in self.dependencies(v):
                    cycles.append(sorted(component))

        for v in self.nodes:
            if v not in index_of:
                connect(v)
        return cycles

    def topological_order(self) -> list[int]:
        """Dependencies before dependents; deferred (cycle-closing) edges are ignored."""
        order: list[int] = []
        visited: set[int] = set()

        def visit(v: int):
            if v in visited:
                return
            visited.add(v)
            for w in self.dependencies(v, include_deferred=False):
                visit(w)
            order.append(v)

        for v in self.nodes:
            visit(v)
        return order


# =============================================================================
# Compilation Session
# =============================================================================


class CompilationSession:
    """
    State of one compilation run.

    The session owns the module arena, the global macro tier shared by
    every module registry, and a gensym counter so generated names stay
    unique across modules. Resolution is serialized by a per-session lock.
    """

    def __init__(self, options: Optional[CompilerOptions] = None):
        self.options = options or CompilerOptions()
        self.records: list[ModuleRecord] = []
        self.by_path: dict[str, int] = {}
        self.global_macros: dict[str, MacroDefinition] = {}
        self.graph = DependencyGraph()
        self.reads: Counter = Counter()
        self.order: list[int] = []
        self._gensym_counter = itertools.count(1)
        self._lock = threading.RLock()
        if self.options.prelude:
            self.load_prelude()

    def gensym(self, prefix: str) -> str:
        return f"{prefix}__{next(self._gensym_counter)}"

    def load_prelude(self, path: str = PRELUDE_PATH):
        """Define the prelude's macros in the global tier."""
        with open(path, encoding="utf-8") as f:
            forms = read_str(f.read(), path)
        definitions, _ = collect_macro_definitions(forms)
        for definition in definitions:
            self.global_macros[definition.name] = definition
        logger.debug("loaded %d prelude macro(s) from %s", len(definitions), path)

    def registry_for(self, module: str) -> MacroRegistry:
        """A fresh registry whose global tier is this session's."""
        return MacroRegistry(self.global_macros, module=module)

    def record_for(self, path: str) -> ModuleRecord:
        """Return the record for a canonical path, creating it on first reference."""
        with self._lock:
            index = self.by_path.get(path)
            if index is None:
                index = len(self.records)
                self.records.append(ModuleRecord(path=path, index=index))
                self.by_path[path] = index
                self.graph.add_node(index)
            return self.records[index]

    def read_module(self, path: str) -> list:
        """Read and parse a source file; every read is counted."""
        with open(path, encoding="utf-8") as f:
            src = f.read()
        self.reads[path] += 1
        logger.debug("read %s", path)
        return read_str(src, path)

    def load(self, entry: str) -> ModuleRecord:
        """Resolve, expand and generate entry and everything it imports."""
        with self._lock:
            return ModuleResolver(self).resolve(entry)

    def ordered_records(self) -> list[ModuleRecord]:
        """Resolved modules in generation order (dependencies first)."""
        return [self.records[i] for i in self.order]


# =============================================================================
# Module Resolution
# =============================================================================


def _relative_specifier(target: str, importer: str, extension: str) -> str:
    rel = os.path.relpath(target, os.path.dirname(importer)).replace(os.sep, "/")
    if not rel.startswith("../"):
        rel = "./" + rel
    return output_specifier(rel, extension)


class ModuleResolver:
    """Depth-first resolver: a module is generated only after its imports."""

    def __init__(self, session: CompilationSession):
        self.session = session
        self.options = session.options

    def resolve(self, entry: str) -> ModuleRecord:
        path = os.path.realpath(entry)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"No such module: {entry}")
        roots = init_source_roots(path, self.options.source_roots)
        return self._visit(path, roots)

    def _visit(self, path: str, roots: list[str]) -> ModuleRecord:
        record = self.session.record_for(path)
        if record.state is not ModuleState.UNRESOLVED:
            return record

        replaced: dict[str, Optional[MacroDefinition]] = {}
        try:
            self._scan(record)
            record.state = ModuleState.RESOLVING
            for spec in record.imports:
                if not spec.is_external:
                    self._resolve_import(record, spec, roots)
            replaced = self._define_globals(record)
            for spec in record.imports:
                if not spec.is_external:
                    self._bind_import(record, spec)
            self._reexport_macros(record)
            self._expand_and_generate(record)
        except Exception as e:
            self._restore_globals(replaced)
            record.state = ModuleState.UNRESOLVED
            record.error = e
            raise

        record.state = ModuleState.RESOLVED
        record.error = None
        self.session.order.append(record.index)
        logger.debug("resolved %s", record.path)
        return record

    def _scan(self, record: ModuleRecord):
        """Read the module and collect its declarations and macro definitions."""
        forms = self.session.read_module(record.path)
        definitions, remaining = collect_macro_definitions(forms)
        imports, exports = scan_declarations(remaining)

        registry = self.session.registry_for(record.path)
        defined = {}
        for definition in definitions:
            if definition.visibility is not Visibility.GLOBAL:
                registry.define(definition)
            defined[definition.name] = definition

        record.forms = remaining
        record.imports = imports
        record.exports = exports
        record.macro_defs = definitions
        record.registry = registry
        record.macro_exports = {}
        record.value_exports = {}

        for export in exports:
            if export.is_value:
                name = export.names[0]
                record.value_exports[name] = ValueExport(name, None, export.expression)
                continue
            for local, exported in export.entries:
                if local in defined:
                    definition = defined[local]
                    if definition.visibility is Visibility.LOCAL:
                        definition = registry.export(local)
                    record.macro_exports[exported] = definition
                else:
                    record.value_exports[exported] = ValueExport(exported, local, export)

    def _resolve_import(self, record: ModuleRecord, spec: ImportSpec, roots: list[str]):
        try:
            target_path = resolve_import_path(spec.source_path, record.path, roots)
        except FileNotFoundError as e:
            raise UnresolvedImportError(
                record.path,
                None,
                spec.source_path,
                line=spec.line,
                col=spec.col,
                reason=str(e),
            ) from e

        if target_path == record.path:
            raise UnresolvedImportError(
                record.path,
                None,
                spec.source_path,
                line=spec.line,
                col=spec.col,
                reason="a module cannot import itself",
            )

        target = self.session.record_for(target_path)
        if target.state is ModuleState.RESOLVING:
            spec.deferred = True
            logger.info(
                "%s: import of %s closes a cycle; edge deferred", record.path, target_path
            )
        else:
            target = self._visit(target_path, roots)

        spec.resolved = target.index
        spec.specifier = _relative_specifier(
            target_path, record.path, self.options.output_extension
        )
        self.session.graph.add_edge(record.index, target.index, spec.deferred)

    def _define_globals(self, record: ModuleRecord) -> dict[str, Optional[MacroDefinition]]:
        """
        Global macros join the shared tier once the module's imports are compiled.

        Returns the definitions they replaced (None where the name was free),
        so a module that later fails can be taken back out of the tier.
        """
        replaced = {}
        for definition in record.macro_defs:
            if definition.visibility is Visibility.GLOBAL:
                replaced.setdefault(
                    definition.name, self.session.global_macros.get(definition.name)
                )
                record.registry.define(definition)
        return replaced

    def _restore_globals(self, replaced: dict[str, Optional[MacroDefinition]]):
        for name, previous in replaced.items():
            if previous is None:
                self.session.global_macros.pop(name, None)
            else:
                self.session.global_macros[name] = previous

    def _bind_import(self, record: ModuleRecord, spec: ImportSpec):
        """Attach imported macros to the registry and check imported value names."""
        target = self.session.records[spec.resolved]
        registry = record.registry

        if spec.namespace:
            for name, definition in target.macro_exports.items():
                registry.import_macro(f"{spec.namespace}.{name}", definition)
            return

        for name, alias in spec.bindings:
            if name in target.macro_exports:
                registry.import_macro(alias, target.macro_exports[name])
                spec.macro_names.add(name)
            elif name not in target.value_exports:
                raise UnresolvedImportError(
                    record.path,
                    name,
                    spec.source_path,
                    line=spec.line,
                    col=spec.col,
                )

    def _reexport_macros(self, record: ModuleRecord):
        """An exported name bound to an imported macro re-exports that macro."""
        for name, export in list(record.value_exports.items()):
            if export.local is not None and export.local in record.registry.imported:
                record.macro_exports[name] = record.registry.imported[export.local]
                del record.value_exports[name]

    def _expand_and_generate(self, record: ModuleRecord):
        registry = record.registry
        expander = MacroExpander(
            registry, self.session.gensym, self.options.expansion_limit
        )
        expanded = expander.expand_all(record.forms)
        logger.debug(
            "%s: %d macro expansion(s), %d macro(s) visible",
            record.path,
            expander.expansions,
            registry.visible_count(),
        )
        macro_names = registry.visible_names()
        record.output = compile_module(
            expanded,
            file=record.path,
            options=self.options,
            imports=record.imports,
            macro_names=macro_names,
        )


# =============================================================================
# Compiler Entry Points
# =============================================================================


def compile_source(
    src: str,
    options: Optional[CompilerOptions] = None,
    session: Optional[CompilationSession] = None,
) -> GeneratedModule:
    """
    Compile one source text with no import resolution.

    Macros defined in the text and the session's global macros are
    expanded; import and export declarations are emitted as written.
    """
    session = session or CompilationSession(options)
    options = session.options
    forms = read_str(src, options.file)
    definitions, remaining = collect_macro_definitions(forms)
    registry = session.registry_for(options.file)
    for definition in definitions:
        registry.define(definition)
    expander = MacroExpander(registry, session.gensym, options.expansion_limit)
    expanded = expander.expand_all(remaining)
    return compile_module(
        expanded,
        file=options.file,
        options=options,
        macro_names=registry.visible_names(),
    )


def compile_to_text(src: str, options: Optional[CompilerOptions] = None) -> str:
    """Compile a single Kiln source text to JavaScript program text."""
    return compile_source(src, options).text


def resolve(
    entry: str,
    options: Optional[CompilerOptions] = None,
    session: Optional[CompilationSession] = None,
) -> list[ModuleRecord]:
    """Resolve entry and its transitive imports; records in generation order."""
    session = session or CompilationSession(options)
    session.load(entry)
    return session.ordered_records()


def compile_file(
    entry: str,
    options: Optional[CompilerOptions] = None,
    session: Optional[CompilationSession] = None,
) -> list[GeneratedModule]:
    """Compile entry and its transitive imports; outputs in generation order."""
    return [record.output for record in resolve(entry, options, session)]


def run(src: str, options: Optional[CompilerOptions] = None):
    """
    Compile src and hand the text to options.evaluation_adapter.

    Without an adapter the generated text is returned so the caller can
    evaluate it in a scope of its choosing.
    """
    options = options or CompilerOptions()
    text = compile_to_text(src, options)
    if options.evaluation_adapter is None:
        return text
    return options.evaluation_adapter(text)


# =============================================================================
# Build Utilities
# =============================================================================


@dataclass
class BuildResult:
    """Result of building an entry module and its imports."""

    entry: str
    output_dir: str
    outputs: list[str] = field(default_factory=list)
    modules: list[ModuleRecord] = field(default_factory=list)


def output_path_for(source_path: str, source_root: str, output_dir: str, extension: str) -> str:
    rel = os.path.relpath(source_path, source_root)
    if rel.endswith(SOURCE_EXTENSION):
        rel = rel[: -len(SOURCE_EXTENSION)] + extension
    return os.path.join(output_dir, rel)


def write_atomic(path: str, text: str):
    """Write text to path via a temporary file in the same directory."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".kiln-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def build(
    entry: str,
    output_dir: str,
    options: Optional[CompilerOptions] = None,
    session: Optional[CompilationSession] = None,
) -> BuildResult:
    """
    Compile entry and its transitive imports, writing one file per module.

    The output tree mirrors the source tree below the deepest directory
    containing every module. Nothing is written unless every module
    compiled.
    """
    session = session or CompilationSession(options)
    options = session.options
    session.load(entry)
    records = session.ordered_records()

    source_root = os.path.commonpath([os.path.dirname(r.path) for r in records])
    output_dir = os.path.abspath(output_dir)
    result = BuildResult(entry=os.path.realpath(entry), output_dir=output_dir, modules=records)

    for record in records:
        out = output_path_for(record.path, source_root, output_dir, options.output_extension)
        write_atomic(out, record.output.text)
        result.outputs.append(out)
        logger.info("wrote %s", out)

    if not options.inline_runtime and options.runtime_module.startswith("./"):
        out = os.path.join(output_dir, options.runtime_module[2:])
        write_atomic(out, runtime_module_source())
        result.outputs.append(out)
        logger.info("wrote %s", out)

    return result


__all__ = [
    "PRELUDE_PATH",
    "ModuleState",
    "ValueExport",
    "ModuleRecord",
    "DependencyGraph",
    "CompilationSession",
    "ModuleResolver",
    "compile_source",
    "compile_to_text",
    "resolve",
    "compile_file",
    "run",
    "BuildResult",
    "build",
    "output_path_for",
    "write_atomic",
]
