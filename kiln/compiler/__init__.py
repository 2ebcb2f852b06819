"""
kiln.compiler - The Kiln Compiler Toolchain

This package compiles Kiln source code to JavaScript ES modules.

Phases:
1. Read (reader.py): Text -> Kiln Forms
2. Macroexpand (macros.py): Expand macros against a per-module registry
3. Resolve (loader.py): Discover imported modules, order them, share the
   global macro tier through a CompilationSession
4. Generate (codegen.py): Forms -> JavaScript program text
"""

# Re-export codegen
from kiln.compiler.codegen import (
    CompilationContext,
    GeneratedModule,
    compile_module,
    get_compile_context,
)

# Re-export errors
from kiln.compiler.errors import (
    GenerationError,
    KilnError,
    KilnSyntaxError,
    MacroError,
    MacroExpansionLimitExceeded,
    UnresolvedImportError,
    UnresolvedReferenceWarning,
)

# Re-export loader (sessions, resolution, builds, main API)
from kiln.compiler.loader import (
    BuildResult,
    CompilationSession,
    DependencyGraph,
    ModuleRecord,
    ModuleResolver,
    ModuleState,
    build,
    compile_file,
    compile_source,
    compile_to_text,
    resolve,
    run,
)

# Re-export macros
from kiln.compiler.macros import (
    MacroDefinition,
    MacroExpander,
    MacroRegistry,
    Visibility,
    macroexpand,
    macroexpand_1,
    macroexpand_all,
)

# Re-export reader
from kiln.compiler.reader import (
    Reader,
    SourceList,
    Token,
    is_source_language,
    iter_forms,
    read_str,
    tokenize,
)

# Re-export types
from kiln.runtime.types import (
    Keyword,
    MapLiteral,
    SetLiteral,
    Symbol,
    VectorLiteral,
    normalize_name,
)
