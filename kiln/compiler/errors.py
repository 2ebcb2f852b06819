"""
kiln.compiler.errors - Typed errors raised by the compilation pipeline

Every pipeline failure derives from KilnError and carries the file and
position where it was detected, when known:
- KilnSyntaxError: malformed source text (reader)
- UnresolvedImportError: missing export or unknown source path (resolver)
- MacroExpansionLimitExceeded: runaway or mutually recursive macros
- MacroError: a macro body failed while computing its expansion
- GenerationError: a construct the code generator has no rule for

UnresolvedReferenceWarning is the single non-fatal diagnostic: a free
symbol that is emitted as-is so host globals keep working.
"""

from typing import Optional


class KilnError(Exception):
    """Base class for all Kiln compilation errors."""

    def __init__(
        self,
        message: str,
        file: Optional[str] = None,
        line: int = 0,
        col: int = 0,
    ):
        self.message = message
        self.file = file
        self.line = line
        self.col = col
        super().__init__(self.format())

    @property
    def location(self) -> str:
        if self.file is None:
            return ""
        if self.line:
            return f"{self.file}:{self.line}:{self.col}"
        return self.file

    def format(self) -> str:
        loc = self.location
        return f"{loc}: {self.message}" if loc else self.message


class KilnSyntaxError(KilnError):
    """Malformed source: unbalanced delimiters or an invalid atom."""

    def __init__(
        self,
        message: str,
        file: Optional[str] = None,
        line: int = 0,
        col: int = 0,
        offset: int = 0,
        expected: Optional[str] = None,
    ):
        self.offset = offset
        self.expected = expected
        if expected:
            message = f"{message} (expected {expected})"
        super().__init__(message, file, line, col)


class UnresolvedImportError(KilnError):
    """An import names a binding the target does not export, or a file that does not exist."""

    def __init__(
        self,
        importer: str,
        exported_name: Optional[str],
        source_path: str,
        line: int = 0,
        col: int = 0,
        reason: Optional[str] = None,
    ):
        self.importer = importer
        self.exported_name = exported_name
        self.source_path = source_path
        if reason is None:
            if exported_name is None:
                reason = f"cannot resolve module '{source_path}'"
            else:
                reason = f"'{exported_name}' is not exported by '{source_path}'"
        super().__init__(reason, importer, line, col)


class MacroExpansionLimitExceeded(KilnError):
    """Expansion did not reach a fixpoint within the allowed number of rewrites."""

    def __init__(
        self,
        name: str,
        limit: int,
        file: Optional[str] = None,
        line: int = 0,
        col: int = 0,
        reason: str = "expansion limit exceeded",
    ):
        self.name = name
        self.limit = limit
        super().__init__(
            f"macro '{name}': {reason} (limit {limit})", file, line, col
        )


class MacroError(KilnError):
    """A macro failed while computing its expansion.

    Reports both where the macro was defined and where it was invoked.
    """

    def __init__(
        self,
        message: str,
        name: str,
        definition_site: str,
        file: Optional[str] = None,
        line: int = 0,
        col: int = 0,
    ):
        self.name = name
        self.definition_site = definition_site
        super().__init__(
            f"in macro '{name}' (defined at {definition_site}): {message}",
            file,
            line,
            col,
        )

    @property
    def invocation_site(self) -> str:
        return self.location


class GenerationError(KilnError):
    """The code generator has no translation rule for a construct."""


class UnresolvedReferenceWarning(UserWarning):
    """A symbol that is not a parameter, local, import or known host global."""


__all__ = [
    "KilnError",
    "KilnSyntaxError",
    "UnresolvedImportError",
    "MacroExpansionLimitExceeded",
    "MacroError",
    "GenerationError",
    "UnresolvedReferenceWarning",
]
