"""
kiln.project.config - Compiler options and project configuration

This module provides:
- CompilerOptions: knobs threaded through a compilation session
- ProjectConfig: project metadata loaded from a kiln.it manifest

The kiln.it file uses Kiln map syntax:
    {:name "my-project"
     :version "0.1.0"
     :entry "src/main.kiln"
     :source-paths ["src"]
     :output-dir "dist"
     :expansion-limit 64}
"""

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from kiln.runtime.types import Keyword, MapLiteral, SetLiteral, VectorLiteral

# Default configuration values
DEFAULT_SOURCE_PATHS = ["src"]
DEFAULT_OUTPUT_DIR = "dist"
DEFAULT_OUTPUT_EXTENSION = ".mjs"
PROJECT_FILENAME = "kiln.it"


@dataclass
class CompilerOptions:
    """
    Options for one compilation session.

    Attributes:
        file: Name used in diagnostics for single-source compilation
        expansion_limit: Rewrites allowed at one position; None means the
            number of macros visible to the module
        source_roots: Extra directories searched for imported .kiln files
        output_extension: Extension of generated modules
        inline_runtime: Inline used helpers into each module instead of
            importing them from runtime_module
        runtime_module: Specifier of the shared runtime module
        prelude: Load the global macros from kiln/std/prelude.kiln
        evaluation_adapter: Callback that executes generated text (see run())
    """

    file: str = "<string>"
    expansion_limit: Optional[int] = None
    source_roots: list[str] = field(default_factory=list)
    output_extension: str = DEFAULT_OUTPUT_EXTENSION
    inline_runtime: bool = True
    runtime_module: str = "./kiln-runtime.mjs"
    prelude: bool = True
    evaluation_adapter: Optional[Callable[[str], Any]] = None


def kiln_to_python(value: Any) -> Any:
    """
    Convert Kiln forms to Python native types for internal tooling use.

    - Keyword -> str (without the colon)
    - VectorLiteral / SetLiteral / list -> list
    - MapLiteral -> dict
    - Other types pass through unchanged
    """
    if isinstance(value, Keyword):
        return value.name
    elif isinstance(value, (VectorLiteral, SetLiteral)):
        return [kiln_to_python(item) for item in value.items]
    elif isinstance(value, MapLiteral):
        return {kiln_to_python(k): kiln_to_python(v) for k, v in value.pairs}
    elif isinstance(value, list):
        return [kiln_to_python(item) for item in value]
    else:
        return value


def find_project_root(start_path: Optional[str] = None) -> Optional[str]:
    """
    Find the project root by walking up directory trees looking for kiln.it.

    Args:
        start_path: File or directory to start from. If None, uses the
                   current working directory.

    Returns:
        Absolute path to the directory containing kiln.it, or None if not found.
    """
    if start_path is None:
        current = os.getcwd()
    elif os.path.isfile(start_path):
        current = os.path.dirname(os.path.abspath(start_path))
    else:
        current = os.path.abspath(start_path)

    while True:
        if os.path.isfile(os.path.join(current, PROJECT_FILENAME)):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent


@dataclass
class ProjectConfig:
    """
    Represents a Kiln project configuration loaded from kiln.it.

    Required fields:
        name: Project name (string)
        version: Project version (string, e.g., "0.1.0")

    Optional fields:
        entry: Entry module, relative to the project root
        source_paths: Source directories searched by imports (default: ["src"])
        output_dir: Build output directory (default: "dist")
        expansion_limit: Override for the macro expansion cap

    Computed fields:
        project_root: Absolute path to the directory containing kiln.it
    """

    name: str
    version: str
    project_root: str
    entry: Optional[str] = None
    source_paths: list[str] = field(default_factory=lambda: DEFAULT_SOURCE_PATHS.copy())
    output_dir: str = DEFAULT_OUTPUT_DIR
    expansion_limit: Optional[int] = None

    # Store the raw config for any additional fields
    _raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def get_absolute_source_paths(self) -> list[str]:
        """Return absolute paths for all source directories."""
        return [os.path.join(self.project_root, p) for p in self.source_paths]

    def get_entry_path(self) -> Optional[str]:
        if self.entry is None:
            return None
        return os.path.join(self.project_root, self.entry)

    def get_output_dir(self) -> str:
        return os.path.join(self.project_root, self.output_dir)

    def to_options(self, **overrides) -> CompilerOptions:
        """Build CompilerOptions for compiling this project."""
        options = CompilerOptions(
            expansion_limit=self.expansion_limit,
            source_roots=self.get_absolute_source_paths(),
        )
        for key, value in overrides.items():
            setattr(options, key, value)
        return options

    @classmethod
    def load(cls, path: Optional[str] = None) -> "ProjectConfig":
        """
        Load a ProjectConfig from a kiln.it file.

        Args:
            path: Path to kiln.it, a directory containing it, a file inside
                  the project, or None to search from the current directory.

        Returns:
            Loaded ProjectConfig instance.

        Raises:
            FileNotFoundError: If no kiln.it file can be found.
            ValueError: If the kiln.it file is invalid or missing required fields.
        """
        # Import here to avoid circular imports
        from kiln.compiler.errors import KilnSyntaxError
        from kiln.compiler.reader import read_str

        if path is not None and not os.path.exists(path):
            raise FileNotFoundError(f"Path does not exist: {path}")
        if path is not None and os.path.basename(path) == PROJECT_FILENAME:
            project_root = os.path.dirname(os.path.abspath(path))
        else:
            project_root = find_project_root(path)
            if project_root is None:
                where = path if path is not None else "current directory"
                raise FileNotFoundError(
                    f"Could not find {PROJECT_FILENAME} in {where} or any parent directory"
                )

        project_file = os.path.join(project_root, PROJECT_FILENAME)
        with open(project_file, encoding="utf-8") as f:
            content = f.read()

        try:
            parsed = read_str(content, project_file)
        except KilnSyntaxError as e:
            raise ValueError(f"Failed to parse {project_file}: {e}") from e

        config_form = next((form for form in parsed if isinstance(form, MapLiteral)), None)
        if config_form is None:
            raise ValueError(f"{project_file} must contain a map as the main form")
        config_dict = kiln_to_python(config_form)

        if "name" not in config_dict:
            raise ValueError(f"{project_file} is missing required field :name")
        if "version" not in config_dict:
            raise ValueError(f"{project_file} is missing required field :version")

        name = config_dict["name"]
        version = config_dict["version"]
        entry = config_dict.get("entry")
        source_paths = config_dict.get("source-paths", DEFAULT_SOURCE_PATHS.copy())
        output_dir = config_dict.get("output-dir", DEFAULT_OUTPUT_DIR)
        expansion_limit = config_dict.get("expansion-limit")

        # Validate types
        if not isinstance(name, str):
            raise ValueError(f":name must be a string, got {type(name).__name__}")
        if not isinstance(version, str):
            raise ValueError(f":version must be a string, got {type(version).__name__}")
        if entry is not None and not isinstance(entry, str):
            raise ValueError(f":entry must be a string, got {type(entry).__name__}")
        if not isinstance(source_paths, list) or not all(
            isinstance(p, str) for p in source_paths
        ):
            raise ValueError(":source-paths must be a vector of strings")
        if not isinstance(output_dir, str):
            raise ValueError(
                f":output-dir must be a string, got {type(output_dir).__name__}"
            )
        if expansion_limit is not None and (
            not isinstance(expansion_limit, int)
            or isinstance(expansion_limit, bool)
            or expansion_limit < 1
        ):
            raise ValueError(":expansion-limit must be a positive integer")

        return cls(
            name=name,
            version=version,
            project_root=project_root,
            entry=entry,
            source_paths=source_paths,
            output_dir=output_dir,
            expansion_limit=expansion_limit,
            _raw=config_dict,
        )


def load_config(path: Optional[str] = None) -> ProjectConfig:
    """Convenience function to load a ProjectConfig."""
    return ProjectConfig.load(path)


__all__ = [
    "CompilerOptions",
    "ProjectConfig",
    "PROJECT_FILENAME",
    "DEFAULT_SOURCE_PATHS",
    "DEFAULT_OUTPUT_DIR",
    "DEFAULT_OUTPUT_EXTENSION",
    "kiln_to_python",
    "find_project_root",
    "load_config",
]
