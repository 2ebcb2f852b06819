"""
kiln.project - Kiln Project System

This package contains the project configuration for Kiln:

- config.py: Parser for kiln.it project manifest files, and the
  CompilerOptions threaded through a compilation session

Usage:
    from kiln.project import load_config

    # Load project configuration
    config = load_config()  # Searches upward for kiln.it
    options = config.to_options()
"""

from kiln.project.config import (
    DEFAULT_OUTPUT_DIR,
    DEFAULT_SOURCE_PATHS,
    PROJECT_FILENAME,
    CompilerOptions,
    ProjectConfig,
    find_project_root,
    kiln_to_python,
    load_config,
)

__all__ = [
    "CompilerOptions",
    "ProjectConfig",
    "PROJECT_FILENAME",
    "DEFAULT_SOURCE_PATHS",
    "DEFAULT_OUTPUT_DIR",
    "find_project_root",
    "kiln_to_python",
    "load_config",
]
