"""
kiln.adapters - Evaluation adapters for generated JavaScript

An evaluation adapter is any callable taking program text. run() hands it
the generated text; nothing in the compiler depends on a particular host.

- node_adapter: evaluates text with `node --input-type=module`
- run_node_file: executes a built module file with node
"""

import logging
import shutil
import subprocess
from typing import Optional

logger = logging.getLogger(__name__)

NODE_EXECUTABLE = "node"


def find_node() -> str:
    """Path of the node executable; FileNotFoundError if it is not on PATH."""
    node = shutil.which(NODE_EXECUTABLE)
    if node is None:
        raise FileNotFoundError(f"'{NODE_EXECUTABLE}' executable not found on PATH")
    return node


def node_adapter(text: str, timeout: Optional[float] = None) -> str:
    """
    Evaluate an ES module with node, feeding it on stdin.

    Returns the process's stdout. A non-zero exit raises
    subprocess.CalledProcessError carrying node's stderr.
    """
    node = find_node()
    logger.debug("evaluating %d character(s) with %s", len(text), node)
    proc = subprocess.run(
        [node, "--input-type=module"],
        input=text,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=True,
    )
    return proc.stdout


def run_node_file(path: str, args: Optional[list[str]] = None) -> int:
    """Execute a module file with node, inheriting stdio; returns the exit code."""
    node = find_node()
    logger.debug("running %s with %s", path, node)
    return subprocess.run([node, path, *(args or [])]).returncode


__all__ = ["NODE_EXECUTABLE", "find_node", "node_adapter", "run_node_file"]
