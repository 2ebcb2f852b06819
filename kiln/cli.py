"""
kiln.cli - Kiln Command Line Interface

This module provides the main CLI entry point for Kiln with subcommand support:

- kiln compile <file>   Compile a module (and its imports), print the module's JavaScript
- kiln build [entry]    Write every generated module of a program to an output directory
- kiln run <file>       Build to a temporary directory and execute the entry with node
"""

import argparse
import logging
import sys
import tempfile
import traceback
from typing import Optional

from kiln.compiler.errors import KilnError

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def load_options(path: Optional[str], args: argparse.Namespace):
    """
    CompilerOptions for compiling path.

    A kiln.it manifest found above path contributes source roots and the
    expansion limit; command line flags override it.
    """
    from kiln.project.config import CompilerOptions, ProjectConfig, find_project_root

    options = CompilerOptions()
    if find_project_root(path) is not None:
        config = ProjectConfig.load(path)
        options = config.to_options()
    if getattr(args, "expansion_limit", None) is not None:
        options.expansion_limit = args.expansion_limit
    if getattr(args, "external_runtime", False):
        options.inline_runtime = False
    return options


def cmd_compile(args: argparse.Namespace) -> int:
    """Compile a file and print (or write) the entry module's JavaScript."""
    from kiln.compiler.loader import compile_file, write_atomic

    try:
        options = load_options(args.file, args)
        outputs = compile_file(args.file, options)
    except (KilnError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    text = outputs[-1].text
    if args.output:
        write_atomic(args.output, text)
        logger.info("wrote %s", args.output)
    else:
        sys.stdout.write(text)
    return 0


def cmd_build(args: argparse.Namespace) -> int:
    """Build a program: every module it reaches is written under the output directory."""
    from kiln.compiler.loader import build
    from kiln.project.config import DEFAULT_OUTPUT_DIR, ProjectConfig

    entry = args.entry
    out_dir = args.out_dir
    try:
        if entry is None:
            config = ProjectConfig.load()
            entry = config.get_entry_path()
            if entry is None:
                print("Error: no entry given and kiln.it has no :entry", file=sys.stderr)
                return 1
            out_dir = out_dir or config.get_output_dir()
        options = load_options(entry, args)
        result = build(entry, out_dir or DEFAULT_OUTPUT_DIR, options)
    except (KilnError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        return 1

    for path in result.outputs:
        print(path)
    print(f"Output written to: {result.output_dir}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Build to a temporary directory and run the entry module with node."""
    from kiln.adapters import run_node_file
    from kiln.compiler.loader import build

    try:
        options = load_options(args.file, args)
        with tempfile.TemporaryDirectory(prefix="kiln-run-") as out_dir:
            result = build(args.file, out_dir, options)
            entry_output = next(
                path
                for path, record in zip(result.outputs, result.modules)
                if record.path == result.entry
            )
            return run_node_file(entry_output, args.args)
    except (KilnError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _add_compile_flags(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--expansion-limit",
        type=int,
        metavar="N",
        help="Successive macro rewrites allowed at one position",
    )
    parser.add_argument(
        "--external-runtime",
        action="store_true",
        help="Import runtime helpers from kiln-runtime.mjs instead of inlining them",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="kiln",
        description="Kiln - A Lisp to JavaScript compiler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  kiln compile main.kiln            Print the JavaScript for main.kiln
  kiln compile main.kiln -o m.mjs   Write it to m.mjs
  kiln build src/main.kiln -o dist  Compile main.kiln and its imports into dist/
  kiln build                        Build the project described by kiln.it
  kiln run main.kiln                Compile and execute with node
        """,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log compilation progress (DEBUG level)",
    )

    subparsers = parser.add_subparsers(dest="subcommand", help="Available commands")

    # compile subcommand
    compile_parser = subparsers.add_parser(
        "compile", help="Compile a file and print its JavaScript"
    )
    compile_parser.add_argument("file", help="Kiln source file")
    compile_parser.add_argument(
        "-o", "--output", metavar="OUT", help="Write the JavaScript to OUT"
    )
    _add_compile_flags(compile_parser)

    # build subcommand
    build_parser = subparsers.add_parser(
        "build", help="Compile a program and all modules it imports"
    )
    build_parser.add_argument(
        "entry", nargs="?", help="Entry module (default: :entry from kiln.it)"
    )
    build_parser.add_argument(
        "-o",
        "--out-dir",
        metavar="DIR",
        help="Output directory (default: :output-dir from kiln.it, else dist)",
    )
    _add_compile_flags(build_parser)

    # run subcommand
    run_parser = subparsers.add_parser("run", help="Compile and execute with node")
    run_parser.add_argument("file", help="Kiln source file")
    run_parser.add_argument(
        "args", nargs=argparse.REMAINDER, help="Arguments passed to the program"
    )
    _add_compile_flags(run_parser)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the Kiln CLI. Calls sys.exit with return code."""
    sys.exit(_main(argv))


def _main(argv: Optional[list[str]] = None) -> int:
    """Internal main that returns exit code."""
    if argv is None:
        argv = sys.argv[1:]

    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.subcommand == "compile":
        return cmd_compile(args)
    elif args.subcommand == "build":
        return cmd_build(args)
    elif args.subcommand == "run":
        return cmd_run(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    main()
