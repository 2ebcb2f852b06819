"""
Test suite for the public compile/run entry points and the kiln CLI.
"""

import io
import os
import shutil
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout

NODE = shutil.which("node")


class TestEntryPoints(unittest.TestCase):
    """Test compile_to_text, compile_source and run."""

    def test_compile_to_text(self):
        """Test compiling a single source text."""
        from kiln.compiler.loader import compile_to_text

        self.assertEqual(compile_to_text("(def x (+ 1 2))"), "const x = (1 + 2);\n")

    def test_compile_source_reports_exports(self):
        """Test the GeneratedModule metadata."""
        from kiln.compiler.loader import compile_source

        module = compile_source('(def a 1)\n(export [a])\n(import [b] from "./b.kiln")')
        self.assertEqual(module.exports, ["a"])
        self.assertEqual(module.imports, ["./b.mjs"])
        self.assertTrue(module.text.startswith('import { b } from "./b.mjs";'))

    def test_run_without_adapter_returns_text(self):
        """Test that run() hands back the program text when no adapter is set."""
        from kiln.compiler.loader import compile_to_text, run

        src = "(defn f (x) (* x 2))\n(f 4)"
        self.assertEqual(run(src), compile_to_text(src))

    def test_run_with_adapter(self):
        """Test that run() passes the text to the evaluation adapter."""
        from kiln.compiler.loader import run
        from kiln.project.config import CompilerOptions

        seen = []

        def adapter(text):
            seen.append(text)
            return "result"

        self.assertEqual(run("(def x 1)", CompilerOptions(evaluation_adapter=adapter)), "result")
        self.assertEqual(seen, ["const x = 1;\n"])

    def test_source_errors_carry_location(self):
        """Test that syntax errors name the configured file."""
        from kiln.compiler.errors import KilnSyntaxError
        from kiln.compiler.loader import compile_to_text
        from kiln.project.config import CompilerOptions

        with self.assertRaises(KilnSyntaxError) as cm:
            compile_to_text("(def x", CompilerOptions(file="repl.kiln"))
        self.assertEqual(cm.exception.file, "repl.kiln")

    @unittest.skipUnless(NODE, "node is not installed")
    def test_node_adapter(self):
        """Test evaluating generated text with node."""
        from kiln.adapters import node_adapter
        from kiln.compiler.loader import run
        from kiln.project.config import CompilerOptions

        out = run('(console.log (str "x=" 3))', CompilerOptions(evaluation_adapter=node_adapter))
        self.assertEqual(out, "x=3\n")


class TestCli(unittest.TestCase):
    """Test the kiln command line."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory(prefix="kiln-cli-")
        self.root = os.path.realpath(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def write(self, name: str, text: str) -> str:
        path = os.path.join(self.root, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        return path

    def invoke(self, *argv):
        from kiln.cli import _main

        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = _main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_compile_prints_javascript(self):
        """Test that compile prints the entry module's text."""
        main = self.write("main.kiln", "(def x 1)\n")
        code, out, _ = self.invoke("compile", main)
        self.assertEqual(code, 0)
        self.assertEqual(out, "const x = 1;\n")

    def test_compile_to_file(self):
        """Test that compile -o writes the text to a file."""
        main = self.write("main.kiln", "(def x 1)\n")
        target = os.path.join(self.root, "main.mjs")
        code, out, _ = self.invoke("compile", main, "-o", target)
        self.assertEqual(code, 0)
        self.assertEqual(out, "")
        with open(target, encoding="utf-8") as f:
            self.assertEqual(f.read(), "const x = 1;\n")

    def test_compile_missing_file(self):
        """Test that a missing file exits with status 1."""
        code, _, err = self.invoke("compile", os.path.join(self.root, "nope.kiln"))
        self.assertEqual(code, 1)
        self.assertIn("Error:", err)

    def test_compile_reports_syntax_error(self):
        """Test that compile errors are printed with their location."""
        main = self.write("bad.kiln", "(def x\n")
        code, _, err = self.invoke("compile", main)
        self.assertEqual(code, 1)
        self.assertIn("bad.kiln", err)

    def test_expansion_limit_flag(self):
        """Test that --expansion-limit reaches the session."""
        main = self.write(
            "main.kiln",
            "(macro a (x) `(b ~x))\n(macro b (x) `(c ~x))\n(macro c (x) x)\n(def v (a 1))\n",
        )
        self.assertEqual(self.invoke("compile", main)[0], 0)
        code, _, err = self.invoke("compile", main, "--expansion-limit", "2")
        self.assertEqual(code, 1)
        self.assertIn("limit 2", err)

    def test_build(self):
        """Test that build writes every module and lists the outputs."""
        self.write("lib.kiln", "(def x 1)\n(export [x])\n")
        main = self.write("main.kiln", '(import [x] from "./lib.kiln")\n(console.log x)\n')
        out_dir = os.path.join(self.root, "dist")
        code, out, _ = self.invoke("build", main, "-o", out_dir)
        self.assertEqual(code, 0)
        self.assertTrue(os.path.isfile(os.path.join(out_dir, "main.mjs")))
        self.assertTrue(os.path.isfile(os.path.join(out_dir, "lib.mjs")))
        self.assertIn(f"Output written to: {out_dir}", out)

    def test_build_from_manifest(self):
        """Test that build without an entry uses kiln.it."""
        self.write(
            "kiln.it",
            '{:name "demo" :version "0.1.0" :entry "src/main.kiln" :output-dir "out"}',
        )
        self.write("src/main.kiln", "(def x 1)\n")
        cwd = os.getcwd()
        os.chdir(self.root)
        try:
            code, _, _ = self.invoke("build")
        finally:
            os.chdir(cwd)
        self.assertEqual(code, 0)
        self.assertTrue(os.path.isfile(os.path.join(self.root, "out", "main.mjs")))

    def test_no_subcommand(self):
        """Test that running without a subcommand prints help and fails."""
        code, out, _ = self.invoke()
        self.assertEqual(code, 1)
        self.assertIn("usage:", out)

    @unittest.skipUnless(NODE, "node is not installed")
    def test_run(self):
        """Test that run executes the compiled entry module."""
        main = self.write("main.kiln", "(def x 1)\n")
        code, _, _ = self.invoke("run", main)
        self.assertEqual(code, 0)


if __name__ == "__main__":
    unittest.main()
