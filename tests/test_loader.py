"""
Test suite for module resolution, compilation sessions and builds.

This module tests:
- Each module is read and generated once per session (diamond imports)
- Import cycles are tolerated by deferring the cycle-closing edge
- Macro visibility across modules (exported, aliased, global, local)
- UnresolvedImportError for missing names and missing files
- Failed modules return to the Unresolved state
- Namespace member access and builds written to an output directory
"""

import os
import shutil
import subprocess
import tempfile
import unittest
import warnings

NODE = shutil.which("node")


class ModuleTestCase(unittest.TestCase):
    """Base class that writes source files into a temporary directory."""

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory(prefix="kiln-test-")
        self.root = os.path.realpath(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def write(self, name: str, text: str) -> str:
        path = os.path.join(self.root, name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        return path

    def path(self, name: str) -> str:
        return os.path.join(self.root, name)

    def run_node(self, path: str) -> str:
        result = subprocess.run(
            [NODE, path], capture_output=True, text=True, check=True, timeout=30
        )
        return result.stdout


class TestDiamondImports(ModuleTestCase):
    """Test that shared dependencies are processed exactly once."""

    def write_diamond(self) -> str:
        self.write("a.kiln", '(console.log "A loaded")\n(def x 1)\n(export [x])\n')
        self.write("b.kiln", '(import [x] from "./a.kiln")\n(def bx (+ x 1))\n(export [bx])\n')
        self.write("c.kiln", '(import [x] from "./a.kiln")\n(def cx (+ x 2))\n(export [cx])\n')
        return self.write(
            "main.kiln",
            '(import [bx] from "./b.kiln")\n(import [cx] from "./c.kiln")\n'
            "(console.log (+ bx cx))\n",
        )

    def test_shared_module_read_once(self):
        """Test that a module imported twice is read and generated once."""
        from kiln.compiler.loader import CompilationSession, compile_file

        main = self.write_diamond()
        session = CompilationSession()
        outputs = compile_file(main, session=session)

        self.assertEqual(len(outputs), 4)
        self.assertEqual(session.reads[self.path("a.kiln")], 1)
        self.assertTrue(all(count == 1 for count in session.reads.values()))

    def test_dependencies_generated_first(self):
        """Test that outputs come in dependency order."""
        from kiln.compiler.loader import compile_file

        main = self.write_diamond()
        paths = [output.path for output in compile_file(main)]
        self.assertEqual(paths[0], self.path("a.kiln"))
        self.assertEqual(paths[-1], self.path("main.kiln"))

    def test_resolve_returns_records_in_order(self):
        """Test that resolve() lists every record once, dependencies first."""
        from kiln.compiler.loader import ModuleState, resolve

        main = self.write_diamond()
        records = resolve(main)
        names = [os.path.basename(r.path) for r in records]
        self.assertEqual(sorted(names), ["a.kiln", "b.kiln", "c.kiln", "main.kiln"])
        self.assertEqual(names[0], "a.kiln")
        self.assertEqual(names[-1], "main.kiln")
        self.assertTrue(all(r.state is ModuleState.RESOLVED for r in records))
        self.assertEqual(set(records[-1].value_exports), set())
        self.assertEqual(set(records[0].value_exports), {"x"})

    def test_import_specifiers(self):
        """Test that imports of generated modules use the output extension."""
        from kiln.compiler.loader import compile_file

        main = self.write_diamond()
        text = compile_file(main)[-1].text
        self.assertIn('import { bx } from "./b.mjs";', text)
        self.assertIn('import { cx } from "./c.mjs";', text)

    @unittest.skipUnless(NODE, "node is not installed")
    def test_shared_module_runs_once(self):
        """Test that the shared module's side effects happen once at run time."""
        from kiln.compiler.loader import build

        main = self.write_diamond()
        result = build(main, self.path("out"))
        stdout = self.run_node(os.path.join(result.output_dir, "main.mjs"))
        self.assertEqual(stdout, "A loaded\n5\n")


class TestImportedFunctions(ModuleTestCase):
    """Test calling functions across modules."""

    @unittest.skipUnless(NODE, "node is not installed")
    def test_imported_add(self):
        """Test that an exported function can be imported and called."""
        from kiln.compiler.loader import build

        self.write("math.kiln", "(defn add (a b) (+ a b))\n(export [add])\n")
        main = self.write("main.kiln", '(import [add] from "./math.kiln")\n(console.log (add 5 3))\n')
        result = build(main, self.path("out"))
        self.assertEqual(self.run_node(os.path.join(result.output_dir, "main.mjs")), "8\n")


class TestImportCycles(ModuleTestCase):
    """Test that import cycles compile with a deferred edge."""

    def write_cycle(self) -> str:
        self.write(
            "b.kiln",
            '(import [aname] from "./a.kiln")\n'
            '(defn bname () (str "b" (aname)))\n'
            "(export [bname])\n",
        )
        return self.write(
            "a.kiln",
            '(import [bname] from "./b.kiln")\n'
            '(defn aname () "a")\n'
            "(export [aname])\n"
            "(console.log (bname))\n",
        )

    def test_cycle_edge_is_deferred(self):
        """Test that the import closing the cycle is marked deferred."""
        from kiln.compiler.loader import CompilationSession, ModuleState

        entry = self.write_cycle()
        session = CompilationSession()
        record = session.load(entry)

        b = session.records[session.by_path[self.path("b.kiln")]]
        self.assertIs(record.state, ModuleState.RESOLVED)
        self.assertIs(b.state, ModuleState.RESOLVED)
        self.assertTrue(b.imports[0].deferred)
        self.assertFalse(record.imports[0].deferred)

    def test_find_cycles(self):
        """Test that the dependency graph reports the cycle."""
        from kiln.compiler.loader import CompilationSession

        entry = self.write_cycle()
        session = CompilationSession()
        session.load(entry)
        a = session.by_path[self.path("a.kiln")]
        b = session.by_path[self.path("b.kiln")]
        self.assertEqual(session.graph.find_cycles(), [sorted([a, b])])
        self.assertEqual(session.graph.topological_order(), [b, a])

    @unittest.skipUnless(NODE, "node is not installed")
    def test_cycle_runs(self):
        """Test that live bindings resolve the cycle at run time."""
        from kiln.compiler.loader import build

        entry = self.write_cycle()
        result = build(entry, self.path("out"))
        self.assertEqual(self.run_node(os.path.join(result.output_dir, "a.mjs")), "ba\n")

    def test_self_import_is_rejected(self):
        """Test that a module importing itself cannot be resolved."""
        from kiln.compiler.errors import UnresolvedImportError
        from kiln.compiler.loader import compile_file

        entry = self.write("self.kiln", '(import [x] from "./self.kiln")\n(def x 1)\n(export [x])\n')
        with self.assertRaises(UnresolvedImportError) as cm:
            compile_file(entry)
        self.assertIsNone(cm.exception.exported_name)


class TestMacroVisibility(ModuleTestCase):
    """Test which macros each module can see."""

    def test_aliased_macros_do_not_collide(self):
        """Test that two same-named macros imported under aliases stay distinct."""
        from kiln.compiler.loader import compile_file

        self.write("lib_a.kiln", '(macro shout (x) `(str ~x "!"))\n(export [shout])\n')
        self.write("lib_b.kiln", '(macro shout (x) `(str ~x "?"))\n(export [shout])\n')
        main = self.write(
            "main.kiln",
            '(import [shout as a-shout] from "./lib_a.kiln")\n'
            '(import [shout as b-shout] from "./lib_b.kiln")\n'
            '(def r1 (a-shout "a"))\n'
            '(def r2 (b-shout "b"))\n',
        )
        text = compile_file(main)[-1].text
        self.assertIn('const r1 = __kiln_str("a", "!");', text)
        self.assertIn('const r2 = __kiln_str("b", "?");', text)
        # Macro-only imports have no runtime counterpart
        self.assertNotIn("lib_a", text)
        self.assertNotIn("lib_b", text)

    def test_global_macro_visible_after_import(self):
        """Test that a defmacro is visible to modules compiled after its definer."""
        from kiln.compiler.loader import compile_file

        self.write("lib.kiln", "(defmacro forty-two () 42)\n")
        main = self.write("main.kiln", '(import "./lib.kiln")\n(def v (forty-two))\n')
        text = compile_file(main)[-1].text
        self.assertIn('import "./lib.mjs";', text)
        self.assertIn("const v = 42;", text)

    def test_local_macro_is_private(self):
        """Test that an unexported local macro is not visible to importers."""
        from kiln.compiler.errors import UnresolvedReferenceWarning
        from kiln.compiler.loader import compile_file

        self.write("lib.kiln", "(macro hidden () 1)\n(def visible 2)\n(export [visible])\n")
        main = self.write(
            "main.kiln", '(import [visible] from "./lib.kiln")\n(def h (hidden))\n'
        )
        with self.assertWarns(UnresolvedReferenceWarning):
            text = compile_file(main)[-1].text
        self.assertIn("const h = hidden();", text)

    def test_namespace_macro_access(self):
        """Test that a namespace import exposes exported macros as ns.name."""
        from kiln.compiler.loader import compile_file

        self.write("lib.kiln", "(macro twice (x) `(+ ~x ~x))\n(export [twice])\n")
        main = self.write("main.kiln", '(import lib from "./lib.kiln")\n(def v (lib.twice 4))\n')
        self.assertIn("const v = (4 + 4);", compile_file(main)[-1].text)

    def test_reexported_macro(self):
        """Test that an imported macro can be exported again."""
        from kiln.compiler.loader import compile_file

        self.write("core.kiln", "(macro inc (x) `(+ ~x 1))\n(export [inc])\n")
        self.write("mid.kiln", '(import [inc] from "./core.kiln")\n(export [inc])\n')
        main = self.write("main.kiln", '(import [inc] from "./mid.kiln")\n(def v (inc 1))\n')
        self.assertIn("const v = (1 + 1);", compile_file(main)[-1].text)

    def test_prelude_macros(self):
        """Test that prelude macros are available everywhere."""
        from kiln.compiler.loader import compile_file

        main = self.write("main.kiln", "(def x 1)\n(when (> x 0) (console.log x))\n")
        text = compile_file(main)[-1].text
        self.assertIn("if ((x > 0)) {", text)


class TestUnresolvedImports(ModuleTestCase):
    """Test failures to resolve imports."""

    def test_missing_name(self):
        """Test importing a name the target does not export."""
        from kiln.compiler.errors import UnresolvedImportError
        from kiln.compiler.loader import compile_file

        self.write("lib.kiln", "(def x 1)\n(export [x])\n")
        main = self.write("main.kiln", '(import [y] from "./lib.kiln")\n')
        with self.assertRaises(UnresolvedImportError) as cm:
            compile_file(main)
        err = cm.exception
        self.assertEqual(err.exported_name, "y")
        self.assertEqual(err.source_path, "./lib.kiln")
        self.assertEqual(err.importer, main)
        self.assertEqual((err.line, err.col), (1, 0))

    def test_missing_file(self):
        """Test importing a file that does not exist."""
        from kiln.compiler.errors import UnresolvedImportError
        from kiln.compiler.loader import compile_file

        main = self.write("main.kiln", '(def a 1)\n(import [y] from "./nope.kiln")\n')
        with self.assertRaises(UnresolvedImportError) as cm:
            compile_file(main)
        self.assertIsNone(cm.exception.exported_name)
        self.assertEqual(cm.exception.line, 2)

    def test_failed_module_returns_to_unresolved(self):
        """Test that a failure leaves the module Unresolved and siblings Resolved."""
        from kiln.compiler.errors import UnresolvedImportError
        from kiln.compiler.loader import CompilationSession, ModuleState

        self.write("good.kiln", "(def x 1)\n(export [x])\n")
        self.write("bad.kiln", '(import [missing] from "./good.kiln")\n')
        main = self.write(
            "main.kiln", '(import [x] from "./good.kiln")\n(import "./bad.kiln")\n'
        )
        session = CompilationSession()
        with self.assertRaises(UnresolvedImportError):
            session.load(main)

        good = session.records[session.by_path[self.path("good.kiln")]]
        bad = session.records[session.by_path[self.path("bad.kiln")]]
        self.assertIs(good.state, ModuleState.RESOLVED)
        self.assertIs(bad.state, ModuleState.UNRESOLVED)
        self.assertIsInstance(bad.error, UnresolvedImportError)

    def test_failed_module_global_macros_are_withdrawn(self):
        """Test that a module failing after its defmacros leaves the global tier as it was."""
        from kiln.compiler.errors import GenerationError
        from kiln.compiler.loader import CompilationSession

        self.write("bad.kiln", "(defmacro leaked () 1)\n(defmacro when (c & body) c)\n(set! 1 2)\n")
        main = self.write("main.kiln", '(import "./bad.kiln")\n')
        session = CompilationSession()
        prelude_when = session.global_macros["when"]
        with self.assertRaises(GenerationError):
            session.load(main)

        self.assertNotIn("leaked", session.global_macros)
        self.assertIs(session.global_macros["when"], prelude_when)

    def test_missing_entry(self):
        """Test that a missing entry module raises FileNotFoundError."""
        from kiln.compiler.loader import compile_file

        with self.assertRaises(FileNotFoundError):
            compile_file(self.path("absent.kiln"))

    def test_external_imports_pass_through(self):
        """Test that non-Kiln import paths are emitted untouched."""
        from kiln.compiler.loader import compile_file

        main = self.write("main.kiln", '(import [readFile] from "node:fs/promises")\n')
        text = compile_file(main)[-1].text
        self.assertIn('import { readFile } from "node:fs/promises";', text)


class TestNamespaceAccess(ModuleTestCase):
    """Test member access through namespace imports."""

    def write_modules(self) -> str:
        self.write("lib.kiln", "(def double-five 10)\n(export [double-five])\n")
        return self.write(
            "main.kiln",
            '(import lib from "./lib.kiln")\n'
            '(console.log lib.double-five (get lib "missing" "fallback"))\n',
        )

    def test_hyphenated_member_uses_get_helper(self):
        """Test that a member name JavaScript cannot spell goes through __kiln_get."""
        from kiln.compiler.loader import compile_file

        outputs = compile_file(self.write_modules())
        lib, main = outputs[0].text, outputs[-1].text
        self.assertIn('export { double_five as "double-five" };', lib)
        self.assertIn('import * as lib from "./lib.mjs";', main)
        self.assertIn('__kiln_get(lib, "double-five")', main)

    @unittest.skipUnless(NODE, "node is not installed")
    def test_member_lookup_at_run_time(self):
        """Test the value and the not-found fallback at run time."""
        from kiln.compiler.loader import build

        result = build(self.write_modules(), self.path("out"))
        stdout = self.run_node(os.path.join(result.output_dir, "main.mjs"))
        self.assertEqual(stdout, "10 fallback\n")


class TestBuild(ModuleTestCase):
    """Test writing generated modules to an output directory."""

    def test_build_mirrors_source_tree(self):
        """Test that outputs keep their relative layout."""
        from kiln.compiler.loader import build

        self.write("sub/lib.kiln", "(def x 1)\n(export [x])\n")
        main = self.write("main.kiln", '(import [x] from "./sub/lib.kiln")\n(console.log x)\n')
        out = self.path("out")
        result = build(main, out)

        self.assertEqual(
            sorted(result.outputs),
            sorted([os.path.join(out, "main.mjs"), os.path.join(out, "sub", "lib.mjs")]),
        )
        for path in result.outputs:
            self.assertTrue(os.path.isfile(path))
        # No temporary files are left behind
        leftovers = [n for n in os.listdir(out) if n.endswith(".tmp")]
        self.assertEqual(leftovers, [])
        with open(os.path.join(out, "main.mjs"), encoding="utf-8") as f:
            self.assertIn('from "./sub/lib.mjs";', f.read())

    def test_external_runtime_module(self):
        """Test that builds without inline helpers write the runtime module."""
        from kiln.compiler.loader import build
        from kiln.project.config import CompilerOptions

        main = self.write("main.kiln", '(console.log (str "a" "b"))\n')
        out = self.path("out")
        result = build(main, out, CompilerOptions(inline_runtime=False))

        runtime = os.path.join(out, "kiln-runtime.mjs")
        self.assertIn(runtime, result.outputs)
        with open(os.path.join(out, "main.mjs"), encoding="utf-8") as f:
            text = f.read()
        self.assertIn('import { __kiln_str } from "./kiln-runtime.mjs";', text)
        self.assertNotIn("function __kiln_str", text)
        with open(runtime, encoding="utf-8") as f:
            self.assertIn("export {", f.read())
        if NODE:
            self.assertEqual(self.run_node(os.path.join(out, "main.mjs")), "ab\n")

    def test_nothing_written_on_failure(self):
        """Test that a failing build writes no files."""
        from kiln.compiler.errors import UnresolvedImportError
        from kiln.compiler.loader import build

        main = self.write("main.kiln", '(import [y] from "./nope.kiln")\n')
        out = self.path("out")
        with self.assertRaises(UnresolvedImportError):
            build(main, out)
        self.assertFalse(os.path.exists(out))


class TestSessionOptions(ModuleTestCase):
    """Test options threaded through a session."""

    def test_expansion_limit_option(self):
        """Test that options.expansion_limit caps rewrites per position."""
        from kiln.compiler.errors import MacroExpansionLimitExceeded
        from kiln.compiler.loader import compile_file
        from kiln.project.config import CompilerOptions

        main = self.write(
            "main.kiln",
            "(macro a (x) `(b ~x))\n(macro b (x) `(c ~x))\n(macro c (x) x)\n(def v (a 1))\n",
        )
        self.assertIn("const v = 1;", compile_file(main)[-1].text)
        with self.assertRaises(MacroExpansionLimitExceeded):
            compile_file(main, CompilerOptions(expansion_limit=2))

    def test_without_prelude(self):
        """Test that prelude=False leaves the global tier empty."""
        from kiln.compiler.loader import CompilationSession
        from kiln.project.config import CompilerOptions

        self.assertIn("when", CompilationSession().global_macros)
        self.assertEqual(CompilationSession(CompilerOptions(prelude=False)).global_macros, {})

    def test_gensyms_unique_across_modules(self):
        """Test that auto-gensyms never repeat within a session."""
        from kiln.compiler.loader import compile_file

        self.write(
            "lib.kiln",
            "(macro swap-sum (a b) `(let (t# ~a) (+ t# ~b)))\n(export [swap-sum])\n"
            "(def one (swap-sum 1 2))\n(export [one])\n",
        )
        main = self.write(
            "main.kiln",
            '(import [swap-sum one] from "./lib.kiln")\n(def two (swap-sum 3 4))\n',
        )
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            lib, main_out = compile_file(main)
        self.assertIn("t__1", lib.text)
        self.assertIn("t__2", main_out.text)


if __name__ == "__main__":
    unittest.main()
