"""
kiln.runtime - The Kiln Runtime Helper Surface

This package holds the small, fixed set of JavaScript helpers that
generated code calls, plus the types shared with the compiler.

Submodules:
- types: Core type definitions (Symbol, Keyword, VectorLiteral, etc.)
- ns: Import/export declarations and source path resolution

The helpers are JavaScript source text. The code generator either inlines
the helpers a module uses at the top of that module, or imports them from
a shared runtime module written next to the build output.
"""

# Name of the shared runtime module written by builds that do not inline
RUNTIME_MODULE_NAME = "kiln-runtime"

# Helper name -> JavaScript source. Signatures are a stable contract:
# generated code calls these exactly as declared here.
RUNTIME_HELPERS: dict[str, str] = {
    "__kiln_get": """\
function __kiln_get(obj, key, notFound = null) {
  if (obj == null) return notFound;
  if (typeof obj === "function") {
    try {
      return obj(key);
    } catch (e) {
      return key in obj ? obj[key] : notFound;
    }
  }
  if (Array.isArray(obj)) {
    return typeof key === "number" && key >= 0 && key < obj.length ? obj[key] : notFound;
  }
  if (obj instanceof Set) {
    return obj.has(key) ? key : notFound;
  }
  if (typeof obj !== "object") obj = Object(obj);
  const propKey = typeof key === "number" ? String(key) : key;
  return propKey in obj ? obj[propKey] : notFound;
}""",
    "__kiln_str": """\
function __kiln_str(...parts) {
  return parts.map((p) => (p == null ? "" : String(p))).join("");
}""",
    "__kiln_list": """\
function __kiln_list(...items) {
  return items;
}""",
    "__kiln_vector": """\
function __kiln_vector(...items) {
  return items;
}""",
    "__kiln_hash_map": """\
function __kiln_hash_map(...kvs) {
  const m = {};
  for (let i = 0; i + 1 < kvs.length; i += 2) m[kvs[i]] = kvs[i + 1];
  return m;
}""",
    "__kiln_hash_set": """\
function __kiln_hash_set(...items) {
  return new Set(items);
}""",
}

# Kiln function name -> helper it compiles to
HELPER_CALLS: dict[str, str] = {
    "get": "__kiln_get",
    "str": "__kiln_str",
    "list": "__kiln_list",
    "vector": "__kiln_vector",
    "hash-map": "__kiln_hash_map",
    "hash-set": "__kiln_hash_set",
}


def runtime_prelude(names) -> str:
    """JavaScript source defining the given helpers, in a stable order."""
    wanted = set(names)
    return "\n\n".join(src for name, src in RUNTIME_HELPERS.items() if name in wanted)


def runtime_module_source() -> str:
    """Source of the shared runtime module exporting every helper."""
    body = runtime_prelude(RUNTIME_HELPERS)
    exports = ", ".join(RUNTIME_HELPERS)
    return f"{body}\n\nexport {{ {exports} }};\n"


__all__ = [
    "RUNTIME_MODULE_NAME",
    "RUNTIME_HELPERS",
    "HELPER_CALLS",
    "runtime_prelude",
    "runtime_module_source",
]
