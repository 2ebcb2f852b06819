"""
kiln.std - Kiln Standard Library

This package contains Kiln source files shipped with the compiler.

Structure:
- prelude.kiln: Global macros loaded into every compilation session
  (when, when-not, unless, if-not, comment, if-let, when-let)

Usage:
    (when (> n 0)
      (console.log "positive"))

    (when-let [user (find-user id)]
      (greet user))
"""
