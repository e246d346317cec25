"""Clojure source text built from caller input.

Every caller-supplied string goes through `clj_string`, which produces a
Clojure string literal the value cannot break out of. Symbols are built at
runtime with `(symbol "...")` rather than pasted into the source.
"""

from __future__ import annotations

_ESCAPES = {
    "\\": "\\\\",
    '"': '\\"',
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\b": "\\b",
    "\f": "\\f",
}


def clj_string(value: str) -> str:
    """Quote `value` as a Clojure string literal."""
    parts = ['"']
    for char in value:
        escaped = _ESCAPES.get(char)
        if escaped is not None:
            parts.append(escaped)
        elif ord(char) < 0x20:
            parts.append(f"\\u{ord(char):04x}")
        else:
            parts.append(char)
    parts.append('"')
    return "".join(parts)


def clj_symbol(value: str) -> str:
    return f"(symbol {clj_string(value)})"


def load_file(path: str) -> str:
    return f"(load-file {clj_string(path)})"


def set_ns(namespace: str) -> str:
    return f"(in-ns {clj_symbol(namespace)})"


def apropos(query: str) -> str:
    return f"(do (require 'clojure.repl) (clojure.repl/apropos {clj_string(query)}))"


def _repl_macro(macro: str, symbol: str) -> str:
    # doc and source are macros that want a literal symbol, so build the call.
    return (
        "(do (require 'clojure.repl) "
        f"(eval (list 'clojure.repl/{macro} {clj_symbol(symbol)})))"
    )


def doc(symbol: str) -> str:
    return _repl_macro("doc", symbol)


def source(symbol: str) -> str:
    return _repl_macro("source", symbol)


def ns_vars(namespace: str | None = None) -> str:
    target = "*ns*" if not namespace else f"(the-ns {clj_symbol(namespace)})"
    return f"(sort (keys (ns-publics {target})))"


def all_namespaces() -> str:
    return "(sort (map ns-name (all-ns)))"


def current_ns() -> str:
    return "(str (ns-name *ns*))"


def macroexpand_all(code: str) -> str:
    return (
        "(do (require 'clojure.walk) "
        f"(clojure.walk/macroexpand-all (read-string {clj_string(code)})))"
    )


def macroexpand_1(code: str) -> str:
    return f"(macroexpand-1 (read-string {clj_string(code)}))"


def read_string_literal(text: str) -> str:
    """Turn a printed Clojure string back into text.

    Values come back printed with `pr`, so a string result arrives quoted.
    Anything that is not a plain string literal is returned unchanged.
    """
    if len(text) < 2 or not (text.startswith('"') and text.endswith('"')):
        return text
    body = text[1:-1]
    reverse = {"\\": "\\", '"': '"', "n": "\n", "r": "\r", "t": "\t", "b": "\b", "f": "\f"}
    out = []
    i = 0
    while i < len(body):
        char = body[i]
        if char == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt in reverse:
                out.append(reverse[nxt])
                i += 2
                continue
            if nxt == "u" and len(body) >= i + 6:
                try:
                    out.append(chr(int(body[i + 2:i + 6], 16)))
                    i += 6
                    continue
                except ValueError:
                    pass
        elif char == '"':
            return text
        out.append(char)
        i += 1
    return "".join(out)
