"""Tests for Clojure source builders."""

import pytest

from mcp_nrepl import forms


class TestCljString:
    """Tests for string literal quoting."""

    @pytest.mark.parametrize(
        "raw,quoted",
        [
            ("plain", '"plain"'),
            ('say "hi"', '"say \\"hi\\""'),
            ("back\\slash", '"back\\\\slash"'),
            ("line\nbreak", '"line\\nbreak"'),
            ("tab\there", '"tab\\there"'),
            ("\x01", '"\\u0001"'),
        ],
    )
    def test_escapes(self, raw, quoted):
        assert forms.clj_string(raw) == quoted

    def test_cannot_terminate_literal(self):
        hostile = '") (System/exit 0) ("'
        quoted = forms.clj_string(hostile)

        body = quoted[1:-1]
        unescaped_quotes = [
            i for i, c in enumerate(body) if c == '"' and (i == 0 or body[i - 1] != "\\")
        ]
        assert unescaped_quotes == []

    def test_trailing_backslash_stays_inside(self):
        assert forms.clj_string("x\\") == '"x\\\\"'


class TestForms:
    """Tests for the generated backend source."""

    def test_set_ns(self):
        assert forms.set_ns("my.app") == '(in-ns (symbol "my.app"))'

    def test_load_file(self):
        assert forms.load_file('/tmp/we"ird.clj') == '(load-file "/tmp/we\\"ird.clj")'

    def test_doc_builds_symbol_at_runtime(self):
        code = forms.doc("clojure.core/map")

        assert "(symbol \"clojure.core/map\")" in code
        assert "clojure.repl/doc" in code

    def test_source(self):
        assert "clojure.repl/source" in forms.source("map")

    def test_apropos(self):
        assert '(clojure.repl/apropos "ma\\"p")' in forms.apropos('ma"p')

    def test_ns_vars(self):
        assert forms.ns_vars() == "(sort (keys (ns-publics *ns*)))"
        assert forms.ns_vars("user") == '(sort (keys (ns-publics (the-ns (symbol "user")))))'

    def test_macroexpand(self):
        assert forms.macroexpand_1("(when x y)") == '(macroexpand-1 (read-string "(when x y)"))'
        assert 'clojure.walk/macroexpand-all (read-string "(-> a b)")' in forms.macroexpand_all("(-> a b)")


class TestReadStringLiteral:
    """Tests for turning printed strings back into text."""

    def test_plain_string(self):
        assert forms.read_string_literal('"user"') == "user"

    def test_escapes(self):
        assert forms.read_string_literal('"a\\"b\\nc"') == 'a"b\nc'

    def test_non_string_unchanged(self):
        assert forms.read_string_literal("user") == "user"
        assert forms.read_string_literal("42") == "42"
