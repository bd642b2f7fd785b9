#!/usr/bin/env python3
# /// script
# requires-python = ">=3.12"
# dependencies = ["pytest>=8.0", "pytest-cov>=4.0"]
# ///
"""Tests for nelua_tree.py — the analyzer contract."""

from __future__ import annotations

import sys
import tempfile
import textwrap
from pathlib import Path
from typing import Any

import pytest

sys.path.insert(0, str(Path(__file__).parent))
import nelua_tree  # noqa: E402
from nelua_tree import Attr, Field, Node, Scope, Symbol, Type, TypeKind  # noqa: E402

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def temp_dir() -> Any:
    """Create a temporary directory for analyzer modules."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


ANALYZER_MODULE = textwrap.dedent("""\
    class Analyzer:
        def parse(self, text, filename):
            return text

        def analyze(self, tree, search_root):
            return tree

    INSTANCE = Analyzer()

    def make():
        return Analyzer()

    NOT_AN_ANALYZER = object()
""")


@pytest.fixture
def analyzer_module(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    """Write an importable analyzer module and return its name."""
    name = f"fake_analyzer_{temp_dir.name.replace('-', '_')}"
    (temp_dir / f"{name}.py").write_text(ANALYZER_MODULE, encoding="utf-8")
    monkeypatch.syspath_prepend(str(temp_dir))
    return name


# ============================================================================
# Types and symbols
# ============================================================================


class TestType:
    """Resolved type helpers."""

    def test_str_prefers_nickname(self) -> None:
        """A nickname wins over the full name."""
        t = Type(TypeKind.RECORD, "record{x: integer}", nickname="Point")
        assert str(t) == "Point"

    def test_str_falls_back_to_name(self) -> None:
        """Without a nickname the name is used."""
        assert str(Type(TypeKind.SCALAR, "integer")) == "integer"

    def test_typedesc_defaults_to_name(self) -> None:
        """typedesc uses the description when present."""
        assert Type(TypeKind.SCALAR, "integer").typedesc == "integer"
        described = Type(TypeKind.RECORD, "Point", description="record Point { x: integer }")
        assert described.typedesc == "record Point { x: integer }"

    @pytest.mark.parametrize(
        ("kind", "flag"),
        [
            (TypeKind.TYPE, "is_type"),
            (TypeKind.FUNCTION, "is_function"),
            (TypeKind.POLYFUNCTION, "is_function"),
            (TypeKind.POINTER, "is_pointer"),
            (TypeKind.RECORD, "is_record"),
            (TypeKind.ENUM, "is_enum"),
        ],
    )
    def test_kind_flags(self, kind: TypeKind, flag: str) -> None:
        """Each kind sets exactly its own flag."""
        t = Type(kind, "t")
        flags = ["is_type", "is_function", "is_pointer", "is_record", "is_enum"]
        assert [f for f in flags if getattr(t, f)] == [flag]

    def test_fields_are_independent(self) -> None:
        """Default containers are not shared between instances."""
        a = Type(TypeKind.RECORD, "A")
        b = Type(TypeKind.RECORD, "B")
        a.fields["x"] = Field("x")
        assert b.fields == {}


class TestSymbol:
    """Symbols are attribute bags with a declaring node."""

    def test_symbol_is_attr(self) -> None:
        """A symbol can stand wherever an Attr is expected."""
        assert isinstance(Symbol(name="x"), Attr)

    def test_is_method_requires_self_type(self) -> None:
        """Only symbols bound to a receiver type are methods."""
        point = Type(TypeKind.RECORD, "Point")
        fn = Type(TypeKind.FUNCTION, "function()")
        assert Symbol(name="len", type=fn, self_type=point).is_method
        assert not Symbol(name="new", type=fn).is_method

    def test_is_function(self) -> None:
        """is_function follows the symbol's type."""
        assert Symbol(name="f", type=Type(TypeKind.POLYFUNCTION, "polyfunction")).is_function
        assert not Symbol(name="x", type=Type(TypeKind.SCALAR, "integer")).is_function
        assert not Symbol(name="y").is_function


# ============================================================================
# Nodes and scopes
# ============================================================================


class TestNode:
    """Syntax tree node behaviour."""

    def test_covers_is_half_open(self) -> None:
        """endpos itself is not covered."""
        node = Node("Id", pos=2, endpos=5)
        assert not node.covers(1)
        assert node.covers(2)
        assert node.covers(4)
        assert not node.covers(5)

    def test_unpositioned_node_covers_nothing(self) -> None:
        """Synthesized nodes have no span."""
        node = Node("Id")
        assert not node.has_position
        assert not node.covers(0)

    def test_walk_is_preorder(self) -> None:
        """Parents come before children, siblings in order."""
        leaf_a = Node("Id", name="a")
        leaf_b = Node("Id", name="b")
        inner = Node("Call", children=[leaf_a])
        root = Node("Block", children=[inner, leaf_b])
        assert list(root.walk()) == [root, inner, leaf_a, leaf_b]

    def test_child_by_tag(self) -> None:
        """First child with the tag, or None."""
        body = Node("Block")
        func = Node("FuncDef", children=[Node("Id"), body])
        assert func.child_by_tag("Block") is body
        assert func.child_by_tag("Return") is None

    def test_equality_is_identity(self) -> None:
        """Two structurally equal nodes are still different nodes."""
        assert Node("Id", pos=0, endpos=1) != Node("Id", pos=0, endpos=1)


class TestScope:
    """Lexical scopes."""

    def test_links_node_and_parent(self) -> None:
        """Creating a scope wires it to its node and parent."""
        root_node = Node("Block")
        root = Scope(root_node)
        inner = Scope(Node("Block"), parent=root)
        assert root_node.scope is root
        assert inner.parent is root
        assert root.children == [inner]

    def test_chain_innermost_first(self) -> None:
        """chain() walks outwards."""
        builtins = Scope()
        root = Scope(Node("Block"), parent=builtins)
        inner = Scope(Node("Block"), parent=root)
        assert list(inner.chain()) == [inner, root, builtins]

    def test_add_symbol(self) -> None:
        """Symbols are keyed by name."""
        scope = Scope()
        sym = scope.add_symbol(Symbol(name="x"))
        assert scope.symbols == {"x": sym}

    def test_add_symbol_requires_name(self) -> None:
        """Anonymous symbols are rejected."""
        with pytest.raises(ValueError):
            Scope().add_symbol(Symbol())


# ============================================================================
# Errors and loader
# ============================================================================


class TestErrors:
    """Analyzer errors carry their payload."""

    def test_parse_error_message(self) -> None:
        """The structured text is kept verbatim."""
        err = nelua_tree.ParseError("a.nelua:1:1: syntax error: oops")
        assert err.message == "a.nelua:1:1: syntax error: oops"

    def test_analysis_error_partial_tree(self) -> None:
        """A partial tree may ride along."""
        tree = Node("Block")
        err = nelua_tree.AnalysisError("boom", tree=tree)
        assert err.tree is tree
        assert nelua_tree.AnalysisError("boom").tree is None


class TestLoadAnalyzer:
    """Importing an analyzer from module:attribute."""

    def test_load_instance(self, analyzer_module: str) -> None:
        """An analyzer object is returned as-is."""
        analyzer = nelua_tree.load_analyzer(f"{analyzer_module}:INSTANCE")
        assert analyzer is sys.modules[analyzer_module].INSTANCE

    def test_load_class(self, analyzer_module: str) -> None:
        """A class is instantiated."""
        analyzer = nelua_tree.load_analyzer(f"{analyzer_module}:Analyzer")
        assert isinstance(analyzer, sys.modules[analyzer_module].Analyzer)

    def test_load_factory(self, analyzer_module: str) -> None:
        """A factory is called."""
        analyzer = nelua_tree.load_analyzer(f"{analyzer_module}:make")
        assert isinstance(analyzer, nelua_tree.Analyzer)

    @pytest.mark.parametrize("spec", ["no_colon", ":attr", "module:"])
    def test_malformed_spec(self, spec: str) -> None:
        """Both module and attribute must be named."""
        with pytest.raises(nelua_tree.AnalyzerLoadError, match="module:attribute"):
            nelua_tree.load_analyzer(spec)

    def test_missing_module(self) -> None:
        """Import failures are reported as load errors."""
        with pytest.raises(nelua_tree.AnalyzerLoadError, match="Cannot load analyzer"):
            nelua_tree.load_analyzer("surely_not_an_installed_module_xyz:Analyzer")

    def test_missing_attribute(self, analyzer_module: str) -> None:
        """An absent attribute is reported."""
        with pytest.raises(nelua_tree.AnalyzerLoadError, match="no attribute 'Missing'"):
            nelua_tree.load_analyzer(f"{analyzer_module}:Missing")

    def test_object_without_protocol(self, analyzer_module: str) -> None:
        """Objects lacking parse/analyze are refused."""
        with pytest.raises(nelua_tree.AnalyzerLoadError):
            nelua_tree.load_analyzer(f"{analyzer_module}:NOT_AN_ANALYZER")


# ============================================================================
# Entry point for uv run
# ============================================================================

if __name__ == "__main__":  # pragma: no cover
    script_dir = str(Path(__file__).parent.resolve())
    base_args = [__file__, "-v", "--rootdir", script_dir, "-o", "addopts="]
    extra_args = sys.argv[1:]
    sys.exit(pytest.main(base_args + extra_args))
