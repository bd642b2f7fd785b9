"""Analyzer contract for the Nelua language server.

The parser and type analyzer are external collaborators. This module defines
the shapes they hand back to the server (an annotated syntax tree, lexical
scopes, symbols and resolved types), the errors they raise and a loader
that imports an analyzer implementation from a ``module:attribute`` spec.

Positions:
    ``Node.pos`` / ``Node.endpos`` are 0-based, half-open offsets into the
    exact text that was handed to ``Analyzer.parse`` (Python string indices,
    i.e. code points). Nodes synthesized by the analyzer may have no position.
"""

from __future__ import annotations

import enum
import importlib
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

# ============================================================================
# Node tags
# ============================================================================

BLOCK = "Block"
ID = "Id"
ID_DECL = "IdDecl"
CALL = "Call"
CALL_METHOD = "CallMethod"
DOT_INDEX = "DotIndex"
COLON_INDEX = "ColonIndex"
FUNC_DEF = "FuncDef"
RECORD_TYPE = "RecordType"
RECORD_FIELD = "RecordField"
ENUM_TYPE = "EnumType"
ENUM_FIELD = "EnumField"

CALL_TAGS = frozenset({CALL, CALL_METHOD})
INDEX_TAGS = frozenset({DOT_INDEX, COLON_INDEX})


# ============================================================================
# Errors
# ============================================================================


class ParseError(Exception):
    """The source text does not parse.

    ``message`` holds the analyzer's structured error text (see
    ``nelua_lsp.parse_error_text`` for the format). Lines and columns are
    1-based and columns count code points, the same unit as ``Node.pos``.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AnalysisError(Exception):
    """The source parsed but failed semantic analysis.

    The analyzer may hand back the tree it had annotated so far in ``tree``.
    ``message`` uses the same error text format as ParseError.
    """

    def __init__(self, message: str, tree: Node | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.tree = tree


class AnalyzerLoadError(Exception):
    """Raised when an analyzer spec cannot be imported."""

    def __init__(self, spec: str, reason: str) -> None:
        self.spec = spec
        super().__init__(f"Cannot load analyzer '{spec}': {reason}")


# ============================================================================
# Types and symbols
# ============================================================================


class TypeKind(enum.Enum):
    """Closed set of resolved-value categories the server understands."""

    TYPE = "type"  # the type of a type expression; the denoted type is Attr.value
    FUNCTION = "function"
    POLYFUNCTION = "polyfunction"
    POINTER = "pointer"
    RECORD = "record"
    ENUM = "enum"
    SCALAR = "scalar"


@dataclass(eq=False)
class Type:
    """A resolved type as reported by the analyzer."""

    kind: TypeKind
    name: str
    nickname: str | None = None
    description: str | None = None
    signature: str | None = None
    subtype: Type | None = None
    fields: dict[str, Field] = field(default_factory=dict)
    metafields: dict[str, Symbol] = field(default_factory=dict)
    symbol: Symbol | None = field(default=None, repr=False)
    node: Node | None = field(default=None, repr=False)

    def __str__(self) -> str:
        return self.nickname or self.name

    @property
    def typedesc(self) -> str:
        return self.description or self.name

    @property
    def is_type(self) -> bool:
        return self.kind is TypeKind.TYPE

    @property
    def is_function(self) -> bool:
        return self.kind in (TypeKind.FUNCTION, TypeKind.POLYFUNCTION)

    @property
    def is_pointer(self) -> bool:
        return self.kind is TypeKind.POINTER

    @property
    def is_record(self) -> bool:
        return self.kind is TypeKind.RECORD

    @property
    def is_enum(self) -> bool:
        return self.kind is TypeKind.ENUM


@dataclass(eq=False)
class Field:
    """A record field or enum member."""

    name: str
    type: Type | None = None
    value: int | float | str | None = None


@dataclass(eq=False)
class Attr:
    """Analyzer-produced metadata attached to a node."""

    type: Type | None = None
    value: Type | None = None
    const: int | float | str | bool | None = None
    name: str | None = None
    symbol: Symbol | None = field(default=None, repr=False)
    calleesym: Symbol | None = field(default=None, repr=False)
    ismethod: bool = False
    builtin: bool = False


@dataclass(eq=False)
class Symbol(Attr):
    """A declared name. Like Nelua, a symbol is itself an attribute bag."""

    node: Node | None = field(default=None, repr=False)
    self_type: Type | None = field(default=None, repr=False)

    @property
    def is_function(self) -> bool:
        return self.type is not None and self.type.is_function

    @property
    def is_method(self) -> bool:
        return self.self_type is not None


# ============================================================================
# Syntax tree and scopes
# ============================================================================


@dataclass(eq=False)
class Node:
    """A syntax tree node. Equality is identity."""

    tag: str
    pos: int | None = None
    endpos: int | None = None
    children: list[Node] = field(default_factory=list)
    attr: Attr = field(default_factory=Attr)
    scope: Scope | None = field(default=None, repr=False)
    name: str | None = None
    src: str | None = None

    @property
    def has_position(self) -> bool:
        return self.pos is not None and self.endpos is not None

    def covers(self, offset: int) -> bool:
        if not self.has_position:
            return False
        assert self.pos is not None and self.endpos is not None
        return self.pos <= offset < self.endpos

    def walk(self) -> Iterator[Node]:
        """Yield this node and all descendants in pre-order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def child_by_tag(self, tag: str) -> Node | None:
        for child in self.children:
            if child.tag == tag:
                return child
        return None


class Scope:
    """A lexical symbol table chained to its parent scope.

    A scope with no node holds names that are not declared in the document
    (builtins, the prelude).
    """

    def __init__(self, node: Node | None = None, parent: Scope | None = None) -> None:
        self.node = node
        self.parent = parent
        self.symbols: dict[str, Symbol] = {}
        self.children: list[Scope] = []
        if parent is not None:
            parent.children.append(self)
        if node is not None:
            node.scope = self

    def __repr__(self) -> str:
        tag = self.node.tag if self.node is not None else None
        return f"Scope(node={tag}, symbols={sorted(self.symbols)})"

    def add_symbol(self, symbol: Symbol) -> Symbol:
        if not symbol.name:
            raise ValueError("symbol must have a name")
        self.symbols[symbol.name] = symbol
        return symbol

    def chain(self) -> Iterator[Scope]:
        """Yield this scope and its ancestors, innermost first."""
        scope: Scope | None = self
        while scope is not None:
            yield scope
            scope = scope.parent


# ============================================================================
# Analyzer collaborator
# ============================================================================


@runtime_checkable
class Analyzer(Protocol):
    """The external Nelua parser/analyzer."""

    def parse(self, text: str, filename: str) -> Node:
        """Parse ``text``; raise ParseError with the structured error text."""
        ...

    def analyze(self, tree: Node, search_root: Path) -> Node:
        """Annotate ``tree``; ``search_root`` resolves file-relative requires.

        Raises AnalysisError, optionally carrying a partial tree.
        """
        ...


def load_analyzer(spec: str) -> Analyzer:
    """Import ``module:attribute`` and return an analyzer instance.

    The attribute may be an analyzer object, a class, or a zero-argument
    factory.
    """
    module_name, sep, attr_name = spec.partition(":")
    if not sep or not module_name or not attr_name:
        raise AnalyzerLoadError(spec, "expected 'module:attribute'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise AnalyzerLoadError(spec, str(e)) from e
    target = getattr(module, attr_name, None)
    if target is None:
        raise AnalyzerLoadError(spec, f"module has no attribute '{attr_name}'")

    if isinstance(target, Analyzer) and not isinstance(target, type):
        analyzer = target
    elif callable(target):
        try:
            analyzer = target()
        except Exception as e:
            raise AnalyzerLoadError(spec, f"{attr_name}() failed: {e}") from e
    else:
        analyzer = target
    if not isinstance(analyzer, Analyzer):
        raise AnalyzerLoadError(spec, "object does not implement parse() and analyze()")
    return analyzer
