#!/usr/bin/env python3
# /// script
# requires-python = ">=3.12"
# dependencies = ["lsprotocol>=2024.0.0"]
# ///
"""Nelua LSP — a language server adapter over an external Nelua analyzer.

Receives LSP requests for the Nelua file being edited, runs the external
parser/analyzer over the document text and turns the annotated syntax tree
into hover text, definitions, document outlines, diagnostics and completion
candidates.

Architecture (leaves first):
    JsonRpcEndpoint         <- Wire: Content-Length framing over stdin/stdout
        |
    Position codec          <- (line, UTF-16 character) <-> string offset
        |
    DocumentStore           <- One (text, tree) per open URI; runs the analyzer
        |
    locate()                <- Offset -> covering nodes, symbol, scope
        |
    describe / resolve_definition / outline / complete
        |
    NeluaLanguageServer     <- Sequential request loop and dispatch
        |
    CLI (argparse)          <- Editor starts: nelua_lsp.py --analyzer mod:attr
"""

from __future__ import annotations

import argparse
import bisect
import enum
import json
import logging
import os
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO
from urllib.parse import unquote, urlparse

from lsprotocol import types as lsp
from lsprotocol.converters import get_converter

from nelua_tree import (
    BLOCK,
    CALL_TAGS,
    ENUM_FIELD,
    ENUM_TYPE,
    FUNC_DEF,
    ID,
    ID_DECL,
    INDEX_TAGS,
    RECORD_FIELD,
    RECORD_TYPE,
    AnalysisError,
    Analyzer,
    AnalyzerLoadError,
    Attr,
    Node,
    ParseError,
    Scope,
    Symbol,
    Type,
    load_analyzer,
)

# ============================================================================
# Configuration
# ============================================================================

SCRIPT = Path(__file__)
SCRIPT_NAME = SCRIPT.stem

SERVER_NAME = "Nelua LSP"
SERVER_VERSION = "0.2.0"
DIAGNOSTIC_SOURCE = "Nelua LSP"
TRIGGER_CHARACTERS = [".", ":"]
ANALYZER_ENV_VAR = "NELUA_LSP_ANALYZER"

# Hover expands a value's declaring type at most this many levels deep
MAX_HOVER_DEPTH = 1

# JSON-RPC error codes (from the JSON-RPC 2.0 spec)
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

log = logging.getLogger(__name__)

_converter = get_converter()


# ============================================================================
# Layer 1: JSON-RPC Endpoint
# ============================================================================


class JsonRpcError(Exception):
    """Error reported back to the client as a JSON-RPC error response."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.error_message = message
        self.data = data


class JsonRpcEndpoint:
    """Server side of JSON-RPC 2.0 with Content-Length framing.

    Each message on the wire looks like:

        Content-Length: 52\\r\\n
        \\r\\n
        {"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}

    Reads are blocking: the server handles one message at a time.
    """

    def __init__(self, reader: BinaryIO, writer: BinaryIO) -> None:
        self._reader = reader
        self._writer = writer

    def read_message(self) -> dict[str, Any] | None:
        """Read one framed message.

        Returns None at end of input and an empty dict for a frame that
        could not be decoded (the caller skips it).
        """
        headers: list[str] = []
        while True:
            line = self._reader.readline()
            if not line:
                return None
            line_str = line.decode("ascii", errors="replace").rstrip("\r\n")
            if line_str == "":
                break
            headers.append(line_str)

        content_length = 0
        for header_line in headers:
            if header_line.lower().startswith("content-length:"):
                try:
                    content_length = int(header_line.split(":", 1)[1].strip())
                except ValueError:
                    content_length = 0

        if content_length <= 0:
            log.warning("No Content-Length in headers: %s", headers)
            return {}

        body = self._reader.read(content_length)
        if body is None or len(body) < content_length:
            return None

        try:
            msg = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            log.error("Error decoding message body: %s", e)
            return {}
        if not isinstance(msg, dict):
            log.error("Ignoring non-object message: %r", msg)
            return {}
        return msg

    def respond(self, request_id: Any, result: Any) -> None:
        self._send({"jsonrpc": "2.0", "id": request_id, "result": result})
        log.debug("-> response id=%s", request_id)

    def respond_error(self, request_id: Any, code: int, message: str, data: Any = None) -> None:
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        self._send({"jsonrpc": "2.0", "id": request_id, "error": error})
        log.debug("-> error id=%s code=%d", request_id, code)

    def notify(self, method: str, params: Any = None) -> None:
        msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            msg["params"] = params
        self._send(msg)
        log.debug("-> notification method=%s", method)

    def fail(self, message: str) -> None:
        """Surface an internal failure to the user (window/showMessage)."""
        params = lsp.ShowMessageParams(type=lsp.MessageType.Error, message=message)
        self.notify("window/showMessage", _converter.unstructure(params))

    def _send(self, msg: dict[str, Any]) -> None:
        body = json.dumps(msg, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
        self._writer.write(header + body)
        self._writer.flush()


# ============================================================================
# Layer 2: Position Codec
# ============================================================================


class PositionError(ValueError):
    """A line/character or offset outside the document."""


def line_starts(text: str) -> list[int]:
    """Offsets at which each line of ``text`` starts."""
    starts = [0]
    index = text.find("\n")
    while index >= 0:
        starts.append(index + 1)
        index = text.find("\n", index + 1)
    return starts


def _utf16_len(segment: str) -> int:
    return len(segment.encode("utf-16-le")) // 2


def to_offset(text: str, line: int, character: int, starts: list[int] | None = None) -> int:
    """Convert an LSP position to a string offset.

    ``character`` counts UTF-16 code units, the LSP default encoding. A
    character equal to the line length addresses the end of that line.
    """
    if starts is None:
        starts = line_starts(text)
    if line < 0 or line >= len(starts):
        raise PositionError(f"line {line} is outside the document (0..{len(starts) - 1})")
    if character < 0:
        raise PositionError(f"negative character {character}")

    offset = starts[line]
    line_end = starts[line + 1] - 1 if line + 1 < len(starts) else len(text)
    units = 0
    while units < character:
        if offset >= line_end:
            raise PositionError(f"character {character} is past the end of line {line}")
        units += 2 if ord(text[offset]) > 0xFFFF else 1
        offset += 1
    if units != character:
        raise PositionError(f"character {character} splits a surrogate pair on line {line}")
    return offset


def to_line_character(text: str, offset: int, starts: list[int] | None = None) -> tuple[int, int]:
    """Inverse of ``to_offset``."""
    if offset < 0 or offset > len(text):
        raise PositionError(f"offset {offset} is outside the document (0..{len(text)})")
    if starts is None:
        starts = line_starts(text)
    line = bisect.bisect_right(starts, offset) - 1
    return line, _utf16_len(text[starts[line] : offset])


def to_position(text: str, offset: int, starts: list[int] | None = None) -> lsp.Position:
    line, character = to_line_character(text, offset, starts)
    return lsp.Position(line=line, character=character)


def node_range(text: str, node: Node, starts: list[int] | None = None) -> lsp.Range:
    """LSP range of a positioned node."""
    if node.pos is None or node.endpos is None:
        raise PositionError(f"{node.tag} node has no source position")
    if starts is None:
        starts = line_starts(text)
    return lsp.Range(
        start=to_position(text, node.pos, starts),
        end=to_position(text, node.endpos, starts),
    )


# ============================================================================
# Layer 3: Document Store
# ============================================================================


def uri_to_path(uri: str) -> Path:
    """Convert file:// URI to Path."""
    if uri.startswith("file://"):
        parsed = urlparse(uri)
        path = unquote(parsed.path)
        # /C:/path on Windows
        if sys.platform == "win32" and len(path) > 2 and path[0] == "/" and path[2] == ":":
            path = path[1:]
        return Path(path)
    return Path(uri)


def path_to_uri(path: str | Path) -> str:
    """Convert a file path to a file:// URI."""
    return Path(path).resolve().as_uri()


def read_uri_text(uri: str) -> str:
    """Read a document from disk (used when the editor did not send text)."""
    return uri_to_path(uri).read_text(encoding="utf-8", errors="replace")


@dataclass
class Document:
    """The cached state of one open document."""

    uri: str
    text: str
    tree: Node | None = None


DiagnosticsPublisher = Callable[[str, list[lsp.Diagnostic]], None]
TextReader = Callable[[str], str]


class DocumentStore:
    """Owns the (text, tree) pair of every open document.

    Every analysis receives its module search root as an argument: the
    configured workspace root, or the document's own directory.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        *,
        reader: TextReader = read_uri_text,
        publish: DiagnosticsPublisher | None = None,
        root: Path | None = None,
    ) -> None:
        self._analyzer = analyzer
        self._reader = reader
        self._publish = publish
        self.root = root
        self._documents: dict[str, Document] = {}

    def __contains__(self, uri: str) -> bool:
        return uri in self._documents

    def __len__(self) -> int:
        return len(self._documents)

    @property
    def reader(self) -> TextReader:
        return self._reader

    def search_root_for(self, uri: str) -> Path:
        if self.root is not None:
            return self.root
        return uri_to_path(uri).parent

    def get(self, uri: str) -> Document | None:
        return self._documents.get(uri)

    def document(self, uri: str) -> Document:
        """Return the cached document, loading it from disk when absent."""
        doc = self._documents.get(uri)
        if doc is None:
            log.debug("Document %s not cached; reading from disk", uri)
            self.open_or_refresh(uri)
            doc = self._documents[uri]
        return doc

    def open_or_refresh(self, uri: str, text: str | None = None, *, transient: bool = False) -> Node | None:
        """Analyze ``text`` (or the file behind ``uri``) and return its tree.

        Non-transient calls replace the cached pair for ``uri`` and publish
        diagnostics (an empty list clears earlier ones). Transient calls do
        neither; they serve a single query about a synthetic buffer.
        """
        if text is None:
            text = self._reader(uri)
        tree, diagnostics = self._analyze(uri, text)
        if transient:
            log.debug("Transient analysis of %s: tree=%s", uri, tree is not None)
            return tree

        self._documents[uri] = Document(uri=uri, text=text, tree=tree)
        log.info("Analyzed %s: %d diagnostics", uri, len(diagnostics))
        if self._publish is not None:
            self._publish(uri, diagnostics)
        return tree

    def close(self, uri: str) -> bool:
        """Forget everything cached for ``uri``."""
        return self._documents.pop(uri, None) is not None

    def _analyze(self, uri: str, text: str) -> tuple[Node | None, list[lsp.Diagnostic]]:
        filename = str(uri_to_path(uri))
        try:
            tree = self._analyzer.parse(text, filename)
        except ParseError as e:
            log.debug("Parse failed for %s", uri)
            return None, translate(e.message, text)
        try:
            tree = self._analyzer.analyze(tree, self.search_root_for(uri))
        except AnalysisError as e:
            log.debug("Analysis failed for %s (partial tree: %s)", uri, e.tree is not None)
            return e.tree, translate(e.message, text)
        return tree, []


# ============================================================================
# Layer 4: Position Resolver
# ============================================================================


@dataclass
class Location:
    """What sits at a queried offset."""

    node: Node
    nodes: list[Node]
    symbol: Symbol | None = None
    scope: Scope | None = None


def find_nodes_by_pos(tree: Node, offset: int) -> list[Node]:
    """All nodes covering ``offset``, root to leaf."""
    return [node for node in tree.walk() if node.covers(offset)]


def locate(tree: Node, offset: int) -> Location | None:
    nodes = find_nodes_by_pos(tree, offset)
    if not nodes:
        return None
    leaf = nodes[-1]
    loc = Location(node=leaf, nodes=nodes)
    attr = leaf.attr
    if isinstance(attr, Symbol):
        loc.symbol = attr
    elif attr.symbol is not None:
        loc.symbol = attr.symbol
    for node in reversed(nodes):
        if node.scope is not None:
            loc.scope = node.scope
            break
    return loc


def parent_nodes(root: Node, target: Node) -> list[Node]:
    """Ancestors of ``target`` within ``root``, nearest first."""
    stack: list[tuple[Node, list[Node]]] = [(root, [])]
    while stack:
        node, path = stack.pop()
        if node is target:
            return list(reversed(path))
        for child in node.children:
            stack.append((child, path + [node]))
    return []


# ============================================================================
# Layer 5: Diagnostic Translator
# ============================================================================

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")
_ERROR_HEADER = re.compile(
    r"^(?P<file>.*?):(?P<line>\d+):(?P<col>\d+):\s*(?P<severity>[A-Za-z][A-Za-z ]*?):\s*(?P<message>.*)$"
)
_UNDERLINE = re.compile(r"^\s*(?P<mark>\^~*)\s*$")


@dataclass
class ErrorRecord:
    """One entry of the analyzer's error text. Line and column are 1-based."""

    line: int
    column: int
    length: int
    severity: str
    message: str


def parse_error_text(error_text: str) -> list[ErrorRecord]:
    """Split analyzer error text into records.

    Each record starts with ``file:line:col: severity: message``. It may be
    followed by the offending source line and a ``^~~~`` underline whose
    width is the span length.
    """
    lines = _ANSI_ESCAPE.sub("", error_text).splitlines()
    records: list[ErrorRecord] = []
    for index, raw in enumerate(lines):
        match = _ERROR_HEADER.match(raw)
        if not match:
            continue
        length = 1
        for follow in lines[index + 1 : index + 3]:
            if _ERROR_HEADER.match(follow):
                break
            underline = _UNDERLINE.match(follow)
            if underline:
                length = len(underline.group("mark"))
                break
        records.append(
            ErrorRecord(
                line=int(match.group("line")),
                column=int(match.group("col")),
                length=length,
                severity=match.group("severity").strip().lower(),
                message=match.group("message").strip(),
            )
        )
    return records


def map_severity(word: str) -> lsp.DiagnosticSeverity:
    if word in ("error", "syntax error"):
        return lsp.DiagnosticSeverity.Error
    if word == "warning":
        return lsp.DiagnosticSeverity.Warning
    if word == "info":
        return lsp.DiagnosticSeverity.Information
    return lsp.DiagnosticSeverity.Hint


def _record_range(record: ErrorRecord, text: str | None, starts: list[int]) -> lsp.Range:
    line = max(0, record.line - 1)
    column = max(0, record.column - 1)
    if text is None or line >= len(starts):
        return lsp.Range(
            start=lsp.Position(line=line, character=column),
            end=lsp.Position(line=line, character=column + record.length),
        )
    # Columns count code points, like node offsets; spans stop at the line end
    line_end = starts[line + 1] - 1 if line + 1 < len(starts) else len(text)
    begin = min(starts[line] + column, line_end)
    end = min(begin + record.length, line_end)
    return lsp.Range(start=to_position(text, begin, starts), end=to_position(text, end, starts))


def translate(error_text: str, text: str | None = None) -> list[lsp.Diagnostic]:
    """Analyzer error text -> diagnostics, in reported order.

    With the analyzed ``text`` the columns are re-encoded as UTF-16 units
    so diagnostics line up with hover and definition ranges.
    """
    starts = line_starts(text) if text is not None else []
    diagnostics: list[lsp.Diagnostic] = []
    for record in parse_error_text(error_text):
        diagnostics.append(
            lsp.Diagnostic(
                range=_record_range(record, text, starts),
                message=record.message,
                severity=map_severity(record.severity),
                source=DIAGNOSTIC_SOURCE,
            )
        )
    return diagnostics


# ============================================================================
# Layer 6: Hover, Definition and Document Symbols
# ============================================================================


class ValueCategory(enum.Enum):
    """What a node's resolved type says about the value it denotes."""

    TYPE = "type"
    FUNCTION = "function"
    POINTER = "pointer"
    METHOD_CALL = "method_call"
    VALUE = "value"
    UNRESOLVED = "unresolved"


def classify(attr: Attr) -> ValueCategory:
    type_ = attr.type
    if type_ is None:
        return ValueCategory.UNRESOLVED
    if type_.is_type:
        return ValueCategory.TYPE
    if type_.is_function:
        return ValueCategory.FUNCTION
    if type_.is_pointer:
        return ValueCategory.POINTER
    if attr.ismethod and attr.calleesym is not None:
        return ValueCategory.METHOD_CALL
    return ValueCategory.VALUE


def _describe_type(type_: Type, parts: list[str], *, header: bool = True) -> None:
    if header:
        parts.append(f"**type** `{type_}`\n")
    parts.append(f"```nelua\n{type_.typedesc}\n```")


def describe(attr: Attr, *, header: bool = True, depth: int = 0, _seen: frozenset[int] = frozenset()) -> str:
    """Markdown hover text for a node's attributes; "" when nothing resolves.

    A value's declaring type is expanded at most MAX_HOVER_DEPTH levels and
    method calls delegate to their callee once per symbol, so mutually
    referential declarations terminate.
    """
    category = classify(attr)
    type_ = attr.type
    if category is ValueCategory.UNRESOLVED or type_ is None:
        return ""

    parts: list[str] = []
    if category is ValueCategory.TYPE:
        _describe_type(attr.value or type_, parts, header=header)
    elif category is ValueCategory.FUNCTION:
        func = attr.value or type_
        if header:
            parts.append(f"**{type_.kind.value}** `{attr.name or func}`\n")
        if func.signature:
            parts.append(f"```nelua\n{func.signature}\n```")
        elif attr.builtin:
            parts.append("* builtin function\n")
        else:
            parts.append("* unresolved function\n")
    elif category is ValueCategory.POINTER:
        parts.append("**pointer**\n")
        if type_.subtype is not None:
            _describe_type(type_.subtype, parts)
    elif category is ValueCategory.METHOD_CALL:
        callee = attr.calleesym
        assert callee is not None
        if id(callee) in _seen:
            return ""
        return describe(callee, header=header, depth=depth, _seen=_seen | {id(attr)})
    else:
        if header:
            parts.append(f"**value** `{type_}`\n")
        decl = type_.symbol
        if depth < MAX_HOVER_DEPTH and decl is not None and decl.node is not None:
            nested = describe(decl.node.attr, header=False, depth=depth + 1, _seen=_seen | {id(attr)})
            if nested:
                parts.append("\n" + nested)
    return "".join(parts)


def hover(location: Location, text: str) -> lsp.Hover | None:
    value = describe(location.node.attr)
    if not value:
        return None
    return lsp.Hover(
        contents=lsp.MarkupContent(kind=lsp.MarkupKind.Markdown, value=value),
        range=node_range(text, location.node) if location.node.has_position else None,
    )


def _containing_range(root: Node | None, target: Node, text: str, starts: list[int]) -> lsp.Range:
    if root is not None:
        for parent in parent_nodes(root, target):
            if parent.has_position:
                return node_range(text, parent, starts)
    return node_range(text, target, starts)


def _is_foreign(node: Node, src: str | None) -> bool:
    return node.src is not None and src is not None and Path(node.src) != Path(src)


def resolve_definition(
    location: Location,
    tree: Node,
    text: str,
    uri: str,
    reader: TextReader | None = None,
) -> list[lsp.LocationLink]:
    """Definition links for the located node (zero or one in practice)."""
    node = location.node
    target: Node | None = None
    if node.tag == ID:
        target = location.symbol.node if location.symbol is not None else None
    elif node.tag in CALL_TAGS:
        callee = node.attr.calleesym
        target = callee.node if callee is not None else None
    elif node.tag in INDEX_TAGS:
        target = location.symbol.node if location.symbol is not None else None
    else:
        log.debug("No definition lookup for %s nodes", node.tag)
        return []

    if target is None or not target.has_position or not node.has_position:
        return []

    target_uri, target_text, target_root = uri, text, tree
    if target.src is not None and _is_foreign(target, str(uri_to_path(uri))):
        target_uri = path_to_uri(target.src)
        target_text = (reader or read_uri_text)(target_uri)
        target_root = None
    target_starts = line_starts(target_text)
    selection = node_range(target_text, target, target_starts)
    return [
        lsp.LocationLink(
            target_uri=target_uri,
            target_range=_containing_range(target_root, target, target_text, target_starts),
            target_selection_range=selection,
            origin_selection_range=node_range(text, node),
        )
    ]


def _type_text(node: Node | None) -> str:
    if node is None:
        return ""
    attr = node.attr
    if attr.name:
        return attr.name
    if attr.value is not None:
        return str(attr.value)
    return str(attr.type) if attr.type is not None else ""


def _record_children(vnode: Node, text: str, starts: list[int]) -> list[lsp.DocumentSymbol]:
    children = []
    for field_node in vnode.children:
        if field_node.tag != RECORD_FIELD or not field_node.has_position:
            continue
        rng = node_range(text, field_node, starts)
        children.append(
            lsp.DocumentSymbol(
                name=field_node.name or "",
                detail=_type_text(field_node.children[0] if field_node.children else None),
                kind=lsp.SymbolKind.Field,
                range=rng,
                selection_range=rng,
            )
        )
    return children


def _enum_children(vnode: Node, text: str, starts: list[int]) -> list[lsp.DocumentSymbol]:
    children = []
    for field_node in vnode.children:
        if field_node.tag != ENUM_FIELD or not field_node.has_position:
            continue
        const = field_node.children[0].attr.const if field_node.children else None
        if const is None:
            const = field_node.attr.const
        rng = node_range(text, field_node, starts)
        children.append(
            lsp.DocumentSymbol(
                name=field_node.name or "",
                detail="" if const is None else str(const),
                kind=lsp.SymbolKind.Field,
                range=rng,
                selection_range=rng,
            )
        )
    return children


def _scope_symbols(root: Node, text: str, starts: list[int], src: str | None) -> list[lsp.DocumentSymbol]:
    scope = root.scope
    if scope is None:
        return []
    entries: list[lsp.DocumentSymbol] = []

    # Functions: one container per FuncDef, nested entries from its body
    for child in scope.children:
        func = child.node
        if func is None or func.tag != FUNC_DEF or not func.has_position or not func.children:
            continue
        name_node = func.children[0]
        if not name_node.has_position:
            continue
        body = func.child_by_tag(BLOCK)
        entries.append(
            lsp.DocumentSymbol(
                name=name_node.attr.name or name_node.name or "",
                detail=str(func.attr.type) if func.attr.type is not None else "",
                kind=lsp.SymbolKind.Function,
                range=node_range(text, func, starts),
                selection_range=node_range(text, name_node, starts),
                children=_scope_symbols(body, text, starts, src) if body is not None else [],
            )
        )

    # Everything else, sorted by name
    for name in sorted(scope.symbols):
        symbol = scope.symbols[name]
        if symbol.type is None or symbol.type.is_function:
            continue
        node = symbol.node
        if node is None or not node.has_position or _is_foreign(node, src):
            continue
        kind = lsp.SymbolKind.Variable
        detail = str(symbol.type)
        children: list[lsp.DocumentSymbol] = []
        value = node.attr.value if node.tag == ID_DECL else None
        vnode = value.node if value is not None else None
        if vnode is not None and vnode.tag == RECORD_TYPE:
            kind = lsp.SymbolKind.Struct
            detail = "record"
            children = _record_children(vnode, text, starts)
        elif vnode is not None and vnode.tag == ENUM_TYPE:
            kind = lsp.SymbolKind.Enum
            detail = "enum"
            subtype = next((c for c in vnode.children if c.tag != ENUM_FIELD), None)
            if subtype is not None and _type_text(subtype):
                detail = f"enum({_type_text(subtype)})"
            children = _enum_children(vnode, text, starts)
        entries.append(
            lsp.DocumentSymbol(
                name=name,
                detail=detail,
                kind=kind,
                range=_containing_range(root, node, text, starts),
                selection_range=node_range(text, node, starts),
                children=children,
            )
        )
    return entries


def outline(tree: Node, text: str) -> list[lsp.DocumentSymbol]:
    """Hierarchical document symbols starting from the root scope."""
    return _scope_symbols(tree, text, line_starts(text), tree.src)


# ============================================================================
# Layer 7: Completion Synthesizer
# ============================================================================

_PARTIAL_PREFIX = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")
_PARTIAL_SUFFIX = re.compile(r"\A[.:]?[A-Za-z_][A-Za-z0-9_]*")


class CompletionMode(enum.Enum):
    NORMAL = "normal"  # bare scope lookup
    FIELD = "field"  # expr.  -> static members / fields
    META = "meta"  # expr:  -> bound methods


def split_at_cursor(text: str, offset: int) -> tuple[str, str]:
    """Drop the identifier being typed and the token glued after the cursor."""
    before = _PARTIAL_PREFIX.sub("", text[:offset])
    after = _PARTIAL_SUFFIX.sub("", text[offset:], count=1)
    return before, after


def synthesize_call(before: str) -> tuple[str, CompletionMode]:
    """Turn a trailing ``.``/``:`` into a call the analyzer can type."""
    if before.endswith("."):
        return before[:-1] + "()", CompletionMode.FIELD
    if before.endswith(":"):
        return before[:-1] + "()", CompletionMode.META
    return before, CompletionMode.NORMAL


def _detail(type_: Type | None) -> str:
    return str(type_) if type_ is not None else ""


def scope_candidates(scope: Scope) -> dict[str, str]:
    """Names visible from ``scope``; inner declarations shadow outer ones."""
    out: dict[str, str] = {}
    for level in scope.chain():
        for name, symbol in level.symbols.items():
            out.setdefault(name, _detail(symbol.type))
    return out


def _receiver_type(call: Node) -> tuple[Type | None, bool]:
    """Type completed on, and whether it is an instance (vs a type value)."""
    callee = call.children[0] if call.children else None
    if callee is not None and callee.attr.type is not None:
        ctype = callee.attr.type
        if ctype.is_type:
            return callee.attr.value, False
        if ctype.is_pointer and ctype.subtype is not None:
            return ctype.subtype, True
        return ctype, True
    return call.attr.type, False


def member_candidates(type_: Type, mode: CompletionMode, is_instance: bool) -> dict[str, str]:
    out: dict[str, str] = {}
    if mode is CompletionMode.META:
        for name, symbol in type_.metafields.items():
            if symbol.is_method:
                out[name] = _detail(symbol.type)
    elif is_instance:
        for name, fld in type_.fields.items():
            out[name] = _detail(fld.type)
    elif type_.is_record:
        for name, symbol in type_.metafields.items():
            out[name] = _detail(symbol.type)
    elif type_.is_enum:
        for name in type_.fields:
            out[name] = str(type_)
    else:
        for name, fld in type_.fields.items():
            out[name] = _detail(fld.type)
    return out


def harvest(location: Location, mode: CompletionMode) -> list[lsp.CompletionItem]:
    candidates: dict[str, str] = {}
    if mode is CompletionMode.NORMAL:
        if location.scope is not None:
            candidates = scope_candidates(location.scope)
    elif location.node.tag in CALL_TAGS:
        receiver, is_instance = _receiver_type(location.node)
        if receiver is not None:
            candidates = member_candidates(receiver, mode, is_instance)
    return [lsp.CompletionItem(label=name, detail=detail) for name, detail in candidates.items()]


def complete(store: DocumentStore, uri: str, line: int, character: int) -> list[lsp.CompletionItem]:
    """Completion candidates at a position of a (possibly broken) document."""
    doc = store.document(uri)
    offset = to_offset(doc.text, line, character)
    before, after = split_at_cursor(doc.text, offset)
    before, mode = synthesize_call(before)
    tree = store.open_or_refresh(uri, before + after, transient=True)
    if tree is None:
        return []
    location = locate(tree, max(len(before) - 1, 0))
    if location is None:
        return []
    items = harvest(location, mode)
    log.debug("Completion %s mode=%s: %d items", uri, mode.value, len(items))
    return items


# ============================================================================
# Layer 8: Language Server
# ============================================================================


def _structure(params: Any, cls: type[Any]) -> Any:
    try:
        return _converter.structure(params, cls)
    except Exception as e:
        raise JsonRpcError(INVALID_PARAMS, f"Invalid {cls.__name__}: {e}") from e


class NeluaLanguageServer:
    """Sequential LSP request loop over a DocumentStore.

    One message is read, fully handled (including any transient analysis)
    and answered before the next is read.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        endpoint: JsonRpcEndpoint,
        *,
        root: Path | None = None,
        reader: TextReader = read_uri_text,
    ) -> None:
        self._endpoint = endpoint
        self._root_override = root
        self.store = DocumentStore(analyzer, reader=reader, publish=self.publish_diagnostics, root=root)
        self._shutdown_requested = False
        self._exit_requested = False
        self._requests: dict[str, Callable[[Any], Any]] = {
            "initialize": self.handle_initialize,
            "shutdown": self.handle_shutdown,
            "textDocument/hover": self.handle_hover,
            "textDocument/definition": self.handle_definition,
            "textDocument/documentSymbol": self.handle_document_symbol,
            "textDocument/completion": self.handle_completion,
        }
        self._notifications: dict[str, Callable[[Any], None]] = {
            "initialized": lambda params: None,
            "exit": self.handle_exit,
            "textDocument/didOpen": self.handle_did_open,
            "textDocument/didChange": self.handle_did_change,
            "textDocument/didClose": self.handle_did_close,
        }

    @staticmethod
    def capabilities() -> lsp.ServerCapabilities:
        return lsp.ServerCapabilities(
            text_document_sync=lsp.TextDocumentSyncOptions(
                open_close=True,
                change=lsp.TextDocumentSyncKind.Full,
            ),
            hover_provider=True,
            completion_provider=lsp.CompletionOptions(trigger_characters=TRIGGER_CHARACTERS),
            definition_provider=True,
            document_symbol_provider=True,
        )

    def publish_diagnostics(self, uri: str, diagnostics: list[lsp.Diagnostic]) -> None:
        params = lsp.PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics)
        self._endpoint.notify("textDocument/publishDiagnostics", _converter.unstructure(params))

    # -- lifecycle -----------------------------------------------------------

    def handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        if self._root_override is None:
            root_uri = params.get("rootUri") or params.get("rootPath")
            if root_uri:
                self.store.root = uri_to_path(root_uri)
                log.info("Module search root: %s", self.store.root)
        return {
            "capabilities": _converter.unstructure(self.capabilities()),
            "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
        }

    def handle_shutdown(self, params: Any) -> None:
        self._shutdown_requested = True
        return None

    def handle_exit(self, params: Any) -> None:
        self._exit_requested = True

    # -- document sync -------------------------------------------------------

    def handle_did_open(self, params: Any) -> None:
        p = _structure(params, lsp.DidOpenTextDocumentParams)
        uri = p.text_document.uri
        if self.store.open_or_refresh(uri, p.text_document.text) is None:
            log.warning("Failed to analyze %s", uri)
            self._endpoint.fail(f"{SERVER_NAME}: failed to load document {uri}")

    def handle_did_change(self, params: Any) -> None:
        p = _structure(params, lsp.DidChangeTextDocumentParams)
        if not p.content_changes:
            return
        # Full sync: the last change carries the whole text
        self.store.open_or_refresh(p.text_document.uri, p.content_changes[-1].text)

    def handle_did_close(self, params: Any) -> None:
        p = _structure(params, lsp.DidCloseTextDocumentParams)
        self.store.close(p.text_document.uri)
        self.publish_diagnostics(p.text_document.uri, [])

    # -- queries -------------------------------------------------------------

    def _locate(self, uri: str, position: lsp.Position) -> tuple[Document, Location] | None:
        doc = self.store.document(uri)
        if doc.tree is None:
            return None
        try:
            offset = to_offset(doc.text, position.line, position.character)
        except PositionError as e:
            log.debug("%s: %s", uri, e)
            return None
        location = locate(doc.tree, offset)
        if location is None:
            return None
        return doc, location

    def handle_hover(self, params: Any) -> lsp.Hover | None:
        p = _structure(params, lsp.HoverParams)
        found = self._locate(p.text_document.uri, p.position)
        if found is None:
            return None
        doc, location = found
        return hover(location, doc.text)

    def handle_definition(self, params: Any) -> list[lsp.LocationLink]:
        p = _structure(params, lsp.DefinitionParams)
        found = self._locate(p.text_document.uri, p.position)
        if found is None:
            return []
        doc, location = found
        assert doc.tree is not None
        return resolve_definition(location, doc.tree, doc.text, doc.uri, self.store.reader)

    def handle_document_symbol(self, params: Any) -> list[lsp.DocumentSymbol]:
        p = _structure(params, lsp.DocumentSymbolParams)
        doc = self.store.document(p.text_document.uri)
        if doc.tree is None:
            return []
        return outline(doc.tree, doc.text)

    def handle_completion(self, params: Any) -> list[lsp.CompletionItem]:
        p = _structure(params, lsp.CompletionParams)
        try:
            return complete(self.store, p.text_document.uri, p.position.line, p.position.character)
        except PositionError as e:
            log.debug("%s: %s", p.text_document.uri, e)
            return []

    # -- dispatch ------------------------------------------------------------

    def handle_message(self, msg: dict[str, Any]) -> None:
        method = msg.get("method")
        request_id = msg.get("id")
        params = msg.get("params") or {}

        if method is None:
            log.debug("Ignoring message without method: %s", msg)
            return
        if request_id is None:
            self._handle_notification(method, params)
            return

        log.debug("<- request id=%s method=%s", request_id, method)
        handler = self._requests.get(method)
        if handler is None:
            self._endpoint.respond_error(request_id, METHOD_NOT_FOUND, f"Unhandled method: {method}")
            return
        try:
            result = handler(params)
        except JsonRpcError as e:
            self._endpoint.respond_error(request_id, e.code, e.error_message, e.data)
            return
        except Exception as e:
            log.exception("Internal error handling %s", method)
            self._endpoint.respond_error(request_id, INTERNAL_ERROR, f"{type(e).__name__}: {e}")
            return
        self._endpoint.respond(request_id, _converter.unstructure(result))

    def _handle_notification(self, method: str, params: Any) -> None:
        log.debug("<- notification method=%s", method)
        handler = self._notifications.get(method)
        if handler is None:
            log.debug("Unhandled notification: %s", method)
            return
        try:
            handler(params)
        except Exception as e:
            log.exception("Error handling %s", method)
            self._endpoint.fail(f"{SERVER_NAME}: {method} failed: {e}")

    def run(self) -> int:
        """Serve until ``exit`` or end of input. Returns the process exit code."""
        log.info("%s %s started", SERVER_NAME, SERVER_VERSION)
        while not self._exit_requested:
            msg = self._endpoint.read_message()
            if msg is None:
                log.info("Input stream closed; exiting server")
                break
            if not msg:
                continue
            self.handle_message(msg)
        return 0 if self._shutdown_requested else 1


# ============================================================================
# Layer 9: CLI Interface
# ============================================================================


def _error_json(message: str, hint: str | None = None) -> None:
    """Output error as JSON to stderr."""
    err: dict[str, str] = {"error": message}
    if hint:
        err["hint"] = hint
    print(json.dumps(err, separators=(",", ":")), file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog=SCRIPT_NAME,
        description="Language server for Nelua, speaking LSP over stdin/stdout.",
    )
    parser.add_argument(
        "--analyzer",
        default=os.environ.get(ANALYZER_ENV_VAR),
        help=f"Analyzer to drive, as module:attribute (default: ${ANALYZER_ENV_VAR})",
    )
    parser.add_argument("--root", type=Path, default=None, help="Override module search root")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--log-file", type=Path, default=None, help="Write logs here instead of stderr")
    return parser


def configure_logging(verbose: bool, log_file: Path | None = None) -> None:
    """Logs never go to stdout: it carries the protocol."""
    level = logging.DEBUG if verbose else logging.WARNING
    fmt = "%(levelname)s %(name)s: %(message)s"
    if log_file is not None:
        logging.basicConfig(level=level, format=fmt, filename=str(log_file))
    else:
        logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def main(args: argparse.Namespace) -> int:
    """Main entry point."""
    configure_logging(args.verbose, args.log_file)

    if not args.analyzer:
        _error_json(
            "No analyzer configured",
            hint=f"Pass --analyzer module:attribute or set {ANALYZER_ENV_VAR}",
        )
        return 1
    try:
        analyzer = load_analyzer(args.analyzer)
    except AnalyzerLoadError as e:
        _error_json(str(e))
        return 1

    endpoint = JsonRpcEndpoint(sys.stdin.buffer, sys.stdout.buffer)
    server = NeluaLanguageServer(analyzer, endpoint, root=args.root)
    try:
        return server.run()
    except KeyboardInterrupt:
        return 130


def cli() -> int:
    """Console script entry point."""
    return main(build_parser().parse_args())


if __name__ == "__main__":  # pragma: no cover
    sys.exit(cli())
