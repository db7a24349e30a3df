# File: latex_lsp/lsp/protocol.py

"""Protocol-level types and coordinate conversion shared by the LSP client.

Editor-facing coordinates are one-based (line 1, column 1 is the first
character of the document); the Language Server Protocol is zero-based. Every
value crossing that boundary goes through `to_lsp_position` on the way in and
`from_lsp_range` / `from_lsp_position` on the way out, so the +-1 shift is
applied in exactly one place per direction.

The module also holds the client capability document sent during the
`initialize` handshake, the LSP kind tables, and the document symbol tree
shape consumed by the outline view.
"""

import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote, unquote, urlparse

JSONRPC_VERSION = "2.0"

LATEX_LANGUAGE_ID = "latex"
BIBTEX_LANGUAGE_ID = "bibtex"

# --- Editor coordinates ---


@dataclass(frozen=True)
class EditorPosition:
    """A one-based (line, column) position in an editor document."""

    line: int
    column: int


@dataclass(frozen=True)
class EditorRange:
    """A one-based, end-exclusive range in an editor document."""

    start_line: int
    start_column: int
    end_line: int
    end_column: int


def to_lsp_position(position: EditorPosition) -> Dict[str, int]:
    """Converts a one-based editor position into a zero-based LSP Position."""
    return {"line": position.line - 1, "character": position.column - 1}


def from_lsp_position(position: Mapping[str, Any]) -> EditorPosition:
    """Converts a zero-based LSP Position into a one-based editor position."""
    return EditorPosition(line=int(position["line"]) + 1, column=int(position["character"]) + 1)


def from_lsp_range(lsp_range: Mapping[str, Any]) -> EditorRange:
    """Converts a zero-based LSP Range into a one-based editor range.

    Raises:
        KeyError, TypeError, ValueError: If the range is malformed.
    """
    start = from_lsp_position(lsp_range["start"])
    end = from_lsp_position(lsp_range["end"])
    return EditorRange(
        start_line=start.line,
        start_column=start.column,
        end_line=end.line,
        end_column=end.column,
    )


# --- Document identity ---

_DRIVE_PATH_RE = re.compile(r"^[a-zA-Z]:/")


def path_to_uri(file_path: str) -> str:
    """Converts a filesystem path (POSIX, Windows drive or UNC) to a file URI.

    Strings that are already `file:` URIs are returned unchanged.
    """
    if file_path.startswith("file:"):
        return file_path
    normalized = file_path.replace("\\", "/")
    if normalized.startswith("//"):
        return "file:" + quote(normalized, safe="/:")
    if _DRIVE_PATH_RE.match(normalized):
        return "file:///" + quote(normalized, safe="/:")
    if normalized.startswith("/"):
        return "file://" + quote(normalized, safe="/:")
    return "file:///" + quote(normalized, safe="/:")


def uri_to_path(uri: str) -> str:
    """Converts a file URI back to a filesystem path.

    Non-file URIs are returned unchanged.
    """
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return uri
    decoded_path = unquote(parsed.path)
    if parsed.netloc:
        unc = f"//{parsed.netloc}{decoded_path}"
        return unc.replace("/", "\\") if sys.platform == "win32" else unc
    if re.match(r"^/[a-zA-Z]:/", decoded_path):
        return decoded_path[1:].replace("/", "\\")
    return decoded_path


def language_id_for(file_path: str) -> str:
    """Infers the LSP language id from a file's extension."""
    return BIBTEX_LANGUAGE_ID if file_path.lower().endswith(".bib") else LATEX_LANGUAGE_ID


# --- Capabilities ---


def has_capability(capabilities: Mapping[str, Any], key: str) -> bool:
    """Reports whether the server advertised `key`.

    An advertised capability may be `true` or an options object, and an empty
    options object (`{}`) still counts, so plain truthiness is not enough.
    """
    value = capabilities.get(key)
    return value is not None and value is not False


SEMANTIC_TOKEN_TYPES = [
    "type", "class", "enum", "interface", "struct", "typeParameter",
    "parameter", "variable", "property", "enumMember", "event", "function",
    "method", "macro", "keyword", "modifier", "comment", "string", "number",
    "regexp", "operator",
]

SEMANTIC_TOKEN_MODIFIERS = [
    "declaration", "definition", "readonly", "static", "deprecated",
    "abstract", "async", "modification", "documentation", "defaultLibrary",
]


def build_client_capabilities() -> Dict[str, Any]:
    """Returns the capability document this client advertises in `initialize`."""
    return {
        "textDocument": {
            "synchronization": {
                "dynamicRegistration": False,
                "willSave": False,
                "willSaveWaitUntil": False,
                "didSave": True,
            },
            "completion": {
                "completionItem": {
                    "snippetSupport": True,
                    "documentationFormat": ["plaintext", "markdown"],
                }
            },
            "hover": {"contentFormat": ["plaintext", "markdown"]},
            "definition": {"dynamicRegistration": False},
            "references": {"dynamicRegistration": False},
            "documentSymbol": {
                "dynamicRegistration": False,
                "hierarchicalDocumentSymbolSupport": True,
            },
            "formatting": {"dynamicRegistration": False},
            "rename": {"dynamicRegistration": False, "prepareSupport": True},
            "publishDiagnostics": {"relatedInformation": False},
            "foldingRange": {"dynamicRegistration": False, "lineFoldingOnly": True},
            "semanticTokens": {
                "dynamicRegistration": False,
                "requests": {"range": False, "full": {"delta": False}},
                "tokenTypes": list(SEMANTIC_TOKEN_TYPES),
                "tokenModifiers": list(SEMANTIC_TOKEN_MODIFIERS),
                "formats": ["relative"],
            },
        },
        "workspace": {"workspaceFolders": False},
    }


# --- Kind tables ---

COMPLETION_ITEM_KINDS: Dict[int, str] = {
    1: "text",
    2: "method",
    3: "function",
    4: "constructor",
    5: "field",
    6: "variable",
    7: "class",
    8: "interface",
    9: "module",
    10: "property",
    14: "keyword",
    15: "snippet",
    21: "constant",
}

SYMBOL_KINDS: Dict[int, str] = {
    1: "file",
    2: "module",
    3: "namespace",
    5: "class",
    6: "method",
    8: "constructor",
    12: "function",
    13: "variable",
    14: "constant",
    15: "string",
}


def completion_kind_name(kind: Optional[int]) -> str:
    return COMPLETION_ITEM_KINDS.get(kind or 1, "text")


def symbol_kind_name(kind: Optional[int]) -> str:
    return SYMBOL_KINDS.get(kind or 0, "variable")


# --- Outline tree ---


@dataclass
class DocumentSymbolNode:
    """One node of the document outline.

    This is the same shape the regex outline extractor produces, so the
    outline view can consume either source without caring which one ran.

    Attributes:
        name (str): Display name (e.g. a section title or label).
        detail (str): Secondary text, empty when the server sends none.
        kind (int): The LSP SymbolKind number.
        range (EditorRange): One-based extent of the whole symbol.
        selection_range (EditorRange): One-based extent of the symbol's name.
        children (List[DocumentSymbolNode]): Nested symbols.
    """

    name: str
    detail: str
    kind: int
    range: EditorRange
    selection_range: EditorRange
    children: List["DocumentSymbolNode"] = field(default_factory=list)


def symbols_from_lsp(symbols: List[Mapping[str, Any]]) -> List[DocumentSymbolNode]:
    """Maps hierarchical LSP DocumentSymbol objects to outline nodes.

    Flat SymbolInformation entries (which carry `location` instead of `range`)
    are accepted as leaf nodes.
    """
    nodes: List[DocumentSymbolNode] = []
    for sym in symbols:
        lsp_range = sym.get("range") or sym["location"]["range"]
        full_range = from_lsp_range(lsp_range)
        selection = sym.get("selectionRange")
        nodes.append(
            DocumentSymbolNode(
                name=sym["name"],
                detail=sym.get("detail") or "",
                kind=int(sym.get("kind", 0)),
                range=full_range,
                selection_range=from_lsp_range(selection) if selection else full_range,
                children=symbols_from_lsp(sym.get("children") or []),
            )
        )
    return nodes
