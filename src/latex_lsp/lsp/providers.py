# File: latex_lsp/lsp/providers.py

"""Capability-gated adapters between editor queries and LSP requests.

Every provider is stateless apart from the session it is bound to. A call
converts one-based editor coordinates to the zero-based protocol, issues a
single request through the session's RPC client and converts the answer back.
Language intelligence is advisory: when the session is not initialized, the
server did not advertise the capability, or the request fails for any reason,
a provider returns an empty result instead of raising into the editor.

`CAPABILITY_PROVIDERS` lists which provider to attach for which server
capability; the session walks it once after every successful handshake.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Type

from latex_lsp.lsp.protocol import (
    BIBTEX_LANGUAGE_ID,
    LATEX_LANGUAGE_ID,
    DocumentSymbolNode,
    EditorPosition,
    EditorRange,
    completion_kind_name,
    from_lsp_range,
    has_capability,
    path_to_uri,
    symbols_from_lsp,
    to_lsp_position,
)
from latex_lsp.lsp.rpc import LspRequestError
from latex_lsp.lsp.semantic_tokens import SemanticTokens, SemanticTokensLegend, to_token_array

if TYPE_CHECKING:
    from latex_lsp.lsp.session import LspSession

logger = logging.getLogger(__name__)

# Failures a provider turns into an empty result: request-level errors plus
# results that do not have the shape the protocol promises.
_PROVIDER_ERRORS = (LspRequestError, KeyError, TypeError, ValueError, AttributeError)

SNIPPET_INSERT_TEXT_FORMAT = 2


# --- Editor-facing result types ---


@dataclass(frozen=True)
class CompletionItem:
    label: str
    kind: str
    insert_text: str
    is_snippet: bool = False
    detail: str = ""
    documentation: Optional[str] = None
    range: Optional[EditorRange] = None
    sort_text: Optional[str] = None
    filter_text: Optional[str] = None


@dataclass(frozen=True)
class HoverResult:
    contents: List[str]
    range: Optional[EditorRange] = None


@dataclass(frozen=True)
class Location:
    uri: str
    range: EditorRange


@dataclass(frozen=True)
class TextEdit:
    range: EditorRange
    new_text: str


@dataclass(frozen=True)
class WorkspaceTextEdit:
    uri: str
    edit: TextEdit


@dataclass(frozen=True)
class RenameLocation:
    range: EditorRange
    placeholder: Optional[str] = None


@dataclass(frozen=True)
class FoldingRange:
    start_line: int
    end_line: int
    kind: str = "region"


# --- Conversion helpers ---


def _text_document(document: str) -> Dict[str, str]:
    return {"uri": path_to_uri(document)}


def _markup_to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("value")
    return str(value)


def format_hover_contents(contents: Any) -> List[str]:
    """Normalizes the three hover content shapes to a list of markdown strings.

    Accepts a plain string, a MarkupContent / MarkedString object, or a list
    of strings and MarkedStrings.
    """
    if isinstance(contents, str):
        return [contents] if contents else []
    if isinstance(contents, list):
        texts = []
        for part in contents:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, dict):
                texts.append(part.get("value") or "")
            else:
                texts.append(str(part))
        return [t for t in texts if t]
    if isinstance(contents, dict):
        value = contents.get("value") or ""
        language = contents.get("language")
        if language and contents.get("kind") is None:
            return [f"```{language}\n{value}\n```"]
        return [value] if value else []
    return []


def _text_edits_from_lsp(edits: List[Dict[str, Any]]) -> List[TextEdit]:
    return [TextEdit(range=from_lsp_range(e["range"]), new_text=e["newText"]) for e in edits]


def _folding_kind(kind: Optional[str]) -> str:
    if kind in ("comment", "imports"):
        return kind
    return "region"


# --- Providers ---


class FeatureProvider:
    """Base class: capability gating and request plumbing.

    Attributes:
        capability (str): The ServerCapabilities key that enables this provider.
        feature (str): Registry name the editor looks the provider up by.
        language_id (str): Language the provider is registered for.
    """

    capability = ""
    feature = ""
    language_id = LATEX_LANGUAGE_ID

    def __init__(self, session: "LspSession"):
        self.session = session

    def is_available(self) -> bool:
        return self.session.initialized and has_capability(self.session.capabilities, self.capability)

    async def _request(self, method: str, params: Dict[str, Any]) -> Any:
        return await self.session.rpc.request(method, params)


class CompletionProvider(FeatureProvider):
    capability = "completionProvider"
    feature = "completion"
    trigger_characters: Tuple[str, ...] = ("\\", "{", ",", " ")

    async def provide_completion_items(self, document: str, position: EditorPosition) -> List[CompletionItem]:
        if not self.is_available():
            return []
        try:
            result = await self._request(
                "textDocument/completion",
                {"textDocument": _text_document(document), "position": to_lsp_position(position)},
            )
            items = result if isinstance(result, list) else (result or {}).get("items") or []
            return [self._map_item(item) for item in items]
        except _PROVIDER_ERRORS as e:
            logger.debug(f"Completion failed for {document}: {e}")
            return []

    def _map_item(self, item: Dict[str, Any]) -> CompletionItem:
        text_edit = item.get("textEdit") or {}
        edit_range = text_edit.get("range") or text_edit.get("replace")
        return CompletionItem(
            label=item["label"],
            kind=completion_kind_name(item.get("kind")),
            insert_text=text_edit.get("newText") or item.get("insertText") or item["label"],
            is_snippet=item.get("insertTextFormat") == SNIPPET_INSERT_TEXT_FORMAT,
            detail=item.get("detail") or "",
            documentation=_markup_to_text(item.get("documentation")),
            range=from_lsp_range(edit_range) if edit_range else None,
            sort_text=item.get("sortText") or None,
            filter_text=item.get("filterText") or None,
        )


class BibtexCompletionProvider(CompletionProvider):
    feature = "bibtex_completion"
    language_id = BIBTEX_LANGUAGE_ID
    trigger_characters = ("@", "{")

    def _map_item(self, item: Dict[str, Any]) -> CompletionItem:
        text_edit = item.get("textEdit") or {}
        return CompletionItem(
            label=item["label"],
            kind=completion_kind_name(item.get("kind")),
            insert_text=text_edit.get("newText") or item.get("insertText") or item["label"],
            detail=item.get("detail") or "",
        )


class HoverProvider(FeatureProvider):
    capability = "hoverProvider"
    feature = "hover"

    async def provide_hover(self, document: str, position: EditorPosition) -> Optional[HoverResult]:
        if not self.is_available():
            return None
        try:
            result = await self._request(
                "textDocument/hover",
                {"textDocument": _text_document(document), "position": to_lsp_position(position)},
            )
            if not result or not result.get("contents"):
                return None
            contents = format_hover_contents(result["contents"])
            if not contents:
                return None
            hover_range = result.get("range")
            return HoverResult(contents=contents, range=from_lsp_range(hover_range) if hover_range else None)
        except _PROVIDER_ERRORS as e:
            logger.debug(f"Hover failed for {document}: {e}")
            return None


class DefinitionProvider(FeatureProvider):
    capability = "definitionProvider"
    feature = "definition"

    async def provide_definition(self, document: str, position: EditorPosition) -> List[Location]:
        if not self.is_available():
            return []
        try:
            result = await self._request(
                "textDocument/definition",
                {"textDocument": _text_document(document), "position": to_lsp_position(position)},
            )
            if not result:
                return []
            locations = result if isinstance(result, list) else [result]
            mapped = []
            for loc in locations:
                # LocationLink carries targetUri/targetSelectionRange instead.
                uri = loc.get("uri") or loc["targetUri"]
                lsp_range = loc.get("range") or loc.get("targetSelectionRange") or loc["targetRange"]
                mapped.append(Location(uri=uri, range=from_lsp_range(lsp_range)))
            return mapped
        except _PROVIDER_ERRORS as e:
            logger.debug(f"Definition lookup failed for {document}: {e}")
            return []


class DocumentSymbolProvider(FeatureProvider):
    capability = "documentSymbolProvider"
    feature = "document_symbols"

    async def provide_document_symbols(self, document: str) -> List[DocumentSymbolNode]:
        if not self.is_available():
            return []
        try:
            result = await self._request(
                "textDocument/documentSymbol", {"textDocument": _text_document(document)}
            )
            if not isinstance(result, list):
                return []
            return symbols_from_lsp(result)
        except _PROVIDER_ERRORS as e:
            logger.debug(f"Document symbols failed for {document}: {e}")
            return []


class RenameProvider(FeatureProvider):
    capability = "renameProvider"
    feature = "rename"

    async def provide_rename_edits(
        self, document: str, position: EditorPosition, new_name: str
    ) -> List[WorkspaceTextEdit]:
        if not self.is_available():
            return []
        try:
            result = await self._request(
                "textDocument/rename",
                {
                    "textDocument": _text_document(document),
                    "position": to_lsp_position(position),
                    "newName": new_name,
                },
            )
            return self._workspace_edits(result or {})
        except _PROVIDER_ERRORS as e:
            logger.debug(f"Rename failed for {document}: {e}")
            return []

    async def resolve_rename_location(self, document: str, position: EditorPosition) -> Optional[RenameLocation]:
        """Asks the server whether the symbol at `position` can be renamed.

        Returns:
            The range to rename (and the server's placeholder text, if any),
            or None when renaming is not possible here.
        """
        if not self.is_available():
            return None
        try:
            result = await self._request(
                "textDocument/prepareRename",
                {"textDocument": _text_document(document), "position": to_lsp_position(position)},
            )
            if not result:
                return None
            if "range" in result:
                return RenameLocation(range=from_lsp_range(result["range"]), placeholder=result.get("placeholder"))
            if "start" in result:
                return RenameLocation(range=from_lsp_range(result))
            return None
        except _PROVIDER_ERRORS as e:
            logger.debug(f"prepareRename failed for {document}: {e}")
            return None

    @staticmethod
    def _workspace_edits(result: Dict[str, Any]) -> List[WorkspaceTextEdit]:
        edits: List[WorkspaceTextEdit] = []
        for uri, changes in (result.get("changes") or {}).items():
            edits.extend(WorkspaceTextEdit(uri=uri, edit=e) for e in _text_edits_from_lsp(changes))
        for document_change in result.get("documentChanges") or []:
            if "textDocument" not in document_change:
                continue  # create/rename/delete file operations
            uri = document_change["textDocument"]["uri"]
            edits.extend(
                WorkspaceTextEdit(uri=uri, edit=e) for e in _text_edits_from_lsp(document_change["edits"])
            )
        return edits


class FormattingProvider(FeatureProvider):
    capability = "documentFormattingProvider"
    feature = "formatting"

    async def provide_formatting_edits(self, document: str) -> List[TextEdit]:
        if not self.is_available():
            return []
        options = self.session.settings.get("formatting") or {}
        try:
            result = await self._request(
                "textDocument/formatting",
                {
                    "textDocument": _text_document(document),
                    "options": {
                        "tabSize": int(options.get("tab_size", 2)),
                        "insertSpaces": bool(options.get("insert_spaces", True)),
                    },
                },
            )
            return _text_edits_from_lsp(result or [])
        except _PROVIDER_ERRORS as e:
            logger.debug(f"Formatting failed for {document}: {e}")
            return []


class FoldingRangeProvider(FeatureProvider):
    capability = "foldingRangeProvider"
    feature = "folding"

    async def provide_folding_ranges(self, document: str) -> List[FoldingRange]:
        if not self.is_available():
            return []
        try:
            result = await self._request(
                "textDocument/foldingRange", {"textDocument": _text_document(document)}
            )
            return [
                FoldingRange(
                    start_line=int(r["startLine"]) + 1,
                    end_line=int(r["endLine"]) + 1,
                    kind=_folding_kind(r.get("kind")),
                )
                for r in result or []
            ]
        except _PROVIDER_ERRORS as e:
            logger.debug(f"Folding ranges failed for {document}: {e}")
            return []


class SemanticTokensProvider(FeatureProvider):
    capability = "semanticTokensProvider"
    feature = "semantic_tokens"

    @property
    def legend(self) -> SemanticTokensLegend:
        options = self.session.capabilities.get(self.capability)
        return SemanticTokensLegend.from_lsp(options.get("legend") if isinstance(options, dict) else None)

    async def provide_semantic_tokens(self, document: str) -> Optional[SemanticTokens]:
        if not self.is_available():
            return None
        try:
            result = await self._request(
                "textDocument/semanticTokens/full", {"textDocument": _text_document(document)}
            )
            if not result or result.get("data") is None:
                return None
            return SemanticTokens(
                data=to_token_array(result["data"]),
                legend=self.legend,
                result_id=result.get("resultId"),
            )
        except _PROVIDER_ERRORS as e:
            logger.debug(f"Semantic tokens failed for {document}: {e}")
            return None


# Attached after every handshake, in this order, for each advertised capability.
CAPABILITY_PROVIDERS: List[Type[FeatureProvider]] = [
    CompletionProvider,
    BibtexCompletionProvider,
    HoverProvider,
    DefinitionProvider,
    DocumentSymbolProvider,
    RenameProvider,
    FormattingProvider,
    FoldingRangeProvider,
    SemanticTokensProvider,
]
