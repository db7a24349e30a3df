# File: tests/unit/lsp/test_providers_unit.py

from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

try:
    from latex_lsp.config.loader import get_lsp_settings
    from latex_lsp.lsp.protocol import EditorPosition, EditorRange
    from latex_lsp.lsp.providers import (
        CAPABILITY_PROVIDERS,
        BibtexCompletionProvider,
        CompletionItem,
        CompletionProvider,
        DefinitionProvider,
        DocumentSymbolProvider,
        FoldingRange,
        FormattingProvider,
        FoldingRangeProvider,
        HoverProvider,
        Location,
        RenameLocation,
        RenameProvider,
        SemanticTokensProvider,
        TextEdit,
        WorkspaceTextEdit,
        format_hover_contents,
    )
    from latex_lsp.lsp.rpc import LspResponseError, RequestSupersededError, RequestTimeoutError
except ImportError as e:
    pytest.skip(
        f"Skipping providers unit tests due to import error: {e}",
        allow_module_level=True,
    )

DOC = "/project/main.tex"
DOC_URI = "file:///project/main.tex"


def _range(sl, sc, el, ec):
    return {"start": {"line": sl, "character": sc}, "end": {"line": el, "character": ec}}


# --- Fixtures ---


@pytest.fixture
def session():
    """A stand-in session with every capability advertised."""
    mock_session = MagicMock()
    mock_session.initialized = True
    mock_session.capabilities = {
        "completionProvider": {},
        "hoverProvider": True,
        "definitionProvider": True,
        "documentSymbolProvider": True,
        "renameProvider": {"prepareProvider": True},
        "documentFormattingProvider": True,
        "foldingRangeProvider": True,
        "semanticTokensProvider": {
            "legend": {"tokenTypes": ["macro", "keyword"], "tokenModifiers": ["deprecated", "readonly"]},
            "full": True,
        },
    }
    mock_session.settings = get_lsp_settings({"lsp": {"formatting": {"tab_size": 4}}})
    mock_session.rpc.request = AsyncMock(return_value=None)
    return mock_session


# --- Gating ---


@pytest.mark.parametrize("provider_cls", CAPABILITY_PROVIDERS)
def test_providers_unavailable_before_initialize(session, provider_cls):
    session.initialized = False
    assert provider_cls(session).is_available() is False


@pytest.mark.parametrize("provider_cls", CAPABILITY_PROVIDERS)
def test_providers_unavailable_without_capability(session, provider_cls):
    session.capabilities = {}
    assert provider_cls(session).is_available() is False


def test_registration_table_feature_names_are_unique():
    features = [cls.feature for cls in CAPABILITY_PROVIDERS]
    assert len(features) == len(set(features))
    assert BibtexCompletionProvider.language_id == "bibtex"
    assert CompletionProvider.language_id == "latex"
    assert "\\" in CompletionProvider.trigger_characters
    assert BibtexCompletionProvider.trigger_characters == ("@", "{")


@pytest.mark.asyncio
async def test_uninitialized_provider_sends_nothing(session):
    session.initialized = False
    assert await HoverProvider(session).provide_hover(DOC, EditorPosition(1, 1)) is None
    assert await CompletionProvider(session).provide_completion_items(DOC, EditorPosition(1, 1)) == []
    session.rpc.request.assert_not_awaited()


@pytest.mark.parametrize(
    "error",
    [
        RequestTimeoutError("timed out"),
        RequestSupersededError("superseded"),
        LspResponseError({"code": -32603, "message": "internal"}),
    ],
)
@pytest.mark.asyncio
async def test_request_failures_become_empty_results(session, error):
    session.rpc.request.side_effect = error
    assert await CompletionProvider(session).provide_completion_items(DOC, EditorPosition(1, 1)) == []
    assert await HoverProvider(session).provide_hover(DOC, EditorPosition(1, 1)) is None
    assert await DefinitionProvider(session).provide_definition(DOC, EditorPosition(1, 1)) == []
    assert await RenameProvider(session).resolve_rename_location(DOC, EditorPosition(1, 1)) is None
    assert await SemanticTokensProvider(session).provide_semantic_tokens(DOC) is None


# --- Completion ---


@pytest.mark.asyncio
async def test_completion_converts_position_and_maps_items(session):
    session.rpc.request.return_value = {
        "isIncomplete": False,
        "items": [
            {
                "label": "\\section",
                "kind": 3,
                "insertText": "section{$1}",
                "insertTextFormat": 2,
                "documentation": {"kind": "markdown", "value": "Starts a section"},
            },
            {
                "label": "\\label",
                "kind": 14,
                "textEdit": {"range": _range(2, 4, 2, 6), "newText": "label{}"},
                "insertText": "ignored",
            },
            {"label": "figure"},
        ],
    }

    items = await CompletionProvider(session).provide_completion_items(DOC, EditorPosition(3, 5))

    session.rpc.request.assert_awaited_once_with(
        "textDocument/completion",
        {"textDocument": {"uri": DOC_URI}, "position": {"line": 2, "character": 4}},
    )
    assert items[0] == CompletionItem(
        label="\\section",
        kind="function",
        insert_text="section{$1}",
        is_snippet=True,
        documentation="Starts a section",
    )
    assert items[1].insert_text == "label{}"
    assert items[1].kind == "keyword"
    assert items[1].range == EditorRange(3, 5, 3, 7)
    assert items[2].insert_text == "figure"
    assert items[2].kind == "text"
    assert items[2].is_snippet is False


@pytest.mark.asyncio
async def test_completion_accepts_plain_list_and_drops_malformed(session):
    session.rpc.request.return_value = [{"label": "\\cite"}]
    assert [i.label for i in await CompletionProvider(session).provide_completion_items(DOC, EditorPosition(1, 1))] == ["\\cite"]

    session.rpc.request.return_value = [{"kind": 1}]  # no label
    assert await CompletionProvider(session).provide_completion_items(DOC, EditorPosition(1, 1)) == []


@pytest.mark.asyncio
async def test_bibtex_completion_maps_entry_types(session):
    session.rpc.request.return_value = [{"label": "article", "kind": 7, "detail": "Journal article"}]
    [item] = await BibtexCompletionProvider(session).provide_completion_items("/project/refs.bib", EditorPosition(1, 2))
    assert item.label == "article"
    assert item.kind == "class"
    assert item.detail == "Journal article"


# --- Hover ---


@pytest.mark.parametrize(
    "contents, expected",
    [
        ("plain", ["plain"]),
        ({"kind": "markdown", "value": "**bold**"}, ["**bold**"]),
        ({"language": "latex", "value": "\\alpha"}, ["```latex\n\\alpha\n```"]),
        (["one", {"language": "latex", "value": "two"}, ""], ["one", "two"]),
        ("", []),
        (None, []),
    ],
)
def test_format_hover_contents_shapes(contents, expected):
    assert format_hover_contents(contents) == expected


@pytest.mark.asyncio
async def test_hover_converts_range(session):
    session.rpc.request.return_value = {"contents": {"kind": "markdown", "value": "Package *amsmath*"}, "range": _range(0, 5, 0, 12)}

    result = await HoverProvider(session).provide_hover(DOC, EditorPosition(1, 7))

    assert result.contents == ["Package *amsmath*"]
    assert result.range == EditorRange(1, 6, 1, 13)
    args = session.rpc.request.await_args.args
    assert args[1]["position"] == {"line": 0, "character": 6}


@pytest.mark.asyncio
async def test_hover_without_contents_is_none(session):
    session.rpc.request.return_value = {"contents": []}
    assert await HoverProvider(session).provide_hover(DOC, EditorPosition(1, 1)) is None


# --- Definition ---


@pytest.mark.asyncio
async def test_definition_accepts_locations_and_links(session):
    session.rpc.request.return_value = [
        {"uri": "file:///project/chapters/intro.tex", "range": _range(9, 0, 9, 14)},
        {
            "targetUri": "file:///project/refs.bib",
            "targetRange": _range(0, 0, 5, 1),
            "targetSelectionRange": _range(0, 9, 0, 16),
        },
    ]

    locations = await DefinitionProvider(session).provide_definition(DOC, EditorPosition(4, 10))

    assert locations == [
        Location(uri="file:///project/chapters/intro.tex", range=EditorRange(10, 1, 10, 15)),
        Location(uri="file:///project/refs.bib", range=EditorRange(1, 10, 1, 17)),
    ]


@pytest.mark.asyncio
async def test_definition_single_location_and_null(session):
    session.rpc.request.return_value = {"uri": DOC_URI, "range": _range(0, 0, 0, 1)}
    assert len(await DefinitionProvider(session).provide_definition(DOC, EditorPosition(1, 1))) == 1

    session.rpc.request.return_value = None
    assert await DefinitionProvider(session).provide_definition(DOC, EditorPosition(1, 1)) == []


# --- Document symbols ---


@pytest.mark.asyncio
async def test_document_symbols_flat_symbol_information(session):
    session.rpc.request.return_value = [
        {"name": "fig:plot", "kind": 13, "location": {"uri": DOC_URI, "range": _range(7, 0, 7, 20)}}
    ]
    [symbol] = await DocumentSymbolProvider(session).provide_document_symbols(DOC)
    assert symbol.name == "fig:plot"
    assert symbol.range == symbol.selection_range == EditorRange(8, 1, 8, 21)
    assert symbol.children == []


# --- Rename ---


@pytest.mark.asyncio
async def test_rename_handles_changes_and_document_changes(session):
    session.rpc.request.return_value = {
        "changes": {DOC_URI: [{"range": _range(1, 7, 1, 10), "newText": "sec:new"}]},
        "documentChanges": [
            {
                "textDocument": {"uri": "file:///project/other.tex", "version": 3},
                "edits": [{"range": _range(4, 5, 4, 8), "newText": "sec:new"}],
            },
            {"kind": "rename", "oldUri": "file:///a.tex", "newUri": "file:///b.tex"},
        ],
    }

    edits = await RenameProvider(session).provide_rename_edits(DOC, EditorPosition(2, 9), "sec:new")

    params = session.rpc.request.await_args.args[1]
    assert params["newName"] == "sec:new"
    assert params["position"] == {"line": 1, "character": 8}
    assert edits == [
        WorkspaceTextEdit(uri=DOC_URI, edit=TextEdit(range=EditorRange(2, 8, 2, 11), new_text="sec:new")),
        WorkspaceTextEdit(
            uri="file:///project/other.tex", edit=TextEdit(range=EditorRange(5, 6, 5, 9), new_text="sec:new")
        ),
    ]


@pytest.mark.asyncio
async def test_prepare_rename_shapes(session):
    provider = RenameProvider(session)

    session.rpc.request.return_value = {"range": _range(0, 7, 0, 10), "placeholder": "foo"}
    assert await provider.resolve_rename_location(DOC, EditorPosition(1, 9)) == RenameLocation(
        range=EditorRange(1, 8, 1, 11), placeholder="foo"
    )
    assert session.rpc.request.await_args.args[0] == "textDocument/prepareRename"

    session.rpc.request.return_value = _range(0, 7, 0, 10)
    assert (await provider.resolve_rename_location(DOC, EditorPosition(1, 9))).placeholder is None

    session.rpc.request.return_value = None
    assert await provider.resolve_rename_location(DOC, EditorPosition(1, 9)) is None


# --- Formatting / folding / semantic tokens ---


@pytest.mark.asyncio
async def test_formatting_uses_configured_options(session):
    session.rpc.request.return_value = [{"range": _range(0, 0, 3, 0), "newText": "\\begin{document}\n"}]

    edits = await FormattingProvider(session).provide_formatting_edits(DOC)

    params = session.rpc.request.await_args.args[1]
    assert params["options"] == {"tabSize": 4, "insertSpaces": True}
    assert edits == [TextEdit(range=EditorRange(1, 1, 4, 1), new_text="\\begin{document}\n")]


@pytest.mark.asyncio
async def test_folding_ranges_are_one_based(session):
    session.rpc.request.return_value = [
        {"startLine": 0, "endLine": 10},
        {"startLine": 12, "endLine": 14, "kind": "comment"},
        {"startLine": 20, "endLine": 30, "kind": "unknown"},
    ]
    ranges = await FoldingRangeProvider(session).provide_folding_ranges(DOC)
    assert ranges == [
        FoldingRange(start_line=1, end_line=11),
        FoldingRange(start_line=13, end_line=15, kind="comment"),
        FoldingRange(start_line=21, end_line=31),
    ]


@pytest.mark.asyncio
async def test_semantic_tokens_carry_legend(session):
    session.rpc.request.return_value = {"data": [0, 0, 8, 0, 1], "resultId": "7"}

    tokens = await SemanticTokensProvider(session).provide_semantic_tokens(DOC)

    assert tokens.data.dtype == np.uint32
    assert tokens.data.tolist() == [0, 0, 8, 0, 1]
    assert tokens.legend.token_types == ("macro", "keyword")
    assert tokens.result_id == "7"

    decoded = tokens.decode()
    assert [(t.line, t.column, t.length, t.token_type, t.modifiers) for t in decoded] == [
        (1, 1, 8, "macro", ("deprecated",))
    ]


@pytest.mark.asyncio
async def test_semantic_tokens_malformed_data_is_none(session):
    session.rpc.request.return_value = {"data": [0, 0, 8]}
    assert await SemanticTokensProvider(session).provide_semantic_tokens(DOC) is None
