# File: tests/unit/lsp/test_semantic_tokens_unit.py

import numpy as np
import pytest

try:
    from latex_lsp.lsp.semantic_tokens import (
        SemanticToken,
        SemanticTokensLegend,
        decode_semantic_tokens,
        to_token_array,
    )
except ImportError as e:
    pytest.skip(
        f"Skipping semantic tokens unit tests due to import error: {e}",
        allow_module_level=True,
    )


@pytest.fixture
def legend():
    return SemanticTokensLegend.from_lsp(
        {"tokenTypes": ["macro", "keyword", "comment"], "tokenModifiers": ["deprecated", "readonly"]}
    )


def test_decode_relative_stream(legend):
    data = [
        0, 5, 3, 0, 0,  # line 0, char 5
        0, 4, 2, 1, 1,  # same line, char 9
        2, 1, 6, 2, 3,  # line 2, char 1
        0, 10, 1, 0, 2,  # same line, char 11
    ]

    tokens = decode_semantic_tokens(data, legend)

    assert tokens == [
        SemanticToken(line=1, column=6, length=3, token_type="macro"),
        SemanticToken(line=1, column=10, length=2, token_type="keyword", modifiers=("deprecated",)),
        SemanticToken(line=3, column=2, length=6, token_type="comment", modifiers=("deprecated", "readonly")),
        SemanticToken(line=3, column=12, length=1, token_type="macro", modifiers=("readonly",)),
    ]


def test_decode_first_token_on_later_line(legend):
    tokens = decode_semantic_tokens([3, 2, 1, 0, 0, 1, 7, 1, 0, 0], legend)
    assert [(t.line, t.column) for t in tokens] == [(4, 3), (5, 8)]


def test_decode_unknown_type_index_has_no_name(legend):
    [token] = decode_semantic_tokens([0, 0, 1, 9, 0], legend)
    assert token.token_type is None
    assert token.modifiers == ()


def test_decode_empty_stream(legend):
    assert decode_semantic_tokens([], legend) == []


def test_to_token_array_dtype():
    array = to_token_array([0, 1, 2, 3, 4])
    assert array.dtype == np.uint32
    assert array.shape == (5,)


@pytest.mark.parametrize("data", [[0, 1, 2], [0, 0, 1, -1, 0], [0, 0, 1, 0, "x"], [0, 0, 1, 0, True]])
def test_to_token_array_rejects_malformed(data):
    with pytest.raises(ValueError):
        to_token_array(data)


def test_legend_from_missing_capability():
    legend = SemanticTokensLegend.from_lsp(None)
    assert legend.token_types == ()
    assert legend.type_name(0) is None
