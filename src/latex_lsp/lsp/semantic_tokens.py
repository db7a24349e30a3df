# File: latex_lsp/lsp/semantic_tokens.py

"""Semantic token handling for `textDocument/semanticTokens/full`.

The server encodes tokens as a flat integer array of 5-tuples
`(deltaLine, deltaStartChar, length, tokenType, tokenModifiers)`, where each
position is relative to the previous token (the start character is relative
only while the token stays on the same line). The raw array is kept as a
`uint32` numpy array for the editor, and `decode_semantic_tokens` turns it
into absolute, one-based tokens with named types and modifiers.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

TOKEN_FIELDS = 5
TOKEN_DTYPE = np.uint32


@dataclass(frozen=True)
class SemanticTokensLegend:
    """Names for the token type indices and modifier bits used by the server."""

    token_types: Tuple[str, ...] = ()
    token_modifiers: Tuple[str, ...] = ()

    @classmethod
    def from_lsp(cls, legend: Optional[Mapping[str, Any]]) -> "SemanticTokensLegend":
        legend = legend or {}
        return cls(
            token_types=tuple(legend.get("tokenTypes") or ()),
            token_modifiers=tuple(legend.get("tokenModifiers") or ()),
        )

    def type_name(self, index: int) -> Optional[str]:
        return self.token_types[index] if 0 <= index < len(self.token_types) else None

    def modifier_names(self, bitmask: int) -> Tuple[str, ...]:
        return tuple(name for bit, name in enumerate(self.token_modifiers) if bitmask & (1 << bit))


@dataclass(frozen=True)
class SemanticTokens:
    """The encoded token stream plus the legend needed to interpret it."""

    data: np.ndarray
    legend: SemanticTokensLegend
    result_id: Optional[str] = None

    def decode(self) -> List["SemanticToken"]:
        """Absolute, named tokens for this result."""
        return decode_semantic_tokens(self.data, self.legend)


@dataclass(frozen=True)
class SemanticToken:
    """One decoded token in one-based editor coordinates."""

    line: int
    column: int
    length: int
    token_type: Optional[str]
    modifiers: Tuple[str, ...] = ()


def to_token_array(data: Iterable[int]) -> np.ndarray:
    """Validates the raw integer stream and returns it as a `uint32` array.

    Raises:
        ValueError: If the data is not a flat sequence of non-negative
            integers whose length is a multiple of five.
    """
    values = list(data)
    if any(isinstance(v, bool) or not isinstance(v, (int, np.integer)) or v < 0 for v in values):
        raise ValueError("Semantic token data must be non-negative integers.")
    array = np.asarray(values, dtype=TOKEN_DTYPE)
    if array.ndim != 1 or array.size % TOKEN_FIELDS:
        raise ValueError(
            f"Semantic token data length {array.size} is not a multiple of {TOKEN_FIELDS}."
        )
    return array


def decode_semantic_tokens(
    data: Sequence[int], legend: SemanticTokensLegend
) -> List[SemanticToken]:
    """Decodes the relative token stream into absolute tokens.

    Args:
        data: The `data` array from a SemanticTokens result.
        legend: The legend advertised by the server's capability.

    Returns:
        List[SemanticToken]: Tokens in stream order with one-based positions.
    """
    array = to_token_array(data).astype(np.int64).reshape(-1, TOKEN_FIELDS)
    if array.shape[0] == 0:
        return []

    delta_line, delta_start, length, type_index, modifiers = array.T
    lines = np.cumsum(delta_line)
    running_start = np.cumsum(delta_start)

    # Start characters restart on every token that moves to a new line.
    indices = np.arange(array.shape[0])
    line_heads = np.maximum.accumulate(np.where(delta_line != 0, indices, 0))
    columns = running_start - (running_start[line_heads] - delta_start[line_heads])

    return [
        SemanticToken(
            line=int(lines[i]) + 1,
            column=int(columns[i]) + 1,
            length=int(length[i]),
            token_type=legend.type_name(int(type_index[i])),
            modifiers=legend.modifier_names(int(modifiers[i])),
        )
        for i in range(array.shape[0])
    ]
