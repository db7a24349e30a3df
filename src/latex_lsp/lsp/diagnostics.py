# File: latex_lsp/lsp/diagnostics.py

"""Maps `textDocument/publishDiagnostics` notifications to per-document markers.

The server pushes the complete diagnostic set for a document every time it
re-analyses it, so each notification replaces whatever was stored for that
document. Nothing is merged.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from latex_lsp.lsp.protocol import EditorRange, from_lsp_range, uri_to_path

logger = logging.getLogger(__name__)

DEFAULT_DIAGNOSTIC_SOURCE = "texlab"


class DiagnosticSeverity(enum.Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    HINT = "hint"

    @classmethod
    def from_lsp(cls, severity: Optional[int]) -> "DiagnosticSeverity":
        """Maps the LSP severity number; anything other than 1-3 becomes HINT."""
        if severity == 1:
            return cls.ERROR
        if severity == 2:
            return cls.WARNING
        if severity == 3:
            return cls.INFO
        return cls.HINT


@dataclass(frozen=True)
class Diagnostic:
    """A problem marker for one document, in one-based editor coordinates."""

    uri: str
    range: EditorRange
    severity: DiagnosticSeverity
    message: str
    source: str = DEFAULT_DIAGNOSTIC_SOURCE


def parse_diagnostics(uri: str, entries: Iterable[Mapping[str, Any]]) -> List[Diagnostic]:
    """Converts raw LSP diagnostic objects for `uri`.

    Raises:
        KeyError, TypeError, ValueError: If any entry is malformed.
    """
    return [
        Diagnostic(
            uri=uri,
            range=from_lsp_range(entry["range"]),
            severity=DiagnosticSeverity.from_lsp(entry.get("severity")),
            message=str(entry["message"]),
            source=entry.get("source") or DEFAULT_DIAGNOSTIC_SOURCE,
        )
        for entry in entries
    ]


class DiagnosticsSink:
    """Holds the current diagnostics of every open document.

    Args:
        open_documents: Returns the URIs of the documents currently open in the
            editor. Diagnostics for anything else are ignored.
        on_change: Called with `(uri, diagnostics)` after a document's set is
            replaced or cleared.
    """

    def __init__(
        self,
        open_documents: Callable[[], Iterable[str]],
        on_change: Optional[Callable[[str, List[Diagnostic]], None]] = None,
    ):
        self._open_documents = open_documents
        self.on_change = on_change
        self._by_uri: Dict[str, List[Diagnostic]] = {}

    def resolve_document(self, uri: str) -> Optional[str]:
        """Finds the open document a server URI refers to.

        An exact URI match wins. Otherwise the file paths are compared by
        suffix in both directions, which absorbs differences in how the server
        and the editor spell the same file (drive letter case, percent
        encoding, relative roots).
        """
        documents = list(self._open_documents())
        if uri in documents:
            return uri
        file_path = uri_to_path(uri)
        if not file_path:
            return None
        for document_uri in documents:
            document_path = uri_to_path(document_uri)
            if not document_path:
                continue
            if document_path.endswith(file_path) or file_path.endswith(document_path):
                return document_uri
        return None

    def publish(self, params: Any) -> bool:
        """Applies one `publishDiagnostics` notification.

        Returns:
            bool: True if a document's diagnostics were replaced. False if the
            notification was malformed or named no open document; in both
            cases stored diagnostics are left untouched.
        """
        try:
            uri = params["uri"]
            document_uri = self.resolve_document(uri)
            if document_uri is None:
                logger.debug(f"Ignoring diagnostics for unopened document {uri}")
                return False
            diagnostics = parse_diagnostics(document_uri, params.get("diagnostics") or [])
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Dropping malformed publishDiagnostics notification: {e}")
            return False

        self._by_uri[document_uri] = diagnostics
        logger.debug(f"Stored {len(diagnostics)} diagnostics for {document_uri}")
        self._notify(document_uri, diagnostics)
        return True

    def get(self, uri: str) -> List[Diagnostic]:
        return list(self._by_uri.get(uri, []))

    def all(self) -> Dict[str, List[Diagnostic]]:
        return {uri: list(diags) for uri, diags in self._by_uri.items()}

    def clear(self, uri: Optional[str] = None) -> None:
        """Forgets the diagnostics of one document, or of all documents."""
        uris = [uri] if uri is not None else list(self._by_uri)
        for target in uris:
            if self._by_uri.pop(target, None) is not None:
                self._notify(target, [])

    def _notify(self, uri: str, diagnostics: List[Diagnostic]) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(uri, list(diagnostics))
        except Exception:
            logger.exception("Diagnostics change callback raised; ignoring.")
