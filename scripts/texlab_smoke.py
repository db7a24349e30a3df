# File: scripts/texlab_smoke.py

"""Manual smoke test against a real TexLab binary.

Starts a session in a temporary workspace, opens a small document, prints the
outline, a hover, completions, semantic tokens and diagnostics, then shuts
everything down.

Usage:
    python scripts/texlab_smoke.py [path/to/texlab]
"""

import asyncio
import logging
import os
import sys
import tempfile

# --- Load Environment Variables ---
from dotenv import load_dotenv

if not load_dotenv():
    print("Note: no .env file found; using config.yml and process environment only.", file=sys.stderr)

# --- Add src to path to allow imports ---
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
src_dir = os.path.join(project_root, "src")
if src_dir not in sys.path:
    sys.path.insert(0, src_dir)
# --- End Path Setup ---

# --- Module Imports ---
try:
    from latex_lsp.config.loader import APP_CONFIG
    from latex_lsp.lsp.protocol import EditorPosition
    from latex_lsp.lsp.session import LspSession
except ImportError as e:
    print(f"Error importing project modules: {e}")
    print("Ensure the script is run from the project root or the package is installed.")
    sys.exit(1)

logging.basicConfig(
    level=os.environ.get("LOGLEVEL", "INFO").upper(),
    format="%(asctime)s - %(levelname)s - [%(name)s] %(message)s",
)
logger = logging.getLogger("texlab_smoke")

SAMPLE_DOCUMENT = r"""\documentclass{article}
\usepackage{amsmath}
\begin{document}
\section{Introduction}\label{sec:intro}
See Section~\ref{sec:intro} and \ref{sec:missing}.
\subsection{Motivation}
\begin{equation}
  e^{i\pi} + 1 = 0
\end{equation}
\end{document}
"""


def print_outline(nodes, indent=0):
    for node in nodes:
        print(f"{'  ' * indent}- {node.name} (lines {node.range.start_line}-{node.range.end_line})")
        print_outline(node.children, indent + 1)


async def main(server_path=None) -> int:
    config = dict(APP_CONFIG)
    if server_path:
        config["lsp"] = dict(config.get("lsp") or {}, server_path=server_path)

    def on_status(state, error):
        print(f"[status] {state.value}{': ' + error if error else ''}")

    def on_diagnostics(uri, diagnostics):
        print(f"[diagnostics] {uri}: {len(diagnostics)}")
        for d in diagnostics:
            print(f"    {d.severity.value} {d.range.start_line}:{d.range.start_column} {d.message}")

    session = LspSession(config=config, on_status_change=on_status, on_diagnostics=on_diagnostics)
    with tempfile.TemporaryDirectory(prefix="texlab_smoke_") as workspace:
        document = os.path.join(workspace, "main.tex")
        with open(document, "w", encoding="utf-8") as f:
            f.write(SAMPLE_DOCUMENT)

        if not await session.start(workspace):
            logger.error("Session did not start.")
            await session.stop()
            return 1

        try:
            print(f"Features: {', '.join(session.features)}")
            session.did_open(document, SAMPLE_DOCUMENT)

            print("\n--- Outline ---")
            print_outline(await session.document_symbols(document))

            hover = session.provider("hover")
            if hover:
                result = await hover.provide_hover(document, EditorPosition(2, 14))
                print("\n--- Hover on amsmath ---")
                print("\n".join(result.contents) if result else "(none)")

            completion = session.provider("completion")
            if completion:
                items = await completion.provide_completion_items(document, EditorPosition(5, 10))
                print(f"\n--- Completions ({len(items)}) ---")
                for item in items[:10]:
                    print(f"  {item.label} [{item.kind}]")

            semantic = session.provider("semantic_tokens")
            if semantic:
                tokens = await semantic.provide_semantic_tokens(document)
                decoded = tokens.decode() if tokens else []
                print(f"\n--- Semantic tokens ({len(decoded)}) ---")
                for token in decoded[:10]:
                    modifiers = f" {','.join(token.modifiers)}" if token.modifiers else ""
                    print(f"  {token.line}:{token.column} len={token.length} {token.token_type}{modifiers}")

            # Give the server time to publish diagnostics.
            await asyncio.sleep(2.0)
        finally:
            await session.stop()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None)))
