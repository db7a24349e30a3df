# File: latex_lsp/lsp/session.py

"""Session controller for the LaTeX language server.

An `LspSession` is the single owner of all protocol state for one workspace:
the RPC client (pending requests and dedupe map), the per-document version
counters, the negotiated server capabilities, the registered feature
providers and the process supervisor. All of it is created by a successful
handshake and discarded together on stop or when the server process dies;
after an automatic restart the handshake runs again from scratch.

Typical use from an editor integration:

    session = LspSession(on_status_change=show_status, on_diagnostics=set_markers)
    await session.start("/path/to/project")
    session.did_open("/path/to/project/main.tex", text)
    hover = session.provider("hover")
    if hover:
        result = await hover.provide_hover("/path/to/project/main.tex", EditorPosition(3, 7))
    await session.stop()
"""

import asyncio
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

from latex_lsp.config.loader import get_lsp_settings
from latex_lsp.lsp.diagnostics import Diagnostic, DiagnosticsSink
from latex_lsp.lsp.protocol import (
    DocumentSymbolNode,
    build_client_capabilities,
    has_capability,
    language_id_for,
    path_to_uri,
)
from latex_lsp.lsp.providers import CAPABILITY_PROVIDERS, DocumentSymbolProvider, FeatureProvider
from latex_lsp.lsp.rpc import (
    ClientStoppedError,
    LspRequestError,
    RpcClient,
    ServerUnresponsiveError,
)
from latex_lsp.lsp.supervisor import (
    ProcessSupervisor,
    ServerProcessState,
    StatusCallback,
    resolve_server_command,
)

logger = logging.getLogger(__name__)

PUBLISH_DIAGNOSTICS = "textDocument/publishDiagnostics"


class LspSession:
    """Drives the handshake, document sync and health checks for one server.

    Args:
        supervisor: Process owner to use. Built from the settings when None.
        config: Configuration shaped like `APP_CONFIG`; defaults to it.
        on_status_change: See attribute below.
        on_diagnostics: Called with `(uri, diagnostics)` on every change.

    Attributes:
        settings (Dict[str, Any]): Effective `lsp` settings (see config.yml).
        rpc (RpcClient): Request/response correlation for this session.
        supervisor (ProcessSupervisor): Owner of the server process.
        diagnostics (DiagnosticsSink): Current diagnostics per open document.
        capabilities (Dict[str, Any]): Capabilities from the last handshake.
        on_status_change (Optional[StatusCallback]): Receives every process
            state transition and session-level failures.
    """

    def __init__(
        self,
        supervisor: Optional[ProcessSupervisor] = None,
        config: Optional[Dict[str, Any]] = None,
        on_status_change: Optional[StatusCallback] = None,
        on_diagnostics: Optional[Callable[[str, List[Diagnostic]], None]] = None,
    ):
        self.settings = get_lsp_settings(config)
        self.rpc = RpcClient(
            send=self._send,
            on_notification=self._handle_notification,
            default_timeout=float(self.settings["request_timeout"]),
        )
        if supervisor is None:
            command = resolve_server_command(self.settings["server_path"], self.settings["bundled_bin_dir"])
            supervisor = ProcessSupervisor(
                [command],
                max_restarts=int(self.settings["max_restarts"]),
                restart_delays=[float(d) for d in self.settings["restart_delays"]],
            )
        self.supervisor = supervisor
        self.supervisor.on_message = self.rpc.handle_message
        self.supervisor.on_status_change = self._on_process_status
        self.on_status_change = on_status_change

        self._versions: Dict[str, int] = {}
        self.diagnostics = DiagnosticsSink(open_documents=lambda: list(self._versions), on_change=on_diagnostics)
        self.capabilities: Dict[str, Any] = {}
        self._providers: Dict[str, FeatureProvider] = {}
        self._initialized = False
        self._active = False
        self._needs_handshake = False
        self._workspace_root: Optional[str] = None
        self._health_task: Optional[asyncio.Task] = None
        self._handshake_task: Optional[asyncio.Task] = None

    # --- State ---

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def workspace_root(self) -> Optional[str]:
        return self._workspace_root

    @property
    def open_documents(self) -> List[str]:
        return list(self._versions)

    def document_version(self, file_path: str) -> Optional[int]:
        return self._versions.get(path_to_uri(file_path))

    def provider(self, feature: str) -> Optional[FeatureProvider]:
        """Returns the registered provider for `feature` (e.g. "hover"), if any."""
        return self._providers.get(feature)

    @property
    def features(self) -> List[str]:
        return list(self._providers)

    # --- Lifecycle ---

    async def start(self, workspace_root: str) -> bool:
        """Starts the server for `workspace_root` and performs the handshake.

        Returns:
            bool: True once providers are registered. False if the client is
            disabled, the server could not be spawned, or the handshake failed.
            Failures are reported through `on_status_change`, never raised.
        """
        if not self.settings.get("enabled", True):
            logger.info("Language server disabled by configuration; not starting.")
            return False
        if self._active:
            await self.stop()

        self._active = True
        self._workspace_root = workspace_root
        await self.supervisor.start(workspace_root)
        self._start_health_loop()
        if self.supervisor.state is not ServerProcessState.RUNNING:
            logger.warning("Language server did not start; waiting for automatic restart.")
            return False
        return await self._handshake()

    async def restart(self) -> bool:
        """Stops and starts the session again for the same workspace."""
        workspace_root = self._workspace_root
        if workspace_root is None:
            logger.warning("Cannot restart language server session: it was never started.")
            return False
        await self.stop()
        return await self.start(workspace_root)

    async def initialize(self, workspace_root: str) -> Dict[str, Any]:
        """Performs the `initialize` / `initialized` handshake.

        Returns:
            Dict[str, Any]: The server capabilities.

        Raises:
            LspRequestError: If the server rejects or does not answer the
                `initialize` request.
        """
        logger.info("Sending LSP initialize request.")
        root_uri = path_to_uri(workspace_root)
        params = {
            "processId": os.getpid(),
            "clientInfo": {"name": "latex-lsp"},
            "rootUri": root_uri,
            "capabilities": build_client_capabilities(),
        }
        result = await self.rpc.request(
            "initialize", params, timeout=float(self.settings["initialize_timeout"])
        )
        capabilities = (result or {}).get("capabilities") if isinstance(result, dict) else None
        self.capabilities = dict(capabilities or {})
        self.rpc.notify("initialized", {})
        self._initialized = True
        logger.info(f"LSP handshake complete. Server capabilities: {sorted(self.capabilities)}")
        return self.capabilities

    async def stop(self) -> None:
        """Shuts the server down and discards all protocol state."""
        self._active = False
        self._needs_handshake = False
        await self._cancel_task(self._health_task)
        self._health_task = None
        await self._cancel_task(self._handshake_task)
        self._handshake_task = None

        if self._initialized:
            try:
                await self.rpc.request("shutdown", None, timeout=float(self.settings["shutdown_timeout"]))
            except LspRequestError as e:
                logger.warning(f"Error during LSP shutdown request (proceeding to exit): {e}")
            self.rpc.notify("exit", None)

        self._reset_protocol_state("Language server session stopped")
        await self.supervisor.stop()

    # --- Document sync ---

    def did_open(self, file_path: str, text: str) -> None:
        if not self._initialized:
            return
        uri = path_to_uri(file_path)
        version = self._bump_version(uri)
        self.rpc.notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": uri,
                    "languageId": language_id_for(file_path),
                    "version": version,
                    "text": text,
                }
            },
        )

    def did_change(self, file_path: str, text: str) -> None:
        """Sends the full new text of a document (whole-document sync)."""
        if not self._initialized:
            return
        uri = path_to_uri(file_path)
        version = self._bump_version(uri)
        self.rpc.notify(
            "textDocument/didChange",
            {"textDocument": {"uri": uri, "version": version}, "contentChanges": [{"text": text}]},
        )

    def did_save(self, file_path: str) -> None:
        if not self._initialized:
            return
        self.rpc.notify("textDocument/didSave", {"textDocument": {"uri": path_to_uri(file_path)}})

    def did_close(self, file_path: str) -> None:
        if not self._initialized:
            return
        uri = path_to_uri(file_path)
        self._versions.pop(uri, None)
        self.rpc.notify("textDocument/didClose", {"textDocument": {"uri": uri}})
        self.diagnostics.clear(uri)

    async def document_symbols(self, file_path: str) -> List[DocumentSymbolNode]:
        """Outline tree for a document; empty when the server cannot provide one."""
        return await DocumentSymbolProvider(self).provide_document_symbols(file_path)

    # --- Health ---

    def check_health(self, now: Optional[float] = None) -> bool:
        """Gives up on the server if it has gone silent on a pending request.

        The server counts as unresponsive when some request has been pending
        for more than twice the health check interval and no response has
        arrived from the server within that window. Notifications such as
        diagnostics do not count as progress. Every pending request
        is then rejected with `ServerUnresponsiveError`. Restarting is left to
        the caller.

        Returns:
            bool: False if pending requests were rejected, True otherwise.
        """
        threshold = 2 * float(self.settings["health_check_interval"])
        current = time.monotonic() if now is None else now
        age = self.rpc.oldest_pending_age(current)
        if age is None or age <= threshold:
            return True
        last_seen = self.rpc.last_response_at
        if last_seen is not None and current - last_seen <= threshold:
            return True

        rejected = self.rpc.reject_all(
            lambda pending: ServerUnresponsiveError(
                f"No response from language server for {age:.0f}s",
                pending.method,
                pending.id,
            )
        )
        logger.error(f"Language server unresponsive; rejected {rejected} pending request(s).")
        return False

    def _start_health_loop(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop(), name="lsp_health_check")

    async def _health_loop(self) -> None:
        interval = float(self.settings["health_check_interval"])
        while True:
            await asyncio.sleep(interval)
            self.check_health()

    # --- Internals ---

    def _send(self, frame: bytes) -> None:
        self.supervisor.send(frame)

    def _bump_version(self, uri: str) -> int:
        version = self._versions.get(uri, 0) + 1
        self._versions[uri] = version
        return version

    def _handle_notification(self, method: str, params: Any) -> None:
        if method == PUBLISH_DIAGNOSTICS:
            self.diagnostics.publish(params)
        else:
            logger.debug(f"Ignoring unhandled notification: {method}")

    async def _handshake(self) -> bool:
        try:
            await self.initialize(self._workspace_root)
        except LspRequestError as e:
            logger.error(f"LSP initialization failed: {e}")
            self._emit_status(self.supervisor.state, f"LSP initialization failed: {e}")
            return False
        self._register_providers()
        return True

    def _register_providers(self) -> None:
        self._providers = {
            provider_cls.feature: provider_cls(self)
            for provider_cls in CAPABILITY_PROVIDERS
            if has_capability(self.capabilities, provider_cls.capability)
        }
        logger.info(f"Registered LSP features: {', '.join(self._providers) or '(none)'}")

    def _reset_protocol_state(self, reason: str) -> None:
        self._initialized = False
        self.rpc.reject_all(lambda pending: ClientStoppedError(reason, pending.method, pending.id))
        self.capabilities = {}
        self._providers = {}
        self._versions.clear()
        self.diagnostics.clear()

    def _on_process_status(self, state: ServerProcessState, error: Optional[str]) -> None:
        self._emit_status(state, error)
        if not self._active:
            return
        if state is ServerProcessState.ERROR:
            if self._initialized or self.rpc.pending_count:
                self._reset_protocol_state(error or "Language server process failed")
            self._needs_handshake = True
        elif state is ServerProcessState.RUNNING and self._needs_handshake:
            self._needs_handshake = False
            logger.info("Language server restarted; repeating handshake.")
            self._handshake_task = asyncio.create_task(self._handshake(), name="lsp_handshake")

    def _emit_status(self, state: ServerProcessState, error: Optional[str]) -> None:
        if self.on_status_change is None:
            return
        try:
            self.on_status_change(state, error)
        except Exception:
            logger.exception("Status callback raised; ignoring.")

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
