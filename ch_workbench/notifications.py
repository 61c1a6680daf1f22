"""Fire-and-forget notifications to the external analysis process.

The analyzer is a language server started over stdio; we only ever send it
JSON-RPC notifications and never wait for an answer.
"""

import shlex

from pygls.client import JsonRPCClient

from ch_workbench.logging_config import get_logger

logger = get_logger(__name__)

SCOPE_METHOD = "$/analyze-source-code"
RAW_CODE_METHOD = "$/analyze-server-cache"


class LanguageServerSender:
    """Starts the analyzer command and writes notifications to it."""

    def __init__(self, command: str):
        self._argv = shlex.split(command)
        if not self._argv:
            raise ValueError("empty analyzer command")
        self._client: JsonRPCClient | None = None

    async def start(self):
        self._client = JsonRPCClient()
        await self._client.start_io(*self._argv)
        logger.info("Analyzer started: %s", self._argv[0])

    def send(self, method: str, params):
        if self._client is None:
            raise RuntimeError("analyzer not started")
        self._client.protocol.notify(method, params)

    async def stop(self):
        if self._client is not None:
            await self._client.stop()
            self._client = None
            logger.info("Analyzer stopped")


class NotificationChannel:
    """Keeps the analyzer informed of the source-file scope.

    Nothing is sent until the analyzer is ready; the latest scope is kept and
    flushed on ready, and sent again after every reconnect.
    """

    def __init__(self, sender=None):
        self._sender = sender
        self._ready = False
        self._scope: dict | None = None
        self._scope_sent = False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def last_scope(self) -> dict | None:
        return self._scope

    async def start(self):
        if self._sender is None:
            return
        start = getattr(self._sender, "start", None)
        if start is not None:
            try:
                await start()
            except Exception as e:
                logger.warning("Analyzer failed to start: %s", e)
                return
        self.mark_ready()

    def mark_ready(self):
        self._ready = True
        self._scope_sent = False
        if self._scope is not None:
            self._send_scope()

    def mark_lost(self):
        self._ready = False

    def notify_scope_change(self, globs_pattern: str, ignore_pattern: str):
        scope = {"globsPattern": globs_pattern, "ignorePattern": ignore_pattern}
        if scope == self._scope and self._scope_sent:
            return
        self._scope = scope
        self._scope_sent = False
        if self._ready:
            self._send_scope()

    def send_raw_code(self, code):
        if not self._ready:
            logger.debug("Analyzer not ready, dropping server cache payload")
            return
        self._send(RAW_CODE_METHOD, code)

    def _send_scope(self):
        self._scope_sent = self._send(SCOPE_METHOD, self._scope)

    def _send(self, method: str, params) -> bool:
        if self._sender is None:
            return False
        try:
            self._sender.send(method, params)
        except Exception as e:
            logger.warning("Notification %s not delivered: %s", method, e)
            return False
        logger.debug("Sent %s", method)
        return True

    async def close(self):
        self._ready = False
        stop = getattr(self._sender, "stop", None)
        if stop is not None:
            try:
                await stop()
            except Exception as e:
                logger.warning("Error stopping analyzer: %s", e)
