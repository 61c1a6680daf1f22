import asyncio
import time
from enum import Enum

from ch_workbench.client import new_query_id
from ch_workbench.config import ConnectionConfig
from ch_workbench.errors import QueryAborted, QueryError, QueryInFlight, TransportError
from ch_workbench.logging_config import get_logger

logger = get_logger(__name__)


class ConnectionStatus(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    QUERYING = "Querying"
    FAILED = "Failed"


class _QueryRun:
    """One query's id, transport, in-flight call and abort flag."""

    def __init__(self, transport):
        self.query_id = new_query_id()
        self.transport = transport
        self.future: asyncio.Future | None = None
        self.aborted = False


class Connection:
    """One endpoint's live transport plus its status state machine.

    Disconnected -> Connecting -> Connected <-> Querying, any state -> Failed
    on a transport error; only open() leaves Failed. At most one query is in
    flight at a time.

    Transports are blocking (CHClient or a test double) and are built by
    transport_factory; their calls go through io_bound so they run off the
    event loop. A transport left busy by an abandoned query is discarded and
    replaced with a freshly dialled one.
    """

    def __init__(self, config: ConnectionConfig, transport_factory, io_bound=None):
        self.config = config
        self._transport_factory = transport_factory
        self._transport = transport_factory(config)
        self._io_bound = io_bound or asyncio.to_thread
        self.status = ConnectionStatus.DISCONNECTED
        self.failure_reason: str | None = None
        self._open_lock = asyncio.Lock()
        self._run: _QueryRun | None = None
        self._discards: set[asyncio.Future] = set()

    @property
    def label(self) -> str:
        return self.config.label

    @property
    def is_open(self) -> bool:
        return self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.QUERYING)

    @property
    def is_querying(self) -> bool:
        return self.status is ConnectionStatus.QUERYING

    def _set_status(self, status: ConnectionStatus, reason: str | None = None):
        if status is not self.status:
            logger.debug("%s: %s -> %s", self.label, self.status.value, status.value)
        self.status = status
        self.failure_reason = reason

    def _fail(self, exc: Exception) -> TransportError:
        reason = str(exc) or type(exc).__name__
        self._set_status(ConnectionStatus.FAILED, reason)
        logger.error("%s failed: %s", self.label, reason)
        return TransportError(self.label, reason)

    async def open(self):
        async with self._open_lock:
            if self.is_open:
                return
            await self._dial()

    async def _dial(self):
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            await self._io_bound(self._transport.connect)
        except Exception as e:
            raise self._fail(e) from e
        self._set_status(ConnectionStatus.CONNECTED)

    async def run(self, query: str, on_start=None) -> tuple[list[str], list[dict], float]:
        """Execute query and return (columns, rows, elapsed seconds).

        Raises QueryInFlight if another query is running, QueryAborted if
        abort() won the race against the response, QueryError for a
        server-side rejection and TransportError when the link breaks.
        """
        if self.status is ConnectionStatus.QUERYING:
            raise QueryInFlight(self.label)
        if self.status is not ConnectionStatus.CONNECTED:
            raise TransportError(self.label, f"not connected ({self.status.value})")

        current = _QueryRun(self._transport)
        self._run = current
        self._set_status(ConnectionStatus.QUERYING)
        if on_start is not None:
            on_start()
        start = time.monotonic()
        current.future = asyncio.ensure_future(
            self._io_bound(current.transport.execute, query, current.query_id)
        )
        try:
            columns, rows = await current.future
        except asyncio.CancelledError:
            if not current.aborted:
                raise
            raise QueryAborted(self.label) from None
        except QueryError:
            if current.aborted:
                raise QueryAborted(self.label) from None
            raise
        except Exception as e:
            if current.aborted:
                raise QueryAborted(self.label) from e
            raise self._fail(e) from e
        finally:
            self._release(current)

        # The response arrived, but an abort landed first: discard it
        if current.aborted:
            raise QueryAborted(self.label)
        return columns, rows, time.monotonic() - start

    def _release(self, current: _QueryRun):
        # A later query may own the connection by now; leave its state alone
        if self._run is not current:
            return
        self._run = None
        if self.status is ConnectionStatus.QUERYING:
            self._set_status(ConnectionStatus.CONNECTED)

    async def abort(self, timeout: float) -> bool:
        """Best-effort cancel of the running query. Returns False if none was running.

        The server is asked to kill the query. If the in-flight call has not
        returned within timeout seconds it is abandoned: its transport is
        closed in the background and a fresh one is dialled in its place.
        """
        current = self._run
        if self.status is not ConnectionStatus.QUERYING or current is None or current.future is None:
            return False
        current.aborted = True
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            await asyncio.wait_for(
                self._io_bound(current.transport.cancel, current.query_id), timeout
            )
        except Exception as e:
            logger.warning("Cancel request on %s failed: %s", self.label, e)

        remaining = max(deadline - loop.time(), 0)
        done, _ = await asyncio.wait({current.future}, timeout=remaining)
        if done:
            self._release(current)
        else:
            logger.warning("%s: no response %.1fs after cancel, discarding query", self.label, timeout)
            current.future.cancel()
            if self._run is current:
                self._run = None
                await self._replace_transport()
        logger.info("Query aborted on %s", self.label)
        return True

    async def _replace_transport(self):
        async with self._open_lock:
            stale = self._transport
            self._transport = self._transport_factory(self.config)
            task = asyncio.ensure_future(self._discard(stale))
            self._discards.add(task)
            task.add_done_callback(self._discards.discard)
            try:
                await self._dial()
            except TransportError:
                # Already logged and marked Failed; connect() re-dials
                return

    async def _discard(self, transport):
        try:
            await self._io_bound(transport.disconnect)
        except Exception as e:
            logger.warning("Error while discarding transport of %s: %s", self.label, e)

    async def close(self):
        if self._run is not None:
            self._run.aborted = True
            if self._run.future is not None:
                self._run.future.cancel()
            self._run = None
        if self._transport.connected:
            try:
                await self._io_bound(self._transport.disconnect)
            except Exception as e:
                logger.warning("Error while disconnecting %s: %s", self.label, e)
        if self._discards:
            await asyncio.gather(*self._discards)
        self._set_status(ConnectionStatus.DISCONNECTED)
