import asyncio
import threading

import pytest
import pytest_asyncio

from ch_workbench.config import AppSettings, ConfigStore, ConnectionConfig
from ch_workbench.errors import QueryError
from ch_workbench.history import QueryHistory
from ch_workbench.manager import ConnectionManager
from ch_workbench.notifications import NotificationChannel


class FakeTransport:
    """Stands in for CHClient; execute() can be held until released."""

    def __init__(self, config: ConnectionConfig):
        self.config = config
        self.connected = False
        self.queries: list[str] = []
        self.cancelled: list[str] = []
        self.connect_error: Exception | None = None
        self.execute_error: Exception | None = None
        self.rows: list[dict] | None = None
        self.gate: threading.Event | None = None
        self.kill_on_cancel = True
        self.started = threading.Event()
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def hold(self):
        self.gate = threading.Event()

    def release(self):
        if self.gate is not None:
            self.gate.set()

    def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    def disconnect(self):
        # Closing the socket ends whatever execute() is blocked on
        self.connected = False
        self.release()

    def execute(self, query: str, query_id: str):
        with self._lock:
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            return self._execute(query, query_id)
        finally:
            with self._lock:
                self.running -= 1

    def _execute(self, query: str, query_id: str):
        self.queries.append(query)
        self.started.set()
        killed = False
        if self.gate is not None:
            self.gate.wait(5)
            killed = query_id in self.cancelled
        if killed:
            raise QueryError(self.config.label, "Query was cancelled")
        if self.execute_error is not None:
            raise self.execute_error
        rows = self.rows if self.rows is not None else [{"query": query}]
        return list(rows[0]) if rows else [], rows

    def cancel(self, query_id: str):
        self.cancelled.append(query_id)
        if self.kill_on_cancel:
            self.release()


class FakeServers:
    """transport_factory that remembers the latest transport made for each label."""

    def __init__(self):
        self.transports: dict[str, FakeTransport] = {}
        self.created: list[FakeTransport] = []
        self.connect_errors: dict[str, Exception] = {}

    def __call__(self, config: ConnectionConfig) -> FakeTransport:
        transport = FakeTransport(config)
        transport.connect_error = self.connect_errors.get(config.label)
        self.transports[config.label] = transport
        self.created.append(transport)
        return transport


class RecordingSender:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, object]] = []
        self.fail = fail
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    def send(self, method, params):
        if self.fail:
            raise BrokenPipeError("analyzer gone")
        self.sent.append((method, params))

    async def stop(self):
        self.stopped = True


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def env_file(tmp_path):
    return str(tmp_path / ".env")


@pytest.fixture
def store(env_file):
    store = ConfigStore(env_path=env_file)
    store.upsert(ConnectionConfig(label="dev1", host="host1", tags="dev,quant"))
    store.upsert(ConnectionConfig(label="dev2", host="host2", port=9440, secure=True))
    return store


@pytest.fixture
def settings(env_file):
    return AppSettings(env_path=env_file, environ={})


@pytest.fixture
def servers():
    return FakeServers()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest_asyncio.fixture
async def manager(store, settings, servers, sender):
    mgr = ConnectionManager(
        store,
        settings,
        history=QueryHistory(),
        notifier=NotificationChannel(sender),
        transport_factory=servers,
    )
    yield mgr
    for transport in servers.created:
        transport.release()
    await mgr.close()
