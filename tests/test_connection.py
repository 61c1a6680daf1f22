import asyncio
import threading

import pytest

from ch_workbench.config import ConnectionConfig
from ch_workbench.connection import Connection, ConnectionStatus
from ch_workbench.errors import QueryAborted, QueryError, QueryInFlight, TransportError

from conftest import wait_until


@pytest.fixture
def conn(servers):
    conn = Connection(ConnectionConfig(label="dev1", host="host1"), servers)
    yield conn
    for transport in servers.created:
        transport.release()


@pytest.fixture
def transport(conn, servers):
    return servers.transports["dev1"]


@pytest.mark.asyncio
class TestConnectionLifecycle:
    async def test_starts_disconnected(self, conn):
        assert conn.status is ConnectionStatus.DISCONNECTED
        assert not conn.is_open

    async def test_open(self, conn, transport):
        await conn.open()
        assert conn.status is ConnectionStatus.CONNECTED
        assert transport.connected

    async def test_open_twice_is_noop(self, conn, transport):
        await conn.open()
        transport.connect_error = OSError("should not dial again")
        await conn.open()
        assert conn.status is ConnectionStatus.CONNECTED

    async def test_open_failure(self, conn, transport):
        transport.connect_error = ConnectionRefusedError("refused")
        with pytest.raises(TransportError) as exc_info:
            await conn.open()
        assert exc_info.value.reason == "refused"
        assert conn.status is ConnectionStatus.FAILED
        assert conn.failure_reason == "refused"

    async def test_redial_recovers_from_failed(self, conn, transport):
        transport.connect_error = ConnectionRefusedError("refused")
        with pytest.raises(TransportError):
            await conn.open()
        transport.connect_error = None
        await conn.open()
        assert conn.status is ConnectionStatus.CONNECTED
        assert conn.failure_reason is None

    async def test_close(self, conn, transport):
        await conn.open()
        await conn.close()
        assert conn.status is ConnectionStatus.DISCONNECTED
        assert not transport.connected


@pytest.mark.asyncio
class TestConnectionRun:
    async def test_run(self, conn, transport):
        await conn.open()
        columns, rows, elapsed = await conn.run("SELECT 1")
        assert columns == ["query"]
        assert rows == [{"query": "SELECT 1"}]
        assert elapsed >= 0
        assert conn.status is ConnectionStatus.CONNECTED

    async def test_run_requires_open(self, conn):
        with pytest.raises(TransportError):
            await conn.run("SELECT 1")
        assert conn.status is ConnectionStatus.DISCONNECTED

    async def test_on_start_sees_querying(self, conn):
        await conn.open()
        seen = []
        await conn.run("SELECT 1", on_start=lambda: seen.append(conn.status))
        assert seen == [ConnectionStatus.QUERYING]

    async def test_second_query_rejected_while_first_in_flight(self, conn, transport):
        await conn.open()
        transport.hold()
        first = asyncio.create_task(conn.run("SELECT sleep(1)"))
        await wait_until(lambda: transport.started.is_set())

        with pytest.raises(QueryInFlight):
            await conn.run("SELECT 2")

        transport.release()
        columns, rows, _ = await first
        assert rows == [{"query": "SELECT sleep(1)"}]
        assert transport.queries == ["SELECT sleep(1)"]

    async def test_server_error_keeps_connection(self, conn, transport):
        await conn.open()
        transport.execute_error = QueryError("dev1", "Syntax error")
        with pytest.raises(QueryError):
            await conn.run("SELEC 1")
        assert conn.status is ConnectionStatus.CONNECTED

    async def test_transport_error_fails_connection(self, conn, transport):
        await conn.open()
        transport.execute_error = EOFError("Unexpected EOF while reading bytes")
        with pytest.raises(TransportError):
            await conn.run("SELECT 1")
        assert conn.status is ConnectionStatus.FAILED
        with pytest.raises(TransportError):
            await conn.run("SELECT 1")


@pytest.mark.asyncio
class TestConnectionAbort:
    async def test_abort_without_query(self, conn):
        await conn.open()
        assert await conn.abort(timeout=0.1) is False

    async def test_abort_acknowledged(self, conn, transport):
        await conn.open()
        transport.hold()
        task = asyncio.create_task(conn.run("SELECT sleep(3)"))
        await wait_until(lambda: transport.started.is_set())

        assert await conn.abort(timeout=2) is True
        with pytest.raises(QueryAborted):
            await task
        assert len(transport.cancelled) == 1
        assert conn.status is ConnectionStatus.CONNECTED

    async def test_abort_times_out_and_resets(self, conn, transport):
        await conn.open()
        transport.hold()
        transport.kill_on_cancel = False
        task = asyncio.create_task(conn.run("SELECT sleep(3)"))
        await wait_until(lambda: transport.started.is_set())

        try:
            assert await conn.abort(timeout=0.1) is True
            with pytest.raises(QueryAborted):
                await task
            assert conn.status is ConnectionStatus.CONNECTED
        finally:
            transport.release()

    async def test_cancel_failure_is_not_raised(self, conn, transport):
        await conn.open()
        transport.hold()

        def broken_cancel(query_id):
            raise OSError("side connection refused")

        transport.cancel = broken_cancel
        task = asyncio.create_task(conn.run("SELECT sleep(3)"))
        await wait_until(lambda: transport.started.is_set())
        try:
            assert await conn.abort(timeout=0.1) is True
            with pytest.raises(QueryAborted):
                await task
        finally:
            transport.release()

    async def test_response_before_abort_wins(self, conn):
        await conn.open()
        _, rows, _ = await conn.run("SELECT 1")
        assert rows
        assert await conn.abort(timeout=0.1) is False
        assert conn.status is ConnectionStatus.CONNECTED


    async def test_forced_abort_swaps_in_a_fresh_transport(self, conn, transport, servers):
        await conn.open()
        transport.hold()
        transport.kill_on_cancel = False
        old = asyncio.create_task(conn.run("SELECT sleep(3)"))
        await wait_until(lambda: transport.started.is_set())

        assert await conn.abort(timeout=0.1) is True
        fresh = servers.transports["dev1"]
        assert fresh is not transport
        assert fresh.connected
        assert conn.status is ConnectionStatus.CONNECTED

        fresh.hold()
        second = asyncio.create_task(conn.run("SELECT 2"))
        await wait_until(lambda: fresh.started.is_set())
        with pytest.raises(QueryInFlight):
            await conn.run("SELECT 3")

        with pytest.raises(QueryAborted):
            await old
        # the abandoned run must not touch the state of the running one
        assert conn.status is ConnectionStatus.QUERYING

        fresh.release()
        _, rows, _ = await second
        assert rows == [{"query": "SELECT 2"}]
        assert conn.status is ConnectionStatus.CONNECTED

        await wait_until(lambda: not transport.connected)
        assert transport.queries == ["SELECT sleep(3)"]
        assert fresh.queries == ["SELECT 2"]
        assert transport.max_running == 1
        assert fresh.max_running == 1

    async def test_abort_targets_query_started_after_forced_abort(self, conn, transport, servers):
        await conn.open()
        transport.hold()
        transport.kill_on_cancel = False
        old = asyncio.create_task(conn.run("SELECT sleep(3)"))
        await wait_until(lambda: transport.started.is_set())
        await conn.abort(timeout=0.1)

        fresh = servers.transports["dev1"]
        fresh.hold()
        second = asyncio.create_task(conn.run("SELECT sleep(4)"))
        await wait_until(lambda: fresh.started.is_set())

        assert await conn.abort(timeout=2) is True
        with pytest.raises(QueryAborted):
            await second
        with pytest.raises(QueryAborted):
            await old
        assert len(fresh.cancelled) == 1
        assert servers.transports["dev1"] is fresh
        assert conn.status is ConnectionStatus.CONNECTED

    async def test_failed_redial_after_forced_abort(self, conn, transport, servers):
        await conn.open()
        transport.hold()
        transport.kill_on_cancel = False
        servers.connect_errors["dev1"] = ConnectionRefusedError("refused")
        task = asyncio.create_task(conn.run("SELECT sleep(3)"))
        await wait_until(lambda: transport.started.is_set())

        assert await conn.abort(timeout=0.1) is True
        with pytest.raises(QueryAborted):
            await task
        assert conn.status is ConnectionStatus.FAILED

        servers.transports["dev1"].connect_error = None
        await conn.open()
        assert conn.status is ConnectionStatus.CONNECTED

    async def test_abort_shares_one_deadline(self, conn, transport):
        await conn.open()
        transport.hold()
        stuck = threading.Event()
        transport.cancel = lambda query_id: stuck.wait(5)
        task = asyncio.create_task(conn.run("SELECT sleep(3)"))
        await wait_until(lambda: transport.started.is_set())

        loop = asyncio.get_running_loop()
        try:
            started = loop.time()
            assert await conn.abort(timeout=0.5) is True
            assert loop.time() - started < 0.9
            with pytest.raises(QueryAborted):
                await task
        finally:
            stuck.set()
