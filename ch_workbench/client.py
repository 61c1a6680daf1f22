import time
import uuid

from clickhouse_driver import Client as NativeClient
import clickhouse_connect
from clickhouse_connect.driver.exceptions import DatabaseError as HttpDatabaseError
from clickhouse_connect.driver.exceptions import OperationalError as HttpOperationalError
from clickhouse_driver.errors import ServerException

from ch_workbench.config import ConnectionConfig
from ch_workbench.errors import QueryError
from ch_workbench.logging_config import get_logger

logger = get_logger(__name__)

CONNECT_TIMEOUT = 10
SEND_RECEIVE_TIMEOUT = 300


def new_query_id() -> str:
    return uuid.uuid4().hex


class CHClient:
    """Blocking ClickHouse transport for one endpoint (native or HTTP protocol)."""

    def __init__(self, config: ConnectionConfig):
        self._config = config
        self._native_client: NativeClient | None = None
        self._http_client = None  # clickhouse_connect client

    @property
    def _use_http(self) -> bool:
        return self._config.protocol == "http"

    def connect(self):
        logger.info(
            "Connecting to %s:%s (protocol=%s, secure=%s) ...",
            self._config.host, self._config.port,
            self._config.protocol, self._config.secure,
        )
        if self._use_http:
            self._http_client = self._connect_http()
        else:
            self._native_client = self._connect_native()
        logger.info("Connected to ClickHouse at %s:%s", self._config.host, self._config.port)

    def _log_params(self, kwargs: dict, label: str):
        """Log connection parameters with password masked."""
        safe = dict(kwargs)
        if "password" in safe:
            safe["password"] = "***" if safe["password"] else "(empty)"
        logger.debug("%s params: %s", label, safe)

    def _connect_native(self) -> NativeClient:
        kwargs = dict(
            host=self._config.host,
            port=self._config.port,
            user=self._config.user,
            password=self._config.password,
            connect_timeout=CONNECT_TIMEOUT,
            send_receive_timeout=SEND_RECEIVE_TIMEOUT,
        )
        if self._config.secure:
            kwargs["secure"] = True
            if self._config.ca_cert:
                kwargs["ca_certs"] = self._config.ca_cert
        self._log_params(kwargs, "Native connection")
        client = NativeClient(**kwargs)
        client.execute("SELECT 1")
        return client

    def _connect_http(self):
        kwargs = dict(
            host=self._config.host,
            port=self._config.port,
            username=self._config.user,
            password=self._config.password,
            connect_timeout=CONNECT_TIMEOUT,
            send_receive_timeout=SEND_RECEIVE_TIMEOUT,
        )
        if self._config.secure:
            kwargs["secure"] = True
            if self._config.ca_cert:
                kwargs["verify"] = True
                kwargs["ca_cert"] = self._config.ca_cert
            else:
                kwargs["verify"] = False
        self._log_params(kwargs, "HTTP connection")
        client = clickhouse_connect.get_client(**kwargs)
        client.query("SELECT 1")
        return client

    def disconnect(self):
        if self._native_client:
            self._native_client.disconnect()
            self._native_client = None
        if self._http_client:
            self._http_client.close()
            self._http_client = None
        logger.info("Disconnected from %s:%s", self._config.host, self._config.port)

    @property
    def connected(self) -> bool:
        return self._native_client is not None or self._http_client is not None

    def execute(self, query: str, query_id: str) -> tuple[list[str], list[dict]]:
        """Run query to completion and return (column names, rows as dicts).

        Errors reported by the server are raised as QueryError; anything else
        (network, protocol) propagates as-is.
        """
        if not self.connected:
            raise RuntimeError("Not connected to ClickHouse")
        logger.debug("Executing [%s]: %.200s", query_id, query.strip())
        start = time.monotonic()
        try:
            if self._http_client:
                col_names, data = self._execute_http(query, query_id)
            else:
                col_names, data = self._execute_native(query, query_id)
        except HttpOperationalError:
            raise
        except (ServerException, HttpDatabaseError) as e:
            raise QueryError(self._config.label, str(e).strip()) from e
        rows = [dict(zip(col_names, row)) for row in data]
        logger.debug("Query OK [%s]: %.2fs, %d rows", query_id, time.monotonic() - start, len(rows))
        return col_names, rows

    def _execute_native(self, query: str, query_id: str):
        data, columns = self._native_client.execute(
            query, with_column_types=True, query_id=query_id,
        )
        return [c[0] for c in columns], data

    def _execute_http(self, query: str, query_id: str):
        result = self._http_client.query(query, settings={"query_id": query_id})
        return list(result.column_names), result.result_rows

    def cancel(self, query_id: str):
        """Ask the server to kill query_id.

        The running client is blocked on its socket, so the KILL goes through
        a short-lived side connection.
        """
        logger.info("Cancelling query %s on %s", query_id, self._config.label)
        kill = "KILL QUERY WHERE query_id = '%s' ASYNC" % query_id.replace("'", "")
        if self._use_http:
            side = self._connect_http()
            try:
                side.command(kill)
            finally:
                side.close()
        else:
            side = self._connect_native()
            try:
                side.execute(kill)
            finally:
                side.disconnect()
