import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum

from ch_workbench import events as ev
from ch_workbench.client import CHClient
from ch_workbench.config import AppSettings, ConfigStore, ConnectionConfig
from ch_workbench.connection import Connection
from ch_workbench.errors import (
    ImportValidationError,
    NoActiveConnection,
    QueryAborted,
    QueryError,
    QueryInFlight,
    TransportError,
    UnknownLabel,
)
from ch_workbench.events import EventBus
from ch_workbench.history import (
    OUTCOME_ABORTED,
    OUTCOME_ERROR,
    OUTCOME_OK,
    HistoryRecord,
    QueryHistory,
)
from ch_workbench.limits import LimitPolicy, make_limit_policy
from ch_workbench.logging_config import get_logger
from ch_workbench.notifications import LanguageServerSender, NotificationChannel

logger = get_logger(__name__)

# Fields that identify the endpoint; changing any of them invalidates a live connection
_ENDPOINT_FIELDS = ("host", "port", "user", "password", "protocol", "secure")

_LIMIT_KEYS = ("LIMIT_QUERY_KIND", "LIMIT_QUERY_ROWS", "LIMIT_QUERY_BYTES")


class QueryMode(Enum):
    CONSOLE = "Console"
    GRID = "Grid"
    VIRTUALIZATION = "Virtualization"


@dataclass
class QueryResult:
    label: str
    query: str
    columns: list[str]
    rows: list[dict] = field(default_factory=list)
    total_rows: int = 0
    elapsed: float = 0.0
    truncated: bool = False


def _same_endpoint(a: ConnectionConfig, b: ConnectionConfig) -> bool:
    return all(getattr(a, f) == getattr(b, f) for f in _ENDPOINT_FIELDS)


class ConnectionManager:
    """Owns the configured endpoints, their live connections and the active one.

    Construct it with a ConfigStore and AppSettings (or use from_env), call
    start() once the event loop runs and close() on shutdown. Every
    operation that touches the network is a coroutine.
    """

    def __init__(
        self,
        store: ConfigStore,
        settings: AppSettings,
        history: QueryHistory | None = None,
        notifier: NotificationChannel | None = None,
        transport_factory=CHClient,
        io_bound=None,
        limit_policy: LimitPolicy | None = None,
    ):
        self._store = store
        self._settings = settings
        if history is None:
            history = QueryHistory(
                db_path=settings.get("HISTORY_DB_PATH"),
                max_entries=settings.get_int("HISTORY_MAX_ENTRIES", 0),
            )
        self.history = history
        self.notifier = notifier or NotificationChannel()
        self.events = EventBus()
        self._transport_factory = transport_factory
        self._io_bound = io_bound
        self._connections: dict[str, Connection] = {}
        self._active_label: str | None = None
        self.query_mode = QueryMode.CONSOLE
        self.set_query_mode(settings.get("QUERY_MODE"))
        self.limit_query_enabled = settings.get_bool("LIMIT_QUERY_ENABLED")
        self.limit_policy = limit_policy or make_limit_policy(settings)
        self.abort_timeout = settings.get_float("ABORT_TIMEOUT", 5.0)
        self._closed = False

    @classmethod
    def from_env(cls, env_path: str = ".env", **kwargs) -> "ConnectionManager":
        settings = AppSettings(env_path)
        if "notifier" not in kwargs and settings.get("ANALYZER_COMMAND"):
            kwargs["notifier"] = NotificationChannel(
                LanguageServerSender(settings.get("ANALYZER_COMMAND"))
            )
        return cls(ConfigStore(env_path), settings, **kwargs)

    async def start(self):
        self.notifier.notify_scope_change(*self._settings.scope)
        await self.notifier.start()
        logger.info("Connection manager started (%d configs, mode=%s)",
                    len(self.configs), self.query_mode.value)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._active_label = None
        for label in list(self._connections):
            await self._connections.pop(label).close()
        await self.notifier.close()
        self.history.close()
        self.events.clear()
        logger.info("Connection manager closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # ── State ──

    @property
    def configs(self) -> list[ConnectionConfig]:
        return self._store.list_configs()

    @property
    def connections(self) -> dict[str, Connection]:
        return dict(self._connections)

    @property
    def active_label(self) -> str | None:
        return self._active_label

    @property
    def active_connection(self) -> Connection | None:
        if self._active_label is None:
            return None
        return self._connections[self._active_label]

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def status_text(self) -> str:
        limit = f"limit {self.limit_policy.describe()}" if self.limit_query_enabled else "no limit"
        conn = self.active_connection
        if conn is None:
            return f"Disconnected | {self.query_mode.value} | {limit}"
        return f"{conn.label} ({conn.status.value}) | {self.query_mode.value} | {limit}"

    def _set_active(self, label: str | None):
        if label == self._active_label:
            return
        self._active_label = label
        logger.info("Active connection: %s", label or "(none)")
        self.events.emit(ev.ACTIVE_CONNECTION_CHANGED, label=label)

    # ── Connect / query ──

    async def connect(self, label: str, initial_query: str | None = None) -> QueryResult | None:
        cfg = self._store.get(label)
        if cfg is None:
            raise UnknownLabel(label)

        conn = self._connections.get(label)
        if conn is None:
            cfg = replace(cfg, ca_cert=self._settings.get("CA_CERT"))
            conn = Connection(cfg, self._transport_factory, io_bound=self._io_bound)
            self._connections[label] = conn
        await conn.open()
        self._set_active(label)

        if initial_query:
            return await self.sync(initial_query)
        return None

    async def disconnect(self, label: str | None = None) -> bool:
        label = label or self._active_label
        if label is None:
            raise NoActiveConnection()
        if label not in self._connections:
            return False
        await self._drop_connection(label)
        return True

    async def _drop_connection(self, label: str):
        if self._active_label == label:
            self._set_active(None)
        conn = self._connections.pop(label, None)
        if conn is not None:
            await conn.close()
            logger.info("Connection to %s closed", label)

    async def sync(self, query: str) -> QueryResult:
        conn = self.active_connection
        if conn is None:
            raise NoActiveConnection()
        if conn.is_querying:
            raise QueryInFlight(conn.label)

        label = conn.label
        start = time.monotonic()
        try:
            columns, rows, elapsed = await conn.run(
                query,
                on_start=lambda: self.events.emit(ev.QUERY_STARTED, label=label, query=query),
            )
        except QueryAborted:
            self.history.append(label, query, OUTCOME_ABORTED, elapsed=time.monotonic() - start)
            self.events.emit(ev.QUERY_ABORTED, label=label, query=query)
            raise
        except (QueryError, TransportError) as e:
            self.history.append(label, query, OUTCOME_ERROR, error=str(e),
                                elapsed=time.monotonic() - start)
            self.events.emit(ev.QUERY_FINISHED, label=label, query=query, result=None, error=str(e))
            raise

        total = len(rows)
        truncated = False
        if self.limit_query_enabled:
            rows, truncated = self.limit_policy.apply(rows)
        self.history.append(label, query, OUTCOME_OK, elapsed=elapsed)
        result = QueryResult(label, query, columns, rows, total, elapsed, truncated)
        self.events.emit(ev.QUERY_FINISHED, label=label, query=query, result=result, error=None)
        return result

    async def abort_query(self) -> bool:
        conn = self.active_connection
        if conn is None or not conn.is_querying:
            return False
        return await conn.abort(self.abort_timeout)

    async def rerun(self, record: HistoryRecord) -> QueryResult | None:
        conn = self.active_connection
        if record.label == self._active_label and conn is not None and conn.is_open:
            return await self.sync(record.query)
        return await self.connect(record.label, record.query)

    async def replay(self, index: int) -> QueryResult | None:
        return await self.rerun(self.history.get(index))

    async def preview_table(self, table: str) -> QueryResult:
        limit = self._settings.get_int("PREVIEW_QUERY_LIMIT", 100)
        quoted = ".".join(f"`{part.replace('`', '')}`" for part in table.split("."))
        return await self.sync(f"SELECT * FROM {quoted} LIMIT {limit}")

    # ── Modes ──

    def toggle_limit_query(self) -> bool:
        self.limit_query_enabled = not self.limit_query_enabled
        logger.info("Limit query %s", "enabled" if self.limit_query_enabled else "disabled")
        self.events.emit(ev.LIMIT_QUERY_CHANGED, enabled=self.limit_query_enabled)
        return self.limit_query_enabled

    def set_query_mode(self, mode):
        if isinstance(mode, QueryMode):
            new_mode = mode
        else:
            try:
                new_mode = QueryMode(str(mode).strip().capitalize())
            except ValueError:
                # May come from stale persisted settings, keep the current mode
                logger.warning("Ignoring unknown query mode: %r", mode)
                return
        if new_mode is self.query_mode:
            return
        self.query_mode = new_mode
        logger.info("Query mode: %s", new_mode.value)
        self.events.emit(ev.QUERY_MODE_CHANGED, mode=new_mode)

    def apply_setting(self, key: str, value):
        """Persist a setting and propagate it to the running manager."""
        scope_changed = self._settings.set(key, value)
        if key == "QUERY_MODE":
            self.set_query_mode(value)
        elif key == "LIMIT_QUERY_ENABLED":
            enabled = self._settings.get_bool(key)
            if enabled != self.limit_query_enabled:
                self.toggle_limit_query()
        elif key in _LIMIT_KEYS:
            self.limit_policy = make_limit_policy(self._settings)
        elif key == "ABORT_TIMEOUT":
            self.abort_timeout = self._settings.get_float(key, 5.0)
        if scope_changed:
            self.notifier.notify_scope_change(*self._settings.scope)

    def send_server_cache(self, code):
        self.notifier.send_raw_code(code)

    # ── Configuration ──

    async def add_cfg(self, cfg: ConnectionConfig) -> bool:
        """Add cfg, or atomically replace the config carrying the same label."""
        cfg = ConnectionConfig.from_dict(cfg.to_dict())
        old = self._store.get(cfg.label)
        replaced = self._store.upsert(cfg)
        if old is not None and not _same_endpoint(old, cfg):
            await self._drop_connection(cfg.label)
        self.events.emit(ev.CONFIGS_CHANGED, labels=self._store.labels())
        return replaced

    async def update_cfg(self, old_label: str, cfg: ConnectionConfig):
        cfg = ConnectionConfig.from_dict(cfg.to_dict())
        old = self._store.get(old_label)
        self._store.update(old_label, cfg)
        if old is not None and (old_label != cfg.label or not _same_endpoint(old, cfg)):
            await self._drop_connection(old_label)
        self.events.emit(ev.CONFIGS_CHANGED, labels=self._store.labels())

    async def remove_cfg(self, label: str):
        self._store.delete(label)
        await self._drop_connection(label)
        self.events.emit(ev.CONFIGS_CHANGED, labels=self._store.labels())

    def export_cfg(self, path: str) -> int:
        configs = self.configs
        with open(path, "w") as f:
            json.dump([cfg.to_dict() for cfg in configs], f, indent=2)
        logger.info("Exported %d connection(s) to %s", len(configs), path)
        return len(configs)

    async def import_cfg(self, path: str, overwrite: bool = False) -> int:
        """Merge connections from an exported JSON file.

        Within the file a later record wins over an earlier one with the same
        label. Labels that already exist are rejected unless overwrite is set.
        Nothing is applied unless the whole file validates.
        """
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ImportValidationError(f"Cannot read {path}: {e}") from e
        if not isinstance(data, list):
            raise ImportValidationError(f"{path}: expected a list of connections")

        incoming: dict[str, ConnectionConfig] = {}
        for i, item in enumerate(data):
            try:
                cfg = ConnectionConfig.from_dict(item)
            except ValueError as e:
                raise ImportValidationError(f"{path}: record {i}: {e}") from e
            if cfg.label in incoming:
                logger.info("Import: '%s' appears more than once, keeping the last", cfg.label)
            incoming[cfg.label] = cfg

        existing = {cfg.label: cfg for cfg in self.configs}
        clashes = sorted(set(incoming) & set(existing))
        if clashes and not overwrite:
            raise ImportValidationError(f"Labels already configured: {', '.join(clashes)}")

        merged = [incoming.get(label, cfg) for label, cfg in existing.items()]
        merged += [cfg for label, cfg in incoming.items() if label not in existing]
        self._store.replace_all(merged)
        for label in clashes:
            if not _same_endpoint(existing[label], incoming[label]):
                await self._drop_connection(label)
        logger.info("Imported %d connection(s) from %s", len(incoming), path)
        self.events.emit(ev.CONFIGS_CHANGED, labels=self._store.labels())
        return len(incoming)
