import os
import re
import threading
from dataclasses import asdict, dataclass, fields

from dotenv import dotenv_values, set_key

from ch_workbench.errors import DuplicateLabel, UnknownLabel
from ch_workbench.logging_config import get_logger

logger = get_logger(__name__)

CONN_PREFIX = "CLICKHOUSE_CONNECTION_"
CONN_PATTERN = re.compile(r"^CLICKHOUSE_CONNECTION_(\d+)_(.+)$")
PROTOCOLS = ("native", "http")

_TRUE_VALUES = ("1", "true", "yes", "on")


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _quote(value) -> str:
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


@dataclass
class ConnectionConfig:
    label: str
    host: str
    port: int = 9000
    user: str = "default"
    password: str = ""
    tags: str = ""
    protocol: str = "native"
    secure: bool = False
    # Injected from the global CA_CERT setting, never persisted per connection
    ca_cert: str = ""

    @property
    def tag_list(self) -> list[str]:
        return [t.strip() for t in self.tags.split(",") if t.strip()]

    @property
    def credentials(self) -> tuple[str, str] | None:
        if not self.user and not self.password:
            return None
        return self.user, self.password

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("ca_cert")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ConnectionConfig":
        """Build a config from an exported record, validating every field.

        Raises ValueError on a malformed record.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        known = {f.name for f in fields(cls)} - {"ca_cert"}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown fields: {', '.join(sorted(unknown))}")
        label = str(data.get("label") or "").strip()
        host = str(data.get("host") or "").strip()
        if not label or not host:
            raise ValueError("'label' and 'host' are required")
        try:
            port = int(data.get("port", 9000))
        except (TypeError, ValueError):
            raise ValueError(f"invalid port for '{label}': {data.get('port')!r}") from None
        if not 0 < port < 65536:
            raise ValueError(f"port out of range for '{label}': {port}")
        protocol = str(data.get("protocol") or "native")
        if protocol not in PROTOCOLS:
            raise ValueError(f"invalid protocol for '{label}': {protocol!r}")
        return cls(
            label=label,
            host=host,
            port=port,
            user=str(data.get("user", "default") or ""),
            password=str(data.get("password") or ""),
            tags=str(data.get("tags") or ""),
            protocol=protocol,
            secure=_parse_bool(data.get("secure", False)),
        )


class ConfigStore:
    """Ordered set of ConnectionConfig persisted as indexed keys in a .env file."""

    def __init__(self, env_path: str = ".env"):
        self._env_path = env_path
        self._lock = threading.Lock()
        self._configs: dict[int, ConnectionConfig] = {}
        self._load()

    def _load(self):
        self._configs.clear()
        if not os.path.exists(self._env_path):
            return

        values = dotenv_values(self._env_path, interpolate=False)
        indices: dict[int, dict[str, str]] = {}

        for key, val in values.items():
            m = CONN_PATTERN.match(key)
            if m:
                idx = int(m.group(1))
                field_name = m.group(2)
                indices.setdefault(idx, {})[field_name] = val or ""

        for idx in sorted(indices):
            data = indices[idx]
            if "LABEL" not in data or "HOST" not in data:
                continue
            if any(c.label == data["LABEL"] for c in self._configs.values()):
                logger.warning("Skipping duplicate connection label in %s: %s",
                               self._env_path, data["LABEL"])
                continue
            self._configs[idx] = ConnectionConfig(
                label=data.get("LABEL", ""),
                host=data.get("HOST", "localhost"),
                port=int(data.get("PORT", "9000")),
                user=data.get("USER", "default"),
                password=data.get("PASSWORD", ""),
                tags=data.get("TAGS", ""),
                protocol=data.get("PROTOCOL", "native"),
                secure=_parse_bool(data.get("SECURE", "false")),
            )
        logger.info("Loaded %d connection(s) from %s", len(self._configs), self._env_path)

    def list_configs(self) -> list[ConnectionConfig]:
        with self._lock:
            return [self._configs[k] for k in sorted(self._configs)]

    def labels(self) -> list[str]:
        return [cfg.label for cfg in self.list_configs()]

    def get(self, label: str) -> ConnectionConfig | None:
        with self._lock:
            return self._find(label)[1]

    def _find(self, label: str) -> tuple[int | None, ConnectionConfig | None]:
        for idx, cfg in self._configs.items():
            if cfg.label == label:
                return idx, cfg
        return None, None

    def upsert(self, cfg: ConnectionConfig) -> bool:
        """Add cfg or replace the config with the same label. Returns True on replace."""
        with self._lock:
            idx, _ = self._find(cfg.label)
            replaced = idx is not None
            if idx is None:
                idx = max(self._configs.keys(), default=0) + 1
            self._configs[idx] = cfg
            self._persist()
        logger.info("%s connection: %s", "Replaced" if replaced else "Added", cfg.label)
        return replaced

    def update(self, old_label: str, cfg: ConnectionConfig):
        with self._lock:
            idx, _ = self._find(old_label)
            if idx is None:
                raise UnknownLabel(old_label)
            other_idx, _ = self._find(cfg.label)
            if other_idx is not None and other_idx != idx:
                raise DuplicateLabel(cfg.label)
            self._configs[idx] = cfg
            self._persist()
        logger.info("Updated connection: %s -> %s", old_label, cfg.label)

    def delete(self, label: str):
        with self._lock:
            idx, _ = self._find(label)
            if idx is None:
                raise UnknownLabel(label)
            del self._configs[idx]
            self._persist()
        logger.info("Deleted connection: %s", label)

    def replace_all(self, configs: list[ConnectionConfig]):
        """Swap in a complete, already validated configuration set."""
        with self._lock:
            self._configs = {i: cfg for i, cfg in enumerate(configs, start=1)}
            self._persist()
        logger.info("Replaced configuration set (%d connections)", len(configs))

    def _persist(self):
        # Read existing non-CLICKHOUSE lines
        other_lines = []
        if os.path.exists(self._env_path):
            with open(self._env_path, "r") as f:
                for line in f:
                    stripped = line.strip()
                    if stripped and not stripped.startswith("#") and CONN_PATTERN.match(stripped.split("=")[0]):
                        continue
                    other_lines.append(line)

        # Reindex connections starting from 1
        self._configs = {
            new_idx: self._configs[k]
            for new_idx, k in enumerate(sorted(self._configs), start=1)
        }

        with open(self._env_path, "w") as f:
            for line in other_lines:
                f.write(line if line.endswith("\n") else line + "\n")

            for idx, cfg in sorted(self._configs.items()):
                prefix = f"{CONN_PREFIX}{idx}_"
                f.write(f"{prefix}LABEL={_quote(cfg.label)}\n")
                f.write(f"{prefix}HOST={_quote(cfg.host)}\n")
                f.write(f"{prefix}PORT={cfg.port}\n")
                f.write(f"{prefix}USER={_quote(cfg.user)}\n")
                f.write(f"{prefix}PASSWORD={_quote(cfg.password)}\n")
                f.write(f"{prefix}TAGS={_quote(cfg.tags)}\n")
                f.write(f"{prefix}PROTOCOL={cfg.protocol}\n")
                f.write(f"{prefix}SECURE={'true' if cfg.secure else 'false'}\n")


SETTINGS_DEFAULTS = {
    "QUERY_MODE": "Console",
    "LIMIT_QUERY_ENABLED": "true",
    "LIMIT_QUERY_KIND": "rows",
    "LIMIT_QUERY_ROWS": "1000",
    "LIMIT_QUERY_BYTES": "1048576",
    "ABORT_TIMEOUT": "5.0",
    "HISTORY_DB_PATH": ":memory:",
    "HISTORY_MAX_ENTRIES": "0",
    "SOURCE_GLOBS_PATTERN": "**/*.sql",
    "SOURCE_IGNORE_PATTERN": "",
    "ANALYZER_COMMAND": "",
    "CA_CERT": "",
    "PREVIEW_QUERY_LIMIT": "100",
}

SCOPE_KEYS = ("SOURCE_GLOBS_PATTERN", "SOURCE_IGNORE_PATTERN")


class AppSettings:
    """Application settings from the .env file; process environment wins."""

    def __init__(self, env_path: str = ".env", environ=None):
        self._env_path = env_path
        self._environ = os.environ if environ is None else environ
        self._values: dict[str, str] = {}
        self.reload()

    def reload(self):
        self._values = dict(SETTINGS_DEFAULTS)
        if os.path.exists(self._env_path):
            for key, val in dotenv_values(self._env_path, interpolate=False).items():
                if key in SETTINGS_DEFAULTS and val is not None:
                    self._values[key] = val
        for key in SETTINGS_DEFAULTS:
            if key in self._environ:
                self._values[key] = self._environ[key]

    def get(self, key: str) -> str:
        return self._values.get(key, SETTINGS_DEFAULTS.get(key, ""))

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get(key))
        except ValueError:
            logger.warning("Invalid integer for %s: %r, using %d", key, self.get(key), default)
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        try:
            return float(self.get(key))
        except ValueError:
            logger.warning("Invalid number for %s: %r, using %s", key, self.get(key), default)
            return default

    def get_bool(self, key: str) -> bool:
        return _parse_bool(self.get(key))

    @property
    def scope(self) -> tuple[str, str]:
        return self.get("SOURCE_GLOBS_PATTERN"), self.get("SOURCE_IGNORE_PATTERN")

    def set(self, key: str, value) -> bool:
        """Persist a setting to the .env file.

        Returns True when the change affects the source-file analysis scope.
        """
        if key not in SETTINGS_DEFAULTS:
            raise KeyError(key)
        value = str(value)
        changed = self._values.get(key) != value
        self._values[key] = value
        if not os.path.exists(self._env_path):
            open(self._env_path, "a").close()
        set_key(self._env_path, key, value)
        logger.info("Setting %s updated", key)
        return changed and key in SCOPE_KEYS
