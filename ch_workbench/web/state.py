"""In-memory application state for non-serializable objects."""

from ch_workbench.manager import ConnectionManager

# Created on app startup, closed on shutdown
manager: ConnectionManager | None = None
