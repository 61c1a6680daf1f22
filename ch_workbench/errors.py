"""Errors raised at the ConnectionManager boundary.

All of them are recoverable: callers report them to the user and carry on.
"""


class WorkbenchError(Exception):
    pass


class UnknownLabel(WorkbenchError, LookupError):
    def __init__(self, label: str):
        super().__init__(f"Connection '{label}' not found")
        self.label = label


class DuplicateLabel(WorkbenchError, ValueError):
    def __init__(self, label: str):
        super().__init__(f"Connection '{label}' already exists")
        self.label = label


class NoActiveConnection(WorkbenchError):
    def __init__(self):
        super().__init__("No active connection, connect to a server first")


class QueryInFlight(WorkbenchError):
    def __init__(self, label: str):
        super().__init__(f"A query is already running on '{label}'")
        self.label = label


class TransportError(WorkbenchError):
    def __init__(self, label: str, reason: str):
        super().__init__(f"{label}: {reason}")
        self.label = label
        self.reason = reason


class QueryAborted(WorkbenchError):
    def __init__(self, label: str):
        super().__init__(f"Query on '{label}' was aborted")
        self.label = label


class ImportValidationError(WorkbenchError, ValueError):
    pass


class QueryError(WorkbenchError):
    """The server rejected a query; the connection itself is still usable."""

    def __init__(self, label: str, reason: str):
        super().__init__(f"{label}: {reason}")
        self.label = label
        self.reason = reason
