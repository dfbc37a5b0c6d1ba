"""Error kinds raised by the loader.

Startup errors (config, staging, query) abort the process. Inside the
batch loop everything is funnelled into BatchFailure so the failure
policy can decide between crashing and carrying on.
"""


class LoaderError(Exception):
    """Base class for all loader errors."""


class ConfigError(LoaderError):
    """Configuration file is missing, unreadable or incomplete."""


class StagingConflict(LoaderError):
    """The staging directory already exists and must be removed by an operator."""

    def __init__(self, path: str) -> None:
        super().__init__(f"the staging directory ({path}) must be removed")
        self.path = path


class StagingUnavailable(LoaderError):
    """The staging directory could not be created or deleted."""


class QueryExecutionError(LoaderError):
    """A query failed in the query engine.

    `kind` is a short machine-readable tag ("already_exists", "not_found",
    "error") so callers don't have to inspect the message text.
    """

    def __init__(self, message: str, kind: str = "error", query: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.query = query


class TableAlreadyExists(QueryExecutionError):
    """Raised when a CREATE TABLE targets a table that already exists."""

    def __init__(self, message: str, query: str | None = None) -> None:
        super().__init__(message, kind="already_exists", query=query)


class BatchFailure(LoaderError):
    """A batch (or the control-file check preceding it) failed."""

    def __init__(self, message: str, control_file: str | None = None) -> None:
        super().__init__(message)
        self.control_file = control_file
