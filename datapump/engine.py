"""
Query engine clients for the loader.

Provides a unified interface for executing SQL against either DuckDB
(local development) or BigQuery (production).

Both implementations translate driver exceptions into QueryExecutionError,
and report "table already exists" as TableAlreadyExists so callers never
have to look inside error messages themselves.
"""

from typing import Protocol

import structlog

from datapump.config import EngineConfig
from datapump.errors import ConfigError, QueryExecutionError, TableAlreadyExists

log = structlog.get_logger()

# Fallback for drivers that don't give a structured signal
ALREADY_EXISTS_MARKER = "already exists"


def classify_error(error: Exception, query: str) -> QueryExecutionError:
    """Wrap a driver exception, matching the message only as a last resort."""
    message = str(error)
    if ALREADY_EXISTS_MARKER in message.lower():
        return TableAlreadyExists(message, query=query)
    return QueryExecutionError(message, query=query)


class QueryEngine(Protocol):
    """
    Protocol defining the query engine interface.

    dialect names the SQL flavour the QueryBuilder should generate.
    """

    dialect: str

    def execute(self, sql: str) -> None:
        """Execute a statement, raising QueryExecutionError on failure."""
        ...

    def close(self) -> None:
        """Release the connection."""
        ...


class DuckDBEngine:
    """
    DuckDB query engine.

    Used for local development. Staging tables are views over the data
    files in the staging directory.
    """

    dialect = "duckdb"

    def __init__(self, database: str):
        """
        Open the DuckDB connection.

        Args:
            database: Path to the DuckDB database file, or ":memory:"
        """
        import duckdb
        self.conn = duckdb.connect(database)

    def execute(self, sql: str) -> None:
        import duckdb

        try:
            self.conn.execute(sql)
        except duckdb.CatalogException as e:
            # DuckDB reports both "already exists" and "does not exist"
            # as catalog errors
            if ALREADY_EXISTS_MARKER in str(e):
                raise TableAlreadyExists(str(e), query=sql) from e
            raise QueryExecutionError(str(e), kind="catalog", query=sql) from e
        except duckdb.Error as e:
            raise classify_error(e, sql) from e

    def close(self) -> None:
        self.conn.close()


class BigQueryEngine:
    """
    BigQuery query engine.

    Used in production. Staging tables are external tables over the
    staging prefix in GCS.
    """

    dialect = "bigquery"

    def __init__(self, project: str, dataset: str, location: str | None = None):
        """
        Initialise the BigQuery client.

        Args:
            project: GCP project ID
            dataset: Dataset used to resolve unqualified table names
            location: BigQuery location, e.g. "europe-west2"
        """
        from google.cloud import bigquery

        self.client = bigquery.Client(project=project, location=location)
        self.default_dataset = f"{project}.{dataset}"

    def execute(self, sql: str) -> None:
        from google.api_core import exceptions as gcp_exceptions
        from google.cloud import bigquery

        job_config = bigquery.QueryJobConfig(default_dataset=self.default_dataset)
        try:
            # Wait for the job to complete (raises on error)
            self.client.query(sql, job_config=job_config).result()
        except gcp_exceptions.Conflict as e:
            raise TableAlreadyExists(str(e), query=sql) from e
        except gcp_exceptions.NotFound as e:
            raise QueryExecutionError(str(e), kind="not_found", query=sql) from e
        except gcp_exceptions.GoogleAPICallError as e:
            raise classify_error(e, sql) from e

    def close(self) -> None:
        self.client.close()


class Query:
    """An executable statement bound to a query engine connection."""

    def __init__(self, text: str, engine: QueryEngine):
        self.text = text
        self.engine = engine

    def execute(self) -> None:
        log.debug("query_executing", query=self.text)
        self.engine.execute(self.text)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"Query({self.text!r})"


def connect(config: EngineConfig) -> QueryEngine:
    """Open a connection to the configured query engine."""
    if config.backend == "bigquery":
        if not (config.project and config.dataset):
            raise ConfigError("bigquery backend requires engine.project and engine.dataset")
        engine = BigQueryEngine(config.project, config.dataset, config.location)
    elif config.backend == "duckdb":
        engine = DuckDBEngine(config.database)
    else:
        raise ConfigError(f"unknown engine backend: {config.backend}")

    log.info("query_engine_connected", backend=config.backend)
    return engine
