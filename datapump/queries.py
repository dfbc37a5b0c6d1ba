"""
SQL generation for the four statements the loader needs.

- create external table: staging table over the files in the staging directory
- drop table: removes the staging table
- insert into: copies staging rows into the target table, casting types
- create table: creates the target table

DuckDB has no external tables, so the staging table is a view over
read_csv() of the staging directory. BigQuery gets a real external table
over the GCS prefix.
"""

from datapump.descriptors import TableDescriptor
from datapump.engine import Query, QueryEngine

# Generic type -> BigQuery type. DuckDB understands the generic names as-is.
BIGQUERY_TYPES = {
    "BIGINT": "INT64",
    "INTEGER": "INT64",
    "INT": "INT64",
    "DOUBLE": "FLOAT64",
    "FLOAT": "FLOAT64",
    "BOOLEAN": "BOOL",
    "VARCHAR": "STRING",
    "DECIMAL": "NUMERIC",
}


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class QueryBuilder:
    """Generates loader statements in the SQL dialect of a query engine."""

    def __init__(self, engine: QueryEngine, delimiter: str = ","):
        if engine.dialect not in ("duckdb", "bigquery"):
            raise ValueError(f"unsupported SQL dialect: {engine.dialect}")
        self.engine = engine
        self.dialect = engine.dialect
        self.delimiter = delimiter

    def _table(self, descriptor: TableDescriptor) -> str:
        if self.dialect == "bigquery":
            return f"`{descriptor.schema}.{descriptor.table}`"
        return f'"{descriptor.schema}"."{descriptor.table}"'

    def _column(self, name: str) -> str:
        if self.dialect == "bigquery":
            return f"`{name}`"
        return f'"{name}"'

    def _type(self, sql_type: str) -> str:
        if self.dialect == "bigquery":
            base, paren, rest = sql_type.upper().partition("(")
            return BIGQUERY_TYPES.get(base.strip(), base.strip()) + paren + rest
        return sql_type

    def _column_list(self, descriptor: TableDescriptor) -> str:
        return ", ".join(
            f"{self._column(col.name)} {self._type(col.type)}"
            for col in descriptor.columns
        )

    def _create_schema(self, descriptor: TableDescriptor) -> str:
        return f'CREATE SCHEMA IF NOT EXISTS "{descriptor.schema}";\n'

    def create_external_table(self, staging: TableDescriptor, directory: str) -> Query:
        """Staging table reading every file in the staging directory."""
        files = directory.rstrip("/") + "/*"

        if self.dialect == "bigquery":
            sql = (
                f"CREATE EXTERNAL TABLE {self._table(staging)} ({self._column_list(staging)}) "
                f"OPTIONS (format = 'CSV', field_delimiter = {_quote_literal(self.delimiter)}, "
                f"uris = [{_quote_literal(files)}])"
            )
        else:
            columns = ", ".join(
                f"{_quote_literal(col.name)}: {_quote_literal(col.type)}"
                for col in staging.columns
            )
            sql = (
                self._create_schema(staging)
                + f"CREATE VIEW {self._table(staging)} AS SELECT * FROM read_csv("
                f"{_quote_literal(files)}, delim = {_quote_literal(self.delimiter)}, "
                f"header = false, columns = {{{columns}}})"
            )

        return Query(sql, self.engine)

    def drop_table(self, staging: TableDescriptor) -> Query:
        if self.dialect == "bigquery":
            sql = f"DROP EXTERNAL TABLE IF EXISTS {self._table(staging)}"
        else:
            sql = f"DROP VIEW IF EXISTS {self._table(staging)}"
        return Query(sql, self.engine)

    def insert_into(self, staging: TableDescriptor, target: TableDescriptor) -> Query:
        """
        Copy staging rows into the target table.

        Target columns are matched to staging columns by source column
        name; target columns without a staging counterpart are left out.
        """
        staging_columns = {col.source_name: col for col in staging.columns}

        names = []
        values = []
        for col in target.columns:
            source = staging_columns.get(col.source_name)
            if source is None:
                continue
            names.append(self._column(col.name))
            if self._type(col.type) == self._type(source.type):
                values.append(self._column(source.name))
            else:
                values.append(f"CAST({self._column(source.name)} AS {self._type(col.type)})")

        sql = (
            f"INSERT INTO {self._table(target)} ({', '.join(names)}) "
            f"SELECT {', '.join(values)} FROM {self._table(staging)}"
        )
        return Query(sql, self.engine)

    def create_table(self, target: TableDescriptor) -> Query:
        sql = f"CREATE TABLE {self._table(target)} ({self._column_list(target)})"
        if self.dialect == "duckdb":
            sql = self._create_schema(target) + sql
        return Query(sql, self.engine)
