"""
Configuration management for the loader.

This module handles:
- Loading the YAML configuration file into typed dataclasses
- Parsing the table customization rules for target and staging tables
- Formatting the staging directory template for a given schema/table
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from datapump.errors import ConfigError

DEFAULT_CONFIG_FILE = "/etc/datapump/datapump.yaml"

# Ceiling on the wait between two batches, bounds worst-case staleness
DEFAULT_MAX_SECONDS_BETWEEN_BATCHES = 10 * 60

FAILURE_POLICIES = ("crash", "continue")


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Return an optional nested mapping of the configuration, {} if unset."""
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"configuration key {key!r} must be a mapping, got {type(value).__name__}")
    return value


@dataclass
class ColumnCustomization:
    """Override for a single column, keyed by its source name."""
    name: str | None = None  # New column name in the customized table
    type: str | None = None  # New SQL type in the customized table


@dataclass
class TableCustomization:
    """
    Customization rules applied on top of a table descriptor.

    Every field is optional; unset fields keep the descriptor's value.
    """
    schema: str | None = None
    table: str | None = None
    columns: dict[str, ColumnCustomization] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "TableCustomization":
        if not raw:
            return cls()

        columns = {}
        for source_name, cfg in (raw.get("columns") or {}).items():
            # Shorthand: COLUMN: BIGINT only overrides the type
            if isinstance(cfg, str):
                columns[source_name.upper()] = ColumnCustomization(type=cfg)
            else:
                columns[source_name.upper()] = ColumnCustomization(
                    name=cfg.get("name"),
                    type=cfg.get("type"),
                )

        return cls(
            schema=raw.get("schema"),
            table=raw.get("table"),
            columns=columns,
        )


@dataclass
class EngineConfig:
    """
    Query engine connection settings.

    Supports two backends:
    - duckdb: Local development, database is a file path (or :memory:)
    - bigquery: Production, tables live in project.dataset
    """
    backend: str = "duckdb"
    database: str = "datapump.duckdb"   # DuckDB database file
    project: str | None = None          # GCP project ID
    dataset: str | None = None          # BigQuery dataset used for unqualified names
    location: str | None = None         # BigQuery location


@dataclass
class QueryOverrides:
    """Operator-supplied literal queries, used verbatim instead of generated ones."""
    create_staging_table: str | None = None
    drop_staging_table: str | None = None
    insert_into: str | None = None
    create_target_table: str | None = None


@dataclass
class MetricsConfig:
    """Dynatrace metrics settings. Metrics are only pushed when endpoint is set."""
    endpoint: str = ""
    token_path: str = "/secrets/dynatrace-token"
    env: str = "dev"


@dataclass
class Config:
    """
    Loader configuration.

    Required keys are the definition file, the staging directory template
    and the control file. Everything else has a default.
    """
    definition_file: str        # YAML definition of the source table
    staging_directory: str      # Template, e.g. "/stage/{schema}/{table}"
    control_file: str           # Control file written by the replication tool

    target: TableCustomization = field(default_factory=TableCustomization)
    staging: TableCustomization = field(default_factory=TableCustomization)
    engine: EngineConfig = field(default_factory=EngineConfig)
    filesystem: str = "local"   # Staging filesystem backend, "local" or "gcs"
    queries: QueryOverrides = field(default_factory=QueryOverrides)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    seconds_between_batches: float = 30
    max_seconds_between_batches: float = DEFAULT_MAX_SECONDS_BETWEEN_BATCHES
    on_batch_failure: str = "crash"  # "crash" or "continue"
    data_delimiter: str = ","

    @classmethod
    def from_file(cls, path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Example:

            definition_file: /etc/datapump/tables/orders.yaml
            staging_directory: /user/loader/staging/{schema}/{table}
            control_file: /data/ogg/dirdat/orders.ctl
            seconds_between_batches: 60
            target:
              schema: analytics
              columns:
                ORDER_ID: BIGINT
            engine:
              backend: duckdb
              database: /data/warehouse.duckdb
        """
        config_path = Path(path)
        if not config_path.is_file():
            raise ConfigError(f"configuration file not found: {path}")

        try:
            raw = yaml.safe_load(config_path.read_text())
        except yaml.YAMLError as e:
            raise ConfigError(f"configuration file {path} is not valid YAML: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"configuration file {path} must contain a mapping")

        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Config":
        """Build a Config from an already parsed mapping."""
        missing = [
            key for key in ("definition_file", "staging_directory", "control_file")
            if not raw.get(key)
        ]
        if missing:
            raise ConfigError(f"missing required configuration keys: {', '.join(missing)}")

        engine_raw = _section(raw, "engine")
        queries_raw = _section(raw, "queries")
        metrics_raw = _section(raw, "metrics")
        filesystem_raw = _section(raw, "filesystem")

        config = cls(
            definition_file=raw["definition_file"],
            staging_directory=raw["staging_directory"],
            control_file=raw["control_file"],
            target=TableCustomization.from_dict(_section(raw, "target")),
            staging=TableCustomization.from_dict(_section(raw, "staging")),
            engine=EngineConfig(
                backend=engine_raw.get("backend", "duckdb"),
                database=engine_raw.get("database", "datapump.duckdb"),
                project=engine_raw.get("project"),
                dataset=engine_raw.get("dataset"),
                location=engine_raw.get("location"),
            ),
            filesystem=filesystem_raw.get("backend", "local"),
            # Empty strings count as "not overridden"
            queries=QueryOverrides(
                create_staging_table=queries_raw.get("create_staging_table") or None,
                drop_staging_table=queries_raw.get("drop_staging_table") or None,
                insert_into=queries_raw.get("insert_into") or None,
                create_target_table=queries_raw.get("create_target_table") or None,
            ),
            metrics=MetricsConfig(
                endpoint=metrics_raw.get("endpoint", ""),
                token_path=metrics_raw.get("token_path", "/secrets/dynatrace-token"),
                env=metrics_raw.get("env", os.environ.get("ENV", "dev")),
            ),
            seconds_between_batches=float(raw.get("seconds_between_batches", 30)),
            max_seconds_between_batches=float(
                raw.get("max_seconds_between_batches", DEFAULT_MAX_SECONDS_BETWEEN_BATCHES)
            ),
            on_batch_failure=raw.get("on_batch_failure", "crash"),
            data_delimiter=raw.get("data_delimiter", ","),
        )

        if config.on_batch_failure not in FAILURE_POLICIES:
            raise ConfigError(
                f"on_batch_failure must be one of {FAILURE_POLICIES}, got {config.on_batch_failure!r}"
            )
        if config.seconds_between_batches < 0 or config.max_seconds_between_batches <= 0:
            raise ConfigError("batch intervals must be positive")

        return config

    def staging_directory_for(self, schema: str, table: str) -> str:
        """Format the staging directory template for a schema/table pair."""
        return self.staging_directory.format(schema=schema, table=table)

