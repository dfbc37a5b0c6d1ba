"""
Table descriptors for the source, target and staging tables.

The source descriptor comes from a YAML definition file exported from the
replicated database. The target descriptor is a customized clone of it,
and the staging descriptor is a text-only shape over the raw data files.

Definition file format:

    schema: SALES
    table: ORDERS
    columns:
      - name: ORDER_ID
        type: NUMBER(10,0)
      - name: CUSTOMER
        type: VARCHAR2(100)
      - name: CREATED_AT
        type: DATE
"""

import copy
import re
from dataclasses import dataclass, field
from pathlib import Path

import structlog
import yaml

from datapump.config import TableCustomization
from datapump.errors import ConfigError

log = structlog.get_logger()

STAGING_TABLE_SUFFIX = "_staging"

# Staging files are delimited text, every column is loaded as a string
STAGING_COLUMN_TYPE = "STRING"

_NUMBER_RE = re.compile(r"^NUMBER\s*\(\s*\d+\s*(?:,\s*(-?\d+)\s*)?\)$")


def map_source_type(source_type: str) -> str:
    """
    Map a replicated database column type to a generic SQL type.

    Integral NUMBER(p) / NUMBER(p,0) become BIGINT, other numbers DOUBLE,
    dates and timestamps TIMESTAMP. Anything unrecognised is kept as STRING
    so no data is lost on load.
    """
    normalized = source_type.strip().upper()

    match = _NUMBER_RE.match(normalized)
    if match:
        scale = match.group(1)
        return "BIGINT" if scale is None or int(scale) == 0 else "DOUBLE"

    base = normalized.split("(")[0].strip()
    if base in ("NUMBER", "FLOAT", "BINARY_FLOAT", "BINARY_DOUBLE", "DOUBLE"):
        return "DOUBLE"
    if base in ("INTEGER", "INT", "SMALLINT", "BIGINT"):
        return "BIGINT"
    if base == "DATE" or base.startswith("TIMESTAMP"):
        return "TIMESTAMP"
    if base in ("BOOLEAN", "BOOL"):
        return "BOOLEAN"
    return "STRING"


@dataclass
class ColumnDefinition:
    """A column in a table descriptor."""
    name: str           # Column name in this table
    type: str           # SQL type in this table
    source_name: str    # Column name in the source table, links staging to target


@dataclass
class TableDescriptor:
    """Schema name, table name and ordered column definitions of a table."""
    schema: str
    table: str
    columns: list[ColumnDefinition] = field(default_factory=list)

    @classmethod
    def from_file(cls, path: str) -> "TableDescriptor":
        """Load the source table descriptor from a YAML definition file."""
        definition_path = Path(path)
        if not definition_path.is_file():
            raise ConfigError(f"table definition file not found: {path}")

        raw = yaml.safe_load(definition_path.read_text()) or {}
        return cls.from_dict(raw, origin=path)

    @classmethod
    def from_dict(cls, raw: dict, origin: str = "<dict>") -> "TableDescriptor":
        try:
            schema = raw["schema"]
            table = raw["table"]
            raw_columns = raw["columns"]
        except (KeyError, TypeError) as e:
            raise ConfigError(f"table definition {origin} is missing {e}") from e

        if not raw_columns:
            raise ConfigError(f"table definition {origin} has no columns")

        columns = [
            ColumnDefinition(
                name=col["name"].upper(),
                type=map_source_type(col.get("type", "STRING")),
                source_name=col["name"].upper(),
            )
            for col in raw_columns
        ]

        return cls(schema=schema, table=table, columns=columns)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"

    def clone(self) -> "TableDescriptor":
        return copy.deepcopy(self)

    def apply_customization(self, rules: TableCustomization) -> None:
        """
        Apply customization rules in place.

        Column rules are keyed by source column name; rules naming a column
        that doesn't exist are logged and ignored.
        """
        if rules.schema:
            self.schema = rules.schema
        if rules.table:
            self.table = rules.table

        known = {col.source_name for col in self.columns}
        for source_name in rules.columns:
            if source_name not in known:
                log.warning(
                    "customized_column_not_found",
                    column=source_name,
                    table=self.qualified_name,
                )

        for col in self.columns:
            rule = rules.columns.get(col.source_name)
            if rule is None:
                continue
            if rule.name:
                col.name = rule.name
            if rule.type:
                col.type = rule.type

    def staging_descriptor(self) -> "TableDescriptor":
        """
        Derive the staging table shape.

        Same columns in the same order (the order of fields in the data
        files), every column typed as a string, table name suffixed.
        """
        return TableDescriptor(
            schema=self.schema,
            table=f"{self.table}{STAGING_TABLE_SUFFIX}",
            columns=[
                ColumnDefinition(
                    name=col.source_name,
                    type=STAGING_COLUMN_TYPE,
                    source_name=col.source_name,
                )
                for col in self.columns
            ],
        )

    def __str__(self) -> str:
        cols = ", ".join(f"{col.name} {col.type}" for col in self.columns)
        return f"{self.qualified_name} ({cols})"
