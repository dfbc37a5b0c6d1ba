"""
Startup of the loader.

bootstrap() runs once and, in this order:
1. Resolves the source table descriptor from the definition file
2. Derives the target descriptor (customized clone of the source)
3. Derives the staging descriptor (customized text-only shape)
4. Gets the staging and local filesystems
5. Validates the staging directory
6. Connects to the query engine
7. Provisions the four queries (operator override or generated)
8. Creates the target table unless it already exists
9. Opens the control file cursor

Any failure aborts startup; there is no partially started loader.
"""

from dataclasses import dataclass
from typing import Callable

import structlog

from datapump.config import Config
from datapump.control import ControlFileSource
from datapump.descriptors import TableDescriptor
from datapump.engine import Query, QueryEngine, connect
from datapump.errors import TableAlreadyExists
from datapump.queries import QueryBuilder
from datapump.storage import FileSystem, LocalFileSystem, create_filesystem
from datapump.validation import validate_staging_directory

log = structlog.get_logger()

CREATE_STAGING_TABLE = "create_staging_table"
DROP_STAGING_TABLE = "drop_staging_table"
INSERT_INTO = "insert_into"
CREATE_TARGET_TABLE = "create_target_table"

QUERY_ROLES = (CREATE_STAGING_TABLE, DROP_STAGING_TABLE, INSERT_INTO, CREATE_TARGET_TABLE)


@dataclass(frozen=True)
class RunState:
    """
    Everything the batch loop needs, built once by bootstrap().

    Never modified afterwards; the only state that moves between
    iterations is the control file cursor's position on disk.
    """
    local: FileSystem
    dfs: FileSystem
    engine: QueryEngine
    staging_directory: str
    create_staging_table: Query
    drop_staging_table: Query
    insert_into: Query
    create_target_table: Query
    control_source: ControlFileSource
    seconds_between_batches: float
    max_seconds_between_batches: float
    on_batch_failure: str
    target_table: str = ""


def provision_query(
    role: str,
    override: str | None,
    generate: Callable[[], Query],
    engine: QueryEngine,
) -> Query:
    """
    Return the operator's query for a role if one is set, else generate it.

    Overrides are used verbatim. They are not checked here; a broken
    override fails when it is executed.
    """
    if override:
        query = Query(override, engine)
        log.info("query_overridden", role=role, query=query.text)
        return query

    query = generate()
    log.debug("query_generated", role=role, query=query.text)
    return query


def create_target_table(query: Query) -> bool:
    """
    Create the target table, treating "already exists" as success.

    Returns:
        True if the table was created, False if it already existed.

    Raises:
        QueryExecutionError: For any other failure
    """
    try:
        query.execute()
    except TableAlreadyExists:
        log.info("target_table_exists")
        return False
    except Exception as e:
        log.error("target_table_not_created", error=str(e), error_type=type(e).__name__)
        raise

    log.info("target_table_created")
    return True


def bootstrap(
    config: Config,
    dfs: FileSystem | None = None,
    local: FileSystem | None = None,
    engine: QueryEngine | None = None,
) -> RunState:
    """
    Build the run state from configuration.

    Filesystems and engine are created from config unless given, which
    is how tests substitute in-memory versions.
    """
    source = TableDescriptor.from_file(config.definition_file)
    log.debug("source_table", descriptor=str(source))

    target = source.clone()
    target.apply_customization(config.target)

    staging = source.staging_descriptor()
    staging.apply_customization(config.staging)

    if dfs is None:
        dfs = create_filesystem(config.filesystem)
    if local is None:
        local = LocalFileSystem()

    staging_directory = validate_staging_directory(
        dfs, config.staging_directory_for(target.schema, target.table)
    )

    if engine is None:
        engine = connect(config.engine)
    builder = QueryBuilder(engine, delimiter=config.data_delimiter)

    overrides = config.queries
    create_staging = provision_query(
        CREATE_STAGING_TABLE,
        overrides.create_staging_table,
        lambda: builder.create_external_table(staging, staging_directory),
        engine,
    )
    drop_staging = provision_query(
        DROP_STAGING_TABLE,
        overrides.drop_staging_table,
        lambda: builder.drop_table(staging),
        engine,
    )
    insert_into = provision_query(
        INSERT_INTO,
        overrides.insert_into,
        lambda: builder.insert_into(staging, target),
        engine,
    )
    create_target = provision_query(
        CREATE_TARGET_TABLE,
        overrides.create_target_table,
        lambda: builder.create_table(target),
        engine,
    )
    log.info("staging_table", descriptor=str(staging))
    log.info("target_table", descriptor=str(target))

    create_target_table(create_target)

    control_source = ControlFileSource(local, config.control_file)
    log.info("reading_control_data", control_file=str(control_source))

    return RunState(
        local=local,
        dfs=dfs,
        engine=engine,
        staging_directory=staging_directory,
        create_staging_table=create_staging,
        drop_staging_table=drop_staging,
        insert_into=insert_into,
        create_target_table=create_target,
        control_source=control_source,
        seconds_between_batches=config.seconds_between_batches,
        max_seconds_between_batches=config.max_seconds_between_batches,
        on_batch_failure=config.on_batch_failure,
        target_table=target.qualified_name,
    )
