"""Target table preparation before ingestion."""

import logging

from pyspark.sql.types import StructType

from .exceptions import TypeResolutionError
from .options import WriteMode
from .session import KineticaSession, collection_matches, resolve_type, table_exists
from .type_mapper import NULLABLE, RemoteColumn, RemoteTableType, to_remote_type

logger = logging.getLogger("kinetica_spark.table_setup")


def _create_table(session: KineticaSession, table_type: RemoteTableType) -> None:
    config = session.config
    client = session.client
    type_id = client.create_type(
        table_type.to_type_definition(),
        config.table_name,
        table_type.to_column_properties(),
    )
    options = {"no_error_if_exists": "true"}
    if config.schema_name:
        options["collection_name"] = config.schema_name
    if config.replicated:
        options["is_replicated"] = "true"
    client.create_table(config.table_name, type_id, options)
    logger.info(
        f"Created table '{config.qualified_table_name}' with {len(table_type.columns)} columns"
        f"{' (replicated)' if config.replicated else ''}"
    )


def _append_missing_columns(session: KineticaSession, existing: RemoteTableType, wanted: RemoteTableType) -> RemoteTableType:
    missing = [column for column in wanted.columns if existing.get(column.name) is None]
    if not missing:
        return existing

    added = []
    for column in missing:
        # new columns cannot be backfilled, so they are always nullable
        properties = [*column.properties, NULLABLE]
        session.client.alter_table(
            session.config.table_name,
            "add_column",
            column.name,
            {"column_type": column.base_type, "column_properties": ",".join(properties)},
        )
        added.append(RemoteColumn(column.name, column.base_type, True, column.properties))
        logger.info(f"Added column '{column.name}' ({column.base_type}) to '{session.config.table_name}'")

    return RemoteTableType(columns=existing.columns + tuple(added), label=existing.label)


def prepare_table(session: KineticaSession, schema: StructType) -> RemoteTableType:
    """
    Make the target table ready for ``schema`` according to the write mode.

    * ``TRUNCATE_THEN_WRITE`` clears the table and recreates it from ``schema``;
    * ``CREATE_IF_ABSENT`` creates the table when it is missing;
    * ``APPEND`` and ``UPSERT_BY_KEY`` require an existing table.

    With ``alter_table`` set, DataFrame columns missing from an existing table
    are appended. In dry-run mode nothing is changed remotely.

    Returns:
        The table type rows will be converted to; also cached on the session

    Raises:
        TypeResolutionError: If the table is missing, or exists in another collection
        UnsupportedColumnTypeError: If the DataFrame has a column with no Kinetica type
    """
    config = session.config
    wanted = to_remote_type(schema, flatten=config.flatten_schema, label=config.table_name)
    mode = config.write_mode

    exists = table_exists(session.client, config.table_name)
    if exists and not collection_matches(session.client, config.table_name, config.schema_name):
        raise TypeResolutionError(
            f"Table '{config.table_name}' exists but does not belong to schema '{config.schema_name}'"
        )

    if config.dry_run:
        table_type = resolve_type(session.client, config.table_name) if exists else wanted
        logger.info(f"Dry run: leaving table '{config.qualified_table_name}' untouched")
        session.set_table_type(table_type)
        return table_type

    if exists and mode is WriteMode.TRUNCATE_THEN_WRITE:
        logger.info(f"Truncating table '{config.qualified_table_name}'")
        session.client.clear_table(config.table_name, {"no_error_if_not_exists": "true"})
        exists = False

    if not exists:
        if mode not in (WriteMode.CREATE_IF_ABSENT, WriteMode.TRUNCATE_THEN_WRITE):
            raise TypeResolutionError(
                f"Table '{config.qualified_table_name}' does not exist; set table.create to create it"
            )
        _create_table(session, wanted)
        table_type = wanted
    else:
        table_type = resolve_type(session.client, config.table_name)
        if config.alter_table:
            table_type = _append_missing_columns(session, table_type, wanted)

    session.set_table_type(table_type)
    return table_type
