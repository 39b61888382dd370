"""Schema negotiation between Arrow schemas and DuckDB tables.

Two behaviours exist, selected once from the database version:

- V1: introspects with ``pragma_table_info`` and only handles flat types.
- V2: introspects with ``information_schema.columns`` and also maps nested
  types (LIST, STRUCT, MAP) in both directions.
"""

import re

import pyarrow as pa
import structlog

from stagepipe.errors import ConnectorError, SchemaConversionError, SchemaDiscoveryError
from stagepipe.models.schemas import (
    ColumnDef,
    SchemaVariant,
    TableName,
    quote_identifier,
    quote_literal,
)
from stagepipe.storage.session import DuckDBSession

logger = structlog.get_logger()

# Alias used for the merge source in generated merge expressions
MERGE_SOURCE_ALIAS = "merge_src"

_SIMPLE_SQL_TO_ARROW: dict[str, pa.DataType] = {
    "BOOLEAN": pa.bool_(),
    "TINYINT": pa.int8(),
    "SMALLINT": pa.int16(),
    "INTEGER": pa.int32(),
    "BIGINT": pa.int64(),
    "UTINYINT": pa.uint8(),
    "USMALLINT": pa.uint16(),
    "UINTEGER": pa.uint32(),
    "UBIGINT": pa.uint64(),
    "HUGEINT": pa.decimal128(38, 0),
    "FLOAT": pa.float32(),
    "DOUBLE": pa.float64(),
    "VARCHAR": pa.string(),
    "UUID": pa.string(),
    "JSON": pa.string(),
    "BLOB": pa.binary(),
    "DATE": pa.date32(),
    "TIME": pa.time64("us"),
    "TIMESTAMP": pa.timestamp("us"),
    "TIMESTAMP_S": pa.timestamp("s"),
    "TIMESTAMP_MS": pa.timestamp("ms"),
    "TIMESTAMP_NS": pa.timestamp("ns"),
    "TIMESTAMP WITH TIME ZONE": pa.timestamp("us", tz="UTC"),
    "TIMESTAMPTZ": pa.timestamp("us", tz="UTC"),
    "INTERVAL": pa.month_day_nano_interval(),
}

_DECIMAL_RE = re.compile(r"^DECIMAL\((\d+),\s*(\d+)\)$")
_VARCHAR_RE = re.compile(r"^VARCHAR\(\d+\)$")


def _split_top_level(text: str) -> list[str]:
    """Split on commas that are not nested inside parentheses."""
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    if current:
        parts.append("".join(current).strip())
    return parts


class SchemaTools:
    """Schema negotiator for one DuckDB version family."""

    def __init__(self, variant: SchemaVariant = SchemaVariant.V2) -> None:
        self.variant = variant

    @property
    def supports_nested(self) -> bool:
        return self.variant == SchemaVariant.V2

    # =========================================================================
    # Type mapping
    # =========================================================================

    def to_sql_type(self, dtype: pa.DataType, strlen: int) -> str:
        """DuckDB column type for an Arrow type."""
        if pa.types.is_boolean(dtype):
            return "BOOLEAN"
        if pa.types.is_integer(dtype):
            names = {
                (True, 8): "TINYINT",
                (True, 16): "SMALLINT",
                (True, 32): "INTEGER",
                (True, 64): "BIGINT",
                (False, 8): "UTINYINT",
                (False, 16): "USMALLINT",
                (False, 32): "UINTEGER",
                (False, 64): "UBIGINT",
            }
            return names[(pa.types.is_signed_integer(dtype), dtype.bit_width)]
        if pa.types.is_float16(dtype) or pa.types.is_float32(dtype):
            return "FLOAT"
        if pa.types.is_float64(dtype):
            return "DOUBLE"
        if pa.types.is_decimal(dtype):
            if dtype.precision > 38:
                raise SchemaConversionError(f"Decimal precision {dtype.precision} exceeds 38")
            return f"DECIMAL({dtype.precision},{dtype.scale})"
        if pa.types.is_string(dtype) or pa.types.is_large_string(dtype):
            return f"VARCHAR({strlen})"
        if pa.types.is_binary(dtype) or pa.types.is_large_binary(dtype) or pa.types.is_fixed_size_binary(dtype):
            return "BLOB"
        if pa.types.is_date(dtype):
            return "DATE"
        if pa.types.is_time(dtype):
            return "TIME"
        if pa.types.is_timestamp(dtype):
            return "TIMESTAMPTZ" if dtype.tz else "TIMESTAMP"
        if pa.types.is_duration(dtype) or pa.types.is_interval(dtype):
            return "INTERVAL"
        if pa.types.is_list(dtype) or pa.types.is_large_list(dtype):
            self._require_nested(dtype)
            return f"{self.to_sql_type(dtype.value_type, strlen)}[]"
        if pa.types.is_struct(dtype):
            self._require_nested(dtype)
            members = ", ".join(
                f"{quote_identifier(dtype.field(i).name)} {self.to_sql_type(dtype.field(i).type, strlen)}"
                for i in range(dtype.num_fields)
            )
            return f"STRUCT({members})"
        if pa.types.is_map(dtype):
            self._require_nested(dtype)
            key = self.to_sql_type(dtype.key_type, strlen)
            value = self.to_sql_type(dtype.item_type, strlen)
            return f"MAP({key}, {value})"
        raise SchemaConversionError(f"No DuckDB type for Arrow type {dtype}")

    def _require_nested(self, dtype: pa.DataType) -> None:
        if not self.supports_nested:
            raise SchemaConversionError(
                f"Nested type {dtype} is not supported by this database version"
            )

    def to_arrow_type(self, type_name: str) -> pa.DataType:
        """Arrow type for a DuckDB column type name."""
        name = type_name.strip().upper()
        if name in _SIMPLE_SQL_TO_ARROW:
            return _SIMPLE_SQL_TO_ARROW[name]
        if _VARCHAR_RE.match(name):
            return pa.string()
        decimal = _DECIMAL_RE.match(name)
        if decimal:
            return pa.decimal128(int(decimal.group(1)), int(decimal.group(2)))
        if name.endswith("[]"):
            self._require_nested_name(type_name)
            return pa.list_(self.to_arrow_type(type_name.strip()[:-2]))
        if name.startswith("STRUCT(") and name.endswith(")"):
            self._require_nested_name(type_name)
            body = type_name.strip()[len("STRUCT("):-1]
            fields = []
            for member in _split_top_level(body):
                member_name, _, member_type = member.partition(" ")
                fields.append(pa.field(member_name.strip('"'), self.to_arrow_type(member_type)))
            return pa.struct(fields)
        if name.startswith("MAP(") and name.endswith(")"):
            self._require_nested_name(type_name)
            key, value = _split_top_level(type_name.strip()[len("MAP("):-1])
            return pa.map_(self.to_arrow_type(key), self.to_arrow_type(value))
        raise SchemaConversionError(f"No Arrow type for DuckDB type {type_name}")

    def _require_nested_name(self, type_name: str) -> None:
        if not self.supports_nested:
            raise SchemaConversionError(
                f"Nested type {type_name} is not supported by this database version"
            )

    def make_column_defs(self, schema: pa.Schema, strlen: int) -> str:
        """Column definitions for CREATE TABLE, e.g. ``"id" BIGINT NOT NULL``."""
        if len(schema) == 0:
            raise SchemaConversionError("Cannot build a table definition from an empty schema")
        defs = []
        for schema_field in schema:
            column = f"{quote_identifier(schema_field.name)} {self.to_sql_type(schema_field.type, strlen)}"
            if not schema_field.nullable:
                column += " NOT NULL"
            defs.append(column)
        return ", ".join(defs)

    def to_arrow_schema(self, columns: list[ColumnDef]) -> pa.Schema:
        return pa.schema(
            [pa.field(c.name, self.to_arrow_type(c.type_name), nullable=c.nullable) for c in columns]
        )

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_table_schema(self, session: DuckDBSession, table: TableName) -> list[ColumnDef]:
        """Columns of a table or view, in ordinal order.

        Raises:
            SchemaDiscoveryError: if the table cannot be introspected
        """
        if self.variant == SchemaVariant.V2:
            sql = (
                "SELECT column_name, data_type, is_nullable FROM information_schema.columns "
                "WHERE table_name = ? AND table_schema = COALESCE(?, current_schema()) "
                "ORDER BY ordinal_position"
            )
            params = [table.name, table.namespace]
        else:
            sql = (
                'SELECT name, type, NOT "notnull" FROM pragma_table_info('
                f"{quote_literal(table.qualified)}) ORDER BY cid"
            )
            params = None
        try:
            result = session.query(sql, params)
        except ConnectorError as e:
            raise SchemaDiscoveryError(f"Failed to read the schema of {table}", cause=e) from e

        columns = [
            ColumnDef(name=row[0], type_name=str(row[1]), nullable=row[2] in (True, "YES"))
            for row in result.rows
        ]
        if not columns:
            raise SchemaDiscoveryError(f"Table {table} has no columns or does not exist")
        return columns

    def get_query_schema(self, session: DuckDBSession, sql: str) -> list[ColumnDef]:
        """Columns produced by a SELECT statement."""
        try:
            result = session.query(f"DESCRIBE {sql}")
        except ConnectorError as e:
            raise SchemaDiscoveryError("Failed to describe query", cause=e) from e
        names = result.column("column_name")
        types = result.column("column_type")
        nulls = result.column("null")
        return [
            ColumnDef(name=n, type_name=t, nullable=nullable != "NO")
            for n, t, nullable in zip(names, types, nulls)
        ]

    # =========================================================================
    # Load and merge column lists
    # =========================================================================

    def get_copy_column_list(
        self, session: DuckDBSession, table: TableName, schema: pa.Schema
    ) -> list[str]:
        """Target columns receiving the staged columns, in staged order.

        Staged columns are matched to table columns case-insensitively.
        Staged columns without a counterpart in the table are dropped.

        Raises:
            SchemaConversionError: if no staged column exists in the table
        """
        table_columns = {c.name.lower(): c.name for c in self.get_table_schema(session, table)}
        matched = []
        unmatched = []
        for schema_field in schema:
            target = table_columns.get(schema_field.name.lower())
            if target is None:
                unmatched.append(schema_field.name)
            else:
                matched.append(target)
        if not matched:
            raise SchemaConversionError(
                f"None of the staged columns {schema.names} exist in table {table}"
            )
        if unmatched:
            logger.warning("staged_columns_not_in_table", table=str(table), columns=unmatched)
        return matched

    def _merge_columns(
        self,
        session: DuckDBSession,
        table: TableName,
        copy_column_list: tuple[str, ...] | None,
    ) -> list[str]:
        if copy_column_list:
            return list(copy_column_list)
        return [c.name for c in self.get_table_schema(session, table)]

    def get_merge_update_values(
        self,
        session: DuckDBSession,
        table: TableName,
        temp_table: TableName,
        copy_column_list: tuple[str, ...] | None,
    ) -> str:
        """SET list of the merge update, e.g. ``"a" = merge_src."a", "b" = merge_src."b"``.

        Only columns present in both the target and the temp table are set.
        """
        temp_columns = {c.name.lower() for c in self.get_table_schema(session, temp_table)}
        columns = [
            c for c in self._merge_columns(session, table, copy_column_list)
            if c.lower() in temp_columns
        ]
        if not columns:
            raise SchemaConversionError(f"No common columns between {table} and {temp_table}")
        return ", ".join(
            f"{quote_identifier(c)} = {MERGE_SOURCE_ALIAS}.{quote_identifier(c)}" for c in columns
        )

    def get_merge_insert_values(
        self,
        session: DuckDBSession,
        table: TableName,
        copy_column_list: tuple[str, ...] | None,
    ) -> str:
        """Value list of the merge insert, e.g. ``merge_src."a", merge_src."b"``."""
        columns = self._merge_columns(session, table, copy_column_list)
        return ", ".join(f"{MERGE_SOURCE_ALIAS}.{quote_identifier(c)}" for c in columns)
