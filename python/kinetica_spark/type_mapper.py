"""Mapping between Spark column types and Kinetica column types."""

import base64
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pyarrow as pa
from pyspark.sql import Row
from pyspark.sql.types import (
    ArrayType, BinaryType, BooleanType, ByteType, DataType, DateType,
    DecimalType, DoubleType, FloatType, IntegerType, LongType, MapType,
    ShortType, StringType, StructField, StructType, TimestampType,
)

from .exceptions import (
    InvalidOptionsError,
    SchemaMismatchError,
    TypeResolutionError,
    UnsupportedColumnTypeError,
)

logger = logging.getLogger("kinetica_spark.type_mapper")

BASE_TYPES = ("int", "long", "float", "double", "string", "bytes")

# Column properties
TIMESTAMP = "timestamp"
DATE = "date"
DATETIME = "datetime"
DECIMAL = "decimal"
BOOLEAN = "boolean"
INT8 = "int8"
INT16 = "int16"
NULLABLE = "nullable"
PRIMARY_KEY = "primary_key"

DEFAULT_DECIMAL = DecimalType(18, 4)


@dataclass(frozen=True)
class RemoteColumn:
    """One column of a Kinetica table type."""

    name: str
    base_type: str
    nullable: bool = False
    properties: Tuple[str, ...] = ()

    def has_property(self, prop: str) -> bool:
        return prop in self.properties


@dataclass(frozen=True)
class RemoteTableType:
    """Ordered column list of a Kinetica table."""

    columns: Tuple[RemoteColumn, ...]
    label: str = field(default="", compare=False)

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]

    def get(self, name: str) -> Optional[RemoteColumn]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def to_type_definition(self) -> str:
        """Render the Avro record schema used by ``/create/type``."""
        fields = []
        for column in self.columns:
            avro_type: Any = [column.base_type, "null"] if column.nullable else column.base_type
            fields.append({"name": column.name, "type": avro_type})
        return json.dumps({"type": "record", "name": self.label or "type_name", "fields": fields})

    def to_column_properties(self) -> Dict[str, List[str]]:
        properties: Dict[str, List[str]] = {}
        for column in self.columns:
            props = list(column.properties)
            if column.nullable and NULLABLE not in props:
                props.append(NULLABLE)
            if props:
                properties[column.name] = props
        return properties

    @classmethod
    def from_type_schema(
        cls,
        type_schema: str,
        column_properties: Optional[Mapping[str, Sequence[str]]] = None,
        label: str = "",
    ) -> "RemoteTableType":
        """
        Parse the Avro record schema returned by ``/show/table``.

        Raises:
            TypeResolutionError: If the schema is not a valid record schema
        """
        column_properties = column_properties or {}
        try:
            parsed = json.loads(type_schema)
            raw_fields = parsed["fields"]
        except (TypeError, ValueError, KeyError) as err:
            raise TypeResolutionError(f"Invalid type schema: {err}") from err

        columns = []
        for raw in raw_fields:
            name = raw["name"]
            avro_type = raw["type"]
            nullable = False
            if isinstance(avro_type, list):
                nullable = "null" in avro_type
                non_null = [t for t in avro_type if t != "null"]
                avro_type = non_null[0] if non_null else "string"
            if avro_type not in BASE_TYPES:
                raise TypeResolutionError(f"Column '{name}' has unknown base type '{avro_type}'")
            props = tuple(p for p in column_properties.get(name, ()) if p != NULLABLE)
            nullable = nullable or NULLABLE in column_properties.get(name, ())
            columns.append(RemoteColumn(name=name, base_type=avro_type, nullable=nullable, properties=props))
        return cls(columns=tuple(columns), label=label)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """
    Return the timezone for ``name``, or the local timezone when not given.

    Raises:
        InvalidOptionsError: If the timezone name is unknown
    """
    if not name:
        return datetime.now().astimezone().tzinfo or timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as err:
        raise InvalidOptionsError(f"Unknown timezone: {name}") from err


# Spark -> Kinetica

def _remote_column_for(name: str, data_type: DataType, nullable: bool) -> RemoteColumn:
    if isinstance(data_type, ByteType):
        return RemoteColumn(name, "int", nullable, (INT8,))
    if isinstance(data_type, ShortType):
        return RemoteColumn(name, "int", nullable, (INT16,))
    if isinstance(data_type, IntegerType):
        return RemoteColumn(name, "int", nullable)
    if isinstance(data_type, LongType):
        return RemoteColumn(name, "long", nullable)
    if isinstance(data_type, FloatType):
        return RemoteColumn(name, "float", nullable)
    if isinstance(data_type, DoubleType):
        return RemoteColumn(name, "double", nullable)
    if isinstance(data_type, StringType):
        return RemoteColumn(name, "string", nullable)
    if isinstance(data_type, BooleanType):
        return RemoteColumn(name, "int", nullable, (BOOLEAN,))
    if isinstance(data_type, TimestampType):
        return RemoteColumn(name, "long", nullable, (TIMESTAMP,))
    if isinstance(data_type, DateType):
        return RemoteColumn(name, "string", nullable, (DATE,))
    if isinstance(data_type, DecimalType):
        return RemoteColumn(name, "string", nullable, (DECIMAL,))
    if isinstance(data_type, BinaryType):
        return RemoteColumn(name, "bytes", nullable)
    raise UnsupportedColumnTypeError(name, data_type.simpleString())


def _iter_columns(fields: Iterable[StructField], flatten: bool, prefix: str = "", parent_nullable: bool = False):
    for spark_field in fields:
        name = f"{prefix}{spark_field.name}"
        nullable = spark_field.nullable or parent_nullable
        if isinstance(spark_field.dataType, StructType):
            if not flatten:
                raise UnsupportedColumnTypeError(name, spark_field.dataType.simpleString())
            yield from _iter_columns(spark_field.dataType.fields, flatten, f"{name}_", nullable)
        elif isinstance(spark_field.dataType, (ArrayType, MapType)):
            raise UnsupportedColumnTypeError(name, spark_field.dataType.simpleString())
        else:
            yield _remote_column_for(name, spark_field.dataType, nullable)


def to_remote_type(schema: StructType, flatten: bool = False, label: str = "") -> RemoteTableType:
    """
    Derive a Kinetica table type from a Spark schema.

    Struct columns are expanded into ``parent_child`` columns when
    ``flatten`` is set.

    Raises:
        UnsupportedColumnTypeError: If a column has no Kinetica counterpart
    """
    columns = tuple(_iter_columns(schema.fields, flatten))
    seen = set()
    for column in columns:
        if column.name in seen:
            raise SchemaMismatchError(f"Duplicate column name '{column.name}' after flattening")
        seen.add(column.name)
    return RemoteTableType(columns=columns, label=label)


# Kinetica -> Spark

def _spark_type_for(column: RemoteColumn) -> DataType:
    base = column.base_type
    if base == "int":
        if column.has_property(BOOLEAN):
            return BooleanType()
        if column.has_property(INT8):
            return ByteType()
        if column.has_property(INT16):
            return ShortType()
        return IntegerType()
    if base == "long":
        if column.has_property(TIMESTAMP):
            return TimestampType()
        return LongType()
    if base == "float":
        return FloatType()
    if base == "double":
        return DoubleType()
    if base == "bytes":
        return BinaryType()
    if column.has_property(DATE):
        return DateType()
    if column.has_property(DATETIME):
        return TimestampType()
    if column.has_property(DECIMAL):
        return DEFAULT_DECIMAL
    return StringType()


def to_spark_schema(remote_type: RemoteTableType, columns: Optional[Sequence[str]] = None) -> StructType:
    """
    Build the Spark schema for reading ``columns`` (all when not given).

    Raises:
        SchemaMismatchError: If a requested column does not exist
    """
    names = list(columns) if columns else remote_type.column_names
    fields = []
    for name in names:
        column = remote_type.get(name)
        if column is None:
            raise SchemaMismatchError(f"Column '{name}' does not exist in the table type")
        fields.append(StructField(name, _spark_type_for(column), nullable=column.nullable))
    return StructType(fields)


def to_arrow_schema(schema: StructType) -> pa.Schema:
    """Convert a Spark schema to the Arrow schema of read batches."""
    fields = []
    for spark_field in schema.fields:
        fields.append(pa.field(spark_field.name, _arrow_type_for(spark_field), nullable=spark_field.nullable))
    return pa.schema(fields)


def _arrow_type_for(spark_field: StructField) -> pa.DataType:
    data_type = spark_field.dataType
    if isinstance(data_type, BooleanType):
        return pa.bool_()
    if isinstance(data_type, ByteType):
        return pa.int8()
    if isinstance(data_type, ShortType):
        return pa.int16()
    if isinstance(data_type, IntegerType):
        return pa.int32()
    if isinstance(data_type, LongType):
        return pa.int64()
    if isinstance(data_type, FloatType):
        return pa.float32()
    if isinstance(data_type, DoubleType):
        return pa.float64()
    if isinstance(data_type, TimestampType):
        return pa.timestamp("ms", tz="UTC")
    if isinstance(data_type, DateType):
        return pa.date32()
    if isinstance(data_type, DecimalType):
        return pa.decimal128(data_type.precision, data_type.scale)
    if isinstance(data_type, BinaryType):
        return pa.binary()
    if isinstance(data_type, StringType):
        return pa.string()
    raise UnsupportedColumnTypeError(spark_field.name, data_type.simpleString())


def _to_spark_value(value: Any, data_type: DataType, tz: tzinfo) -> Any:
    if isinstance(data_type, BooleanType):
        return bool(value)
    if isinstance(data_type, (ByteType, ShortType, IntegerType, LongType)):
        return int(value)
    if isinstance(data_type, (FloatType, DoubleType)):
        return float(value)
    if isinstance(data_type, TimestampType):
        if isinstance(value, str):
            parsed = datetime.fromisoformat(value)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=tz)
        return datetime.fromtimestamp(int(value) / 1000.0, tz=tz)
    if isinstance(data_type, DateType):
        return date.fromisoformat(str(value)[:10])
    if isinstance(data_type, DecimalType):
        return Decimal(str(value))
    if isinstance(data_type, BinaryType):
        if isinstance(value, str):
            return bytearray(base64.b64decode(value))
        return bytearray(value)
    if isinstance(data_type, StringType):
        return value if isinstance(value, str) else str(value)
    return value


def record_converter(target_schema: StructType, tz: Optional[tzinfo] = None) -> Callable[[Mapping[str, Any]], Row]:
    """Return a function turning remote records into rows of ``target_schema``."""
    tz = tz or timezone.utc
    row_factory = Row(*target_schema.fieldNames())
    fields = target_schema.fields

    def convert(record: Mapping[str, Any]) -> Row:
        values = []
        for spark_field in fields:
            value = record.get(spark_field.name)
            if value is None:
                if not spark_field.nullable:
                    raise SchemaMismatchError(
                        f"Column '{spark_field.name}' is not nullable but the record has no value"
                    )
                values.append(None)
                continue
            try:
                values.append(_to_spark_value(value, spark_field.dataType, tz))
            except (TypeError, ValueError, ArithmeticError) as err:
                raise SchemaMismatchError(
                    f"Column '{spark_field.name}': cannot convert {value!r} to "
                    f"{spark_field.dataType.simpleString()}: {err}"
                ) from err
        return row_factory(*values)

    return convert


def from_remote_record(record: Mapping[str, Any], target_schema: StructType, tz: Optional[tzinfo] = None) -> Row:
    """
    Convert one remote record into a Row in ``target_schema`` column order.

    Raises:
        SchemaMismatchError: If a non-nullable column is missing or a value cannot be converted
    """
    return record_converter(target_schema, tz)(record)


# Row -> Kinetica record

def _flatten(values: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in values.items():
        name = f"{prefix}{key}"
        if isinstance(value, Row):
            value = value.asDict()
        if isinstance(value, Mapping):
            flat.update(_flatten(value, f"{name}_"))
        else:
            flat[name] = value
    return flat


def _row_as_dict(row: Any) -> Dict[str, Any]:
    if isinstance(row, Row):
        return row.asDict()
    if isinstance(row, Mapping):
        return dict(row)
    raise SchemaMismatchError(f"Cannot convert {type(row).__name__} to a record; expected Row or mapping")


def _to_epoch_ms(value: Any, tz: tzinfo) -> int:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=tz)
        return int(value.timestamp() * 1000)
    if isinstance(value, date):
        return int(datetime(value.year, value.month, value.day, tzinfo=tz).timestamp() * 1000)
    return int(value)


def _to_remote_value(value: Any, column: RemoteColumn, tz: tzinfo) -> Any:
    if column.has_property(BOOLEAN):
        return int(bool(value))
    if column.has_property(TIMESTAMP):
        return _to_epoch_ms(value, tz)
    if column.has_property(DATE):
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
        return str(value)
    if column.has_property(DATETIME):
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(tz).replace(tzinfo=None)
            return value.isoformat(sep=" ", timespec="milliseconds")
        return str(value)
    base = column.base_type
    if base in ("int", "long"):
        return int(value)
    if base in ("float", "double"):
        return float(value)
    if base == "bytes":
        return base64.b64encode(bytes(value)).decode("ascii")
    return value if isinstance(value, str) else str(value)


def char_size(column: RemoteColumn) -> Optional[int]:
    """Maximum length of a ``charN`` string column, or None when unbounded."""
    for prop in column.properties:
        if prop.startswith("char") and prop[4:].isdigit():
            return int(prop[4:])
    return None


def to_remote_record(
    row: Any,
    remote_type: RemoteTableType,
    tz: Optional[tzinfo] = None,
    map_to_schema: bool = True,
    truncate_to_size: bool = False,
) -> Dict[str, Any]:
    """
    Convert a Spark Row (or mapping) into a Kinetica record.

    Nested rows are flattened to ``parent_child`` names. With
    ``map_to_schema`` values are matched to table columns by name and fields
    not in the table type are ignored; without it they are matched by
    position. ``truncate_to_size`` clips strings to their ``charN`` width.

    Raises:
        SchemaMismatchError: If a non-nullable column has no value or a value cannot be converted
    """
    tz = tz or timezone.utc
    values = _flatten(_row_as_dict(row))
    if not map_to_schema:
        positional = list(values.values())
        if len(positional) > len(remote_type.columns):
            raise SchemaMismatchError(
                f"Row has {len(positional)} values but the table has {len(remote_type.columns)} columns"
            )
        values = dict(zip(remote_type.column_names, positional))
    record: Dict[str, Any] = {}
    for column in remote_type.columns:
        value = values.get(column.name)
        if value is None:
            if not column.nullable:
                raise SchemaMismatchError(f"Column '{column.name}' is not nullable but the row has no value")
            record[column.name] = None
            continue
        try:
            converted = _to_remote_value(value, column, tz)
        except (TypeError, ValueError, OverflowError) as err:
            raise SchemaMismatchError(
                f"Column '{column.name}': cannot convert {value!r} to {column.base_type}: {err}"
            ) from err
        size = char_size(column) if truncate_to_size and isinstance(converted, str) else None
        if size is not None and len(converted) > size:
            converted = converted[:size]
        record[column.name] = converted
    return record
