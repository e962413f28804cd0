"""Unit tests for Spark <-> Kinetica type mapping (no JVM needed)."""

import base64
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pyarrow as pa
import pytest
from pyspark.sql import Row
from pyspark.sql.types import (
    ArrayType, BinaryType, BooleanType, ByteType, DateType, DecimalType,
    DoubleType, FloatType, IntegerType, LongType, MapType, ShortType,
    StringType, StructField, StructType, TimestampType,
)

from kinetica_spark.exceptions import (
    SchemaMismatchError,
    TypeResolutionError,
    UnsupportedColumnTypeError,
)
from kinetica_spark.type_mapper import (
    RemoteColumn,
    RemoteTableType,
    char_size,
    from_remote_record,
    to_arrow_schema,
    to_remote_record,
    to_remote_type,
    to_spark_schema,
)


class TestToRemoteType:
    """Test Spark schema -> Kinetica type."""

    @pytest.mark.parametrize(
        "spark_type,base_type,properties",
        [
            (ByteType(), "int", ("int8",)),
            (ShortType(), "int", ("int16",)),
            (IntegerType(), "int", ()),
            (LongType(), "long", ()),
            (FloatType(), "float", ()),
            (DoubleType(), "double", ()),
            (StringType(), "string", ()),
            (BooleanType(), "int", ("boolean",)),
            (TimestampType(), "long", ("timestamp",)),
            (DateType(), "string", ("date",)),
            (DecimalType(10, 2), "string", ("decimal",)),
            (BinaryType(), "bytes", ()),
        ],
    )
    def test_scalar_mapping(self, spark_type, base_type, properties):
        schema = StructType([StructField("c", spark_type, nullable=False)])
        column = to_remote_type(schema).columns[0]

        assert column.base_type == base_type
        assert column.properties == properties
        assert not column.nullable

    def test_nullability_preserved(self):
        schema = StructType([StructField("c", StringType(), nullable=True)])
        assert to_remote_type(schema).columns[0].nullable

    def test_array_unsupported(self):
        schema = StructType([StructField("tags", ArrayType(StringType()))])
        with pytest.raises(UnsupportedColumnTypeError, match="tags"):
            to_remote_type(schema)

    def test_map_unsupported(self):
        schema = StructType([StructField("attrs", MapType(StringType(), StringType()))])
        with pytest.raises(UnsupportedColumnTypeError):
            to_remote_type(schema)

    def test_struct_requires_flatten(self):
        schema = StructType([
            StructField("address", StructType([StructField("city", StringType())])),
        ])
        with pytest.raises(UnsupportedColumnTypeError):
            to_remote_type(schema)

    def test_struct_flattened(self):
        schema = StructType([
            StructField("id", LongType(), nullable=False),
            StructField("address", StructType([
                StructField("city", StringType()),
                StructField("zip", IntegerType()),
            ])),
        ])
        table_type = to_remote_type(schema, flatten=True)

        assert table_type.column_names == ["id", "address_city", "address_zip"]

    def test_type_definition_round_trip(self):
        schema = StructType([
            StructField("id", LongType(), nullable=False),
            StructField("flag", BooleanType(), nullable=True),
        ])
        table_type = to_remote_type(schema, label="t")
        definition = json.loads(table_type.to_type_definition())

        assert definition["fields"] == [
            {"name": "id", "type": "long"},
            {"name": "flag", "type": ["int", "null"]},
        ]
        parsed = RemoteTableType.from_type_schema(
            table_type.to_type_definition(), table_type.to_column_properties()
        )
        assert parsed == table_type

    def test_invalid_type_schema(self):
        with pytest.raises(TypeResolutionError):
            RemoteTableType.from_type_schema("not json")


class TestToSparkSchema:
    """Test Kinetica type -> Spark / Arrow schema."""

    def _table_type(self):
        return RemoteTableType(columns=(
            RemoteColumn("id", "long", False),
            RemoteColumn("ts", "long", True, ("timestamp",)),
            RemoteColumn("flag", "int", True, ("boolean",)),
            RemoteColumn("price", "string", True, ("decimal",)),
            RemoteColumn("day", "string", True, ("date",)),
            RemoteColumn("small", "int", True, ("int16",)),
        ))

    def test_types(self):
        schema = to_spark_schema(self._table_type())

        assert [f.dataType for f in schema.fields] == [
            LongType(), TimestampType(), BooleanType(), DecimalType(18, 4), DateType(), ShortType(),
        ]
        assert not schema["id"].nullable

    def test_column_subset_keeps_requested_order(self):
        schema = to_spark_schema(self._table_type(), columns=["flag", "id"])
        assert schema.fieldNames() == ["flag", "id"]

    def test_unknown_column(self):
        with pytest.raises(SchemaMismatchError, match="missing"):
            to_spark_schema(self._table_type(), columns=["missing"])

    def test_arrow_schema(self):
        arrow_schema = to_arrow_schema(to_spark_schema(self._table_type()))

        assert arrow_schema.field("id").type == pa.int64()
        assert arrow_schema.field("ts").type == pa.timestamp("ms", tz="UTC")
        assert arrow_schema.field("price").type == pa.decimal128(18, 4)


class TestRecordConversion:
    """Test record <-> Row conversion."""

    def test_from_remote_record(self):
        schema = StructType([
            StructField("id", LongType(), nullable=False),
            StructField("flag", BooleanType()),
            StructField("ts", TimestampType()),
            StructField("note", StringType()),
        ])
        row = from_remote_record({"ts": 0, "id": 7, "flag": 1}, schema, timezone.utc)

        assert row.id == 7
        assert row.flag is True
        assert row.ts == datetime(1970, 1, 1, tzinfo=timezone.utc)
        assert row.note is None
        assert list(row.asDict()) == ["id", "flag", "ts", "note"]

    def test_from_remote_record_missing_required(self):
        schema = StructType([StructField("id", LongType(), nullable=False)])
        with pytest.raises(SchemaMismatchError, match="id"):
            from_remote_record({}, schema)

    def test_to_remote_record(self):
        table_type = RemoteTableType(columns=(
            RemoteColumn("id", "long", False),
            RemoteColumn("flag", "int", True, ("boolean",)),
            RemoteColumn("ts", "long", True, ("timestamp",)),
            RemoteColumn("day", "string", True, ("date",)),
            RemoteColumn("price", "string", True, ("decimal",)),
            RemoteColumn("blob", "bytes", True),
        ))
        row = Row(
            id=1,
            flag=True,
            ts=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
            day=date(2024, 1, 2),
            price=Decimal("9.99"),
            blob=b"\x00\x01",
        )
        record = to_remote_record(row, table_type)

        assert record == {
            "id": 1,
            "flag": 1,
            "ts": 1704110400000,
            "day": "2024-01-02",
            "price": "9.99",
            "blob": base64.b64encode(b"\x00\x01").decode("ascii"),
        }

    def test_naive_timestamp_uses_timezone(self):
        table_type = RemoteTableType(columns=(RemoteColumn("ts", "long", False, ("timestamp",)),))
        record = to_remote_record(
            {"ts": datetime(2024, 1, 1, 1, 0)}, table_type, ZoneInfo("Europe/Berlin")
        )
        assert record["ts"] == 1704067200000

    def test_nested_row_flattened(self):
        table_type = RemoteTableType(columns=(
            RemoteColumn("id", "long", False),
            RemoteColumn("address_city", "string", True),
        ))
        record = to_remote_record(Row(id=3, address=Row(city="Oslo")), table_type)
        assert record == {"id": 3, "address_city": "Oslo"}

    def test_missing_required_value(self):
        table_type = RemoteTableType(columns=(RemoteColumn("id", "long", False),))
        with pytest.raises(SchemaMismatchError, match="id"):
            to_remote_record(Row(id=None), table_type)

    def test_unconvertible_value(self):
        table_type = RemoteTableType(columns=(RemoteColumn("id", "long", False),))
        with pytest.raises(SchemaMismatchError):
            to_remote_record({"id": "eleven"}, table_type)

    def test_char_size(self):
        assert char_size(RemoteColumn("code", "string", True, ("char4",))) == 4
        assert char_size(RemoteColumn("code", "string", True, ("char256", "nullable"))) == 256
        assert char_size(RemoteColumn("note", "string", True)) is None

    def test_truncate_to_size(self):
        table_type = RemoteTableType(columns=(
            RemoteColumn("code", "string", False, ("char4",)),
            RemoteColumn("note", "string", True),
        ))
        row = Row(code="ABCDEFG", note="long free text")

        assert to_remote_record(row, table_type, truncate_to_size=True) == {"code": "ABCD", "note": "long free text"}
        assert to_remote_record(row, table_type)["code"] == "ABCDEFG"

    def test_positional_matching(self):
        table_type = RemoteTableType(columns=(
            RemoteColumn("id", "long", False),
            RemoteColumn("product", "string", True),
        ))
        record = to_remote_record(Row(order_id=7, item="pen"), table_type, map_to_schema=False)
        assert record == {"id": 7, "product": "pen"}

    def test_positional_matching_too_many_values(self):
        table_type = RemoteTableType(columns=(RemoteColumn("id", "long", False),))
        with pytest.raises(SchemaMismatchError, match="2 values"):
            to_remote_record(Row(a=1, b=2), table_type, map_to_schema=False)
