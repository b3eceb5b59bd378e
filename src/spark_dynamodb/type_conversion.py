"""Type conversion utilities for DynamoDB data types.

Reads decode every attribute against the declared Spark type of its column
with best-effort coercion: a value that cannot be represented in the declared
type becomes None instead of failing the partition.

Writes encode every field from the row's declared Spark type, so nothing is
inferred on the way out.
"""

import base64
import datetime
import logging
import math
from decimal import Context, Decimal, InvalidOperation

from boto3.dynamodb.types import Binary
from pyspark.sql.types import (
    ArrayType, BinaryType, BooleanType, ByteType, DateType, DecimalType, DoubleType,
    FloatType, IntegerType, LongType, MapType, ShortType, StringType, StructType, TimestampType
)

logger = logging.getLogger(__name__)

_INTEGRAL_RANGES = {
    ByteType: (-(2 ** 7), 2 ** 7 - 1),
    ShortType: (-(2 ** 15), 2 ** 15 - 1),
    IntegerType: (-(2 ** 31), 2 ** 31 - 1),
    LongType: (-(2 ** 63), 2 ** 63 - 1),
}

_TRUE_STRINGS = ("true", "1")
_FALSE_STRINGS = ("false", "0")


def _mismatch(value, data_type):
    logger.debug("Cannot coerce %r to %s, using null", value, data_type.simpleString())
    return None


def _to_integral(value, data_type):
    if isinstance(value, bool):
        return _mismatch(value, data_type)
    if isinstance(value, str):
        try:
            value = Decimal(value.strip())
        except InvalidOperation:
            return _mismatch(value, data_type)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return _mismatch(value, data_type)
        value = Decimal(str(value))
    if isinstance(value, Decimal):
        if not value.is_finite() or value != value.to_integral_value():
            return _mismatch(value, data_type)
        value = int(value)
    if not isinstance(value, int):
        return _mismatch(value, data_type)
    low, high = _INTEGRAL_RANGES[type(data_type)]
    if not low <= value <= high:
        return _mismatch(value, data_type)
    return value


def _to_fractional(value, data_type):
    if isinstance(value, bool):
        return _mismatch(value, data_type)
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return _mismatch(value, data_type)
    return _mismatch(value, data_type)


def _to_decimal(value, data_type):
    if isinstance(value, bool):
        return _mismatch(value, data_type)
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, (int, str)):
            result = Decimal(str(value).strip())
        elif isinstance(value, float):
            result = Decimal(str(value))
        else:
            return _mismatch(value, data_type)
    except InvalidOperation:
        return _mismatch(value, data_type)
    try:
        return result.quantize(Decimal(1).scaleb(-data_type.scale), context=Context(prec=data_type.precision))
    except InvalidOperation:
        return _mismatch(value, data_type)


def _to_string(value, data_type):
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, Decimal):
        return format(value, "f") if value == value.to_integral_value() else str(value)
    if isinstance(value, Binary):
        value = value.value
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return _mismatch(value, data_type)


def _to_boolean(value, data_type):
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return _mismatch(value, data_type)


def _to_binary(value, data_type):
    if isinstance(value, Binary):
        return bytes(value.value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return _mismatch(value, data_type)


def _to_timestamp(value, data_type):
    if isinstance(value, str):
        try:
            return datetime.datetime.fromisoformat(value.strip())
        except ValueError:
            return _mismatch(value, data_type)
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return datetime.datetime.fromtimestamp(float(value), tz=datetime.timezone.utc)
    return _mismatch(value, data_type)


def _to_date(value, data_type):
    if isinstance(value, str):
        try:
            return datetime.date.fromisoformat(value.strip()[:10])
        except ValueError:
            return _mismatch(value, data_type)
    return _mismatch(value, data_type)


def convert_dynamodb_value(value, data_type):
    """
    Convert a DynamoDB value to the Python value Spark expects for ``data_type``.

    DynamoDB (via boto3 resource) returns:
        - Numbers as Decimal
        - Sets as set
        - Binary as boto3.dynamodb.types.Binary or bytes

    Args:
        value: Value from a DynamoDB item
        data_type: Declared Spark type of the column

    Returns:
        Converted value, or None when the value does not fit the type
    """
    if value is None:
        return None

    if isinstance(data_type, tuple(_INTEGRAL_RANGES)):
        return _to_integral(value, data_type)

    if isinstance(data_type, (DoubleType, FloatType)):
        return _to_fractional(value, data_type)

    if isinstance(data_type, DecimalType):
        return _to_decimal(value, data_type)

    if isinstance(data_type, StringType):
        return _to_string(value, data_type)

    if isinstance(data_type, BooleanType):
        return _to_boolean(value, data_type)

    if isinstance(data_type, BinaryType):
        return _to_binary(value, data_type)

    if isinstance(data_type, TimestampType):
        return _to_timestamp(value, data_type)

    if isinstance(data_type, DateType):
        return _to_date(value, data_type)

    # Sets come back in arbitrary order (Spark has no set type)
    if isinstance(data_type, ArrayType):
        if not isinstance(value, (list, set, frozenset, tuple)):
            return _mismatch(value, data_type)
        return [convert_dynamodb_value(v, data_type.elementType) for v in value]

    if isinstance(data_type, StructType):
        if not isinstance(value, dict):
            return _mismatch(value, data_type)
        return tuple(convert_dynamodb_value(value.get(f.name), f.dataType) for f in data_type.fields)

    if isinstance(data_type, MapType):
        if not isinstance(value, dict):
            return _mismatch(value, data_type)
        return {
            convert_dynamodb_value(k, data_type.keyType): convert_dynamodb_value(v, data_type.valueType)
            for k, v in value.items()
        }

    return value


def convert_for_dynamodb(value, data_type=None):
    """
    Convert a Spark/Python value for writing to DynamoDB.

    DynamoDB requires Decimal instead of float, has no NaN or infinity,
    and stores dates and timestamps as ISO-8601 strings.

    Args:
        value: Value from a Spark Row
        data_type: Declared Spark type of the value, or None to go by the Python type

    Returns:
        Converted value suitable for DynamoDB put_item
    """
    if value is None:
        return None

    if isinstance(value, bool):
        return value

    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"DynamoDB cannot store non-finite number {value}")
        return Decimal(str(value))

    if isinstance(value, datetime.datetime):
        return value.isoformat()

    if isinstance(value, datetime.date):
        return value.isoformat()

    if isinstance(value, (bytes, bytearray)):
        return Binary(bytes(value))

    if isinstance(data_type, StructType) and isinstance(value, (tuple, list)):
        # Row (a tuple subclass) or a plain tuple in field order
        return _struct_to_map(zip(data_type.fieldNames(), value), data_type)

    if isinstance(value, dict):
        if isinstance(data_type, StructType):
            return _struct_to_map(value.items(), data_type)
        value_type = data_type.valueType if isinstance(data_type, MapType) else None
        return {str(k): convert_for_dynamodb(v, value_type) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        element_type = data_type.elementType if isinstance(data_type, ArrayType) else None
        return [convert_for_dynamodb(v, element_type) for v in value]

    return value


def _struct_to_map(pairs, struct_type):
    result = {}
    for name, field_value in pairs:
        field_type = struct_type[name].dataType if name in struct_type.fieldNames() else None
        converted = convert_for_dynamodb(field_value, field_type)
        if converted is not None:
            result[name] = converted
    return result


def row_to_item(row, schema, exclude=()):
    """
    Encode a Spark Row as a DynamoDB item using the row's declared schema.

    Null fields are left out of the item.
    """
    item = {}
    for field, value in zip(schema.fields, row):
        if field.name in exclude:
            continue
        converted = convert_for_dynamodb(value, field.dataType)
        if converted is not None:
            item[field.name] = converted
    return item
