"""Schema derivation utilities for DynamoDB types."""

import logging
from decimal import Decimal

from pyspark.sql.types import (
    StructType, StructField, StringType, IntegerType, LongType, DecimalType,
    DoubleType, BooleanType, ArrayType
)

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

MAX_INFERRED_FIELDS = 100

# Spark decimals hold at most 38 digits.
MAX_DECIMAL_PRECISION = 38


def _infer_number_type(number):
    """
    Pick the narrowest Spark type for a DynamoDB number.

    Integral numbers with fewer than 10 digits map to IntegerType, fewer than
    19 digits to LongType, anything wider to DecimalType. Numbers with a
    fractional part map to DoubleType.
    """
    _, digits, exponent = number.as_tuple()
    if not isinstance(exponent, int):
        return StringType()
    if exponent < 0:
        return DoubleType()
    precision = len(digits) + exponent if any(digits) else 1
    if precision < 10:
        return IntegerType()
    if precision < 19:
        return LongType()
    return DecimalType(min(precision, MAX_DECIMAL_PRECISION), 0)


def infer_spark_type(value):
    """
    Infer Spark type from a Python value returned by DynamoDB.

    DynamoDB returns:
        bool -> BooleanType
        Decimal -> IntegerType / LongType / DecimalType (whole numbers) or DoubleType (fractional)
        list -> ArrayType of the first element's type
        set -> ArrayType of an arbitrary element's type
        dict -> StructType of the recursively inferred entries
        anything else (str, binary, None) -> StringType

    Empty lists and sets infer ArrayType(StringType).

    Args:
        value: A Python value from a DynamoDB item

    Returns:
        PySpark DataType
    """
    # Bool check must come before int (bool is subclass of int in Python)
    if isinstance(value, bool):
        return BooleanType()

    if isinstance(value, int):
        return _infer_number_type(Decimal(value))

    if isinstance(value, Decimal):
        return _infer_number_type(value)

    if isinstance(value, float):
        return DoubleType()

    if isinstance(value, list):
        if value:
            return ArrayType(infer_spark_type(value[0]))
        return ArrayType(StringType())

    if isinstance(value, (set, frozenset)):
        if value:
            element = next(iter(value))
            return ArrayType(infer_spark_type(element))
        return ArrayType(StringType())

    if isinstance(value, dict):
        return StructType([
            StructField(name, infer_spark_type(value[name]), nullable=True)
            for name in sorted(value)
        ])

    # Default fallback
    return StringType()


def derive_schema_from_items(items):
    """
    Derive Spark schema from sample DynamoDB items.

    Folds over the items in order: the field set is the union of every
    attribute seen, and when an attribute appears with different types the
    type inferred from the later item replaces the earlier one.

    Args:
        items: List of DynamoDB items (dicts)

    Returns:
        StructType representing the Spark schema

    Raises:
        ConfigurationError: more than 100 attributes were found
    """
    attr_types = {}

    for item in items:
        for attr_name, attr_value in item.items():
            attr_types[attr_name] = infer_spark_type(attr_value)

    if len(attr_types) > MAX_INFERRED_FIELDS:
        raise ConfigurationError(
            f"Schema inference not possible, too many attributes in table ({len(attr_types)} > "
            f"{MAX_INFERRED_FIELDS}). Provide an explicit schema."
        )

    # Sort fields alphabetically for consistent ordering
    fields = []
    for name in sorted(attr_types.keys()):
        fields.append(StructField(name, attr_types[name], nullable=True))

    return StructType(fields)


def infer_schema(connector):
    """
    Infer a schema by sampling the first page of segment 0.

    An empty table yields an empty schema without issuing a scan.

    Args:
        connector: Table or index connector

    Returns:
        StructType representing the Spark schema
    """
    if not connector.non_empty():
        logger.info("Table %s is empty, inferred an empty schema", connector.table_name)
        return StructType([])

    page = connector.scan(0).first_page()
    schema = derive_schema_from_items(page.items)
    logger.info("Inferred %d fields for %s from %d sampled items",
                len(schema.fields), connector.table_name, len(page.items))
    return schema
