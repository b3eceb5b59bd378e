"""Translation of Spark pushed-down filters into DynamoDB filter conditions.

Filters are the objects Spark hands to ``DataSourceReader.pushFilters``
(``EqualTo``, ``GreaterThan``, ``In``, ``Not``, ...). They are matched by class
name and attribute layout so the translation does not depend on which Spark
release provides them.

A DynamoDB condition sees the stored value, while Spark sees the value after
it was coerced to the declared column type. The two only agree when the stored
value already has the column's native DynamoDB type, so every filter is
translated into a pair of conditions:

* ``upper`` matches at least every item whose row the filter keeps;
* ``lower`` matches only items whose row the filter does not reject.

``None`` as the upper bound means "no constraint" and as the lower bound means
"no item". Scans use the upper bound, and Spark re-applies every filter to the
rows that come back.
"""

import logging
from functools import reduce

from boto3.dynamodb.conditions import Attr
from pyspark.sql.types import (
    BooleanType, ByteType, IntegerType, LongType, ShortType, StringType, StructType
)

logger = logging.getLogger(__name__)

# DynamoDB's IN operator accepts at most 100 operands.
MAX_IN_VALUES = 100

_COMPARISONS = {
    "EqualTo": "eq",
    "EqualNullSafe": "eq",
    "GreaterThan": "gt",
    "GreaterThanOrEqual": "gte",
    "LessThan": "lt",
    "LessThanOrEqual": "lte",
}

_EQUALITIES = ("EqualTo", "EqualNullSafe", "In")

_INTEGRAL_TYPES = (ByteType, ShortType, IntegerType, LongType)

# Characters boto3 reads as nested-path or list-index syntax
_PATH_SYNTAX = (".", "[", "]")


def _attribute_parts(spark_filter):
    attribute = getattr(spark_filter, "attribute", None)
    if attribute is None:
        return None
    parts = (attribute,) if isinstance(attribute, str) else tuple(attribute)
    if not parts or any(not part or any(c in part for c in _PATH_SYNTAX) for part in parts):
        return None
    return parts


def _column_type(parts, schema):
    data_type = schema
    for part in parts:
        if not isinstance(data_type, StructType) or part not in data_type.fieldNames():
            return None
        data_type = data_type[part].dataType
    return data_type


def _native_type(data_type):
    """DynamoDB type whose values decode unchanged into ``data_type``."""
    if isinstance(data_type, StringType):
        return "S"
    if isinstance(data_type, _INTEGRAL_TYPES):
        return "N"
    if isinstance(data_type, BooleanType):
        return "BOOL"
    return None


def _literal_matches(value, native_type):
    if native_type == "S":
        return isinstance(value, str)
    if native_type == "N":
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, bool)


def _and(left, right):
    if left is None:
        return right
    if right is None:
        return left
    return left & right


def _or(left, right):
    if left is None:
        return right
    if right is None:
        return left
    return left | right


def _null_bounds(attr, native_type):
    """Bounds of ``IsNull``: missing and NULL attributes always decode to null."""
    lower = attr.not_exists() | attr.attribute_type("NULL")
    # Values of the native type never decode to null, except numbers out of range
    upper = ~attr.attribute_type(native_type) if native_type in ("S", "BOOL") else None
    return upper, lower


def _value_bounds(attr, native_type, condition):
    """Bounds of a comparison that holds on native values exactly as DynamoDB evaluates it."""
    return condition | ~attr.attribute_type(native_type), attr.attribute_type(native_type) & condition


def filter_bounds(spark_filter, schema=None):
    """
    Translate one filter into its (upper, lower) pair of boto3 conditions.

    Args:
        spark_filter: A Spark data source filter
        schema: StructType declaring the column types the rows are decoded with

    Returns:
        Tuple of ``boto3.dynamodb.conditions`` conditions, either of which may be None
    """
    kind = type(spark_filter).__name__

    if kind == "And":
        left = filter_bounds(spark_filter.left, schema)
        right = filter_bounds(spark_filter.right, schema)
        lower = left[1] & right[1] if left[1] is not None and right[1] is not None else None
        return _and(left[0], right[0]), lower

    if kind == "Or":
        left = filter_bounds(spark_filter.left, schema)
        right = filter_bounds(spark_filter.right, schema)
        upper = left[0] | right[0] if left[0] is not None and right[0] is not None else None
        return upper, _or(left[1], right[1])

    if kind == "Not":
        upper, lower = filter_bounds(spark_filter.child, schema)
        return (None if lower is None else ~lower), (None if upper is None else ~upper)

    parts = _attribute_parts(spark_filter)
    if parts is None:
        return None, None
    attr = Attr(".".join(parts))
    native_type = _native_type(_column_type(parts, schema)) if schema is not None else None

    value = getattr(spark_filter, "value", None)
    if kind == "IsNull" or (kind == "EqualNullSafe" and value is None):
        return _null_bounds(attr, native_type)
    if kind == "IsNotNull":
        null_upper, _ = _null_bounds(attr, native_type)
        return attr.exists() & ~attr.attribute_type("NULL"), (None if null_upper is None else ~null_upper)

    if native_type is None or (native_type == "BOOL" and kind not in _EQUALITIES):
        return None, None

    if kind in _COMPARISONS:
        if not _literal_matches(value, native_type):
            return None, None
        return _value_bounds(attr, native_type, getattr(attr, _COMPARISONS[kind])(value))

    if kind == "In":
        values = [v for v in (value or ()) if v is not None]
        if not values or len(values) > MAX_IN_VALUES or not all(_literal_matches(v, native_type) for v in values):
            return None, None
        return _value_bounds(attr, native_type, attr.is_in(values))

    if native_type == "S" and isinstance(value, str):
        if kind == "StringStartsWith":
            return _value_bounds(attr, native_type, attr.begins_with(value))
        if kind == "StringContains":
            return _value_bounds(attr, native_type, attr.contains(value))

    return None, None


def translate_filter(spark_filter, schema=None):
    """
    Translate one filter into the condition a scan can safely apply.

    Returns:
        A ``boto3.dynamodb.conditions`` condition matching every item whose
        row the filter keeps, or None when nothing useful can be pushed
    """
    return filter_bounds(spark_filter, schema)[0]


def can_translate(spark_filter, schema=None):
    return translate_filter(spark_filter, schema) is not None


def build_filter_condition(filters, schema=None):
    """
    Combine the translatable filters into a single conjunction.

    Filters that cannot be translated are dropped. The result can match more
    items than the filters keep, so the caller re-applies the filters.

    Returns:
        The combined condition, or None if nothing could be translated
    """
    conditions = []
    for spark_filter in filters or ():
        condition = translate_filter(spark_filter, schema)
        if condition is None:
            logger.debug("Dropping filter that DynamoDB cannot evaluate: %r", spark_filter)
            continue
        conditions.append(condition)
    if not conditions:
        return None
    return reduce(lambda left, right: left & right, conditions)
