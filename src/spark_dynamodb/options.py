"""Option lookup and validation for the DynamoDB data source.

Spark hands options over as strings. Every option is looked up
case-insensitively under its documented name and its snake_case alias,
so ``tableName`` and ``table_name`` are interchangeable.
"""

import os

from .errors import ConfigurationError

TABLE_NAME = ("tableName", "table_name")
INDEX_NAME = ("indexName", "index_name")
READ_PARTITIONS = ("readPartitions", "read_partitions", "total_segments")
WRITE_PARTITIONS = ("writePartitions", "write_partitions")
DEFAULT_PARALLELISM = ("defaultParallelism", "default_parallelism")
REGION = ("region", "aws_region")
ENDPOINT = ("endpoint", "endpoint_url")
CONSISTENT_READ = ("stronglyConsistentReads", "consistent_read")
FILTER_PUSHDOWN = ("filterPushdown", "filter_pushdown")
THROUGHPUT = ("throughput",)
TARGET_CAPACITY = ("targetCapacity", "target_capacity")
BYTES_PER_RCU = ("bytesPerRCU", "bytes_per_rcu")
MAX_RETRIES = ("maxRetries", "max_retries")

_TRUE_VALUES = ("true", "1", "yes")
_FALSE_VALUES = ("false", "0", "no")


def get_option(options, names, default=None):
    """Return the first option present under any of ``names``, else ``default``."""
    if isinstance(names, str):
        names = (names,)
    lowered = {str(key).lower(): value for key, value in options.items()}
    for name in names:
        value = lowered.get(name.lower())
        if value is not None and value != "":
            return value
    return default


def get_int_option(options, names, default=None, minimum=None):
    value = get_option(options, names)
    if value is None:
        return default
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Option '{_first(names)}' must be an integer, got '{value}'")
    if minimum is not None and result < minimum:
        raise ConfigurationError(f"Option '{_first(names)}' must be >= {minimum}, got {result}")
    return result


def get_float_option(options, names, default=None):
    value = get_option(options, names)
    if value is None:
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Option '{_first(names)}' must be a number, got '{value}'")
    if result <= 0:
        raise ConfigurationError(f"Option '{_first(names)}' must be positive, got {result}")
    return result


def get_bool_option(options, names, default=False):
    value = get_option(options, names)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Option '{_first(names)}' must be true or false, got '{value}'")


def require_table_name(options):
    """Return the table name or fail before anything touches DynamoDB."""
    table_name = get_option(options, TABLE_NAME)
    if not table_name:
        raise ConfigurationError("Missing required options: tableName (or table_name)")
    return table_name


def default_parallelism(options):
    """
    Return the platform parallelism hint.

    Python data source callbacks run outside the driver's SparkContext, so the
    hint comes from the ``defaultParallelism`` option when the caller sets it,
    otherwise from the number of local CPUs.
    """
    hint = get_int_option(options, DEFAULT_PARALLELISM, minimum=1)
    if hint is not None:
        return hint
    return os.cpu_count() or 1


def read_partitions(options):
    return get_int_option(options, READ_PARTITIONS, minimum=1) or default_parallelism(options)


def write_partitions(options):
    return get_int_option(options, WRITE_PARTITIONS, minimum=1) or default_parallelism(options)


def _first(names):
    return names if isinstance(names, str) else names[0]
