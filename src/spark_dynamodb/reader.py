"""DynamoDB reader implementations using boto3."""

import logging

from pyspark.sql.datasource import DataSourceReader

from . import options as opts
from .filters import can_translate
from .relation import DynamoRelation
from .scan_iterator import ScanIterator

logger = logging.getLogger(__name__)


class DynamoDbReader:
    """Base reader class for DynamoDB data sources.

    IMPORTANT: The reader __init__ must NOT connect to DynamoDB (no boto3 calls).
    PySpark re-instantiates the reader in a forked Python worker process for
    partitions() and read(). Making boto3/SSL connections in __init__ causes the
    forked child process to crash due to non-fork-safe SSL state.

    Schema derivation (which needs a DynamoDB connection) is handled by
    DynamoDbDataSource.schema() on the driver before the reader is created.
    """

    def __init__(self, options, schema):
        """
        Initialize reader with pre-resolved schema.

        Args:
            options: Configuration options dict
            schema: Spark StructType schema (already resolved by DataSource.schema())
        """
        self.options = options

        # Validates tableName and the numeric options; no DynamoDB call here
        self.relation = DynamoRelation(options, schema)
        self.connector = self.relation.connector
        self.table_name = self.relation.table_name

        # Schema is always provided (resolved by DataSource.schema() or user)
        self.schema = schema
        self.columns = [field.name for field in schema.fields] if schema else []

        self.filter_pushdown = opts.get_bool_option(options, opts.FILTER_PUSHDOWN, True)
        self.pushed_filters = []

    def pushFilters(self, filters):
        """
        Push the filters DynamoDB can pre-screen and hand every filter back to Spark.

        DynamoDB evaluates pushed filters on stored values, before they are
        coerced to the declared column types, so the scan may return rows the
        filters reject. Spark evaluates all filters again on the rows we return.
        """
        for spark_filter in filters:
            if self.filter_pushdown and can_translate(spark_filter, self.schema):
                self.pushed_filters.append(spark_filter)
            yield spark_filter

    def partitions(self):
        """
        Return list of partitions for parallel reading.

        Uses DynamoDB parallel scan with Segment/TotalSegments.

        Returns:
            List of ScanPartition objects
        """
        return self.relation.build_scan(self.columns, self.pushed_filters)

    def read(self, partition):
        """
        Read data from a DynamoDB table segment using Scan.

        Args:
            partition: ScanPartition to read

        Returns:
            Iterator of tuples in schema column order
        """
        return ScanIterator(partition)


class DynamoDbBatchReader(DynamoDbReader, DataSourceReader):
    """Batch reader for DynamoDB."""

    pass
