"""Relational view of a DynamoDB table: partitioning and schema resolution."""

import logging

from . import options as opts
from .connector import create_connector
from .partitioning import ScanPartition
from .schema import infer_schema

logger = logging.getLogger(__name__)


class DynamoRelation:
    """
    A DynamoDB table (or index) seen as a relation with a fixed schema.

    The schema is the one supplied by the caller, or inferred from a sample of
    the table the first time it is needed. Scans are split into one
    ScanPartition per DynamoDB parallel scan segment.

    Constructing a relation does not connect to DynamoDB.
    """

    def __init__(self, options, user_schema=None):
        """
        Args:
            options: Data source options dict
            user_schema: Caller supplied StructType, or None to infer one
        """
        self.options = options
        self.table_name = opts.require_table_name(options)
        self.index_name = opts.get_option(options, opts.INDEX_NAME)
        self.num_partitions = opts.read_partitions(options)
        self.connector = create_connector(options, self.num_partitions, opts.write_partitions(options))
        self._user_schema = user_schema
        self._schema = None

    @property
    def schema(self):
        if self._schema is None:
            if self._user_schema is not None:
                self._schema = self._user_schema
            else:
                self._schema = infer_schema(self.connector)
        return self._schema

    @property
    def size_in_bytes(self):
        return self.connector.total_size_in_bytes

    def build_scan(self, required_columns=None, filters=None):
        """
        Build one partition per scan segment.

        Called with no arguments every column is read; with ``required_columns``
        only those columns are projected; with ``filters`` as well, the filters
        are pushed down to every partition's scan. The partitions are returned
        in segment order but are scanned independently, so rows come back in no
        particular order.

        Returns:
            List of ScanPartition objects
        """
        # Describe on the driver so the limits travel with the partitions
        self.connector.describe()
        if required_columns:
            self.connector.validate_columns(required_columns)
        partitions = [
            ScanPartition(self.schema, segment, self.connector, required_columns, filters)
            for segment in range(self.num_partitions)
        ]
        logger.info("Built %d scan partitions for %s (columns=%s, filters=%d)",
                    len(partitions), self.connector, required_columns or "all", len(filters or ()))
        return partitions

    def __eq__(self, other):
        if not isinstance(other, DynamoRelation):
            return False
        return (self.table_name == other.table_name
                and self.index_name == other.index_name
                and self.schema == other.schema
                and self.size_in_bytes == other.size_in_bytes)

    def __hash__(self):
        return hash((self.table_name, self.index_name))

    def __repr__(self):
        index = f", index={self.index_name}" if self.index_name else ""
        return f"DynamoRelation(table={self.table_name}{index}, partitions={self.num_partitions})"
