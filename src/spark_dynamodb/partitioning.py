"""Partition descriptors for DynamoDB parallel scan."""

from pyspark.sql.datasource import InputPartition


class ScanPartition(InputPartition):
    """
    Represents one DynamoDB parallel scan segment.

    DynamoDB Scan supports parallel reads by splitting the table into
    segments. Each partition corresponds to one segment and carries
    everything an executor needs to scan it: the target schema, the
    connector, and the optional projected columns and pushed filters.
    The partition is never mutated after construction.
    """

    def __init__(self, schema, segment, connector, columns=None, filters=None):
        """
        Initialize a scan partition.

        Args:
            schema: Spark StructType rows are decoded against
            segment: Segment number (0 to connector.total_segments - 1)
            connector: Table or index connector shared by all partitions
            columns: Names of the columns to project, or None for all schema columns
            filters: Spark filters pushed down to DynamoDB, or None
        """
        super().__init__(segment)
        self.schema = schema
        self.segment = segment
        self.connector = connector
        self.columns = tuple(columns) if columns else None
        self.filters = tuple(filters) if filters else ()

    @property
    def total_segments(self):
        return self.connector.total_segments

    @property
    def output_columns(self):
        """Column names of the rows produced for this partition, in order."""
        if self.columns is not None:
            return list(self.columns)
        return [field.name for field in self.schema.fields]

    def __eq__(self, other):
        """Check equality based on partition content."""
        if not isinstance(other, ScanPartition):
            return False
        return (self.segment == other.segment and self.connector == other.connector
                and self.columns == other.columns and self.schema == other.schema)

    def __hash__(self):
        """Return hash for use in sets/dicts."""
        return hash((self.segment, self.connector, self.columns))

    def __repr__(self):
        """Return string representation."""
        return (f"ScanPartition(segment={self.segment}, total_segments={self.total_segments}, "
                f"table={self.connector.table_name})")
