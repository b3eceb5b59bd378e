"""DynamoDB Data Source implementation."""

from pyspark.sql.datasource import DataSource

from .reader import DynamoDbBatchReader
from .relation import DynamoRelation
from .writer import DynamoDbBatchWriter, DynamoDbStreamWriter


class DynamoDbDataSource(DataSource):
    """PySpark Data Source for AWS DynamoDB."""

    @classmethod
    def name(cls):
        """Return the data source format name."""
        return "dynamodb"

    def __init__(self, options):
        """Initialize data source with options."""
        self.options = options

    def schema(self):
        """
        Return the schema of the data source.

        Only called when the caller did not supply a schema. Samples the first
        page of scan segment 0 and infers the schema from it; an empty table
        yields an empty schema. This runs once on the driver, never in forked
        worker processes.
        """
        return DynamoRelation(self.options).schema

    def reader(self, schema):
        """Return a batch reader instance."""
        return DynamoDbBatchReader(self.options, schema)

    def writer(self, schema, overwrite):
        """Return a batch writer instance."""
        return DynamoDbBatchWriter(self.options, schema)

    def streamWriter(self, schema, overwrite):
        """Return a streaming writer instance."""
        return DynamoDbStreamWriter(self.options, schema)
