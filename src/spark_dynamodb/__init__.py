"""DynamoDB - Python Data Source for AWS DynamoDB."""

from .connector import BatchResult, Page, ScanCursor, TableConnector, TableIndexConnector, create_connector
from .data_source import DynamoDbDataSource
from .errors import (
    BatchWriteError, ConfigurationError, DynamoDbConnectorError, ItemSizeError,
    ThroughputExceededError, UnsupportedOperationError
)
from .partitioning import ScanPartition
from .rate_limiter import RateLimiter
from .reader import DynamoDbBatchReader, DynamoDbReader
from .relation import DynamoRelation
from .scan_iterator import ScanIterator, ScanState
from .schema import infer_spark_type, derive_schema_from_items, infer_schema
from .type_conversion import convert_dynamodb_value, convert_for_dynamodb, row_to_item
from .writer import DynamoDbBatchWriter, DynamoDbCommitMessage, DynamoDbStreamWriter, DynamoDbWriter

__all__ = [
    "DynamoDbDataSource",
    "DynamoDbBatchReader",
    "DynamoDbReader",
    "DynamoDbBatchWriter",
    "DynamoDbCommitMessage",
    "DynamoDbStreamWriter",
    "DynamoDbWriter",
    "DynamoRelation",
    "TableConnector",
    "TableIndexConnector",
    "create_connector",
    "ScanCursor",
    "Page",
    "BatchResult",
    "RateLimiter",
    "ScanPartition",
    "ScanIterator",
    "ScanState",
    "infer_spark_type",
    "derive_schema_from_items",
    "infer_schema",
    "convert_dynamodb_value",
    "convert_for_dynamodb",
    "row_to_item",
    "DynamoDbConnectorError",
    "ConfigurationError",
    "ItemSizeError",
    "UnsupportedOperationError",
    "ThroughputExceededError",
    "BatchWriteError",
]
