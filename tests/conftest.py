import pytest
from pyspark.sql import SparkSession
from pyspark.sql.types import StructType, StructField, StringType, IntegerType, LongType
from unittest.mock import MagicMock, patch


@pytest.fixture(scope="session")
def spark():
    """Create a Spark session for testing."""
    spark = SparkSession.builder \
        .appName("dynamodb-tests") \
        .master("local[2]") \
        .getOrCreate()
    yield spark
    spark.stop()


@pytest.fixture
def basic_options():
    """Basic connection options for testing."""
    return {
        "tableName": "test_table",
        "region": "us-east-1",
        "endpoint": "http://localhost:8000",
        "readPartitions": "1",
        "writePartitions": "1",
    }


@pytest.fixture
def sample_schema():
    """Sample Spark schema for testing."""
    return StructType([
        StructField("id", StringType(), False),
        StructField("name", StringType(), True),
        StructField("age", IntegerType(), True),
        StructField("score", LongType(), True)
    ])


def _make_mock_table(items=None, key_schema=None, item_count=None, size_bytes=None,
                     read_capacity=1000, write_capacity=1000, pages=None):
    """Build a MagicMock standing in for a boto3 DynamoDB Table resource."""
    table = MagicMock()
    table.table_name = "test_table"
    table.key_schema = key_schema or [
        {"AttributeName": "id", "KeyType": "HASH"},
    ]
    table.attribute_definitions = [
        {"AttributeName": "id", "AttributeType": "S"},
    ]
    table.provisioned_throughput = {
        "ReadCapacityUnits": read_capacity,
        "WriteCapacityUnits": write_capacity,
    }
    table.global_secondary_indexes = None
    table.local_secondary_indexes = None
    table.load = MagicMock()

    items = list(items or [])
    table.item_count = len(items) if item_count is None else item_count
    table.table_size_bytes = 100 * len(items) if size_bytes is None else size_bytes

    if pages is not None:
        table.scan.side_effect = pages
    else:
        table.scan.return_value = {"Items": items}
    return table


@pytest.fixture
def make_mock_table():
    """Factory for mock tables; see _make_mock_table for the knobs."""
    return _make_mock_table


@pytest.fixture
def mock_dynamodb_table():
    """Mock DynamoDB table with key schema and two sample items."""
    return _make_mock_table(items=[
        {"id": "abc-123", "name": "Alice", "age": 30, "score": 100},
        {"id": "abc-456", "name": "Bob", "age": 25, "score": 200},
    ])


@pytest.fixture
def mock_resource():
    """Patch boto3.Session so every connector gets the same MagicMock resource."""
    mock_session_class = MagicMock()
    resource = mock_session_class.return_value.resource.return_value
    resource.batch_write_item.return_value = {"UnprocessedItems": {}}
    with patch("boto3.Session", mock_session_class):
        yield resource
