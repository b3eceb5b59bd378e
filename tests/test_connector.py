"""Tests for the table and index connectors."""

import pickle
from decimal import Decimal

import pytest
from unittest.mock import MagicMock, patch
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError
from pyspark.sql.types import StructType, StructField, StringType, IntegerType


def _connector(options=None, parallelism=1, write_parallelism=None):
    from spark_dynamodb.connector import TableConnector

    return TableConnector("test_table", parallelism, options or {}, write_parallelism)


def _throttle():
    return ClientError(
        {"Error": {"Code": "ProvisionedThroughputExceededException", "Message": ""}}, "Scan"
    )


# Sizing

def test_describe_loads_table_once(mock_resource, make_mock_table):
    table = make_mock_table(items=[{"id": "a"}])
    mock_resource.Table.return_value = table
    connector = _connector()

    connector.describe()
    connector.describe()

    table.load.assert_called_once()
    assert connector.item_count == 1
    assert connector.total_size_in_bytes == 100
    assert connector.key_columns == ["id"]
    assert connector.non_empty()


def test_limits_from_provisioned_capacity(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(
        item_count=10, size_bytes=1000, read_capacity=100, write_capacity=40,
    )
    connector = _connector(parallelism=4, write_parallelism=2)
    connector.describe()

    assert connector.read_limiter.rate == 25
    assert connector.write_limiter.rate == 20
    # 4000 bytes per RCU / 100 byte items * 25 RCU/s, doubled for eventually consistent reads
    assert connector.item_limit == 2000


def test_consistent_reads_halve_item_limit(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(item_count=10, size_bytes=1000, read_capacity=100)
    connector = _connector({"stronglyConsistentReads": "true"}, parallelism=4)
    connector.describe()

    assert connector.item_limit == 1000


def test_on_demand_table_uses_default_throughput(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(
        item_count=10, size_bytes=1000, read_capacity=0, write_capacity=0,
    )
    connector = _connector(parallelism=2)
    connector.describe()

    assert connector.read_limiter.rate == 50
    assert connector.write_limiter.rate == 50


def test_throughput_and_target_capacity_options(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(item_count=10, size_bytes=1000, read_capacity=5)
    connector = _connector({"throughput": "200", "targetCapacity": "0.5"}, parallelism=2)
    connector.describe()

    assert connector.read_limiter.rate == 50


def test_empty_table_sets_no_limit(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(item_count=0, size_bytes=0)
    connector = _connector()
    connector.describe()

    assert connector.item_limit is None
    assert not connector.non_empty()
    assert "Limit" not in connector.scan_kwargs(0)


def test_item_limit_is_at_least_one(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(item_count=1, size_bytes=300 * 1024, read_capacity=1)
    connector = _connector(parallelism=8)
    connector.describe()

    assert connector.item_limit == 1


# Scan construction

def test_scan_kwargs_for_parallel_segment(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(item_count=10, size_bytes=1000)
    connector = _connector(parallelism=4)

    kwargs = connector.scan_kwargs(2)

    assert kwargs["Segment"] == 2
    assert kwargs["TotalSegments"] == 4
    assert kwargs["ConsistentRead"] is False
    assert kwargs["ReturnConsumedCapacity"] == "TOTAL"
    assert kwargs["Limit"] == connector.item_limit
    assert "ProjectionExpression" not in kwargs
    assert "FilterExpression" not in kwargs


def test_single_segment_scan_omits_segment(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(item_count=10, size_bytes=1000)

    kwargs = _connector().scan_kwargs(0)

    assert "Segment" not in kwargs
    assert "TotalSegments" not in kwargs


def test_projection_uses_placeholders(mock_resource, make_mock_table):
    """Reserved words such as 'name' and 'size' must be aliased."""
    mock_resource.Table.return_value = make_mock_table(item_count=10, size_bytes=1000)

    kwargs = _connector().scan_kwargs(0, columns=["id", "name", "size"])

    assert kwargs["ProjectionExpression"] == "#p0, #p1, #p2"
    assert kwargs["ExpressionAttributeNames"] == {"#p0": "id", "#p1": "name", "#p2": "size"}


def test_scan_with_filters(mock_resource, make_mock_table):
    from test_filters import EqualTo, StringEndsWith

    mock_resource.Table.return_value = make_mock_table(item_count=10, size_bytes=1000)

    schema = StructType([StructField("age", IntegerType()), StructField("name", StringType())])
    filters = [EqualTo(("age",), 30), StringEndsWith(("name",), "e")]

    kwargs = _connector().scan_kwargs(0, filters=filters, schema=schema)

    assert kwargs["FilterExpression"] == Attr("age").eq(30) | ~Attr("age").attribute_type("N")
    assert "FilterExpression" not in _connector().scan_kwargs(0, filters=filters)


def test_scan_rejects_segment_out_of_range(mock_resource, make_mock_table):
    from spark_dynamodb.errors import ConfigurationError

    mock_resource.Table.return_value = make_mock_table()
    connector = _connector(parallelism=2)

    with pytest.raises(ConfigurationError, match="out of range"):
        connector.scan(2)
    with pytest.raises(ConfigurationError):
        connector.scan(-1)


# Cursor

def test_cursor_follows_continuation_keys(mock_resource, make_mock_table):
    table = make_mock_table(item_count=3, size_bytes=300, pages=[
        {"Items": [{"id": "a"}], "LastEvaluatedKey": {"id": "a"}},
        {"Items": [{"id": "b"}], "LastEvaluatedKey": {"id": "b"}},
        {"Items": [{"id": "c"}]},
    ])
    mock_resource.Table.return_value = table
    cursor = _connector().scan(0)

    pages = []
    page = cursor.next_page()
    while page is not None:
        pages.append(page)
        page = cursor.next_page()

    assert [p.items for p in pages] == [[{"id": "a"}], [{"id": "b"}], [{"id": "c"}]]
    assert cursor.exhausted
    assert cursor.pages_fetched == 3
    calls = table.scan.call_args_list
    assert "ExclusiveStartKey" not in calls[0][1]
    assert calls[1][1]["ExclusiveStartKey"] == {"id": "a"}
    assert calls[2][1]["ExclusiveStartKey"] == {"id": "b"}


def test_cursor_acquires_previously_consumed_capacity(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(item_count=3, size_bytes=300, pages=[
        {"Items": [], "LastEvaluatedKey": {"id": "a"}, "ConsumedCapacity": {"CapacityUnits": 7.5}},
        {"Items": [], "ConsumedCapacity": {"CapacityUnits": 2.0}},
    ])
    connector = _connector()
    connector.describe()
    connector.read_limiter = MagicMock()

    cursor = connector.scan(0)
    cursor.next_page()
    cursor.next_page()

    permits = [c[0][0] for c in connector.read_limiter.acquire.call_args_list]
    assert permits == [1.0, 7.5]


def test_first_page_only_on_fresh_cursor(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(items=[{"id": "a"}])
    cursor = _connector().scan(0)

    page = cursor.first_page()
    assert page.items == [{"id": "a"}]
    assert not page.has_more
    with pytest.raises(RuntimeError):
        cursor.first_page()


def test_fetch_page_retries_throttling(mock_resource, make_mock_table):
    table = make_mock_table(item_count=1, size_bytes=100)
    table.scan.side_effect = [_throttle(), {"Items": [{"id": "a"}]}]
    mock_resource.Table.return_value = table

    with patch("spark_dynamodb.rate_limiter.backoff_delay", return_value=0):
        page = _connector().scan(0).next_page()

    assert page.items == [{"id": "a"}]
    assert table.scan.call_count == 2


def test_fetch_page_gives_up_after_max_retries(mock_resource, make_mock_table):
    from spark_dynamodb.errors import ThroughputExceededError

    table = make_mock_table(item_count=1, size_bytes=100)
    table.scan.side_effect = _throttle()
    mock_resource.Table.return_value = table

    with patch("spark_dynamodb.rate_limiter.backoff_delay", return_value=0):
        with pytest.raises(ThroughputExceededError):
            _connector({"maxRetries": "2"}).scan(0).next_page()

    assert table.scan.call_count == 3


# Writes

def test_put_items_chunks_by_25(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table()
    connector = _connector()

    result = connector.put_items([{"id": str(i)} for i in range(60)])

    calls = mock_resource.batch_write_item.call_args_list
    assert [len(c[1]["RequestItems"]["test_table"]) for c in calls] == [25, 25, 10]
    assert calls[0][1]["RequestItems"]["test_table"][0] == {"PutRequest": {"Item": {"id": "0"}}}
    assert result.submitted == 60
    assert result.requests == 3
    assert result.resubmitted == 0


def test_put_items_resubmits_only_unprocessed(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table()
    leftover = [{"PutRequest": {"Item": {"id": "2"}}}]
    mock_resource.batch_write_item.side_effect = [
        {"UnprocessedItems": {"test_table": leftover}},
        {"UnprocessedItems": {}},
    ]

    with patch("spark_dynamodb.connector.backoff_delay", return_value=0):
        result = _connector().put_items([{"id": "1"}, {"id": "2"}])

    calls = mock_resource.batch_write_item.call_args_list
    assert len(calls) == 2
    assert calls[1][1]["RequestItems"] == {"test_table": leftover}
    assert result.submitted == 2
    assert result.resubmitted == 1


def test_put_items_fails_when_unprocessed_items_remain(mock_resource, make_mock_table):
    from spark_dynamodb.errors import BatchWriteError

    mock_resource.Table.return_value = make_mock_table()
    mock_resource.batch_write_item.return_value = {
        "UnprocessedItems": {"test_table": [{"PutRequest": {"Item": {"id": "1"}}}]}
    }

    with patch("spark_dynamodb.connector.backoff_delay", return_value=0):
        with pytest.raises(BatchWriteError) as excinfo:
            _connector({"maxRetries": "2"}).put_items([{"id": "1"}])

    assert excinfo.value.unprocessed_count == 1
    assert mock_resource.batch_write_item.call_count == 3


def test_put_items_rejects_oversized_item(mock_resource, make_mock_table):
    from spark_dynamodb.errors import ItemSizeError

    mock_resource.Table.return_value = make_mock_table()

    with pytest.raises(ItemSizeError, match="400KB"):
        _connector().put_items([{"id": "1", "blob": "x" * (401 * 1024)}])

    mock_resource.batch_write_item.assert_not_called()


def test_write_acquires_capacity_per_kilobyte(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table()
    connector = _connector()
    connector.describe()
    connector.write_limiter = MagicMock()

    connector.put_items([{"id": "1"}, {"id": "2", "data": "x" * 3000}])

    connector.write_limiter.acquire.assert_called_once_with(4)


def test_delete_items(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table()

    result = _connector().delete_items([{"id": "1"}])

    request_items = mock_resource.batch_write_item.call_args[1]["RequestItems"]
    assert request_items == {"test_table": [{"DeleteRequest": {"Key": {"id": "1"}}}]}
    assert result.submitted == 1


def test_item_size():
    from spark_dynamodb.connector import attribute_size, item_size

    assert attribute_size("abc") == 3
    assert attribute_size(True) == 1
    assert attribute_size(Decimal("12345")) == 4
    assert item_size({"id": "abc", "n": Decimal("1")}) == 2 + 3 + 1 + 2


# Index connector

def _table_with_index(make_mock_table, projection):
    table = make_mock_table(item_count=10, size_bytes=1000)
    table.global_secondary_indexes = [{
        "IndexName": "by_name",
        "KeySchema": [{"AttributeName": "name", "KeyType": "HASH"}],
        "Projection": projection,
        "ItemCount": 4,
        "IndexSizeBytes": 200,
        "ProvisionedThroughput": {"ReadCapacityUnits": 10, "WriteCapacityUnits": 10},
    }]
    return table


def test_index_connector_describes_index(mock_resource, make_mock_table):
    from spark_dynamodb.connector import TableIndexConnector

    mock_resource.Table.return_value = _table_with_index(make_mock_table, {"ProjectionType": "ALL"})
    connector = TableIndexConnector("test_table", "by_name", 2, {})

    assert connector.item_count == 4
    assert connector.total_size_in_bytes == 200
    assert connector.read_limiter.rate == 5
    assert connector.scan_kwargs(1)["IndexName"] == "by_name"


def test_index_connector_rejects_unprojected_columns(mock_resource, make_mock_table):
    from spark_dynamodb.connector import TableIndexConnector
    from spark_dynamodb.errors import ConfigurationError

    mock_resource.Table.return_value = _table_with_index(
        make_mock_table, {"ProjectionType": "INCLUDE", "NonKeyAttributes": ["age"]}
    )
    connector = TableIndexConnector("test_table", "by_name", 1, {})

    connector.validate_columns(["id", "name", "age"])
    with pytest.raises(ConfigurationError, match="score"):
        connector.scan(0, columns=["id", "score"])


def test_index_connector_missing_index(mock_resource, make_mock_table):
    from spark_dynamodb.connector import TableIndexConnector
    from spark_dynamodb.errors import ConfigurationError

    mock_resource.Table.return_value = make_mock_table()

    with pytest.raises(ConfigurationError, match="not found"):
        TableIndexConnector("test_table", "nope", 1, {}).describe()


def test_index_connector_rejects_writes():
    from spark_dynamodb.connector import TableIndexConnector
    from spark_dynamodb.errors import UnsupportedOperationError

    connector = TableIndexConnector("test_table", "by_name", 1, {})

    with pytest.raises(UnsupportedOperationError):
        connector.put_items([{"id": "1"}])
    with pytest.raises(UnsupportedOperationError):
        connector.delete_items([{"id": "1"}])


def test_create_connector_picks_variant():
    from spark_dynamodb.connector import TableConnector, TableIndexConnector, create_connector

    assert type(create_connector({"tableName": "t"}, 1)) is TableConnector
    index = create_connector({"tableName": "t", "indexName": "i"}, 1)
    assert type(index) is TableIndexConnector
    assert index.index_name == "i"


def test_connector_pickles_without_boto3_state(mock_resource, make_mock_table):
    mock_resource.Table.return_value = make_mock_table(item_count=10, size_bytes=1000)
    connector = _connector(parallelism=2)
    connector.describe()
    connector.get_table()

    restored = pickle.loads(pickle.dumps(connector))

    assert restored == connector
    assert restored.item_limit == connector.item_limit
    assert restored.read_limiter.rate == connector.read_limiter.rate
    assert getattr(restored._local, "table", None) is None


def test_connector_requires_table_name():
    from spark_dynamodb.connector import TableConnector
    from spark_dynamodb.errors import ConfigurationError

    with pytest.raises(ConfigurationError):
        TableConnector("", 1, {})
