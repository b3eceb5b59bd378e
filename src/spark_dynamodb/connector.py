"""Connectors over a DynamoDB table or one of its secondary indexes.

A connector is created on the driver, described once (``DescribeTable``) and
then pickled into every scan partition. It never holds a boto3 object across
pickling: resources are created lazily, one per thread, because boto3
resources are neither fork-safe nor thread-safe.
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from decimal import Decimal

from boto3.dynamodb.types import Binary

from . import options as opts
from .errors import BatchWriteError, ConfigurationError, ItemSizeError, UnsupportedOperationError
from .filters import build_filter_condition
from .rate_limiter import RateLimiter, backoff_delay, call_with_backoff

logger = logging.getLogger(__name__)

# DynamoDB BatchWriteItem hard limits.
MAX_BATCH_REQUESTS = 25
MAX_BATCH_BYTES = 16 * 1024 * 1024
MAX_ITEM_BYTES = 400 * 1024

# Capacity used when the table is on-demand and no throughput option is set.
DEFAULT_THROUGHPUT = 100
DEFAULT_BYTES_PER_RCU = 4000
DEFAULT_MAX_RETRIES = 10


def attribute_size(value):
    """Approximate the stored size of an attribute value, following DynamoDB's sizing rules."""
    if value is None or isinstance(value, bool):
        return 1
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    if isinstance(value, (int, float, Decimal)):
        digits = len(Decimal(str(value)).as_tuple().digits)
        return (digits + 1) // 2 + 1
    if isinstance(value, Binary):
        return len(value.value)
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, dict):
        return 3 + sum(len(str(k).encode("utf-8")) + attribute_size(v) + 1 for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return 3 + sum(attribute_size(v) + 1 for v in value)
    if isinstance(value, (set, frozenset)):
        return sum(attribute_size(v) for v in value)
    return len(str(value).encode("utf-8"))


def item_size(item):
    """Approximate size in bytes of a whole item (attribute names plus values)."""
    return sum(len(name.encode("utf-8")) + attribute_size(value) for name, value in item.items())


def _as_number(value, default=0):
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class Page:
    """One page of a segment scan."""

    def __init__(self, items, last_evaluated_key=None, consumed_capacity=None):
        self.items = items
        self.last_evaluated_key = last_evaluated_key
        self.consumed_capacity = consumed_capacity

    @property
    def has_more(self):
        return self.last_evaluated_key is not None

    def __repr__(self):
        return f"Page(items={len(self.items)}, has_more={self.has_more})"


class BatchResult:
    """Outcome of a batched put or delete."""

    def __init__(self):
        self.submitted = 0
        self.resubmitted = 0
        self.requests = 0

    def __repr__(self):
        return (f"BatchResult(submitted={self.submitted}, resubmitted={self.resubmitted}, "
                f"requests={self.requests})")


class ScanCursor:
    """
    Continuation state of one segment scan.

    The cursor forwards ``LastEvaluatedKey`` as ``ExclusiveStartKey`` until
    DynamoDB stops returning one.
    """

    def __init__(self, connector, scan_kwargs):
        self._connector = connector
        self._scan_kwargs = scan_kwargs
        self._pending_capacity = 1.0
        self.last_evaluated_key = None
        self.pages_fetched = 0

    @property
    def exhausted(self):
        return self.pages_fetched > 0 and self.last_evaluated_key is None

    def first_page(self):
        """Fetch the first page. Only valid on a fresh cursor."""
        if self.pages_fetched:
            raise RuntimeError("first_page() called on a cursor that already fetched pages")
        return self.next_page()

    def next_page(self):
        """
        Fetch the next page.

        Returns:
            Page, or None once the scan is exhausted
        """
        if self.exhausted:
            return None

        kwargs = dict(self._scan_kwargs)
        if self.last_evaluated_key is not None:
            kwargs["ExclusiveStartKey"] = self.last_evaluated_key

        page = self._connector.fetch_page(kwargs, self._pending_capacity)

        self.pages_fetched += 1
        self.last_evaluated_key = page.last_evaluated_key
        if page.consumed_capacity:
            self._pending_capacity = page.consumed_capacity
        return page


class DynamoConnector(ABC):
    """Shared connection handling, description and scan/batch plumbing."""

    def __init__(self, table_name, parallelism, options, write_parallelism=None):
        """
        Args:
            table_name: DynamoDB table name
            parallelism: Number of read partitions (scan segments)
            options: Data source options dict
            write_parallelism: Number of concurrent writers sharing the write budget
        """
        if not table_name:
            raise ConfigurationError("Missing required options: tableName (or table_name)")

        self.table_name = table_name
        self.total_segments = int(parallelism)
        self.write_parallelism = int(write_parallelism or parallelism)

        # Connection options
        self.aws_region = opts.get_option(options, opts.REGION)
        self.aws_access_key_id = opts.get_option(options, "aws_access_key_id")
        self.aws_secret_access_key = opts.get_option(options, "aws_secret_access_key")
        self.aws_session_token = opts.get_option(options, "aws_session_token")
        self.endpoint_url = opts.get_option(options, opts.ENDPOINT)
        self.credential_name = opts.get_option(options, "credential_name")

        # Throughput options
        self.consistent_read = opts.get_bool_option(options, opts.CONSISTENT_READ, False)
        self.throughput = opts.get_int_option(options, opts.THROUGHPUT, minimum=1)
        self.target_capacity = opts.get_float_option(options, opts.TARGET_CAPACITY, 1.0)
        self.bytes_per_rcu = opts.get_int_option(options, opts.BYTES_PER_RCU, DEFAULT_BYTES_PER_RCU, minimum=1)
        self.max_retries = opts.get_int_option(options, opts.MAX_RETRIES, DEFAULT_MAX_RETRIES, minimum=0)

        self._description = None
        self.read_limiter = None
        self.write_limiter = None
        self.item_limit = None
        self._local = threading.local()

        self._resolve_credentials()

    def _resolve_credentials(self):
        """Resolve AWS credentials from a Databricks Unity Catalog service credential.

        When credential_name is set, tries databricks.service_credentials
        (available on newer Databricks runtimes). If that fails, assumes AWS
        credentials are already set via options.
        """
        if not self.credential_name:
            return

        try:
            import databricks.service_credentials
            provider = databricks.service_credentials.getServiceCredentialsProvider(self.credential_name)
            credentials = provider.get_credentials().get_frozen_credentials()
            self.aws_access_key_id = credentials.access_key
            self.aws_secret_access_key = credentials.secret_key
            self.aws_session_token = credentials.token
            logger.info("AWS credentials refreshed using service credential '%s'", self.credential_name)
        except Exception:
            logger.warning("Service credential '%s' is not available, using configured AWS credentials",
                           self.credential_name)

    def get_resource(self):
        """Return this thread's boto3 DynamoDB resource, creating it on first use."""
        resource = getattr(self._local, "resource", None)
        if resource is None:
            import boto3

            session_kwargs = {}
            if self.aws_region:
                session_kwargs["region_name"] = self.aws_region
            if self.aws_access_key_id:
                session_kwargs["aws_access_key_id"] = self.aws_access_key_id
            if self.aws_secret_access_key:
                session_kwargs["aws_secret_access_key"] = self.aws_secret_access_key
            if self.aws_session_token:
                session_kwargs["aws_session_token"] = self.aws_session_token

            session = boto3.Session(**session_kwargs)

            resource_kwargs = {}
            if self.endpoint_url:
                resource_kwargs["endpoint_url"] = self.endpoint_url

            resource = session.resource("dynamodb", **resource_kwargs)
            self._local.resource = resource
        return resource

    def get_table(self):
        table = getattr(self._local, "table", None)
        if table is None:
            table = self.get_resource().Table(self.table_name)
            self._local.table = table
        return table

    def __getstate__(self):
        state = self.__dict__.copy()
        del state["_local"]
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self._local = threading.local()

    # Description and sizing

    def describe(self):
        """Describe the table once and derive the rate limits from it."""
        if self._description is None:
            table = self.get_table()
            table.load()
            self._description = self._describe(table)
            self._configure_limits()
            logger.debug("Described %s: %s", self, self._description)
        return self._description

    @abstractmethod
    def _describe(self, table):
        """Return a dict with item_count, size_bytes, key_columns and provisioned throughput."""

    def _throughput(self, provisioned):
        if self.throughput:
            return self.throughput
        if provisioned and provisioned > 0:
            return provisioned
        return DEFAULT_THROUGHPUT

    def _configure_limits(self):
        description = self._description
        read_capacity = self._throughput(description["read_throughput"]) * self.target_capacity
        write_capacity = self._throughput(description["write_throughput"]) * self.target_capacity

        self.read_limiter = RateLimiter.divided(read_capacity, self.total_segments)
        self.write_limiter = RateLimiter.divided(write_capacity, self.write_parallelism)

        size_bytes = description["size_bytes"]
        item_count = description["item_count"]
        if size_bytes > 0 and item_count > 0:
            avg_item_size = size_bytes / item_count
            read_factor = 1 if self.consistent_read else 2
            self.item_limit = max(int(self.bytes_per_rcu / avg_item_size * self.read_limiter.rate) * read_factor, 1)
        else:
            self.item_limit = None

    @property
    def total_size_in_bytes(self):
        return self.describe()["size_bytes"]

    @property
    def item_count(self):
        return self.describe()["item_count"]

    def non_empty(self):
        return self.item_count > 0

    @property
    def key_columns(self):
        return list(self.describe()["key_columns"])

    # Scanning

    def scan(self, segment, columns=(), filters=(), schema=None):
        """
        Start a scan of one segment.

        Args:
            segment: Segment index in [0, total_segments)
            columns: Attribute names to project; empty for every attribute
            filters: Spark filters to push down; untranslatable ones are dropped
            schema: StructType the rows are decoded with, used to translate filters

        Returns:
            ScanCursor positioned before the first page
        """
        if not 0 <= segment < self.total_segments:
            raise ConfigurationError(f"Segment {segment} out of range [0, {self.total_segments})")
        self.describe()
        columns = list(columns or ())
        self.validate_columns(columns)
        return ScanCursor(self, self.scan_kwargs(segment, columns, filters, schema))

    def validate_columns(self, columns):
        """Hook for variants that can only serve some columns."""

    def scan_kwargs(self, segment, columns=(), filters=(), schema=None):
        """Build the Scan request parameters for one segment."""
        self.describe()
        scan_kwargs = {
            "ConsistentRead": self.consistent_read,
            "ReturnConsumedCapacity": "TOTAL",
        }

        # Only use parallel scan params if total_segments > 1
        if self.total_segments > 1:
            scan_kwargs["Segment"] = segment
            scan_kwargs["TotalSegments"] = self.total_segments

        if self.item_limit:
            scan_kwargs["Limit"] = self.item_limit

        # Column projection with ExpressionAttributeNames for reserved keywords
        if columns:
            expr_attr_names = {}
            projection_parts = []
            for position, col in enumerate(columns):
                alias = f"#p{position}"
                expr_attr_names[alias] = col
                projection_parts.append(alias)
            scan_kwargs["ProjectionExpression"] = ", ".join(projection_parts)
            scan_kwargs["ExpressionAttributeNames"] = expr_attr_names

        if filters:
            condition = build_filter_condition(filters, schema)
            if condition is not None:
                scan_kwargs["FilterExpression"] = condition

        return scan_kwargs

    def fetch_page(self, scan_kwargs, permits=1.0):
        """Issue one Scan request after acquiring ``permits`` read capacity units."""
        self.describe()
        self.read_limiter.acquire(permits)
        table = self.get_table()
        response = call_with_backoff(lambda: table.scan(**scan_kwargs), "Scan", self.max_retries)

        consumed = response.get("ConsumedCapacity") or {}
        page = Page(
            response.get("Items", []),
            response.get("LastEvaluatedKey"),
            consumed.get("CapacityUnits"),
        )
        logger.debug("Fetched %s from %s segment %s", page, self, scan_kwargs.get("Segment", 0))
        return page

    # Writing

    def put_items(self, items):
        """Write items with BatchWriteItem, resubmitting only what DynamoDB leaves unprocessed."""
        requests = []
        for item in items:
            size = item_size(item)
            if size > MAX_ITEM_BYTES:
                raise ItemSizeError(
                    f"Item size {size} bytes exceeds the 400KB DynamoDB limit for table '{self.table_name}'"
                )
            requests.append({"PutRequest": {"Item": item}})
        return self._batch_write(requests)

    def delete_items(self, keys):
        """Delete items by key with BatchWriteItem."""
        return self._batch_write([{"DeleteRequest": {"Key": key}} for key in keys])

    def _batch_write(self, requests):
        self.describe()
        result = BatchResult()
        for chunk in self._chunk_requests(requests):
            self._write_chunk(chunk, result)
        return result

    @staticmethod
    def _request_size(request):
        body = request.get("PutRequest", {}).get("Item") or request.get("DeleteRequest", {}).get("Key") or {}
        return item_size(body)

    def _chunk_requests(self, requests):
        """Split requests into chunks within the per-call request count and payload limits."""
        chunk = []
        chunk_bytes = 0
        for request in requests:
            size = self._request_size(request)
            if chunk and (len(chunk) >= MAX_BATCH_REQUESTS or chunk_bytes + size > MAX_BATCH_BYTES):
                yield chunk
                chunk = []
                chunk_bytes = 0
            chunk.append(request)
            chunk_bytes += size
        if chunk:
            yield chunk

    def _write_chunk(self, chunk, result):
        resource = self.get_resource()
        pending = chunk
        attempt = 0
        result.submitted += len(chunk)

        while pending:
            permits = sum(max(math.ceil(self._request_size(r) / 1024), 1) for r in pending)
            self.write_limiter.acquire(permits)

            request_items = {self.table_name: pending}
            response = call_with_backoff(
                lambda: resource.batch_write_item(RequestItems=request_items),
                "BatchWriteItem",
                self.max_retries,
            )
            result.requests += 1

            pending = response.get("UnprocessedItems", {}).get(self.table_name, [])
            if not pending:
                break
            if attempt >= self.max_retries:
                logger.error("Failed to process %d items after %d retries", len(pending), attempt)
                raise BatchWriteError(self.table_name, len(pending), attempt + 1)

            delay = backoff_delay(attempt)
            logger.warning("Resubmitting %d unprocessed items to %s after %.2fs (attempt %d/%d)",
                           len(pending), self.table_name, delay, attempt + 1, self.max_retries)
            time.sleep(delay)
            result.resubmitted += len(pending)
            attempt += 1

    def __eq__(self, other):
        if not isinstance(other, DynamoConnector):
            return False
        return (type(self) is type(other) and self.table_name == other.table_name
                and getattr(self, "index_name", None) == getattr(other, "index_name", None)
                and self.total_segments == other.total_segments)

    def __hash__(self):
        return hash((type(self).__name__, self.table_name, getattr(self, "index_name", None),
                     self.total_segments))


def _provisioned(description, key):
    throughput = description or {}
    return _as_number(throughput.get(key))


class TableConnector(DynamoConnector):
    """Connector over a whole table. Supports reads and writes."""

    def _describe(self, table):
        throughput = table.provisioned_throughput or {}
        return {
            "item_count": _as_number(table.item_count),
            "size_bytes": _as_number(table.table_size_bytes),
            "key_columns": [k["AttributeName"] for k in table.key_schema or []],
            "key_schema": [dict(k) for k in table.key_schema or []],
            "read_throughput": _provisioned(throughput, "ReadCapacityUnits"),
            "write_throughput": _provisioned(throughput, "WriteCapacityUnits"),
        }

    def __repr__(self):
        return f"TableConnector(table={self.table_name}, segments={self.total_segments})"


class TableIndexConnector(DynamoConnector):
    """
    Connector over a global or local secondary index.

    Only the index's projected attributes can be read, and writes are rejected.
    """

    def __init__(self, table_name, index_name, parallelism, options, write_parallelism=None):
        super().__init__(table_name, parallelism, options, write_parallelism)
        if not index_name:
            raise ConfigurationError("Index name must not be empty")
        self.index_name = index_name

    def _describe(self, table):
        table_keys = [k["AttributeName"] for k in table.key_schema or []]
        table_throughput = table.provisioned_throughput or {}

        index = None
        for candidate in (table.global_secondary_indexes or []) + (table.local_secondary_indexes or []):
            if candidate.get("IndexName") == self.index_name:
                index = candidate
                break
        if index is None:
            raise ConfigurationError(f"Index '{self.index_name}' not found on table '{self.table_name}'")

        # Local secondary indexes share the table's throughput.
        throughput = index.get("ProvisionedThroughput") or table_throughput
        projection = index.get("Projection") or {}
        index_keys = [k["AttributeName"] for k in index.get("KeySchema", [])]

        return {
            "item_count": _as_number(index.get("ItemCount")),
            "size_bytes": _as_number(index.get("IndexSizeBytes")),
            "key_columns": table_keys,
            "index_key_columns": index_keys,
            "projection_type": projection.get("ProjectionType", "ALL"),
            "projected_columns": set(table_keys) | set(index_keys) | set(projection.get("NonKeyAttributes", [])),
            "read_throughput": _provisioned(throughput, "ReadCapacityUnits"),
            "write_throughput": _provisioned(throughput, "WriteCapacityUnits"),
        }

    def validate_columns(self, columns):
        description = self.describe()
        if description["projection_type"] == "ALL":
            return
        outside = [col for col in columns if col not in description["projected_columns"]]
        if outside:
            raise ConfigurationError(
                f"Columns not projected by index '{self.index_name}': {', '.join(outside)}. "
                f"Available columns: {', '.join(sorted(description['projected_columns']))}"
            )

    def scan_kwargs(self, segment, columns=(), filters=(), schema=None):
        scan_kwargs = super().scan_kwargs(segment, columns, filters, schema)
        scan_kwargs["IndexName"] = self.index_name
        return scan_kwargs

    def put_items(self, items):
        raise UnsupportedOperationError(f"Index '{self.index_name}' is read-only; writes are not supported")

    def delete_items(self, keys):
        raise UnsupportedOperationError(f"Index '{self.index_name}' is read-only; deletes are not supported")

    def __repr__(self):
        return (f"TableIndexConnector(table={self.table_name}, index={self.index_name}, "
                f"segments={self.total_segments})")


def create_connector(options, parallelism, write_parallelism=None):
    """Build the table or index connector the options ask for."""
    table_name = opts.require_table_name(options)
    index_name = opts.get_option(options, opts.INDEX_NAME)
    if index_name:
        return TableIndexConnector(table_name, index_name, parallelism, options, write_parallelism)
    return TableConnector(table_name, parallelism, options, write_parallelism)
