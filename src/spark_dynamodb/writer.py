"""DynamoDB writer implementations using boto3."""

import logging

from pyspark.sql.datasource import DataSourceWriter, DataSourceStreamWriter, WriterCommitMessage

from . import options as opts
from .connector import MAX_BATCH_REQUESTS, TableConnector
from .errors import ConfigurationError
from .type_conversion import convert_for_dynamodb, row_to_item

logger = logging.getLogger(__name__)


class DynamoDbCommitMessage(WriterCommitMessage):
    """Counts reported by one write task."""

    def __init__(self, written=0, deleted=0, resubmitted=0):
        self.written = written
        self.deleted = deleted
        self.resubmitted = resubmitted

    def __repr__(self):
        return (f"DynamoDbCommitMessage(written={self.written}, deleted={self.deleted}, "
                f"resubmitted={self.resubmitted})")


class DynamoDbWriter:
    """Base writer class with shared write logic for DynamoDB."""

    def __init__(self, options, schema):
        """Initialize writer and validate configuration."""
        self.options = options
        self.schema = schema

        # Validate required options
        self.table_name = opts.require_table_name(options)
        if opts.get_option(options, opts.INDEX_NAME):
            raise ConfigurationError(
                f"Cannot write to index '{opts.get_option(options, opts.INDEX_NAME)}'; "
                "secondary indexes are read-only"
            )

        # Write options
        self.delete_flag_column = opts.get_option(options, "delete_flag_column")
        self.delete_flag_value = opts.get_option(options, "delete_flag_value")
        self.create_table = opts.get_bool_option(options, "create_table", False)
        self.hash_key_name = opts.get_option(options, "hash_key")
        self.range_key_name = opts.get_option(options, "range_key")
        self.billing_mode = opts.get_option(options, "billing_mode", "PAY_PER_REQUEST")

        # Validate delete flag options
        if bool(self.delete_flag_column) != bool(self.delete_flag_value):
            raise ValueError(
                "Both delete_flag_column and delete_flag_value must be specified together, or neither"
            )

        # Validate create_table options
        if self.create_table and not self.hash_key_name:
            raise ValueError("hash_key option is required when create_table is true")

        # Each concurrent write task gets an equal share of the write capacity
        self.write_partitions = opts.write_partitions(options)
        self.connector = TableConnector(self.table_name, self.write_partitions, options, self.write_partitions)

        # Create table if needed, and load table metadata
        if self.create_table:
            self._create_table_if_not_exists()
        self._load_table_metadata()

    def _create_table_if_not_exists(self):
        """Create the DynamoDB table if it doesn't already exist."""
        import botocore.exceptions

        dynamodb = self.connector.get_resource()

        try:
            table = dynamodb.Table(self.table_name)
            table.creation_date_time  # triggers DescribeTable; raises if not found
        except botocore.exceptions.ClientError as error:
            if error.response["Error"]["Code"] != "ResourceNotFoundException":
                raise

            # Build attribute type from Spark schema
            def get_attribute_type(spark_type):
                type_name = spark_type.typeName()
                if type_name in ("integer", "long", "float", "double", "decimal", "short", "byte"):
                    return "N"
                if type_name == "binary":
                    return "B"
                return "S"

            # Map schema columns by name for lookup
            schema_map = {field.name: field for field in self.schema.fields}

            attribute_definitions = []
            key_schema = []

            # Hash key
            if self.hash_key_name not in schema_map:
                raise ValueError(
                    f"hash_key '{self.hash_key_name}' not found in DataFrame schema"
                )
            attribute_definitions.append({
                "AttributeName": self.hash_key_name,
                "AttributeType": get_attribute_type(schema_map[self.hash_key_name].dataType),
            })
            key_schema.append({"AttributeName": self.hash_key_name, "KeyType": "HASH"})

            # Range key (optional)
            if self.range_key_name:
                if self.range_key_name not in schema_map:
                    raise ValueError(
                        f"range_key '{self.range_key_name}' not found in DataFrame schema"
                    )
                attribute_definitions.append({
                    "AttributeName": self.range_key_name,
                    "AttributeType": get_attribute_type(schema_map[self.range_key_name].dataType),
                })
                key_schema.append({"AttributeName": self.range_key_name, "KeyType": "RANGE"})

            logger.info("Creating table %s with key schema %s", self.table_name, key_schema)
            table = dynamodb.create_table(
                TableName=self.table_name,
                KeySchema=key_schema,
                AttributeDefinitions=attribute_definitions,
                BillingMode=self.billing_mode,
            )
            table.wait_until_exists()

    def _load_table_metadata(self):
        """Load key schema from DynamoDB and validate DataFrame schema."""
        description = self.connector.describe()

        # Extract key columns from key schema
        self.key_schema = description["key_schema"]  # [{"AttributeName": "id", "KeyType": "HASH"}, ...]
        self.hash_key = None
        self.range_key = None

        for key in self.key_schema:
            if key["KeyType"] == "HASH":
                self.hash_key = key["AttributeName"]
            elif key["KeyType"] == "RANGE":
                self.range_key = key["AttributeName"]

        # Validate DataFrame schema contains all key columns
        df_columns = set(field.name for field in self.schema.fields)
        key_columns = [k["AttributeName"] for k in self.key_schema]
        missing_keys = [k for k in key_columns if k not in df_columns]

        if missing_keys:
            raise ValueError(
                f"DataFrame schema missing key columns: {', '.join(missing_keys)}. "
                f"Required key columns: {', '.join(key_columns)}"
            )

        # Validate delete flag column exists if specified
        if self.delete_flag_column and self.delete_flag_column not in df_columns:
            raise ValueError(
                f"delete_flag_column '{self.delete_flag_column}' not found in DataFrame schema. "
                f"Available columns: {', '.join(sorted(df_columns))}"
            )

    def _is_delete(self, row_dict):
        if not self.delete_flag_column:
            return False
        flag_value = row_dict.get(self.delete_flag_column)
        return str(flag_value).lower() == self.delete_flag_value.lower()

    def _key_of(self, item):
        return tuple(item.get(k["AttributeName"]) for k in self.key_schema)

    def write(self, iterator):
        """
        Write data to DynamoDB with rate-limited BatchWriteItem calls.

        Puts and deletes are buffered per key (the last row for a key wins
        within a batch). The buffer is flushed whenever it is full or the
        kind of request changes, so rows are applied in order.

        This runs on executors.
        """
        message = DynamoDbCommitMessage()
        buffer = {}
        buffer_kind = None

        def flush():
            if not buffer:
                return
            if buffer_kind == "delete":
                result = self.connector.delete_items(list(buffer.values()))
                message.deleted += result.submitted
            else:
                result = self.connector.put_items(list(buffer.values()))
                message.written += result.submitted
            message.resubmitted += result.resubmitted
            buffer.clear()

        row_count = 0

        for row in iterator:
            row_dict = row.asDict(recursive=False)

            if self._is_delete(row_dict):
                # Build key for delete
                key = {self.hash_key: convert_for_dynamodb(row_dict[self.hash_key])}
                if self.range_key:
                    key[self.range_key] = convert_for_dynamodb(row_dict[self.range_key])

                # Validate key values are not null
                for k, v in key.items():
                    if v is None:
                        raise ValueError(f"Key column '{k}' cannot be null for DELETE")

                kind, request = "delete", key
            else:
                # Remove delete flag column from item data
                exclude = (self.delete_flag_column,) if self.delete_flag_column else ()
                item = row_to_item(row, self.schema, exclude=exclude)

                # Validate key columns are not null
                for key_def in self.key_schema:
                    key_col = key_def["AttributeName"]
                    if item.get(key_col) is None:
                        raise ValueError(
                            f"Key column '{key_col}' cannot be null for INSERT (row {row_count})"
                        )

                kind, request = "put", item

            if buffer_kind != kind or len(buffer) >= MAX_BATCH_REQUESTS:
                flush()
                buffer_kind = kind
            buffer[self._key_of(request)] = request

            row_count += 1

        flush()

        logger.info("Wrote %d items and deleted %d items in %s (%d resubmitted)",
                    message.written, message.deleted, self.table_name, message.resubmitted)
        return message


class DynamoDbBatchWriter(DynamoDbWriter, DataSourceWriter):
    """Batch writer for DynamoDB."""

    def commit(self, messages):
        """Log the totals of a successful write job."""
        written = sum(getattr(m, "written", 0) for m in messages if m is not None)
        deleted = sum(getattr(m, "deleted", 0) for m in messages if m is not None)
        logger.info("Write job to %s committed: %d written, %d deleted", self.table_name, written, deleted)

    def abort(self, messages):
        """Items already written stay written; DynamoDB writes are not transactional."""
        logger.warning("Write job to %s aborted; completed batches are not rolled back", self.table_name)


class DynamoDbStreamWriter(DynamoDbWriter, DataSourceStreamWriter):
    """Streaming writer for DynamoDB."""

    def commit(self, messages, batch_id):
        """Handle successful batch completion."""
        pass

    def abort(self, messages, batch_id):
        """Handle failed batch."""
        pass
