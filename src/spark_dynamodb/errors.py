"""Exceptions raised by the DynamoDB connector."""


class DynamoDbConnectorError(Exception):
    """Base class for connector errors."""


class ConfigurationError(DynamoDbConnectorError, ValueError):
    """Invalid or missing configuration. Raised before any scan or write begins."""


class ItemSizeError(ConfigurationError):
    """A single item is larger than DynamoDB's per-item size limit."""


class UnsupportedOperationError(DynamoDbConnectorError):
    """The operation is not available on this connector (e.g. writing to an index)."""


class ThroughputExceededError(DynamoDbConnectorError):
    """DynamoDB kept throttling the request after all retries were used."""

    def __init__(self, operation, attempts):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} throttled by DynamoDB after {attempts} attempts")


class BatchWriteError(DynamoDbConnectorError):
    """Unprocessed items remained after all batch write retries were used."""

    def __init__(self, table_name, unprocessed_count, attempts):
        self.table_name = table_name
        self.unprocessed_count = unprocessed_count
        self.attempts = attempts
        super().__init__(
            f"Batch write to '{table_name}' left {unprocessed_count} unprocessed items "
            f"after {attempts} attempts"
        )
