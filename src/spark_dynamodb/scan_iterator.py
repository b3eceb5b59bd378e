"""Lazy, page-by-page iteration over one scan partition."""

import enum
import logging
from collections import deque

from .type_conversion import convert_dynamodb_value

logger = logging.getLogger(__name__)


class ScanState(enum.Enum):
    NOT_STARTED = "not_started"
    PAGING = "paging"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class ScanIterator:
    """
    Iterates the rows of one ScanPartition.

    The iterator is an explicit state machine::

        NOT_STARTED -> PAGING -> EXHAUSTED
                          \\-> FAILED

    The first ``next()`` opens the segment scan. Each page is buffered and
    handed out one row at a time; when the buffer runs dry and DynamoDB
    returned a continuation token, the next page is fetched with the same
    segment, projection and filters. A missing token ends the scan. Any error
    not absorbed by the throttle backoff moves the iterator to FAILED and is
    raised to the caller. The iterator cannot be restarted.
    """

    def __init__(self, partition):
        self.partition = partition
        self.state = ScanState.NOT_STARTED
        self.rows_emitted = 0
        self._cursor = None
        self._buffer = deque()

        schema = partition.schema
        self._fields = [schema[name] for name in partition.output_columns]

    def __iter__(self):
        return self

    def __next__(self):
        while not self._buffer:
            if self.state in (ScanState.EXHAUSTED, ScanState.FAILED):
                raise StopIteration
            self._advance()

        self.rows_emitted += 1
        return self._convert(self._buffer.popleft())

    def _advance(self):
        """Run one transition: open the scan or fetch the next page."""
        try:
            if self.state is ScanState.NOT_STARTED:
                self._cursor = self.partition.connector.scan(
                    self.partition.segment,
                    self.partition.columns or (),
                    self.partition.filters,
                    self.partition.schema,
                )
                self.state = ScanState.PAGING

            if self._cursor.exhausted:
                self._finish()
                return

            page = self._cursor.next_page()
        except Exception:
            self.state = ScanState.FAILED
            self._buffer.clear()
            logger.error("Scan of %r failed after %d rows", self.partition, self.rows_emitted)
            raise

        self._buffer.extend(page.items)
        if not page.has_more:
            self._finish()

    def _finish(self):
        self.state = ScanState.EXHAUSTED
        logger.debug("Scan of %r finished: %d rows in %d pages",
                     self.partition, self.rows_emitted + len(self._buffer), self._cursor.pages_fetched)

    def _convert(self, item):
        return tuple(convert_dynamodb_value(item.get(f.name), f.dataType) for f in self._fields)
