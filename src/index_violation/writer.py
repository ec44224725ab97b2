"""Batched delete write-back."""

from __future__ import annotations

import logging
from typing import Mapping

from .attributes import AttributeValue, to_plain_string
from .rate_limit import RateLimiter
from .table import DynamoTable

logger = logging.getLogger("index_violation.writer")

MAX_BATCH_WRITE_REQUESTS = 25


class BatchWriteBuffer:
    """Accumulates delete keys and sends them as one batch request.

    Keys the backend reports as unprocessed are logged and dropped; a later
    scan or correction pass picks them up again. Not thread-safe: each worker
    owns its own buffer.
    """

    def __init__(self, table: DynamoTable, rate_limiter: RateLimiter | None = None, *, label: str = "") -> None:
        self.table = table
        self.rate_limiter = rate_limiter
        self.label = label
        self._keys: list[dict[str, AttributeValue]] = []
        self.total_deleted = 0
        self.total_unprocessed = 0

    @property
    def pending(self) -> int:
        return len(self._keys)

    def add_delete(self, key: Mapping[str, AttributeValue]) -> int:
        """Buffer one key; returns the count accepted if this triggered a flush."""
        self._keys.append(dict(key))
        if len(self._keys) >= MAX_BATCH_WRITE_REQUESTS:
            return self.flush()
        return 0

    def add_delete_for_item(self, item: Mapping[str, AttributeValue]) -> int:
        return self.add_delete(self.table.schema.primary_key_of(item))

    def flush(self) -> int:
        if not self._keys:
            return 0
        keys, self._keys = self._keys, []
        result = self.table.batch_delete(keys)
        if self.rate_limiter is not None:
            self.rate_limiter.consume(result.consumed_capacity)
        unprocessed = len(result.unprocessed_keys)
        if unprocessed:
            logger.warning(
                "Unprocessed delete keys %s table=%s count=%s; left for a follow-up run",
                self.label,
                self.table.name,
                unprocessed,
            )
            for key in result.unprocessed_keys:
                logger.warning("Unprocessed key %s", {name: to_plain_string(value) for name, value in key.items()})
        accepted = len(keys) - unprocessed
        self.total_deleted += accepted
        self.total_unprocessed += unprocessed
        logger.info(
            "Delete progress %s batch_deleted=%s total_deleted=%s",
            self.label,
            accepted,
            self.total_deleted,
        )
        return accepted
