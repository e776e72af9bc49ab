"""Offline operation queue."""

from .operation_queue import (
    DEFAULT_PRIORITIES,
    OperationOutcome,
    OperationQueue,
    QueueMetrics,
)

__all__ = ["DEFAULT_PRIORITIES", "OperationOutcome", "OperationQueue", "QueueMetrics"]
