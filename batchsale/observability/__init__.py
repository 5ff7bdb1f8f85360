"""
Observability module - Logging, Metrics, and Tracing.
"""

from batchsale.observability.logging import get_logger, log_context, setup_logging
from batchsale.observability.metrics import metrics
from batchsale.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
