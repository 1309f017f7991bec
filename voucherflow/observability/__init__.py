"""
Observability module - Logging, Metrics, and Tracing.
"""

from voucherflow.observability.logging import get_logger, log_context, setup_logging
from voucherflow.observability.metrics import metrics
from voucherflow.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
