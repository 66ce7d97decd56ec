"""
Observability module - Logging, Metrics, and Tracing.
"""

from pageassist.observability.logging import get_logger, log_context, setup_logging
from pageassist.observability.metrics import metrics
from pageassist.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
