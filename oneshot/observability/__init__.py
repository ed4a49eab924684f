"""
Observability module - Logging, Metrics, and Tracing.
"""

from oneshot.observability.logging import get_logger, setup_logging
from oneshot.observability.metrics import metrics
from oneshot.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
