"""
Observability Module for the Billing Sync Pipeline

Provides:
- Structured logging with correlation IDs
- Metrics collection (upstream traffic, slice outcomes, stage timings)
"""

from core.observability.metrics import (
    MetricsCollector,
    get_metrics,
)

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    # Logging
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
