# deploykit/observability/__init__.py
"""Observability module: logging setup and Prometheus metrics."""
from .logging import configure_logging
from . import metrics

__all__ = [
    'configure_logging',
    'metrics'
]
