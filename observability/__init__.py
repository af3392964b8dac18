"""Observability package for DocGraph."""

from .logging import setup_logging, get_logger, get_structured_logger, StructuredLogger
from .metrics import (
    docgraph_registry,
    export_metrics,
    get_metrics_summary,
    record_enrichment,
    record_fetch,
    record_ingestion,
    record_page,
    record_skip,
    record_statement,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'get_structured_logger',
    'StructuredLogger',
    'docgraph_registry',
    'export_metrics',
    'get_metrics_summary',
    'record_enrichment',
    'record_fetch',
    'record_ingestion',
    'record_page',
    'record_skip',
    'record_statement',
]
