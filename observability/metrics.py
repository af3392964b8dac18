"""Prometheus metrics for DocGraph crawling, ingestion and graph persistence."""

import logging
from typing import Any, Dict

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Dedicated registry so importing the package never pollutes the global one
docgraph_registry = CollectorRegistry()

pages_crawled = Counter(
    'docgraph_crawl_pages_total',
    'Pages processed by the deep crawler',
    ['outcome'],
    registry=docgraph_registry
)

links_skipped = Counter(
    'docgraph_crawl_links_skipped_total',
    'Links or frontier entries skipped by the crawler',
    ['reason'],
    registry=docgraph_registry
)

fetch_duration = Histogram(
    'docgraph_fetch_duration_seconds',
    'Page fetch duration in seconds, retries included',
    ['outcome'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=docgraph_registry
)

documents_ingested = Counter(
    'docgraph_documents_ingested_total',
    'Documents processed by the ingestor',
    ['format', 'status'],
    registry=docgraph_registry
)

chunks_created = Counter(
    'docgraph_chunks_created_total',
    'Chunk nodes written to the graph store',
    ['status'],
    registry=docgraph_registry
)

chunk_enrichment = Counter(
    'docgraph_chunk_enrichment_total',
    'Chunk enrichment attempts',
    ['status'],
    registry=docgraph_registry
)

graph_statements = Counter(
    'docgraph_graph_statements_total',
    'Statements sent to the graph store',
    ['outcome'],
    registry=docgraph_registry
)


def record_fetch(outcome: str, duration_seconds: float) -> None:
    fetch_duration.labels(outcome=outcome).observe(duration_seconds)


def record_page(outcome: str) -> None:
    pages_crawled.labels(outcome=outcome).inc()


def record_skip(reason: str) -> None:
    links_skipped.labels(reason=reason).inc()


def record_ingestion(fmt: str, status: str) -> None:
    documents_ingested.labels(format=fmt, status=status).inc()


def record_chunk(status: str) -> None:
    chunks_created.labels(status=status).inc()


def record_enrichment(status: str) -> None:
    chunk_enrichment.labels(status=status).inc()


def record_statement(outcome: str, count: int = 1) -> None:
    graph_statements.labels(outcome=outcome).inc(count)


def export_metrics() -> bytes:
    """Render the registry in the Prometheus text format."""
    return generate_latest(docgraph_registry)


def get_metrics_summary() -> Dict[str, Any]:
    """Flatten current counter values into a dict keyed by sample name and labels."""
    summary: Dict[str, Any] = {}
    try:
        for metric in docgraph_registry.collect():
            for sample in metric.samples:
                if sample.name.endswith('_created'):
                    continue
                labels = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items()))
                key = f"{sample.name}{{{labels}}}" if labels else sample.name
                summary[key] = sample.value
    except Exception as e:
        logger.error(f"Failed to collect metrics summary: {e}")
        summary['error'] = str(e)
    return summary
