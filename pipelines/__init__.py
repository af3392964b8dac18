"""Pipelines package for DocGraph.

Provides deep crawling, link classification, ingestion and chunking.
"""

from .models import (
    Chunk,
    CrawlLink,
    CrawlSession,
    Document,
    DocumentFormat,
    IngestionResult,
    LinkType,
)
from .errors import (
    DocGraphError,
    DuplicateDocumentError,
    FetchError,
    GraphStoreError,
    IngestionError,
    PersistenceError,
    UnsupportedFormatError,
)
from .links import classify, extract_links, is_documentation_link
from .chunker import ContentChunker, chunk_document
from .ingest import Ingestor, detect_format
from .relevance import LLMRelevanceOracle, RankedLink, RelevanceOracle, UnavailableOracle
from .crawler import CrawlEngine, CrawlState, CrawlStats

__all__ = [
    # Models
    'Chunk',
    'CrawlLink',
    'CrawlSession',
    'Document',
    'DocumentFormat',
    'IngestionResult',
    'LinkType',

    # Errors
    'DocGraphError',
    'DuplicateDocumentError',
    'FetchError',
    'GraphStoreError',
    'IngestionError',
    'PersistenceError',
    'UnsupportedFormatError',

    # Links
    'classify',
    'extract_links',
    'is_documentation_link',

    # Chunking and ingestion
    'ContentChunker',
    'chunk_document',
    'Ingestor',
    'detect_format',

    # Crawling
    'LLMRelevanceOracle',
    'RankedLink',
    'RelevanceOracle',
    'UnavailableOracle',
    'CrawlEngine',
    'CrawlState',
    'CrawlStats',
]
