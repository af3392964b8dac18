"""Core data model for DocGraph.

Documents, chunks and the ephemeral crawl types shared by the pipelines.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class DocumentFormat(str, Enum):
    """Closed set of document formats the ingestor understands."""
    PDF = "pdf"
    MARKDOWN = "markdown"
    HTML = "html"
    WORD = "word"
    PLAINTEXT = "plaintext"
    CODE = "code"
    OPENAPI = "openapi"
    IMAGE = "image"


class LinkType(str, Enum):
    """Relationship between a discovered link and the page it was found on."""
    INTERNAL = "internal"
    SUBDOMAIN = "subdomain"
    EXTERNAL = "external"
    UNKNOWN = "unknown"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Document:
    """A successfully ingested source.

    Only ``tags`` may change after creation (enrichment appends to it).
    """
    source: str
    format: DocumentFormat
    original_filename: str
    title: str
    author: str = "Unknown"
    tags: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    imported_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.title or not self.title.strip():
            self.title = self.original_filename or self.source
        if not self.author or not self.author.strip():
            self.author = "Unknown"

    def to_properties(self) -> Dict[str, Any]:
        """Flatten into graph node properties."""
        return {
            "id": self.id,
            "source": self.source,
            "type": self.format.value,
            "originalFilename": self.original_filename,
            "title": self.title,
            "author": self.author,
            "tags": list(self.tags),
            "importedAt": self.imported_at.isoformat(),
        }


@dataclass(frozen=True)
class Chunk:
    """An ordered, position-addressable unit of a document's content.

    Chunks are frozen: enrichment produces a new instance through
    ``with_enrichment`` and never touches ``content``.
    """
    document_id: str
    chunk_type: DocumentFormat
    content: str
    position: int
    tags: tuple = ()
    metadata: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=new_id)

    @property
    def is_enriched(self) -> bool:
        return "embedding" in self.metadata

    def with_enrichment(self, tags: List[str], metadata: Dict[str, str]) -> "Chunk":
        merged_tags = list(self.tags)
        for tag in tags:
            if tag not in merged_tags:
                merged_tags.append(tag)
        return Chunk(
            document_id=self.document_id,
            chunk_type=self.chunk_type,
            content=self.content,
            position=self.position,
            tags=tuple(merged_tags),
            metadata={**self.metadata, **metadata},
            id=self.id,
        )


@dataclass(frozen=True)
class CrawlLink:
    """A link discovered on a crawled page. Never persisted on its own."""
    url: str
    text: str
    title: str
    source_url: str
    depth: int
    link_type: LinkType = LinkType.UNKNOWN

    @property
    def display_text(self) -> str:
        if self.text:
            return self.text
        if self.title:
            return self.title
        return self.url.rstrip("/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class CrawlSession:
    """Settings of one traversal run, fixed when the run starts."""
    root_url: str
    max_depth: int
    max_pages_per_domain: int
    crawl_delay: float
    follow_external_links: bool
    start_time: datetime = field(default_factory=utcnow)


@dataclass
class IngestionResult:
    """Everything the ingestor produced for one source."""
    document: Document
    chunks: List[Chunk]
    text: str
    raw_html: Optional[str] = None
    content_hash: Optional[str] = None
    duplicate_of: Optional[str] = None

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None
