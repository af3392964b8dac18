"""Content chunking for DocGraph.

Splits a document's normalized text into ordered chunks using rules chosen by
the document format. Chunking is pure: the same (format, text) pair always
yields the same boundaries, positions and chunk ids, so re-ingesting a source
reproduces its chunks.
"""

import hashlib
import logging
import re
from typing import Callable, Dict, List, Optional, Tuple

from .models import Chunk, Document, DocumentFormat

logger = logging.getLogger(__name__)

PARAGRAPH_SEPARATOR = "\n\n"
PAGE_SEPARATOR = "\f"

HEADING_RE = re.compile(r'^(#{1,6})\s+(.+)$')
FENCE_RE = re.compile(r'^(```|~~~)', re.MULTILINE)
CLOSING_RE = re.compile(r'^(\}|\)|\]|end\b|else\b|elif\b|except\b|finally\b|catch\b)')


def _normalize_prose(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in text.split("\n")]
    text = "\n".join(lines)
    text = re.sub(r'\n{3,}', "\n\n", text)
    return text.strip()


def _normalize_pages(text: str) -> str:
    pages = [_normalize_prose(page) for page in text.split(PAGE_SEPARATOR)]
    return PAGE_SEPARATOR.join(page for page in pages if page)


class ContentChunker:
    """Format-aware document chunker."""

    def __init__(self, max_chars: int = 2000, chars_per_token: int = 4):
        """Initialize chunker.

        Args:
            max_chars: Soft limit for prose chunks. Paragraphs are packed into a
                chunk until the next one would exceed it; a single longer
                paragraph still becomes one chunk.
            chars_per_token: Ratio used for the token estimate in chunk metadata
        """
        self.max_chars = max_chars
        self.chars_per_token = chars_per_token
        self._splitters: Dict[DocumentFormat, Callable[[str], List[Tuple[str, Optional[str]]]]] = {
            DocumentFormat.MARKDOWN: self._split_sections,
            DocumentFormat.HTML: self._split_sections,
            DocumentFormat.OPENAPI: self._split_sections,
            DocumentFormat.PLAINTEXT: self._split_paragraphs,
            DocumentFormat.WORD: self._split_paragraphs,
            DocumentFormat.CODE: self._split_code,
            DocumentFormat.PDF: self._split_pages,
            DocumentFormat.IMAGE: lambda text: [],
        }

    @staticmethod
    def separator(fmt: DocumentFormat) -> str:
        """Separator that rejoins chunk contents into the normalized text."""
        return PAGE_SEPARATOR if fmt == DocumentFormat.PDF else PARAGRAPH_SEPARATOR

    @staticmethod
    def normalize(fmt: DocumentFormat, text: str) -> str:
        """Normalize line endings, trailing whitespace and blank-line runs."""
        if fmt == DocumentFormat.IMAGE:
            return ""
        if fmt == DocumentFormat.PDF:
            return _normalize_pages(text or "")
        return _normalize_prose(text or "")

    def chunk(self, document: Document, text: str) -> List[Chunk]:
        """Split ``text`` into chunks owned by ``document``.

        Returns:
            Chunks with zero-based positions in emission order; empty text
            gives an empty list.
        """
        normalized = self.normalize(document.format, text)
        if not normalized:
            return []

        # Pages are numbered from the raw text so dropped empty pages still count
        raw = text if document.format == DocumentFormat.PDF else normalized
        pieces = self._splitters[document.format](raw)

        chunks = []
        for position, (content, heading) in enumerate(pieces):
            metadata = {
                "content_hash": hashlib.sha256(content.encode()).hexdigest(),
                "token_count": str(len(content) // self.chars_per_token),
            }
            if heading:
                metadata["heading"] = heading
            chunks.append(Chunk(
                id=self._stable_chunk_id(document.id, position, content),
                document_id=document.id,
                chunk_type=document.format,
                content=content,
                position=position,
                metadata=metadata,
            ))

        logger.debug(f"Created {len(chunks)} {document.format.value} chunks for {document.source}")
        return chunks

    def _stable_chunk_id(self, doc_id: str, position: int, content: str) -> str:
        digest = hashlib.md5(f"{doc_id}#{position}#{content}".encode()).hexdigest()
        return f"{digest[:8]}-{digest[8:12]}-{digest[12:16]}-{digest[16:20]}-{digest[20:32]}"

    def _blocks(self, text: str) -> List[str]:
        """Split on blank lines, keeping fenced code blocks whole."""
        blocks: List[str] = []
        in_fence = False
        for block in text.split(PARAGRAPH_SEPARATOR):
            if in_fence:
                blocks[-1] = blocks[-1] + PARAGRAPH_SEPARATOR + block
            else:
                blocks.append(block)
            if len(FENCE_RE.findall(block)) % 2 == 1:
                in_fence = not in_fence
        return blocks

    def _pack(self, blocks: List[str], heading: Optional[str]) -> List[Tuple[str, Optional[str]]]:
        pieces: List[Tuple[str, Optional[str]]] = []
        current: List[str] = []
        size = 0
        for block in blocks:
            added = len(block) + (len(PARAGRAPH_SEPARATOR) if current else 0)
            if current and size + added > self.max_chars:
                pieces.append((PARAGRAPH_SEPARATOR.join(current), heading))
                current, size = [], 0
                added = len(block)
            current.append(block)
            size += added
        if current:
            pieces.append((PARAGRAPH_SEPARATOR.join(current), heading))
        return pieces

    def _split_sections(self, text: str) -> List[Tuple[str, Optional[str]]]:
        """Prose with headings: each heading opens a new chunk."""
        sections: List[Tuple[Optional[str], List[str]]] = []
        for block in self._blocks(text):
            match = HEADING_RE.match(block.split("\n", 1)[0])
            if match or not sections:
                heading = match.group(2).strip() if match else None
                sections.append((heading, [block]))
            else:
                sections[-1][1].append(block)

        pieces: List[Tuple[str, Optional[str]]] = []
        for heading, blocks in sections:
            pieces.extend(self._pack(blocks, heading))
        return pieces

    def _split_paragraphs(self, text: str) -> List[Tuple[str, Optional[str]]]:
        return self._pack(text.split(PARAGRAPH_SEPARATOR), None)

    def _split_code(self, text: str) -> List[Tuple[str, Optional[str]]]:
        """Source code: one chunk per top-level construct.

        Blank-line separated blocks that start indented or with a closing
        token continue the construct above them.
        """
        constructs: List[str] = []
        for block in text.split(PARAGRAPH_SEPARATOR):
            continues = block[:1].isspace() or CLOSING_RE.match(block)
            if constructs and continues:
                constructs[-1] = constructs[-1] + PARAGRAPH_SEPARATOR + block
            else:
                constructs.append(block)
        return [(construct, None) for construct in constructs]

    def _split_pages(self, text: str) -> List[Tuple[str, Optional[str]]]:
        pages = [_normalize_prose(page) for page in text.split(PAGE_SEPARATOR)]
        return [(page, f"Page {number}") for number, page in enumerate(pages, start=1) if page]


_default_chunker = ContentChunker()


def chunk_document(document: Document, text: str) -> List[Chunk]:
    """Chunk with the default chunker settings."""
    return _default_chunker.chunk(document, text)
