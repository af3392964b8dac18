"""Chunk enrichment: AI tags and embeddings.

Enrichment never changes chunk content; it returns a copy of the chunk with
extra tags and an ``embedding`` metadata entry.
"""

import logging
import re
from typing import List, Optional

from pipelines.models import Chunk
from services.llm_client import LLMClient, get_llm_client
from .embeddings import EmbeddingManager, serialize_embedding

logger = logging.getLogger(__name__)

TAG_PROMPT = "Analyze the following text and provide {count} relevant tags as a comma-separated list. Text: {text}"

# Chunks are truncated before tagging to keep prompts bounded
MAX_PROMPT_CHARS = 6000


def parse_tags(response: str, limit: int) -> List[str]:
    """Parse a comma-separated tag list from a model response."""
    tags: List[str] = []
    for raw in re.split(r'[,\n]', response or ""):
        tag = raw.strip().strip('"\'`*#.-').strip()
        if not tag or len(tag) > 64:
            continue
        if tag.lower() not in (t.lower() for t in tags):
            tags.append(tag)
        if len(tags) >= limit:
            break
    return tags


class ChunkEnricher:
    def __init__(self, llm: Optional[LLMClient] = None, embedder=None, tag_count: int = 5):
        """
        Args:
            llm: Client used for tag generation; tagging is skipped when None
            embedder: Object with ``async embed(text)``; embedding is skipped when None
            tag_count: Number of tags to request per chunk
        """
        self.llm = llm
        self.embedder = embedder
        self.tag_count = tag_count

    @classmethod
    def from_environment(cls, tag_count: int = 5, with_embeddings: bool = True) -> "ChunkEnricher":
        return cls(llm=get_llm_client(),
                   embedder=EmbeddingManager() if with_embeddings else None,
                   tag_count=tag_count)

    @property
    def enabled(self) -> bool:
        return self.llm is not None or self.embedder is not None

    async def generate_tags(self, text: str) -> List[str]:
        prompt = TAG_PROMPT.format(count=self.tag_count, text=text[:MAX_PROMPT_CHARS])
        response = await self.llm.generate([{"role": "user", "content": prompt}], max_tokens=100)
        return parse_tags(response, self.tag_count)

    async def enrich(self, chunk: Chunk) -> Chunk:
        """Return ``chunk`` with generated tags and embedding metadata.

        Errors from the LLM or the embedder propagate to the caller.
        """
        tags: List[str] = []
        metadata = {}
        if self.llm is not None:
            tags = await self.generate_tags(chunk.content)
        if self.embedder is not None:
            vector = await self.embedder.embed(chunk.content)
            metadata["embedding"] = serialize_embedding(vector)
        logger.debug(f"Enriched chunk {chunk.id} with {len(tags)} tags")
        return chunk.with_enrichment(tags, metadata)
