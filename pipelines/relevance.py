"""Link relevance ranking.

A relevance oracle scores candidate links from 0 to 10 by how likely they lead
to useful documentation. The crawler treats the oracle as optional: an
oracle whose ``available`` property is False is never called, and one that
fails returns an empty ranking.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from services.llm_client import LLMClient, LLMError, get_llm_client

logger = logging.getLogger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 10
BATCH_SIZE = 50

RANKING_PROMPT = (
    "You are helping a documentation crawler decide which links to follow.\n"
    "Page: {context}\n\n"
    "Rate each URL below from 0 (irrelevant) to 10 (core technical documentation). "
    "Respond with only a JSON array of objects with keys \"url\" and \"priority\".\n\n"
    "{links}"
)

_JSON_ARRAY_RE = re.compile(r'\[.*\]', re.DOTALL)


@dataclass(frozen=True)
class RankedLink:
    url: str
    priority: int


class RelevanceOracle:
    """Base class for link rankers."""

    @property
    def available(self) -> bool:
        return True

    async def rank(self, links: Sequence[str], page_context: str) -> List[RankedLink]:
        raise NotImplementedError


class UnavailableOracle(RelevanceOracle):
    """Oracle used when no ranking service is configured."""

    @property
    def available(self) -> bool:
        return False

    async def rank(self, links: Sequence[str], page_context: str) -> List[RankedLink]:
        return []


def _clamp(value) -> Optional[int]:
    try:
        priority = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))


def parse_ranking(response: str, candidates: Iterable[str]) -> List[RankedLink]:
    """Parse a model response into ranked links.

    Entries for URLs that were not offered, or without a usable priority, are
    dropped.
    """
    match = _JSON_ARRAY_RE.search(response or "")
    if not match:
        return []
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []

    allowed = set(candidates)
    ranked: List[RankedLink] = []
    seen = set()
    for item in items:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        priority = _clamp(item.get("priority"))
        if url not in allowed or url in seen or priority is None:
            continue
        seen.add(url)
        ranked.append(RankedLink(url=url, priority=priority))
    return ranked


class LLMRelevanceOracle(RelevanceOracle):
    """Ranks links with a chat completion model."""

    def __init__(self, client: LLMClient, batch_size: int = BATCH_SIZE):
        self.client = client
        self.batch_size = batch_size

    async def rank(self, links: Sequence[str], page_context: str) -> List[RankedLink]:
        ranked: List[RankedLink] = []
        for start in range(0, len(links), self.batch_size):
            batch = list(links[start:start + self.batch_size])
            prompt = RANKING_PROMPT.format(context=page_context or "(untitled)", links="\n".join(batch))
            try:
                response = await self.client.generate(
                    [{"role": "user", "content": prompt}],
                    temperature=0.0,
                )
            except LLMError as e:
                logger.warning(f"Link ranking failed for {page_context}: {e}")
                return []
            ranked.extend(parse_ranking(response, batch))
        return ranked


def default_oracle() -> RelevanceOracle:
    """LLM-backed oracle when an API key is configured, else an unavailable one."""
    client = get_llm_client()
    if client is None:
        return UnavailableOracle()
    return LLMRelevanceOracle(client)
