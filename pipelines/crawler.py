"""Deep documentation crawler.

Breadth-first traversal from a seed page, bounded by depth, a per-domain page
cap and the external-link policy. Pages are ingested one at a time; only the
crawl loop touches the frontier, the visited set and the domain counters.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from config.crawl_config import CrawlConfig, crawl_config
from observability.logging import get_structured_logger
from observability.metrics import record_page, record_skip
from .errors import DocGraphError
from .links import extract_links, is_documentation_link, normalize_url
from .models import CrawlLink, CrawlSession, LinkType
from .relevance import RelevanceOracle, UnavailableOracle
from .security import SSRFError, validate_url_security

logger = logging.getLogger(__name__)

# Pages with more raw links than this are sent to the relevance oracle
LINK_THRESHOLD = 10
# Minimum oracle priority (0-10) for a link to survive filtering
PRIORITY_CUTOFF = 6

UrlValidator = Callable[[str], Tuple[bool, Optional[str]]]

_active_engine: Optional["CrawlEngine"] = None


def active_engine() -> Optional["CrawlEngine"]:
    """The engine currently running a session, if any."""
    return _active_engine


class CrawlState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class CrawlStats:
    """Counters for one crawl session."""
    pages_visited: int = 0
    pages_failed: int = 0
    duplicates: int = 0
    links_discovered: int = 0
    links_enqueued: int = 0
    links_skipped: Dict[str, int] = field(default_factory=dict)
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time:
            return self.end_time - self.start_time
        return None

    def skipped(self, reason: str):
        self.links_skipped[reason] = self.links_skipped.get(reason, 0) + 1

    def finish(self):
        self.end_time = datetime.now()


def _domain(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


class CrawlEngine:
    """Owns one crawl session at a time.

    Only one session may run system-wide; ``start`` on any engine is a no-op
    while another session is active.
    """

    def __init__(self,
                 ingestor,
                 oracle: Optional[RelevanceOracle] = None,
                 config: Optional[CrawlConfig] = None,
                 url_validator: Optional[UrlValidator] = None):
        """Initialize engine.

        Args:
            ingestor: Object with ``async process(url) -> IngestionResult``
            oracle: Link ranker; defaults to an unavailable oracle
            config: Crawl configuration, snapshotted at session start
            url_validator: Security check returning ``(is_safe, error)``
        """
        self.ingestor = ingestor
        self.oracle = oracle or UnavailableOracle()
        self.config = config or crawl_config
        self.url_validator = url_validator or validate_url_security

        self.state = CrawlState.IDLE
        self.outcome: Optional[CrawlState] = None
        self.status = "Ready"
        self.progress = 0.0
        self.session: Optional[CrawlSession] = None
        self.discovered_links: List[CrawlLink] = []
        self.crawled_pages: List[str] = []
        self.last_stats: Optional[CrawlStats] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._log = get_structured_logger(__name__)

    @property
    def is_crawling(self) -> bool:
        return self.state in (CrawlState.INITIALIZING, CrawlState.RUNNING)

    async def start(self, root_url: str, max_depth: Optional[int] = None) -> Optional[CrawlStats]:
        """Run a crawl session to completion, stop or failure.

        Returns:
            Session statistics, or None when the call was a no-op because a
            session is already active or deep crawling is disabled
        """
        global _active_engine

        if _active_engine is not None:
            logger.warning(f"Ignoring crawl of {root_url}: a crawl session is already active")
            return None

        settings = self.config.snapshot()
        if not settings.enabled:
            self.status = "Deep crawling is disabled"
            logger.info(f"Ignoring crawl of {root_url}: deep crawling is disabled")
            return None

        if max_depth is not None and max_depth < 0:
            raise ValueError("max_depth must be >= 0")

        _active_engine = self
        self.state = CrawlState.INITIALIZING
        self.outcome = None
        self.progress = 0.0
        self._stop_event = asyncio.Event()
        stats = CrawlStats()

        outcome = CrawlState.FAILED
        try:
            self.session = CrawlSession(
                root_url=normalize_url(root_url),
                max_depth=settings.max_depth if max_depth is None else max_depth,
                max_pages_per_domain=settings.max_pages_per_domain,
                crawl_delay=settings.crawl_delay,
                follow_external_links=settings.follow_external_links,
            )
            logger.info(f"Starting deep crawl of {self.session.root_url} "
                        f"(max depth {self.session.max_depth}, "
                        f"max {self.session.max_pages_per_domain} pages per domain)")

            self.state = CrawlState.RUNNING
            await self._run(self.session, stats)

            if self._stop_event.is_set():
                outcome = CrawlState.STOPPED
                self.status = f"Deep crawl stopped - processed {stats.pages_visited} pages"
            else:
                outcome = CrawlState.COMPLETED
                self.status = f"Deep crawl completed - processed {stats.pages_visited} pages"
                self.progress = 1.0
            logger.info(self.status)

        except Exception as e:
            self.status = f"Crawl failed: {e}"
            logger.exception(f"Deep crawl of {root_url} failed")

        finally:
            stats.finish()
            self.last_stats = stats
            self.outcome = outcome
            self.state = CrawlState.IDLE
            self.session = None
            _active_engine = None

        return stats

    def stop(self):
        """Request cancellation; takes effect at the next frontier pop."""
        if self.is_crawling and self._stop_event is not None:
            self.status = "Stopping crawl..."
            self._stop_event.set()

    def clear(self):
        """Forget links and pages accumulated by earlier sessions."""
        if self.is_crawling:
            logger.warning("Cannot clear crawl state while a session is running")
            return
        self.discovered_links = []
        self.crawled_pages = []
        self.progress = 0.0
        self.status = "Ready"

    def _skip(self, stats: CrawlStats, url: str, reason: str, **context):
        stats.skipped(reason)
        record_skip(reason)
        self._log.debug(f"Skipping {url} - {reason}", url=url, reason=reason, **context)

    async def _run(self, session: CrawlSession, stats: CrawlStats):
        is_safe, error = await asyncio.to_thread(self.url_validator, session.root_url)
        if not is_safe:
            raise SSRFError(f"Root URL blocked: {error}")

        frontier: Deque[Tuple[str, int]] = deque([(session.root_url, 0)])
        queued: Set[str] = {session.root_url}
        visited: Set[str] = set()
        domain_counts: Dict[str, int] = {}

        self.status = f"Starting crawl from {_domain(session.root_url) or 'unknown'}"

        while frontier:
            if self._stop_event.is_set():
                logger.info(f"Crawl stop requested, {len(frontier)} queued URLs abandoned")
                break

            url, depth = frontier.popleft()
            queued.discard(url)

            if url in visited:
                self._skip(stats, url, "visited")
                continue
            if depth > session.max_depth:
                self._skip(stats, url, "depth", depth=depth)
                continue

            domain = _domain(url)
            count = domain_counts.get(domain, 0)
            if count >= session.max_pages_per_domain:
                self._skip(stats, url, "domain_limit", domain=domain)
                self._log.info(f"Skipping {url} - domain page limit reached for {domain}",
                               url=url, domain=domain)
                continue

            visited.add(url)
            domain_counts[domain] = count + 1
            stats.pages_visited += 1

            self.status = f"Crawling: {url} (depth {depth})"
            estimate = min(len(visited) + len(frontier), session.max_pages_per_domain)
            self.progress = min(1.0, len(visited) / max(estimate, 1))

            try:
                result = await self.ingestor.process(url)
            except DocGraphError as e:
                stats.pages_failed += 1
                record_page("failed")
                logger.warning(f"Failed to crawl {url}: {e}")
                if frontier:
                    await self._pause(session.crawl_delay)
                continue

            if result.is_duplicate:
                stats.duplicates += 1
                record_page("duplicate")
            else:
                record_page("success")
            self.crawled_pages.append(url)

            links = extract_links(result.raw_html, url, depth) if result.raw_html else []
            self.discovered_links.extend(links)
            stats.links_discovered += len(links)

            candidates = await self._filter_by_relevance(links, result.document.title or url)

            for link in candidates:
                reason = await self._admission_failure(link, session, visited, queued)
                if reason:
                    self._skip(stats, link.url, reason, source=url)
                    continue
                frontier.append((link.url, link.depth))
                queued.add(link.url)
                stats.links_enqueued += 1

            logger.info(f"Crawled {url} (depth {depth}, found {len(links)} links, {len(frontier)} queued)")

            if frontier:
                await self._pause(session.crawl_delay)

    async def _filter_by_relevance(self, links: List[CrawlLink], page_context: str) -> List[CrawlLink]:
        if not self.oracle.available or len(links) <= LINK_THRESHOLD:
            return links

        self.status = "Analyzing link relevance..."
        try:
            ranked = await self.oracle.rank([link.url for link in links], page_context)
        except Exception as e:
            logger.warning(f"Relevance oracle failed, keeping all {len(links)} links: {e}")
            return links

        keep = {r.url for r in ranked if r.priority >= PRIORITY_CUTOFF}
        prioritized = [link for link in links if link.url in keep]
        if not prioritized:
            logger.info(f"Relevance oracle kept none of {len(links)} links, using classified links")
            return links

        logger.info(f"Relevance oracle filtered {len(links)} links down to {len(prioritized)}")
        return prioritized

    async def _admission_failure(self, link: CrawlLink, session: CrawlSession,
                                 visited: Set[str], queued: Set[str]) -> Optional[str]:
        """Name of the first admission rule ``link`` fails, or None."""
        if link.url in visited or link.url in queued:
            return "visited"
        if link.depth > session.max_depth:
            return "depth"
        if not is_documentation_link(link):
            return "not_documentation"
        if link.link_type == LinkType.EXTERNAL and not session.follow_external_links:
            return "external"
        is_safe, error = await asyncio.to_thread(self.url_validator, link.url)
        if not is_safe:
            logger.debug(f"Link failed security validation: {link.url} - {error}")
            return "security"
        return None

    async def _pause(self, seconds: float):
        """Inter-fetch delay that ends early when a stop is requested."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
