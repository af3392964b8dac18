#!/usr/bin/env python3
"""
Tests for the deep crawl engine.

Pages are served by an in-memory fetcher and persisted to an in-memory graph
store, so these tests exercise the real ingestor, link classifier and
admission rules end to end.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.graph import GraphStoreConfig
from conftest import PUBLIC_POLICY, FakeFetcher, FakeGraphStore, StaticOracle, allow_all, html_page
from indexer.graph_gateway import GraphGateway
from indexer.graph_store import Neo4jHttpStore
from pipelines.crawler import LINK_THRESHOLD, CrawlEngine, CrawlState, active_engine
from pipelines.errors import GraphStoreError
from pipelines.ingest import Ingestor
from pipelines.relevance import UnavailableOracle

ROOT = "https://docs.example.com/intro"

INTERNAL = [
    ("https://docs.example.com/guide/setup", "Setup guide"),
    ("https://docs.example.com/reference/cli", "CLI reference"),
    ("https://docs.example.com/tutorials/first-steps", "First steps"),
]
EXTERNAL = [
    ("https://github.com/example/project", "Source"),
    ("https://twitter.com/example", "Follow us"),
]


def docs_site():
    pages = {ROOT: html_page("Intro", [("/guide/setup", "Setup guide"),
                                       ("/reference/cli", "CLI reference"),
                                       ("/tutorials/first-steps", "First steps")] + EXTERNAL)}
    for url, text in INTERNAL:
        pages[url] = html_page(text, [("/intro", "Back to intro")])
    return pages


class TestCrawlScenarios:
    """End-to-end crawl scenarios"""

    @pytest.mark.asyncio
    async def test_internal_links_followed_external_ignored(self, make_ingestor, make_config):
        """Seed with 3 internal and 2 external links at max depth 1 visits 4 pages"""
        config = make_config(max_crawl_depth=1, max_pages_per_domain=50, follow_external_links=False)
        ingestor, fetcher = make_ingestor(docs_site(), config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert engine.outcome == CrawlState.COMPLETED
        assert stats.pages_visited == 4
        assert engine.crawled_pages[0] == ROOT
        assert set(engine.crawled_pages[1:]) == {url for url, _ in INTERNAL}
        for url, _ in EXTERNAL:
            assert url not in fetcher.requested
        assert stats.links_enqueued == 3

    @pytest.mark.asyncio
    async def test_domain_page_cap(self, make_ingestor, make_config, caplog):
        """With a cap of 2 pages only the root and one internal link are visited"""
        caplog.set_level(logging.INFO, logger="pipelines.crawler")
        config = make_config(max_crawl_depth=1, max_pages_per_domain=2)
        ingestor, fetcher = make_ingestor(docs_site(), config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert stats.pages_visited == 2
        assert engine.crawled_pages == [ROOT, INTERNAL[0][0]]
        assert stats.links_skipped["domain_limit"] == 2
        assert sum("domain page limit reached" in r.getMessage() for r in caplog.records) == 2

    @pytest.mark.asyncio
    async def test_page_failure_does_not_abort(self, make_ingestor, make_config):
        """A page that fails to fetch is counted and the crawl continues"""
        config = make_config(max_crawl_depth=1)
        pages = docs_site()
        del pages[INTERNAL[1][0]]
        ingestor, _ = make_ingestor(pages, config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert engine.outcome == CrawlState.COMPLETED
        assert stats.pages_visited == 4
        assert stats.pages_failed == 1
        assert INTERNAL[1][0] not in engine.crawled_pages


class DocumentFailingStore(FakeGraphStore):
    """Rejects the document node of one source."""

    def __init__(self, failing_source: str):
        super().__init__()
        self.failing_source = failing_source

    async def execute_many(self, statements):
        for statement in statements:
            props = statement.parameters.get("props", {})
            if statement.text.startswith("CREATE (d:Document") and props.get("source") == self.failing_source:
                raise GraphStoreError("Neo.TransientError.General.DatabaseUnavailable")
        return await super().execute_many(statements)


class TestPersistenceFailures:
    """Graph store failures are per page"""

    @pytest.mark.asyncio
    async def test_document_failure_skips_page(self, make_config):
        config = make_config(max_crawl_depth=1)
        store = DocumentFailingStore(INTERNAL[0][0])
        ingestor = Ingestor(GraphGateway(store), fetcher=FakeFetcher(docs_site()), config=config,
                            url_policy=PUBLIC_POLICY)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert engine.outcome == CrawlState.COMPLETED
        assert stats.pages_visited == 4
        assert stats.pages_failed == 1
        assert INTERNAL[0][0] not in engine.crawled_pages
        assert set(engine.crawled_pages) == {ROOT, INTERNAL[1][0], INTERNAL[2][0]}

        documents = [s.parameters["props"] for s in store.statements
                     if s.text.startswith("CREATE (d:Document")]
        assert INTERNAL[0][0] not in {props["source"] for props in documents}
        document_ids = {props["id"] for props in documents}
        chunk_owners = {s.parameters["props"]["documentId"] for s in store.statements
                        if s.text.startswith("CREATE (c:Chunk")}
        assert chunk_owners == document_ids

    @pytest.mark.asyncio
    async def test_malformed_store_response_does_not_fail_session(self, make_config):
        """A 200 response that is not JSON fails the page, not the session"""
        page = MagicMock()
        page.status = 200
        page.json = AsyncMock(side_effect=json.JSONDecodeError("Expecting value", "<html>", 0))
        session = MagicMock()
        session.closed = False
        session.post.return_value.__aenter__.return_value = page
        session.post.return_value.__aexit__.return_value = False
        store = Neo4jHttpStore(GraphStoreConfig(uri="http://graph:7474"), retry_delay=0)
        store.session = session

        config = make_config(max_crawl_depth=1)
        ingestor = Ingestor(GraphGateway(store), fetcher=FakeFetcher(docs_site()), config=config,
                            url_policy=PUBLIC_POLICY)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert engine.outcome == CrawlState.COMPLETED
        assert stats.pages_visited == 1
        assert stats.pages_failed == 1
        assert engine.crawled_pages == []


class TestTraversalOrder:
    """BFS order and depth bound"""

    @pytest.mark.asyncio
    async def test_breadth_first_order(self, make_ingestor, make_config):
        base = "https://docs.example.com"
        pages = {
            f"{base}/docs": html_page("Root", [("/docs/a", "A"), ("/docs/b", "B")]),
            f"{base}/docs/a": html_page("A", [("/docs/a/deep", "A deep")]),
            f"{base}/docs/b": html_page("B", [("/docs/b/deep", "B deep")]),
            f"{base}/docs/a/deep": html_page("A deep"),
            f"{base}/docs/b/deep": html_page("B deep"),
        }
        config = make_config(max_crawl_depth=2)
        ingestor, _ = make_ingestor(pages, config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        await engine.start(f"{base}/docs")

        assert engine.crawled_pages == [
            f"{base}/docs", f"{base}/docs/a", f"{base}/docs/b",
            f"{base}/docs/a/deep", f"{base}/docs/b/deep",
        ]

    @pytest.mark.asyncio
    async def test_depth_bound(self, make_ingestor, make_config):
        base = "https://docs.example.com/docs"
        pages = {
            f"{base}/0": html_page("0", [(f"{base}/1", "next")]),
            f"{base}/1": html_page("1", [(f"{base}/2", "next")]),
            f"{base}/2": html_page("2", [(f"{base}/3", "next")]),
            f"{base}/3": html_page("3"),
        }
        config = make_config(max_crawl_depth=2)
        ingestor, fetcher = make_ingestor(pages, config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        stats = await engine.start(f"{base}/0")

        assert engine.crawled_pages == [f"{base}/0", f"{base}/1", f"{base}/2"]
        assert f"{base}/3" not in fetcher.requested
        assert stats.links_skipped["depth"] == 1

    @pytest.mark.asyncio
    async def test_max_depth_argument_overrides_config(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=3)
        ingestor, _ = make_ingestor(docs_site(), config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT, max_depth=0)

        assert stats.pages_visited == 1


def wide_page(count: int):
    links = [(f"/docs/page-{i}", f"Page {i}") for i in range(count)]
    pages = {ROOT: html_page("Intro", links)}
    for i in range(count):
        pages[f"https://docs.example.com/docs/page-{i}"] = html_page(f"Page {i}")
    return pages


class TestRelevanceFiltering:
    """Relevance oracle integration"""

    @pytest.mark.asyncio
    async def test_fallback_when_oracle_returns_nothing(self, make_ingestor, make_config):
        """An empty ranking for 15 links admits the classified set"""
        config = make_config(max_crawl_depth=1)
        ingestor, _ = make_ingestor(wide_page(15), config=config)
        oracle = StaticOracle()
        engine = CrawlEngine(ingestor, oracle=oracle, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert len(oracle.calls) == 1
        assert stats.links_enqueued == 15

    @pytest.mark.asyncio
    async def test_low_priority_links_dropped(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=1)
        ingestor, _ = make_ingestor(wide_page(15), config=config)
        priorities = {f"https://docs.example.com/docs/page-{i}": 2 for i in range(15)}
        priorities["https://docs.example.com/docs/page-3"] = 6
        priorities["https://docs.example.com/docs/page-7"] = 9
        engine = CrawlEngine(ingestor, oracle=StaticOracle(priorities), config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert stats.links_enqueued == 2
        assert engine.crawled_pages[1:] == [
            "https://docs.example.com/docs/page-3",
            "https://docs.example.com/docs/page-7",
        ]

    @pytest.mark.asyncio
    async def test_oracle_not_called_for_small_pages(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=1)
        ingestor, _ = make_ingestor(wide_page(LINK_THRESHOLD), config=config)
        oracle = StaticOracle()
        engine = CrawlEngine(ingestor, oracle=oracle, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert oracle.calls == []
        assert stats.links_enqueued == LINK_THRESHOLD

    @pytest.mark.asyncio
    async def test_unavailable_oracle_never_called(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=1)
        ingestor, _ = make_ingestor(wide_page(15), config=config)
        engine = CrawlEngine(ingestor, oracle=UnavailableOracle(), config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert stats.links_enqueued == 15

    @pytest.mark.asyncio
    async def test_failing_oracle_keeps_links(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=1)
        ingestor, _ = make_ingestor(wide_page(15), config=config)
        oracle = StaticOracle(error=RuntimeError("provider down"))
        engine = CrawlEngine(ingestor, oracle=oracle, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert engine.outcome == CrawlState.COMPLETED
        assert stats.links_enqueued == 15


class TestAdmission:
    """Link admission rules"""

    @pytest.mark.asyncio
    async def test_security_validation_drops_link(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=1)
        ingestor, fetcher = make_ingestor(docs_site(), config=config)
        blocked = INTERNAL[2][0]

        def validator(url):
            return (False, "blocked") if url == blocked else (True, None)

        engine = CrawlEngine(ingestor, config=config, url_validator=validator)
        stats = await engine.start(ROOT)

        assert blocked not in fetcher.requested
        assert stats.links_skipped["security"] == 1

    @pytest.mark.asyncio
    async def test_external_links_followed_when_allowed(self, make_ingestor, make_config):
        external = "https://other.org/docs/guide"
        pages = {ROOT: html_page("Intro", [(external, "Partner docs")]), external: html_page("Partner")}
        config = make_config(max_crawl_depth=1, follow_external_links=True)
        ingestor, _ = make_ingestor(pages, config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        await engine.start(ROOT)

        assert engine.crawled_pages == [ROOT, external]

    @pytest.mark.asyncio
    async def test_noise_links_rejected(self, make_ingestor, make_config):
        pages = {ROOT: html_page("Intro", [("/login", "Sign in"), ("/pricing", "Pricing"),
                                           ("#install", "Install"), ("/docs/start", "Start")])}
        config = make_config(max_crawl_depth=1)
        ingestor, _ = make_ingestor(pages, config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        stats = await engine.start(ROOT)

        assert stats.links_enqueued == 1
        assert stats.links_skipped["not_documentation"] == 3


class TestLifecycle:
    """Session state machine and guards"""

    @pytest.mark.asyncio
    async def test_disabled_config_is_noop(self, make_ingestor, make_config):
        config = make_config(enable_deep_crawling=False)
        ingestor, fetcher = make_ingestor(docs_site(), config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        assert await engine.start(ROOT) is None
        assert fetcher.requested == []
        assert engine.state == CrawlState.IDLE

    @pytest.mark.asyncio
    async def test_single_active_session(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=0)
        gate = asyncio.Event()
        ingestor, fetcher = make_ingestor(docs_site(), config=config, gate=gate)
        first = CrawlEngine(ingestor, config=config, url_validator=allow_all)
        second = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        task = asyncio.create_task(first.start(ROOT))
        while not fetcher.requested:
            await asyncio.sleep(0.01)

        assert first.state == CrawlState.RUNNING
        assert active_engine() is first
        assert await second.start(ROOT) is None

        gate.set()
        stats = await task
        assert stats.pages_visited == 1
        assert active_engine() is None
        assert first.state == CrawlState.IDLE

    @pytest.mark.asyncio
    async def test_stop_ends_session(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=1)
        engines = []

        def stop_after_root(url):
            if url != ROOT:
                engines[0].stop()

        ingestor, fetcher = make_ingestor(docs_site(), config=config, on_fetch=stop_after_root)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)
        engines.append(engine)

        stats = await engine.start(ROOT)

        assert engine.outcome == CrawlState.STOPPED
        assert stats.pages_visited == 2
        assert len(fetcher.requested) == 2
        assert engine.state == CrawlState.IDLE

    @pytest.mark.asyncio
    async def test_stop_interrupts_delay(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=1)
        config.crawl_delay = 30
        ingestor, _ = make_ingestor(docs_site(), config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        task = asyncio.create_task(engine.start(ROOT))
        while not engine.crawled_pages:
            await asyncio.sleep(0.01)
        engine.stop()
        stats = await asyncio.wait_for(task, timeout=5)

        assert engine.outcome == CrawlState.STOPPED
        assert stats.pages_visited == 1

    @pytest.mark.asyncio
    async def test_blocked_root_fails_session(self, make_ingestor, make_config):
        config = make_config()
        ingestor, fetcher = make_ingestor(docs_site(), config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=lambda url: (False, "private address"))

        stats = await engine.start(ROOT)

        assert engine.outcome == CrawlState.FAILED
        assert engine.status.startswith("Crawl failed:")
        assert stats.pages_visited == 0
        assert fetcher.requested == []
        assert active_engine() is None

    @pytest.mark.asyncio
    async def test_progress_and_clear(self, make_ingestor, make_config):
        config = make_config(max_crawl_depth=1)
        ingestor, _ = make_ingestor(docs_site(), config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        await engine.start(ROOT)
        assert engine.progress == 1.0
        assert engine.discovered_links

        engine.clear()
        assert engine.discovered_links == []
        assert engine.crawled_pages == []

    @pytest.mark.asyncio
    async def test_negative_depth_rejected(self, make_ingestor, make_config):
        ingestor, _ = make_ingestor(docs_site(), config=make_config())
        engine = CrawlEngine(ingestor, config=make_config(), url_validator=allow_all)

        with pytest.raises(ValueError):
            await engine.start(ROOT, max_depth=-1)
        assert active_engine() is None

    @pytest.mark.asyncio
    async def test_pages_are_persisted(self, make_ingestor, make_config, graph_store):
        config = make_config(max_crawl_depth=1)
        ingestor, _ = make_ingestor(docs_site(), config=config)
        engine = CrawlEngine(ingestor, config=config, url_validator=allow_all)

        await engine.start(ROOT)

        assert graph_store.count("CREATE (d:Document") == 4
        assert graph_store.count("CREATE (c:Chunk") >= 4
