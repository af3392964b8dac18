"""Shared fakes for DocGraph tests.

The graph store, page fetcher and relevance oracle are replaced with
in-memory versions so crawl and persistence tests run without network access.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from config.crawl_config import CrawlConfig
from indexer.graph_gateway import GraphGateway
from indexer.graph_store import GraphStore, Statement
from pipelines.errors import FetchError, GraphStoreError
from pipelines.fetcher import FetchResult
from pipelines.ingest import Ingestor
from pipelines.relevance import RankedLink, RelevanceOracle
from pipelines.security import URLSecurityPolicy

# Treats every hostname as publicly routable so tests never touch DNS
PUBLIC_POLICY = URLSecurityPolicy(resolver=lambda hostname: {"93.184.216.34"})


class FakeGraphStore(GraphStore):
    """Records every transaction; optionally fails statements or returns canned rows."""

    def __init__(self, fail_on: Optional[str] = None, rows: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.fail_on = fail_on
        self.rows = rows or {}
        self.transactions: List[List[Statement]] = []

    @property
    def statements(self) -> List[Statement]:
        return [s for tx in self.transactions for s in tx]

    def count(self, prefix: str) -> int:
        return sum(1 for s in self.statements if s.text.startswith(prefix))

    async def execute_many(self, statements: Sequence[Statement]) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        for statement in statements:
            if self.fail_on and self.fail_on in statement.text:
                raise GraphStoreError(f"Simulated failure for: {statement.text}")
        self.transactions.append(list(statements))

        results = []
        for statement in statements:
            rows = next((r for key, r in self.rows.items() if key in statement.text), [])
            columns = list(rows[0].keys()) if rows else []
            results.append({
                "columns": columns,
                "data": [{"row": [row[c] for c in columns]} for row in rows],
            })
        return results


class FakeFetcher:
    """Serves pages from a dict; unknown URLs fail with HTTP 404."""

    def __init__(self, pages: Dict[str, Any], on_fetch: Optional[Callable[[str], None]] = None,
                 gate: Optional[asyncio.Event] = None):
        self.pages = pages
        self.on_fetch = on_fetch
        self.gate = gate
        self.requested: List[str] = []

    async def fetch(self, url: str) -> FetchResult:
        self.requested.append(url)
        if self.on_fetch:
            self.on_fetch(url)
        if self.gate is not None:
            await self.gate.wait()
        if url not in self.pages:
            raise FetchError("HTTP 404", url, status_code=404)
        body = self.pages[url]
        if isinstance(body, str):
            body = body.encode("utf-8")
        return FetchResult(url=url, status_code=200, body=body, content_type="text/html", final_url=url)

    async def close(self):
        pass


class StaticOracle(RelevanceOracle):
    """Returns fixed priorities and records every call."""

    def __init__(self, priorities: Optional[Dict[str, int]] = None, error: Optional[Exception] = None):
        self.priorities = priorities or {}
        self.error = error
        self.calls: List[Tuple[List[str], str]] = []

    async def rank(self, links, page_context):
        self.calls.append((list(links), page_context))
        if self.error:
            raise self.error
        return [RankedLink(url, p) for url, p in self.priorities.items() if url in links]


def html_page(title: str, links: Sequence[Tuple[str, str]] = (), body: str = "") -> str:
    anchors = "\n".join(f'<li><a href="{href}">{text}</a></li>' for href, text in links)
    return (f"<html><head><title>{title}</title></head><body>"
            f"<h1>{title}</h1><p>{body or 'Content of ' + title}</p>"
            f"<ul>{anchors}</ul></body></html>")


@pytest.fixture
def make_config(tmp_path):
    """Crawl config isolated from files and environment, with no crawl delay."""
    def _make(**overrides) -> CrawlConfig:
        config = CrawlConfig(config_path=str(tmp_path / "missing.yaml"), use_env=False)
        config.crawl_delay = 0
        for key, value in overrides.items():
            setattr(config, key, value)
        return config
    return _make


@pytest.fixture
def graph_store():
    return FakeGraphStore()


@pytest.fixture
def gateway(graph_store):
    return GraphGateway(graph_store)


@pytest.fixture
def make_ingestor(gateway, make_config):
    def _make(pages: Optional[Dict[str, Any]] = None, config: Optional[CrawlConfig] = None, **fetcher_kwargs):
        fetcher = FakeFetcher(pages or {}, **fetcher_kwargs)
        ingestor = Ingestor(gateway, fetcher=fetcher, config=config or make_config(),
                            url_policy=PUBLIC_POLICY)
        return ingestor, fetcher
    return _make


def allow_all(url: str):
    return True, None
