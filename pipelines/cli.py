#!/usr/bin/env python3
"""DocGraph command line.

    python -m pipelines.cli crawl https://docs.example.com/intro --max-depth 2
    python -m pipelines.cli ingest ./guide.md
    python -m pipelines.cli search-tag authentication
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from config.crawl_config import CrawlConfig
from config.graph import GraphStoreConfig
from indexer.enrichment import ChunkEnricher
from indexer.graph_gateway import GraphGateway
from indexer.graph_store import Neo4jHttpStore
from observability.logging import setup_logging
from services.llm_client import get_llm_client
from .crawler import CrawlEngine, CrawlState
from .errors import DocGraphError, DuplicateDocumentError
from .ingest import Ingestor
from .models import Chunk
from .relevance import default_oracle

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docgraph", description="Crawl and ingest documentation into a graph store")
    parser.add_argument("--log-level", default="INFO", help="Log level (DEBUG, INFO, WARNING, ERROR)")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")
    parser.add_argument("--config", help="Path to a crawl configuration YAML file")

    commands = parser.add_subparsers(dest="command", required=True)

    crawl = commands.add_parser("crawl", help="Deep crawl documentation from a seed URL")
    crawl.add_argument("url", help="Seed URL")
    crawl.add_argument("--max-depth", type=int, help="Maximum link depth from the seed page")
    crawl.add_argument("--max-pages", type=int, help="Maximum pages per domain")
    crawl.add_argument("--delay", type=float, help="Delay between page fetches in seconds")
    crawl.add_argument("--follow-external", action="store_true", help="Follow links to other domains")
    crawl.add_argument("--no-enrichment", action="store_true", help="Skip AI tagging and embeddings")

    ingest = commands.add_parser("ingest", help="Import a single file or URL")
    ingest.add_argument("source", help="File path or URL")
    ingest.add_argument("--reimport", action="store_true", help="Import again even if already imported")
    ingest.add_argument("--no-enrichment", action="store_true", help="Skip AI tagging and embeddings")

    search_tag = commands.add_parser("search-tag", help="Find chunks carrying a tag")
    search_tag.add_argument("tag")

    search_text = commands.add_parser("search-text", help="Full-text search over chunk content")
    search_text.add_argument("query")

    related = commands.add_parser("related", help="Chunks linked from a chunk")
    related.add_argument("chunk_id")

    trace = commands.add_parser("trace", help="Chunks that satisfy a requirement")
    trace.add_argument("requirement_id")

    commands.add_parser("init-schema", help="Create graph constraints and the full-text index")

    return parser


def _apply_overrides(config: CrawlConfig, args: argparse.Namespace):
    if getattr(args, "max_depth", None) is not None:
        config.max_crawl_depth = args.max_depth
    if getattr(args, "max_pages", None) is not None:
        config.max_pages_per_domain = args.max_pages
    if getattr(args, "delay", None) is not None:
        config.crawl_delay = args.delay
    if getattr(args, "follow_external", False):
        config.follow_external_links = True


def _print_chunks(chunks: List[Chunk]):
    if not chunks:
        print("No chunks found")
        return
    for chunk in chunks:
        preview = " ".join(chunk.content.split())[:100]
        tags = ", ".join(chunk.tags)
        print(f"{chunk.id}  #{chunk.position}  [{tags}]  {preview}")


async def _run(args: argparse.Namespace, config: CrawlConfig) -> int:
    store = Neo4jHttpStore(GraphStoreConfig.from_env())
    enricher = None
    if getattr(args, "no_enrichment", False) is False and config.get("enrichment.enabled", True):
        enricher = ChunkEnricher.from_environment(tag_count=int(config.get("enrichment.tag_count", 5)))
    gateway = GraphGateway(store, enricher)
    ingestor = Ingestor(gateway, config=config)

    try:
        if args.command == "crawl":
            engine = CrawlEngine(ingestor, oracle=default_oracle(), config=config)
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, engine.stop)
            except NotImplementedError:
                pass
            stats = await engine.start(args.url, max_depth=args.max_depth)
            if stats is None:
                print(engine.status)
                return 1
            print(engine.status)
            print(f"Visited {stats.pages_visited} pages ({stats.pages_failed} failed, "
                  f"{stats.duplicates} duplicates), enqueued {stats.links_enqueued} "
                  f"of {stats.links_discovered} links")
            if gateway.pending_enrichments:
                print(f"Waiting for {gateway.pending_enrichments} chunk enrichments...")
            await gateway.drain()
            return 0 if engine.outcome != CrawlState.FAILED else 1

        if args.command == "ingest":
            try:
                document = await ingestor.ingest(args.source, reimport=args.reimport)
            except DuplicateDocumentError as e:
                print(f"{args.source} was already imported as {e.existing_id}; use --reimport to import it again")
                return 2
            print(f"Imported {document.title} ({document.format.value}) as {document.id}")
            await gateway.drain()
            return 0

        if args.command == "init-schema":
            await gateway.ensure_schema()
            print("Schema ready")
        elif args.command == "search-tag":
            _print_chunks(await gateway.search_chunks_by_tag(args.tag))
        elif args.command == "search-text":
            _print_chunks(await gateway.full_text_search(args.query))
        elif args.command == "related":
            _print_chunks(await gateway.get_related_chunks(args.chunk_id))
        elif args.command == "trace":
            _print_chunks(await gateway.traceability_matrix(args.requirement_id))
        return 0

    except DocGraphError as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    finally:
        await ingestor.close()
        await store.close()
        client = get_llm_client()
        if client is not None:
            await client.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level, use_json=args.json_logs)

    config = CrawlConfig(config_path=args.config) if args.config else CrawlConfig()
    try:
        _apply_overrides(config, args)
    except ValueError as e:
        parser.error(str(e))

    return asyncio.run(_run(args, config))


if __name__ == "__main__":
    sys.exit(main())
