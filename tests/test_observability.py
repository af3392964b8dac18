"""
Tests for structured logging and Prometheus metrics.
"""

import json
import logging
from contextlib import contextmanager

from observability.logging import ColoredFormatter, JSONFormatter, get_structured_logger, setup_logging
from observability.metrics import export_metrics, get_metrics_summary, record_page, record_skip


def make_record(message="Crawled page", **extra):
    record = logging.LogRecord("pipelines.crawler", logging.INFO, __file__, 10, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    """Console and JSON output"""

    def test_json_formatter(self):
        record = make_record(ctx_url="https://docs.example.com/")

        entry = json.loads(JSONFormatter("docgraph-test").format(record))

        assert entry["message"] == "Crawled page"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "pipelines.crawler"
        assert entry["service"] == "docgraph-test"
        assert entry["ctx_url"] == "https://docs.example.com/"
        assert entry["timestamp"].endswith("+00:00")

    def test_colored_formatter_appends_context(self):
        record = make_record(ctx_url="https://docs.example.com/", ctx_depth=2)

        line = ColoredFormatter(use_colors=False).format(record)

        assert "| INFO     | pipelines.crawler | Crawled page" in line
        assert line.endswith("[url=https://docs.example.com/ depth=2]")
        assert "\033[" not in line


class TestStructuredLogger:
    """Context binding"""

    def test_context_becomes_extra_fields(self, caplog):
        caplog.set_level(logging.INFO, logger="docgraph.test")
        log = get_structured_logger("docgraph.test", session="s-1").bind(domain="docs.example.com")

        log.info("Skipping page", reason="domain_limit")

        record = caplog.records[-1]
        assert record.getMessage() == "Skipping page"
        assert record.ctx_session == "s-1"
        assert record.ctx_domain == "docs.example.com"
        assert record.ctx_reason == "domain_limit"

    def test_disabled_level_not_emitted(self, caplog):
        caplog.set_level(logging.INFO, logger="docgraph.quiet")
        get_structured_logger("docgraph.quiet").debug("hidden")
        assert not caplog.records


@contextmanager
def preserved_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        yield root
    finally:
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)


class TestSetupLogging:
    """Root logger configuration"""

    def test_json_console_and_file(self, tmp_path):
        log_file = tmp_path / "logs" / "docgraph.log"

        with preserved_root_logger() as root:
            setup_logging(level="DEBUG", log_file=str(log_file), use_json=True)

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 2
            assert all(isinstance(h.formatter, JSONFormatter) for h in root.handlers)
            assert logging.getLogger("aiohttp").level == logging.WARNING

        assert log_file.parent.is_dir()

    def test_unknown_level_defaults_to_info(self):
        with preserved_root_logger() as root:
            setup_logging(level="chatty")
            assert root.level == logging.INFO


class TestMetrics:
    """Counters in the dedicated registry"""

    def test_counters_in_summary(self):
        before = get_metrics_summary().get("docgraph_crawl_links_skipped_total{reason=security}", 0)

        record_skip("security")
        record_page("success")

        summary = get_metrics_summary()
        assert summary["docgraph_crawl_links_skipped_total{reason=security}"] == before + 1
        assert summary["docgraph_crawl_pages_total{outcome=success}"] >= 1

    def test_export(self):
        record_page("failed")
        assert b"docgraph_crawl_pages_total" in export_metrics()
