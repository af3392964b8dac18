"""Configuration module for DocGraph.

Crawl and ingestion settings come from YAML plus environment overrides; graph
store connection settings come from the environment.
"""

from .crawl_config import CrawlConfig, CrawlSettings, DEFAULT_CONFIG, crawl_config
from .graph import GraphStoreConfig

__all__ = [
    'CrawlConfig',
    'CrawlSettings',
    'DEFAULT_CONFIG',
    'crawl_config',
    'GraphStoreConfig',
]
