"""Crawl and ingestion settings for DocGraph.

Settings come from ``DEFAULT_CONFIG``, deep-merged with an optional YAML file
and then with ``DOCGRAPH_*`` environment variables. They can be changed at
runtime; a crawl session reads them once through ``snapshot()`` when it starts.
"""

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    'deep_crawl': {
        'enabled': True,
        'max_depth': 3,
        'max_pages_per_domain': 50,
        'crawl_delay': 1.0,
        'follow_external_links': False,
    },
    'fetch': {
        'user_agent': 'DocGraph/1.0',
        'request_timeout': 30.0,
        'max_retries': 3,
        'retry_delay': 1.0,
        'max_retry_delay': 30.0,
    },
    'ingestion': {
        'allow_duplicates': False,
        'check_for_updates': True,
    },
    'enrichment': {
        'enabled': True,
        'tag_count': 5,
    },
}

# env var -> (dotted key, type)
ENV_OVERRIDES = {
    'DOCGRAPH_DEEP_CRAWL_ENABLED': ('deep_crawl.enabled', bool),
    'DOCGRAPH_MAX_CRAWL_DEPTH': ('deep_crawl.max_depth', int),
    'DOCGRAPH_MAX_PAGES_PER_DOMAIN': ('deep_crawl.max_pages_per_domain', int),
    'DOCGRAPH_CRAWL_DELAY': ('deep_crawl.crawl_delay', float),
    'DOCGRAPH_FOLLOW_EXTERNAL_LINKS': ('deep_crawl.follow_external_links', bool),
    'DOCGRAPH_USER_AGENT': ('fetch.user_agent', str),
    'DOCGRAPH_REQUEST_TIMEOUT': ('fetch.request_timeout', float),
    'DOCGRAPH_MAX_RETRIES': ('fetch.max_retries', int),
    'DOCGRAPH_ALLOW_DUPLICATES': ('ingestion.allow_duplicates', bool),
    'DOCGRAPH_ENRICHMENT_ENABLED': ('enrichment.enabled', bool),
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {'1', 'true', 'yes', 'on'}


@dataclass(frozen=True)
class CrawlSettings:
    """Immutable view of the configuration taken at session start."""
    enabled: bool
    max_depth: int
    max_pages_per_domain: int
    crawl_delay: float
    follow_external_links: bool
    user_agent: str
    request_timeout: float
    max_retries: int
    retry_delay: float
    max_retry_delay: float
    allow_duplicates: bool
    check_for_updates: bool
    enrichment_enabled: bool
    tag_count: int


class CrawlConfig:
    """Runtime-mutable crawl configuration."""

    def __init__(self, config_path: Optional[str] = None, use_env: bool = True):
        self.config_path = config_path or self._get_default_config_path()
        self.use_env = use_env
        self._config = self._load_config()

    def _get_default_config_path(self) -> str:
        possible_paths = [
            os.environ.get('DOCGRAPH_CRAWL_CONFIG'),
            os.path.join(os.getcwd(), 'config', 'crawl_config.yaml'),
            os.path.join(Path(__file__).parent, 'crawl_config.yaml'),
            os.path.join(os.path.expanduser('~'), '.docgraph', 'crawl_config.yaml'),
        ]
        for path in possible_paths:
            if path and os.path.exists(path):
                return path
        return os.path.join(Path(__file__).parent, 'crawl_config.yaml')

    def _load_config(self) -> Dict[str, Any]:
        config = copy.deepcopy(DEFAULT_CONFIG)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}
                config = self._deep_merge(config, file_config)
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load crawl config from {self.config_path}: {e}; using defaults")
        else:
            logger.debug(f"Crawl config file not found at {self.config_path}, using defaults")

        if self.use_env:
            for env_var, (key, cast) in ENV_OVERRIDES.items():
                raw = os.environ.get(env_var)
                if raw is None or raw == '':
                    continue
                try:
                    value = _parse_bool(raw) if cast is bool else cast(raw)
                except ValueError:
                    logger.warning(f"Ignoring invalid value for {env_var}: {raw!r}")
                    continue
                self._set_in(config, key, value)

        return config

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    @staticmethod
    def _set_in(config: Dict[str, Any], key: str, value: Any) -> None:
        *parents, leaf = key.split('.')
        node = config
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dotted key, e.g. ``deep_crawl.max_depth``."""
        value = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        self._set_in(self._config, key, value)

    # Deep crawl settings

    @property
    def enable_deep_crawling(self) -> bool:
        return bool(self.get('deep_crawl.enabled', True))

    @enable_deep_crawling.setter
    def enable_deep_crawling(self, value: bool) -> None:
        self.set('deep_crawl.enabled', bool(value))

    @property
    def max_crawl_depth(self) -> int:
        return int(self.get('deep_crawl.max_depth', 3))

    @max_crawl_depth.setter
    def max_crawl_depth(self, value: int) -> None:
        if value < 0:
            raise ValueError("max_crawl_depth must be >= 0")
        self.set('deep_crawl.max_depth', int(value))

    @property
    def max_pages_per_domain(self) -> int:
        return int(self.get('deep_crawl.max_pages_per_domain', 50))

    @max_pages_per_domain.setter
    def max_pages_per_domain(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_pages_per_domain must be >= 1")
        self.set('deep_crawl.max_pages_per_domain', int(value))

    @property
    def crawl_delay(self) -> float:
        return float(self.get('deep_crawl.crawl_delay', 1.0))

    @crawl_delay.setter
    def crawl_delay(self, value: float) -> None:
        if value < 0:
            raise ValueError("crawl_delay must be >= 0")
        self.set('deep_crawl.crawl_delay', float(value))

    @property
    def follow_external_links(self) -> bool:
        return bool(self.get('deep_crawl.follow_external_links', False))

    @follow_external_links.setter
    def follow_external_links(self, value: bool) -> None:
        self.set('deep_crawl.follow_external_links', bool(value))

    # Ingestion settings

    @property
    def allow_duplicates(self) -> bool:
        return bool(self.get('ingestion.allow_duplicates', False))

    @allow_duplicates.setter
    def allow_duplicates(self, value: bool) -> None:
        self.set('ingestion.allow_duplicates', bool(value))

    @property
    def check_for_updates(self) -> bool:
        return bool(self.get('ingestion.check_for_updates', True))

    @check_for_updates.setter
    def check_for_updates(self, value: bool) -> None:
        self.set('ingestion.check_for_updates', bool(value))

    def snapshot(self) -> CrawlSettings:
        """Freeze the current values for one crawl session."""
        return CrawlSettings(
            enabled=self.enable_deep_crawling,
            max_depth=self.max_crawl_depth,
            max_pages_per_domain=self.max_pages_per_domain,
            crawl_delay=self.crawl_delay,
            follow_external_links=self.follow_external_links,
            user_agent=str(self.get('fetch.user_agent', 'DocGraph/1.0')),
            request_timeout=float(self.get('fetch.request_timeout', 30.0)),
            max_retries=int(self.get('fetch.max_retries', 3)),
            retry_delay=float(self.get('fetch.retry_delay', 1.0)),
            max_retry_delay=float(self.get('fetch.max_retry_delay', 30.0)),
            allow_duplicates=self.allow_duplicates,
            check_for_updates=self.check_for_updates,
            enrichment_enabled=bool(self.get('enrichment.enabled', True)),
            tag_count=int(self.get('enrichment.tag_count', 5)),
        )

    def reload(self):
        """Reload configuration from file and environment."""
        self._config = self._load_config()


# Global configuration instance
crawl_config = CrawlConfig()
