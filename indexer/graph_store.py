"""Graph store access over the Neo4j HTTP transactional API.

Statements are always parameterized. Node labels and relationship types are
closed enums and property names must be plain identifiers, so nothing that
reaches a statement string comes from free-form input.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from config.graph import GraphStoreConfig
from observability.metrics import record_statement
from pipelines.errors import GraphStoreError

logger = logging.getLogger(__name__)

PROPERTY_NAME_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class NodeLabel(str, Enum):
    DOCUMENT = "Document"
    CHUNK = "Chunk"
    REQUIREMENT = "Requirement"


class RelationshipType(str, Enum):
    HAS_CHUNK = "HAS_CHUNK"
    LINKED_TO = "LINKED_TO"
    SATISFIES = "SATISFIES"


def validate_property_name(name: str) -> str:
    """Return ``name`` if it is safe to place in a statement.

    Raises:
        ValueError: If ``name`` is not a plain identifier
    """
    if not isinstance(name, str) or not PROPERTY_NAME_RE.match(name):
        raise ValueError(f"Invalid property name: {name!r}")
    return name


@dataclass
class Statement:
    text: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {"statement": self.text, "parameters": self.parameters}


class GraphStore:
    """Interface the persistence gateway talks to."""

    async def execute_many(self, statements: Sequence[Statement]) -> List[Dict[str, Any]]:
        """Run ``statements`` in a single transaction and return the raw results."""
        raise NotImplementedError

    async def execute(self, statement: str, parameters: Optional[Dict[str, Any]] = None) -> None:
        await self.execute_many([Statement(statement, parameters or {})])

    async def query(self, statement: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run one statement and return its rows as dicts keyed by column."""
        results = await self.execute_many([Statement(statement, parameters or {})])
        if not results:
            return []
        columns = results[0].get("columns", [])
        return [dict(zip(columns, entry.get("row", []))) for entry in results[0].get("data", [])]

    async def close(self):
        pass


class Neo4jHttpStore(GraphStore):
    """Graph store backed by ``/db/<database>/tx/commit`` with basic auth."""

    def __init__(self, config: Optional[GraphStoreConfig] = None, retry_delay: float = 0.5):
        self.config = config or GraphStoreConfig.from_env()
        self.retry_delay = retry_delay
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                auth=aiohttp.BasicAuth(self.config.user, self.config.password),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"Accept": "application/json"},
            )
        return self.session

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._ensure_session()
        try:
            async with session.post(self.config.commit_url, json=payload) as response:
                if response.status >= 500:
                    raise GraphStoreError(f"Graph store returned HTTP {response.status}",
                                          code=str(response.status), transient=True)
                if response.status in (401, 403):
                    raise GraphStoreError("Graph store rejected the credentials", code=str(response.status))
                if response.status >= 400:
                    raise GraphStoreError(f"Graph store returned HTTP {response.status}: {await response.text()}",
                                          code=str(response.status))
                try:
                    body = await response.json(content_type=None)
                except ValueError as e:
                    raise GraphStoreError(f"Graph store returned a body that is not JSON: {e}",
                                          code="invalid_response") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GraphStoreError(f"Graph store unreachable: {e or type(e).__name__}", transient=True) from e

        if not isinstance(body, dict):
            raise GraphStoreError(f"Graph store returned {type(body).__name__} instead of a JSON object",
                                  code="invalid_response")
        return body

    async def execute_many(self, statements: Sequence[Statement]) -> List[Dict[str, Any]]:
        """
        Raises:
            GraphStoreError: With the first message from the store's error
                envelope, or after transient failures exhaust the retries
        """
        payload = {"statements": [s.to_payload() for s in statements]}

        for attempt in range(self.config.max_retries + 1):
            try:
                body = await self._post(payload)
            except GraphStoreError as e:
                if not e.transient or attempt >= self.config.max_retries:
                    record_statement("failed", len(statements))
                    raise
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(f"Transient graph store error: {e.message}, retrying in {delay:.2f}s "
                               f"(attempt {attempt + 1}/{self.config.max_retries + 1})")
                await asyncio.sleep(delay)
                continue

            errors = body.get("errors") or []
            if errors:
                record_statement("failed", len(statements))
                first = errors[0]
                raise GraphStoreError(first.get("message", "Unknown graph store error"), code=first.get("code"))

            record_statement("success", len(statements))
            return body.get("results") or []

        raise GraphStoreError("Graph store request was not attempted")
