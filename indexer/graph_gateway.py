"""Graph persistence gateway.

Writes a document and its chunks as a staged pipeline:

1. the Document node;
2. each Chunk node with its HAS_CHUNK edge, one transaction per chunk;
3. per-chunk enrichment as independent background tasks.

A stage only starts when the previous one succeeded for that entity, so a
failed document never gets chunks and a failed enrichment leaves its chunk in
the created state. Partial results are expected and stay queryable.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set, Union

from observability.metrics import record_chunk, record_enrichment
from pipelines.errors import GraphStoreError, PersistenceError
from pipelines.models import Chunk, Document, DocumentFormat
from .enrichment import ChunkEnricher
from .graph_store import GraphStore, NodeLabel, RelationshipType, Statement, validate_property_name

logger = logging.getLogger(__name__)

CREATE_DOCUMENT = "CREATE (d:Document $props)"
CREATE_CHUNK = "CREATE (c:Chunk $props)"
LINK_CHUNK = ("MATCH (d:Document {id: $docID}), (c:Chunk {id: $chunkID}) "
              "CREATE (d)-[:HAS_CHUNK]->(c)")
UPDATE_CHUNK_ENRICHMENT = "MATCH (c:Chunk {id: $id}) SET c.tags = $tags, c.metadata = $metadata"
APPEND_DOCUMENT_TAGS = ("MATCH (d:Document {id: $id}) "
                        "SET d.tags = coalesce(d.tags, []) + [t IN $tags WHERE NOT t IN coalesce(d.tags, [])]")
DELETE_DOCUMENT = ("MATCH (d:Document {id: $id}) "
                   "OPTIONAL MATCH (d)-[:HAS_CHUNK]->(c:Chunk) DETACH DELETE c, d")

SEARCH_BY_TAG = "MATCH (c:Chunk) WHERE $tag IN c.tags RETURN c"
FULL_TEXT_SEARCH = "CALL db.index.fulltext.queryNodes('chunkContentIndex', $query) YIELD node RETURN node AS c"
TRACEABILITY = "MATCH (r:Requirement {id: $reqID})<-[:SATISFIES]-(c:Chunk) RETURN c"
RELATED_CHUNKS = "MATCH (c:Chunk {id: $id})-[:LINKED_TO]->(related:Chunk) RETURN related AS c"
DOCUMENT_CHUNKS = "MATCH (d:Document {id: $id})-[:HAS_CHUNK]->(c:Chunk) RETURN c ORDER BY c.position"
CREATE_LINKED_TO = ("MATCH (a:Chunk {id: $fromID}), (b:Chunk {id: $toID}) "
                    "CREATE (a)-[:LINKED_TO {type: $type}]->(b)")
CREATE_SATISFIES = ("MATCH (c:Chunk {id: $chunkID}), (r:Requirement {id: $reqID}) "
                    "CREATE (c)-[:SATISFIES]->(r)")

SCHEMA_STATEMENTS = [
    "CREATE CONSTRAINT document_id IF NOT EXISTS FOR (d:Document) REQUIRE d.id IS UNIQUE",
    "CREATE CONSTRAINT chunk_id IF NOT EXISTS FOR (c:Chunk) REQUIRE c.id IS UNIQUE",
    "CREATE FULLTEXT INDEX chunkContentIndex IF NOT EXISTS FOR (c:Chunk) ON EACH [c.content]",
]


def chunk_properties(chunk: Chunk) -> Dict[str, Any]:
    # Node properties cannot hold maps, so metadata is stored as JSON
    return {
        "id": chunk.id,
        "documentId": chunk.document_id,
        "type": chunk.chunk_type.value,
        "content": chunk.content,
        "position": chunk.position,
        "tags": list(chunk.tags),
        "metadata": json.dumps(chunk.metadata, sort_keys=True),
    }


def chunk_from_properties(props: Dict[str, Any]) -> Chunk:
    raw_metadata = props.get("metadata") or "{}"
    try:
        metadata = json.loads(raw_metadata) if isinstance(raw_metadata, str) else dict(raw_metadata)
    except json.JSONDecodeError:
        metadata = {}
    return Chunk(
        id=props["id"],
        document_id=props.get("documentId", ""),
        chunk_type=DocumentFormat(props.get("type", DocumentFormat.PLAINTEXT.value)),
        content=props.get("content", ""),
        position=int(props.get("position", 0)),
        tags=tuple(props.get("tags") or ()),
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


class GraphGateway:
    """Translates documents and chunks into graph writes, and serves graph reads."""

    def __init__(self, store: GraphStore, enricher: Optional[ChunkEnricher] = None):
        self.store = store
        self.enricher = enricher
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_enrichments(self) -> int:
        return len(self._tasks)

    async def ensure_schema(self):
        """Create id constraints and the full-text index used by ``full_text_search``."""
        for statement in SCHEMA_STATEMENTS:
            await self.store.execute(statement)

    async def persist(self, document: Document, chunks: List[Chunk]) -> List[Chunk]:
        """Persist ``document`` and then its chunks; schedule enrichment.

        Returns:
            The chunks whose nodes were created

        Raises:
            PersistenceError: If the document node could not be created; no
                chunk work is attempted in that case
        """
        try:
            await self.store.execute(CREATE_DOCUMENT, {"props": document.to_properties()})
        except GraphStoreError as e:
            logger.error(f"Failed to create document node {document.id} for {document.source}: {e.message}")
            raise PersistenceError(f"Failed to create document node: {e.message}", document.id) from e

        created: List[Chunk] = []
        for chunk in chunks:
            try:
                await self.store.execute_many([
                    Statement(CREATE_CHUNK, {"props": chunk_properties(chunk)}),
                    Statement(LINK_CHUNK, {"docID": document.id, "chunkID": chunk.id}),
                ])
            except GraphStoreError as e:
                record_chunk("failed")
                logger.error(f"Failed to create chunk {chunk.position} of document {document.id}: {e.message}")
                continue
            record_chunk("created")
            created.append(chunk)

        if self.enricher is not None and self.enricher.enabled:
            for chunk in created:
                self._spawn(self._enrich(document, chunk))

        logger.debug(f"Persisted document {document.id} with {len(created)}/{len(chunks)} chunks")
        return created

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _enrich(self, document: Document, chunk: Chunk):
        try:
            enriched = await self.enricher.enrich(chunk)
            await self.store.execute(UPDATE_CHUNK_ENRICHMENT, {
                "id": chunk.id,
                "tags": list(enriched.tags),
                "metadata": json.dumps(enriched.metadata, sort_keys=True),
            })
            new_tags = [tag for tag in enriched.tags if tag not in document.tags]
            if new_tags:
                await self.store.execute(APPEND_DOCUMENT_TAGS, {"id": document.id, "tags": new_tags})
        except Exception as e:
            record_enrichment("failed")
            logger.warning(f"Enrichment failed for chunk {chunk.id} of document {document.id}: {e}")
            return
        record_enrichment("success")

    async def drain(self):
        """Wait for all scheduled enrichment tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Reads

    async def _chunks(self, statement: str, parameters: Dict[str, Any]) -> List[Chunk]:
        rows = await self.store.query(statement, parameters)
        return [chunk_from_properties(row["c"]) for row in rows if row.get("c")]

    async def search_chunks_by_tag(self, tag: str) -> List[Chunk]:
        return await self._chunks(SEARCH_BY_TAG, {"tag": tag})

    async def full_text_search(self, query: str) -> List[Chunk]:
        return await self._chunks(FULL_TEXT_SEARCH, {"query": query})

    async def traceability_matrix(self, requirement_id: str) -> List[Chunk]:
        """Chunks that satisfy a requirement."""
        return await self._chunks(TRACEABILITY, {"reqID": requirement_id})

    async def get_related_chunks(self, chunk_id: str) -> List[Chunk]:
        return await self._chunks(RELATED_CHUNKS, {"id": chunk_id})

    async def get_document_chunks(self, document_id: str) -> List[Chunk]:
        return await self._chunks(DOCUMENT_CHUNKS, {"id": document_id})

    # Writes

    async def update_node_property(self, node_id: str, label: Union[NodeLabel, str],
                                   property_name: str, value: Any):
        label = NodeLabel(label)
        prop = validate_property_name(property_name)
        await self.store.execute(f"MATCH (n:{label.value} {{id: $id}}) SET n.{prop} = $value",
                                 {"id": node_id, "value": value})

    async def delete_node(self, node_id: str, label: Union[NodeLabel, str]):
        label = NodeLabel(label)
        await self.store.execute(f"MATCH (n:{label.value} {{id: $id}}) DETACH DELETE n", {"id": node_id})

    async def delete_document(self, document_id: str):
        """Delete a document node together with its chunks."""
        await self.store.execute(DELETE_DOCUMENT, {"id": document_id})

    async def delete_relationship(self, from_id: str, to_id: str,
                                  rel_type: Union[RelationshipType, str],
                                  from_label: Union[NodeLabel, str] = NodeLabel.CHUNK,
                                  to_label: Union[NodeLabel, str] = NodeLabel.CHUNK):
        rel_type = RelationshipType(rel_type)
        from_label = NodeLabel(from_label)
        to_label = NodeLabel(to_label)
        await self.store.execute(
            f"MATCH (a:{from_label.value} {{id: $fromID}})-[r:{rel_type.value}]->"
            f"(b:{to_label.value} {{id: $toID}}) DELETE r",
            {"fromID": from_id, "toID": to_id},
        )

    async def create_linked_to(self, from_chunk_id: str, to_chunk_id: str, link_type: str = "reference"):
        await self.store.execute(CREATE_LINKED_TO, {"fromID": from_chunk_id, "toID": to_chunk_id, "type": link_type})

    async def create_satisfies(self, chunk_id: str, requirement_id: str):
        await self.store.execute(CREATE_SATISFIES, {"chunkID": chunk_id, "reqID": requirement_id})
