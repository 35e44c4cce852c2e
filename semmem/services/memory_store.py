"""
Memory store: extraction into typed, embedded memories and similarity search over them.
"""

import threading
import uuid
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import (NODE_MEMORY, ORIGIN_EXTRACTION, STATUS_COMPLETED, STATUS_FAILED, EmbeddingStoredEvent,
                           ExtractionResult, ExtractionWatermark, Memory, RelatedItem, ScoredMemory)
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLMError
from ..utils.config import MemoryConfig, config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import INDEX_EXTRACTION_STATE, INDEX_MEMORY, OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import parse_timestamp, to_iso, utc_now
from ..utils.vector_utils import as_float_list, is_valid_embedding
from .memory_extraction import ExtractionParseError, MemoryExtractionService
from .relationship_graph import GraphEngineError, RelationshipGraphEngine

logger = get_logger(__name__)

SKIP_TOO_FEW_MESSAGES = 'too_few_messages'
SKIP_NO_NEW_MESSAGES = 'no_new_messages'
SKIP_EXTRACTION_FAILED = 'extraction_failed'
SKIP_EMBEDDING_FAILED = 'embedding_failed'

# Fixed pool of extraction locks, picked by conversation hash
LOCK_STRIPES = 64


class MemoryStoreError(Exception):
    """Custom exception for memory store errors."""
    pass


def memory_from_document(doc: Dict[str, Any], doc_id: Optional[str] = None) -> Memory:
    """Build a Memory from a stored document (embedding is usually stripped)."""
    deleted_at = doc.get('deleted_at')
    return Memory(id=doc.get('id') or doc_id,
                  user_id=doc.get('user_id', ''),
                  conversation_id=doc.get('conversation_id'),
                  entity_type=doc.get('entity_type', ''),
                  text=doc.get('text', ''),
                  embedding=doc.get('embedding') or [],
                  created_at=parse_timestamp(doc.get('created_at')),
                  document_id=doc.get('document_id'),
                  source_message_id=doc.get('source_message_id'),
                  metadata=doc.get('metadata') or {},
                  deleted_at=parse_timestamp(deleted_at) if deleted_at else None)


def rank_scored(results: List[ScoredMemory]) -> List[ScoredMemory]:
    """Similarity desc, then newest first, then id for a total order."""
    results = sorted(results, key=lambda r: r.memory.id)
    return sorted(results, key=lambda r: (round(r.similarity, 9), r.memory.created_at), reverse=True)


class MemoryStore:
    """Persists extracted memories and serves similarity and relationship queries."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 embed: Optional[BedrockEmbed] = None,
                 extractor: Optional[MemoryExtractionService] = None,
                 graph: Optional[RelationshipGraphEngine] = None,
                 hooks=None,
                 memory_config: Optional[MemoryConfig] = None):
        """Initialize the memory store.

        Args:
            opensearch: Vector index client
            embed: Embedding client
            extractor: Extraction LLM service
            graph: Relationship graph engine (extraction edges, deletes)
            hooks: EmbeddingHooks receiving an event per stored memory
            memory_config: Thresholds and limits
        """
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.extractor = extractor or MemoryExtractionService()
        self.graph = graph or RelationshipGraphEngine(opensearch=self.opensearch)
        self.hooks = hooks
        self.config = memory_config or config.memory
        self.dimension = config.bedrock_embed.dimension

        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

        logger.info('Initialized MemoryStore')

    def _conversation_lock(self, user_id: str, conversation_id: str) -> threading.Lock:
        """Lock serialising extraction per conversation; unrelated conversations may share a stripe."""
        return self._locks[hash((user_id, conversation_id)) % LOCK_STRIPES]

    # Extraction watermark

    @staticmethod
    def _watermark_id(user_id: str, conversation_id: str) -> str:
        return f'{user_id}:{conversation_id}'

    def get_watermark(self, user_id: str, conversation_id: str) -> Optional[ExtractionWatermark]:
        doc = self.opensearch.get_document(self._watermark_id(user_id, conversation_id), INDEX_EXTRACTION_STATE)
        if not doc:
            return None
        return ExtractionWatermark(user_id=doc['user_id'],
                                   conversation_id=doc['conversation_id'],
                                   last_message_id=doc.get('last_message_id'),
                                   processed_count=int(doc.get('processed_count', 0)),
                                   status=doc.get('status', STATUS_COMPLETED),
                                   updated_at=parse_timestamp(doc.get('updated_at')),
                                   error=doc.get('error'))

    def _save_watermark(self, watermark: ExtractionWatermark) -> None:
        self.opensearch.index_document(
            {
                'user_id': watermark.user_id,
                'conversation_id': watermark.conversation_id,
                'last_message_id': watermark.last_message_id,
                'processed_count': watermark.processed_count,
                'status': watermark.status,
                'error': watermark.error,
                'updated_at': to_iso(watermark.updated_at),
            },
            INDEX_EXTRACTION_STATE,
            doc_id=self._watermark_id(watermark.user_id, watermark.conversation_id))

    def _mark_failed(self, previous: Optional[ExtractionWatermark], user_id: str, conversation_id: str, error: str) -> None:
        # Progress is kept as it was; only the status and error change
        watermark = ExtractionWatermark(user_id=user_id,
                                        conversation_id=conversation_id,
                                        last_message_id=previous.last_message_id if previous else None,
                                        processed_count=previous.processed_count if previous else 0,
                                        status=STATUS_FAILED,
                                        updated_at=utc_now(),
                                        error=error[:1000])
        try:
            self._save_watermark(watermark)
        except OpenSearchError as e:
            logger.warning(f'Failed to record extraction failure for {conversation_id}: {e}')

    @staticmethod
    def split_new_messages(messages: List[Dict[str, Any]],
                           watermark: Optional[ExtractionWatermark]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Split messages into (already processed, new) using the watermark."""
        if watermark is None or (not watermark.last_message_id and not watermark.processed_count):
            return [], list(messages)

        if watermark.last_message_id:
            for index, msg in enumerate(messages):
                if msg.get('id') == watermark.last_message_id:
                    return list(messages[:index + 1]), list(messages[index + 1:])

        cut = min(watermark.processed_count, len(messages))
        return list(messages[:cut]), list(messages[cut:])

    # Extraction

    def extract_and_store(self,
                          user_id: str,
                          conversation_id: str,
                          messages: List[Dict[str, Any]],
                          document_id: Optional[str] = None,
                          document_title: Optional[str] = None) -> ExtractionResult:
        """Extract memories from the unprocessed part of a conversation and store them.

        The batch is all-or-nothing: memories and their edges are written only after
        every embedding succeeded, and a failed write removes what the batch already wrote.

        Args:
            user_id: Owner of the conversation
            conversation_id: Conversation being processed
            messages: Full message list ('id', 'role', 'content'), oldest first
            document_id: Document the conversation is about
            document_title: Title of that document, given to the extraction prompt

        Returns:
            ExtractionResult with counts, or a skipped_reason

        Raises:
            MemoryStoreError: If persisting the batch failed (nothing of it is kept)
        """
        if len(messages) < self.config.min_messages:
            logger.debug(f'Conversation {conversation_id} has {len(messages)} messages, skipping extraction')
            return ExtractionResult(skipped_reason=SKIP_TOO_FEW_MESSAGES)

        with self._conversation_lock(user_id, conversation_id):
            try:
                watermark = self.get_watermark(user_id, conversation_id)
            except OpenSearchError as e:
                raise MemoryStoreError(f'Failed to read extraction watermark: {e}')

            processed, new_messages = self.split_new_messages(messages, watermark)
            if not new_messages:
                logger.debug(f'No new messages in conversation {conversation_id}')
                return ExtractionResult(skipped_reason=SKIP_NO_NEW_MESSAGES)

            context_tail = processed[-self.config.context_tail_messages:] if self.config.context_tail_messages else []

            try:
                extraction = self.extractor.extract(new_messages, context_messages=context_tail, document_title=document_title)
            except (ExtractionParseError, BedrockLLMError) as e:
                logger.error(f'Extraction failed for conversation {conversation_id}: {e}')
                self._mark_failed(watermark, user_id, conversation_id, str(e))
                return ExtractionResult(skipped_reason=SKIP_EXTRACTION_FAILED)

            memories: List[Memory] = []
            if extraction.entities:
                try:
                    embeddings = self.embed.embed_batch([entity.text for entity in extraction.entities])
                except BedrockEmbedError as e:
                    logger.error(f'Embedding failed for conversation {conversation_id}: {e}')
                    self._mark_failed(watermark, user_id, conversation_id, str(e))
                    return ExtractionResult(skipped_reason=SKIP_EMBEDDING_FAILED)

                if len(embeddings) != len(extraction.entities) or not all(
                        is_valid_embedding(v, self.dimension) for v in embeddings):
                    logger.error(f'Embedding batch for conversation {conversation_id} returned unusable vectors')
                    self._mark_failed(watermark, user_id, conversation_id, 'invalid embedding batch')
                    return ExtractionResult(skipped_reason=SKIP_EMBEDDING_FAILED)

                now = utc_now()
                for entity, embedding in zip(extraction.entities, embeddings):
                    source_message_id = None
                    if entity.source_message_index is not None:
                        source_message_id = new_messages[entity.source_message_index].get('id')
                    memories.append(
                        Memory(id=str(uuid.uuid4()),
                               user_id=user_id,
                               conversation_id=conversation_id,
                               entity_type=entity.entity_type,
                               text=entity.text,
                               embedding=as_float_list(embedding),
                               created_at=now,
                               document_id=document_id,
                               source_message_id=source_message_id,
                               metadata=dict(entity.metadata)))

            relationships_created = self._persist_batch(user_id, conversation_id, memories, extraction.relations, watermark)

            last = messages[-1]
            try:
                self._save_watermark(
                    ExtractionWatermark(user_id=user_id,
                                        conversation_id=conversation_id,
                                        last_message_id=last.get('id'),
                                        processed_count=len(messages),
                                        status=STATUS_COMPLETED,
                                        updated_at=utc_now()))
            except OpenSearchError as e:
                self._compensate(user_id, [m.id for m in memories])
                raise MemoryStoreError(f'Failed to advance extraction watermark: {e}')

        if self.hooks is not None:
            for memory in memories:
                self.hooks.emit(EmbeddingStoredEvent(user_id, memory.id, NODE_MEMORY, memory.embedding))

        logger.info(f'Stored {len(memories)} memories and {relationships_created} relationships '
                    f'for conversation {conversation_id}')
        return ExtractionResult(entities_created=len(memories), relationships_created=relationships_created)

    def _persist_batch(self,
                       user_id: str,
                       conversation_id: str,
                       memories: List[Memory],
                       relations,
                       watermark: Optional[ExtractionWatermark]) -> int:
        written: List[str] = []
        try:
            for memory in memories:
                self.opensearch.index_document(self._memory_document(memory), INDEX_MEMORY, doc_id=memory.id)
                written.append(memory.id)

            relationships_created = 0
            for relation in relations:
                source, target = memories[relation.from_index], memories[relation.to_index]
                self.graph.link(user_id,
                                source.id,
                                target.id,
                                NODE_MEMORY,
                                relation.strength,
                                kind=relation.relation_type,
                                origin=ORIGIN_EXTRACTION)
                relationships_created += 1
            return relationships_created

        except (OpenSearchError, GraphEngineError) as e:
            logger.error(f'Failed to persist extraction batch for conversation {conversation_id}: {e}')
            self._compensate(user_id, written)
            self._mark_failed(watermark, user_id, conversation_id, str(e))
            raise MemoryStoreError(f'Failed to persist extraction batch: {e}')

    def _compensate(self, user_id: str, memory_ids: List[str]) -> None:
        for memory_id in memory_ids:
            try:
                self.opensearch.delete_document(memory_id, INDEX_MEMORY)
                self.graph.remove_node(user_id, memory_id, NODE_MEMORY)
            except (OpenSearchError, GraphEngineError) as e:
                logger.error(f'Failed to roll back memory {memory_id}: {e}')

    @staticmethod
    def _memory_document(memory: Memory) -> Dict[str, Any]:
        return {
            'id': memory.id,
            'user_id': memory.user_id,
            'conversation_id': memory.conversation_id,
            'document_id': memory.document_id,
            'source_message_id': memory.source_message_id,
            'entity_type': memory.entity_type,
            'text': memory.text,
            'metadata': memory.metadata,
            'embedding': memory.embedding,
            'created_at': to_iso(memory.created_at),
        }

    # Queries

    def search(self,
               user_id: str,
               query: str,
               entity_types: Optional[List[str]] = None,
               limit: Optional[int] = None,
               document_id: Optional[str] = None,
               query_embedding: Optional[List[float]] = None,
               min_similarity: float = 0.0) -> List[ScoredMemory]:
        """Similarity search over the owner's memories.

        Any failure degrades to an empty list.

        Args:
            user_id: Owner of the memories
            query: Query text
            entity_types: Restrict to these entity types
            limit: Maximum number of results
            document_id: Restrict to memories about one document
            query_embedding: Precomputed query vector (skips the embedding call)
            min_similarity: Drop results below this cosine similarity

        Returns:
            ScoredMemory list, similarity desc then newest first
        """
        limit = limit or self.config.search_limit
        try:
            vector = query_embedding or self.embed.embed_query(query)
            hits = self.opensearch.vector_search(query_vector=vector,
                                                 user_id=user_id,
                                                 index_type=INDEX_MEMORY,
                                                 top_k=limit * max(1, self.config.candidate_multiplier),
                                                 filters={
                                                     'entity_type': entity_types or None,
                                                     'document_id': document_id
                                                 },
                                                 min_similarity=min_similarity)
        except (BedrockEmbedError, OpenSearchError) as e:
            logger.warning(f'Memory search failed for user {user_id}: {e}')
            return []

        results = [ScoredMemory(memory_from_document(hit['document'], hit['id']), hit['similarity']) for hit in hits]
        return rank_scored(results)[:limit]

    def get_relationships(self, user_id: str, memory_id: str) -> List[RelatedItem]:
        """Related memories of one memory, strongest first."""
        return self.graph.get_related(user_id, memory_id, NODE_MEMORY)

    def get_conversation_memories(self, user_id: str, conversation_id: str, limit: int = 200) -> List[Memory]:
        """All live memories of a conversation, oldest first."""
        try:
            docs = self.opensearch.filter_search(user_id,
                                                 INDEX_MEMORY,
                                                 filters={'conversation_id': conversation_id},
                                                 size=limit,
                                                 sort=[{
                                                     'created_at': 'asc'
                                                 }, {
                                                     'id': 'asc'
                                                 }])
        except OpenSearchError as e:
            logger.warning(f'Failed to load memories for conversation {conversation_id}: {e}')
            return []
        return [memory_from_document(doc) for doc in docs]

    def aggregate_memories(self,
                           user_id: str,
                           entity_types: Optional[List[str]] = None,
                           start: Optional[datetime] = None,
                           end: Optional[datetime] = None,
                           limit: int = 10,
                           scan_size: int = 1000) -> Dict[str, List[Dict[str, Any]]]:
        """Most frequent memory texts per entity type in a time window.

        Returns:
            {entity_type: [{'text', 'count', 'last_seen'}]} with at most `limit` per type
        """
        date_range = {}
        if start or end:
            bounds = {}
            if start:
                bounds['gte'] = to_iso(start)
            if end:
                bounds['lte'] = to_iso(end)
            date_range['created_at'] = bounds

        try:
            docs = self.opensearch.filter_search(user_id,
                                                 INDEX_MEMORY,
                                                 filters={'entity_type': entity_types or None},
                                                 size=scan_size,
                                                 date_range=date_range)
        except OpenSearchError as e:
            logger.warning(f'Failed to aggregate memories for user {user_id}: {e}')
            return {}

        counts: Dict[str, Counter] = defaultdict(Counter)
        display: Dict[Tuple[str, str], str] = {}
        last_seen: Dict[Tuple[str, str], datetime] = {}
        for doc in docs:
            memory = memory_from_document(doc)
            key = ' '.join(memory.text.lower().split())
            counts[memory.entity_type][key] += 1
            display.setdefault((memory.entity_type, key), memory.text)
            seen = last_seen.get((memory.entity_type, key))
            if seen is None or memory.created_at > seen:
                last_seen[(memory.entity_type, key)] = memory.created_at

        aggregated = {}
        for entity_type, counter in counts.items():
            top = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
            aggregated[entity_type] = [{
                'text': display[(entity_type, key)],
                'count': count,
                'last_seen': to_iso(last_seen[(entity_type, key)]),
            } for key, count in top]
        return aggregated

    def delete_by_source(self, user_id: str, conversation_id: Optional[str] = None, document_id: Optional[str] = None) -> int:
        """Soft-delete memories of a conversation or document and drop their graph nodes.

        Returns:
            Number of memories soft-deleted
        """
        if not conversation_id and not document_id:
            raise MemoryStoreError('delete_by_source needs a conversation_id or a document_id')

        filters = {'conversation_id': conversation_id, 'document_id': document_id}
        try:
            docs = self.opensearch.filter_search(user_id, INDEX_MEMORY, filters=filters, size=10000)
            deleted = self.opensearch.soft_delete(user_id, filters, to_iso())
        except OpenSearchError as e:
            raise MemoryStoreError(f'Failed to delete memories: {e}')

        for doc in docs:
            try:
                self.graph.remove_node(user_id, doc['id'], NODE_MEMORY)
            except GraphEngineError as e:
                logger.warning(f'Memory {doc["id"]} soft-deleted but its graph node remains: {e}')

        logger.info(f'Soft-deleted {deleted} memories for user {user_id}')
        return deleted

    def conversation_summary(self, user_id: str, conversation_id: str, max_items: int = 5) -> str:
        """Short summary of a conversation built from its insight memories."""
        insights = [m.text for m in self.get_conversation_memories(user_id, conversation_id) if m.entity_type == 'insight']
        if not insights:
            return ''
        return '\n'.join(f'- {text}' for text in insights[-max_items:])
