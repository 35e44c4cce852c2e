"""
Document embeddings: the document side of the relationship graph.
"""

from typing import Optional

from ..models.core import NODE_DOCUMENT, EmbeddingStoredEvent
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import config
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import INDEX_DOCUMENT, OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import to_iso, utc_now
from ..utils.vector_utils import as_float_list, truncate_for_embedding
from .relationship_graph import GraphEngineError, RelationshipGraphEngine

logger = get_logger(__name__)

EXCERPT_CHARS = 2000


class DocumentIndexError(Exception):
    """Custom exception for document index errors."""
    pass


class DocumentIndex:
    """Stores one embedding per document and announces it to the graph engine."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 embed: Optional[BedrockEmbed] = None,
                 graph: Optional[RelationshipGraphEngine] = None,
                 memory_store=None,
                 hooks=None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.graph = graph or RelationshipGraphEngine(opensearch=self.opensearch)
        self.memory_store = memory_store
        self.hooks = hooks

    def store_document_embedding(self, user_id: str, document_id: str, text: str, title: Optional[str] = None) -> bool:
        """Embed a document and upsert its vector.

        The embedding-stored event fires only after the vector is persisted.

        Args:
            user_id: Owner of the document
            document_id: Document ID
            text: Document text (truncated to the embedding input budget)
            title: Document title, embedded ahead of the text

        Returns:
            True once the vector is stored

        Raises:
            DocumentIndexError: If embedding or storage fails (nothing is written)
        """
        body = truncate_for_embedding(f'{title}\n\n{text}' if title else text, config.bedrock_embed.max_input_chars)
        try:
            embedding = as_float_list(self.embed.embed_document(body))
        except BedrockEmbedError as e:
            logger.error(f'Failed to embed document {document_id}: {e}')
            raise DocumentIndexError(f'Failed to embed document: {e}')

        try:
            existing = self.opensearch.get_document(document_id, INDEX_DOCUMENT)
            if existing and existing.get('user_id') != user_id:
                raise DocumentIndexError(f'Document {document_id} belongs to another owner')

            now = to_iso(utc_now())
            self.opensearch.index_document(
                {
                    'id': document_id,
                    'user_id': user_id,
                    'title': title,
                    'excerpt': (text or '')[:EXCERPT_CHARS],
                    'embedding': embedding,
                    'created_at': existing.get('created_at', now) if existing else now,
                    'updated_at': now,
                },
                INDEX_DOCUMENT,
                doc_id=document_id)
        except OpenSearchError as e:
            logger.error(f'Failed to store embedding for document {document_id}: {e}')
            raise DocumentIndexError(f'Failed to store document embedding: {e}')

        if self.hooks is not None:
            self.hooks.emit(EmbeddingStoredEvent(user_id, document_id, NODE_DOCUMENT, embedding))

        logger.info(f'Stored embedding for document {document_id}')
        return True

    def remove_document(self, user_id: str, document_id: str) -> bool:
        """Delete a document's vector, its graph node and edges, and soft-delete its memories."""
        try:
            existing = self.opensearch.get_document(document_id, INDEX_DOCUMENT)
            if existing and existing.get('user_id') != user_id:
                raise DocumentIndexError(f'Document {document_id} belongs to another owner')
            self.opensearch.delete_document(document_id, INDEX_DOCUMENT)
            self.graph.remove_node(user_id, document_id, NODE_DOCUMENT)
        except (OpenSearchError, GraphEngineError) as e:
            raise DocumentIndexError(f'Failed to remove document: {e}')

        if self.memory_store is not None:
            self.memory_store.delete_by_source(user_id, document_id=document_id)
        return True
