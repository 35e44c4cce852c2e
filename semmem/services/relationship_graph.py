"""
Relationship graph engine: keeps similarity edges between documents (and between
memories) up to date whenever a node's embedding is stored.
"""

import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..models.core import (NODE_DOCUMENT, NODE_KINDS, NODE_MEMORY, ORIGIN_SIMILARITY, STATUS_FAILED, STATUS_PENDING,
                           EmbeddingStoredEvent, RelatedItem, Relationship)
from ..utils.config import GraphConfig, config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError, RelationshipWriteConflict
from ..utils.opensearch_client import INDEX_DOCUMENT, INDEX_MEMORY, OpenSearchClient, OpenSearchError
from ..utils.vector_utils import clamp_score

logger = get_logger(__name__)

NODE_INDEX = {NODE_MEMORY: INDEX_MEMORY, NODE_DOCUMENT: INDEX_DOCUMENT}

# Lower bound of each band, checked in order
SCORE_BANDS = ((0.90, 'identical'), (0.80, 'extension'), (0.70, 'shared_topic'))
DEFAULT_KIND = 'tangential'

REGENERATE_PAGE_SIZE = 200

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class GraphEngineError(Exception):
    """Custom exception for relationship graph errors."""
    pass


def classify_score(score: float) -> str:
    """Map a similarity score to a relationship kind."""
    for floor, kind in SCORE_BANDS:
        if score >= floor:
            return kind
    return DEFAULT_KIND


class RelationshipGraphEngine:
    """Builds bidirectional similarity edges and answers per-node related queries."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 neptune: Optional[NeptuneClient] = None,
                 graph_config: Optional[GraphConfig] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.config = graph_config or config.graph

        logger.info('Initialized RelationshipGraphEngine')

    def subscribe(self, hooks) -> None:
        """Register the engine for embedding-stored events of every node kind."""
        for node_kind in NODE_KINDS:
            hooks.subscribe(node_kind, self.on_embedding_stored)

    def on_embedding_stored(self, event: EmbeddingStoredEvent) -> int:
        """Link a freshly embedded node to its nearest neighbours of the same owner.

        Args:
            event: The stored node and its embedding

        Returns:
            Number of neighbour pairs written

        Raises:
            GraphEngineError: If the neighbour search or an edge write fails
        """
        if event.node_kind not in NODE_INDEX:
            raise GraphEngineError(f'Unknown node kind: {event.node_kind}')

        try:
            matches = self.opensearch.vector_search(query_vector=event.embedding,
                                                    user_id=event.user_id,
                                                    index_type=NODE_INDEX[event.node_kind],
                                                    top_k=self.config.max_neighbors,
                                                    exclude_ids=[event.node_id],
                                                    min_similarity=self.config.similarity_floor)
        except OpenSearchError as e:
            logger.error(f'Neighbour search failed for {event.node_kind} {event.node_id}: {e}')
            raise GraphEngineError(f'Neighbour search failed: {e}')

        linked = 0
        for match in matches:
            if match['id'] == event.node_id:
                continue
            score = clamp_score(match['similarity'])
            self.link(event.user_id, event.node_id, match['id'], event.node_kind, score)
            linked += 1

        logger.debug(f'Linked {event.node_kind} {event.node_id} to {linked} neighbours')
        return linked

    def link(self,
             user_id: str,
             source_id: str,
             target_id: str,
             node_kind: str,
             score: float,
             kind: Optional[str] = None,
             origin: str = ORIGIN_SIMILARITY) -> bool:
        """Upsert an edge together with its reverse.

        Concurrent writers on the same pair are retried; the last write wins.

        Returns:
            True if either direction was created or changed
        """
        if source_id == target_id:
            return False

        rel = Relationship(user_id=user_id,
                           source_id=source_id,
                           target_id=target_id,
                           node_kind=node_kind,
                           score=clamp_score(score),
                           kind=kind or classify_score(score),
                           origin=origin,
                           status=STATUS_PENDING)

        attempts = max(1, self.config.write_conflict_retries)
        for attempt in range(attempts):
            try:
                forward, reverse = self.neptune.upsert_relationship_pair(rel)
                return forward or reverse
            except RelationshipWriteConflict as e:
                logger.warning(f'Write conflict on {rel.pair_key} (attempt {attempt + 1}/{attempts}): {e}')
                if attempt < attempts - 1:
                    time.sleep(0.05 * (2**attempt) + random.uniform(0, 0.05))
            except NeptuneError as e:
                logger.error(f'Failed to write relationship {rel.pair_key}: {e}')
                raise GraphEngineError(f'Relationship write failed: {e}')

        raise GraphEngineError(f'Relationship write for {rel.pair_key} kept conflicting after {attempts} attempts')

    def get_related(self, user_id: str, node_id: str, node_kind: Optional[str] = None) -> List[RelatedItem]:
        """List a node's related items, strongest first.

        Args:
            user_id: Owner of the node
            node_id: Memory or document ID
            node_kind: Restrict to one node kind (both are tried when None)

        Returns:
            RelatedItem list ordered by score desc, then created_at desc
        """
        kinds = [node_kind] if node_kind else list(NODE_KINDS)
        edges: List[Relationship] = []
        try:
            for kind in kinds:
                edges.extend(self.neptune.get_outgoing(user_id, node_id, kind))
        except NeptuneError as e:
            logger.error(f'Failed to load relationships for {node_id}: {e}')
            return []

        items = [
            RelatedItem(related_id=edge.target_id,
                        score=edge.score,
                        kind=edge.kind,
                        description=edge.description if edge.status != STATUS_FAILED else None,
                        status=edge.status,
                        created_at=edge.created_at) for edge in edges if edge.user_id == user_id
        ]
        items.sort(key=lambda item: item.related_id)
        items.sort(key=lambda item: (item.score, item.created_at or _EPOCH), reverse=True)
        return items

    def backfill_symmetry(self, user_id: str) -> int:
        """Write the reverse of every edge that lacks one.

        Returns:
            Number of reverse edges written
        """
        try:
            edges = self.neptune.list_edges(user_id)
        except NeptuneError as e:
            raise GraphEngineError(f'Failed to list edges: {e}')

        present = {(edge.source_id, edge.target_id) for edge in edges}
        repaired = 0
        for edge in edges:
            if (edge.target_id, edge.source_id) in present:
                continue
            self.link(user_id, edge.source_id, edge.target_id, edge.node_kind, edge.score, edge.kind, edge.origin)
            present.add((edge.target_id, edge.source_id))
            repaired += 1

        if repaired:
            logger.info(f'Backfilled {repaired} reverse edges for user {user_id}')
        return repaired

    def regenerate(self, user_id: str, node_kind: Optional[str] = None) -> Dict[str, int]:
        """Re-run neighbour discovery for every stored node of an owner.

        Repairs nodes whose discovery failed when their embedding was stored.
        A node that fails again is logged and skipped.

        Args:
            user_id: Owner whose nodes are rescanned
            node_kind: Restrict to one node kind (both when None)

        Returns:
            {'nodes', 'linked', 'failed'} totals

        Raises:
            GraphEngineError: If the stored nodes cannot be listed
        """
        totals = {'nodes': 0, 'linked': 0, 'failed': 0}
        for kind in ([node_kind] if node_kind else list(NODE_KINDS)):
            search_after = None
            while True:
                try:
                    page = self.opensearch.filter_search(user_id,
                                                         NODE_INDEX[kind],
                                                         size=REGENERATE_PAGE_SIZE,
                                                         sort=[{'id': 'asc'}],
                                                         include_embedding=True,
                                                         search_after=search_after)
                except OpenSearchError as e:
                    logger.error(f'Failed to list {kind} nodes of user {user_id}: {e}')
                    raise GraphEngineError(f'Failed to list nodes: {e}')

                for doc in page:
                    if not doc.get('embedding'):
                        continue
                    totals['nodes'] += 1
                    try:
                        totals['linked'] += self.on_embedding_stored(
                            EmbeddingStoredEvent(user_id, doc['id'], kind, doc['embedding']))
                    except GraphEngineError as e:
                        logger.warning(f'Regeneration skipped {kind} {doc["id"]}: {e}')
                        totals['failed'] += 1

                if len(page) < REGENERATE_PAGE_SIZE:
                    break
                search_after = [page[-1]['id']]

        logger.info(f'Regenerated relationships for user {user_id}: {totals}')
        return totals

    def remove_node(self, user_id: str, node_id: str, node_kind: str) -> bool:
        """Drop a node and every edge touching it."""
        try:
            return self.neptune.delete_node(user_id, node_id, node_kind)
        except NeptuneError as e:
            logger.error(f'Failed to remove {node_kind} node {node_id}: {e}')
            raise GraphEngineError(f'Failed to remove node: {e}')

    def get_stats(self, user_id: str) -> Dict[str, Any]:
        """Edge totals per description status and the mean score."""
        try:
            return self.neptune.status_counts(user_id)
        except NeptuneError as e:
            logger.error(f'Failed to compute graph stats: {e}')
            raise GraphEngineError(f'Failed to compute graph stats: {e}')
