"""
Background pass that writes natural-language descriptions onto relationship edges.

Each undescribed pair is a unit of work. Workers claim a pair under a lease, so
several workers (threads or processes) can run at once; a worker that dies only
delays its pairs until the lease expires.
"""

import socket
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from ..models.core import NODE_DOCUMENT, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, Relationship
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import GraphConfig, config
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient, NeptuneError
from ..utils.opensearch_client import INDEX_DOCUMENT, INDEX_MEMORY, OpenSearchClient, OpenSearchError

logger = get_logger(__name__)

MAX_DESCRIPTION_CHARS = 600
MAX_NODE_CHARS = 2000

SYSTEM_PROMPT = """You explain how two pieces of a learner's material relate to each other.
Answer in one or two plain sentences. Name the shared topic and say whether one extends, supports, contradicts or merely touches on the other.
Do not use lists or markdown."""


class DescriptionError(Exception):
    """The description for a pair could not be produced."""
    pass


class RelationshipDescriptionWorker:
    """Claims pending edge pairs, describes them with the LLM and records the outcome."""

    def __init__(self,
                 worker_id: Optional[str] = None,
                 neptune: Optional[NeptuneClient] = None,
                 opensearch: Optional[OpenSearchClient] = None,
                 llm: Optional[BedrockLLM] = None,
                 graph_config: Optional[GraphConfig] = None):
        """Initialize the worker.

        Args:
            worker_id: Lease owner name (hostname plus a random suffix if None)
            neptune: Graph client holding the edges
            opensearch: Vector index client holding node texts
            llm: LLM used to describe a pair
            graph_config: Lease, batch and retry settings
        """
        self.worker_id = worker_id or f'{socket.gethostname()}-{uuid.uuid4().hex[:8]}'
        self.neptune = neptune or NeptuneClient(config.neptune)
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.config = graph_config or config.graph

        self._stop = threading.Event()
        self._running = False
        self._completed_count = 0
        self._retried_count = 0
        self._failed_count = 0
        self._start_time: Optional[float] = None

    @property
    def stats(self) -> Dict[str, Any]:
        """Get worker statistics."""
        uptime = time.time() - self._start_time if self._start_time else 0
        return {
            'worker_id': self.worker_id,
            'running': self._running,
            'completed_count': self._completed_count,
            'retried_count': self._retried_count,
            'failed_count': self._failed_count,
            'uptime_seconds': round(uptime, 1),
        }

    def claim_batch(self, now: Optional[int] = None) -> List[Relationship]:
        """Claim up to batch_size pairs; returns the canonical edge of each claimed pair.

        The lease lives on the canonical direction (lexicographically smaller
        source); the reverse direction is moved to processing alongside it.
        """
        now = int(now if now is not None else time.time())
        candidates = self.neptune.find_claimable(now, limit=self.config.batch_size * 4)

        by_pair: Dict[str, Relationship] = {}
        for edge in candidates:
            current = by_pair.get(edge.pair_key)
            if current is None or edge.source_id < current.source_id:
                by_pair[edge.pair_key] = edge

        claimed = []
        for pair_key in sorted(by_pair):
            if len(claimed) >= self.config.batch_size:
                break
            edge = by_pair[pair_key]
            if not self.neptune.claim_edge(edge.source_id, edge.target_id, self.worker_id, now, self.config.lease_seconds):
                logger.debug(f'Pair {pair_key} already claimed, skipping')
                continue
            self.neptune.claim_edge(edge.target_id, edge.source_id, self.worker_id, now, self.config.lease_seconds)
            claimed.append(edge)

        return claimed

    def _node_text(self, node_id: str, node_kind: str) -> str:
        if node_kind == NODE_DOCUMENT:
            doc = self.opensearch.get_document(node_id, INDEX_DOCUMENT)
            if not doc:
                raise DescriptionError(f'Document {node_id} not found')
            return f'{doc.get("title") or "Untitled"}\n{doc.get("excerpt", "")}'[:MAX_NODE_CHARS]

        doc = self.opensearch.get_document(node_id, INDEX_MEMORY)
        if not doc or doc.get('deleted_at'):
            raise DescriptionError(f'Memory {node_id} not found')
        return f'{doc.get("entity_type", "memory")}: {doc.get("text", "")}'[:MAX_NODE_CHARS]

    def describe(self, edge: Relationship) -> str:
        """Ask the LLM how the two nodes of an edge relate."""
        try:
            first = self._node_text(edge.source_id, edge.node_kind)
            second = self._node_text(edge.target_id, edge.node_kind)
            prompt = (f'Similarity score: {edge.score:.2f} ({edge.kind})\n\n'
                      f'First:\n{first}\n\nSecond:\n{second}\n\nHow are they related?')
            description = self.llm.complete(prompt, system_prompt=SYSTEM_PROMPT, max_tokens=200)
        except (BedrockLLMError, OpenSearchError) as e:
            raise DescriptionError(str(e))

        description = ' '.join(description.split())
        if not description:
            raise DescriptionError('Empty description')
        return description[:MAX_DESCRIPTION_CHARS]

    def _record(self, edge: Relationship, status: str, description: Optional[str], attempts: Optional[int]) -> None:
        self.neptune.set_edge_state(edge.source_id,
                                    edge.target_id,
                                    status,
                                    description=description,
                                    attempts=attempts,
                                    worker_id=self.worker_id)
        self.neptune.set_edge_state(edge.target_id,
                                    edge.source_id,
                                    status,
                                    description=description,
                                    attempts=attempts,
                                    worker_id=self.worker_id)

    def process_edge(self, edge: Relationship) -> str:
        """Describe one claimed pair and store the result on both directions.

        Returns:
            The status the pair ended in
        """
        try:
            description = self.describe(edge)
        except DescriptionError as e:
            attempts = edge.attempts + 1
            status = STATUS_FAILED if attempts >= self.config.max_attempts else STATUS_PENDING
            logger.warning(f'Description for {edge.pair_key} failed (attempt {attempts}/{self.config.max_attempts}): {e}')
            self._record(edge, status, None, attempts)
            if status == STATUS_FAILED:
                self._failed_count += 1
            else:
                self._retried_count += 1
            return status

        self._record(edge, STATUS_COMPLETED, description, edge.attempts + 1)
        self._completed_count += 1
        return STATUS_COMPLETED

    def process_batch(self, now: Optional[int] = None) -> List[Dict[str, str]]:
        """Claim and process one batch.

        Returns:
            [{'pair', 'status'}] for every pair this worker claimed
        """
        try:
            claimed = self.claim_batch(now)
        except NeptuneError as e:
            logger.error(f'Failed to claim relationship pairs: {e}')
            return []

        results = []
        for edge in claimed:
            try:
                status = self.process_edge(edge)
            except NeptuneError as e:
                # The lease expires and another pass picks the pair up again
                logger.error(f'Failed to record description for {edge.pair_key}: {e}')
                status = 'error'
            results.append({'pair': edge.pair_key, 'status': status})

        if results:
            logger.info(f'Worker {self.worker_id} processed {len(results)} relationship pairs')
        return results

    def run_forever(self) -> None:
        """Poll for pending pairs until stop() is called."""
        self._running = True
        self._start_time = time.time()
        self._stop.clear()
        logger.info(f'Description worker {self.worker_id} started '
                    f'(batch_size={self.config.batch_size}, poll_interval={self.config.poll_interval}s)')

        while not self._stop.is_set():
            results = self.process_batch()
            if not results:
                self._stop.wait(self.config.poll_interval)

        self._running = False
        logger.info(f'Description worker {self.worker_id} stopped')

    def stop(self) -> None:
        """Ask the polling loop to exit after the current batch."""
        self._stop.set()
