"""
Similarity-gated cache translating natural-language commands into structured actions.
"""

import json
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from ..models.actions import ActionParseError, ActionResolution, action_to_dict, parse_action
from ..models.core import ActionCacheEntry
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import ActionCacheConfig, config
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import INDEX_ACTION_CACHE, OpenSearchClient, OpenSearchError
from ..utils.timestamp_utils import days_ago, parse_timestamp, to_iso, utc_now
from ..utils.vector_utils import as_float_list

logger = get_logger(__name__)

SYSTEM_PROMPT = """You translate a reader's natural-language command into exactly one structured action for a document reader.

Allowed actions (camelCase keys):
- {"type": "highlight", "text": "...", "colorId": "yellow|green|blue|pink|orange|purple", "pageNumber": 1}
- {"type": "create_note", "content": "...", "noteType": "cornell|outline|mindmap|chart|boxing|freeform", "pageNumber": 1}
- {"type": "search", "query": "...", "scope": "current|library|memory|all"}
- {"type": "export", "format": "markdown|json|pdf|docx", "content": "notes|highlights|annotations|all"}
- {"type": "speak", "mode": "page|to_end|selection", "pageNumber": 1}
- {"type": "question", "query": "...", "context": "document|memory|both", "mode": "study|general|notes"}
- {"type": "navigate", "target": "page|section|bookmark|highlight", "value": 12}

Use "this" or "selection" references as they are; do not invent text that was not given.
Return only the JSON object. Return null if the command does not match any action."""

UPDATE_HIT_SCRIPT = 'ctx._source.hit_count += 1; ctx._source.last_used_at = params.now'


def entry_from_document(doc: Dict[str, Any], doc_id: Optional[str] = None) -> ActionCacheEntry:
    """Build an ActionCacheEntry from a stored document."""
    return ActionCacheEntry(id=doc.get('id') or doc_id,
                            user_id=doc.get('user_id', ''),
                            command=doc.get('command', ''),
                            embedding=doc.get('embedding') or [],
                            action=doc.get('action') or {},
                            action_type=doc.get('action_type', 'unknown'),
                            hit_count=int(doc.get('hit_count', 0)),
                            last_used_at=parse_timestamp(doc.get('last_used_at')),
                            created_at=parse_timestamp(doc.get('created_at')))


def entry_to_document(entry: ActionCacheEntry) -> Dict[str, Any]:
    return {
        'id': entry.id,
        'user_id': entry.user_id,
        'command': entry.command,
        'embedding': entry.embedding,
        'action': entry.action,
        'action_type': entry.action_type,
        'hit_count': entry.hit_count,
        'last_used_at': to_iso(entry.last_used_at),
        'created_at': to_iso(entry.created_at),
    }


class ActionCache:
    """Resolves commands from cache when a similar enough command was seen before."""

    def __init__(self,
                 opensearch: Optional[OpenSearchClient] = None,
                 embed: Optional[BedrockEmbed] = None,
                 llm: Optional[BedrockLLM] = None,
                 cache_config: Optional[ActionCacheConfig] = None):
        self.opensearch = opensearch or OpenSearchClient(config.opensearch)
        self.embed = embed or BedrockEmbed(config.bedrock_embed)
        self.llm = llm or BedrockLLM(config.bedrock_llm)
        self.config = cache_config or config.action_cache

        logger.info(f'Initialized ActionCache (threshold={self.config.similarity_threshold})')

    def resolve(self, user_id: str, command: str, context: Optional[Dict[str, Any]] = None) -> ActionResolution:
        """Turn a command into an action, reusing a cached translation above the threshold.

        Args:
            user_id: Owner of the cache entries
            command: Natural-language command
            context: Reader state given to the LLM on a miss (page, selection...)

        Returns:
            ActionResolution; action is None when the LLM could not be reached

        Raises:
            ActionParseError: If the command maps to no known action kind
        """
        command = ' '.join((command or '').split())
        if not command:
            raise ActionParseError('Empty command')

        try:
            embedding = as_float_list(self.embed.embed_query(command))
        except BedrockEmbedError as e:
            logger.warning(f'Command embedding failed, resolving without cache: {e}')
            embedding = None

        best_similarity = None
        if embedding is not None:
            cached, best_similarity = self._lookup(user_id, embedding)
            if cached is not None:
                return cached

        try:
            action = self._interpret(command, context)
        except BedrockLLMError as e:
            logger.error(f'Action interpretation failed: {e}')
            return ActionResolution(action=None, from_cache=False, similarity=best_similarity)

        entry_id = None
        if embedding is not None:
            entry_id = self._store(user_id, command, embedding, action)

        return ActionResolution(action=action, from_cache=False, similarity=best_similarity, entry_id=entry_id)

    def _lookup(self, user_id: str, embedding) -> Tuple[Optional[ActionResolution], Optional[float]]:
        """Best cached match above the threshold, plus the best similarity seen."""
        try:
            candidates = self.opensearch.vector_search(query_vector=embedding,
                                                       user_id=user_id,
                                                       index_type=INDEX_ACTION_CACHE,
                                                       top_k=self.config.candidate_pool)
        except OpenSearchError as e:
            logger.warning(f'Action cache lookup failed: {e}')
            return None, None

        if not candidates:
            return None, None

        best = candidates[0]
        entry = entry_from_document(best['document'], best['id'])
        if best['similarity'] < self.config.similarity_threshold:
            logger.debug(f'Action cache miss (best similarity {best["similarity"]:.3f})')
            return None, best['similarity']

        try:
            action = parse_action(entry.action)
        except ActionParseError as e:
            logger.warning(f'Dropping unreadable action cache entry {entry.id}: {e}')
            try:
                self.opensearch.delete_document(entry.id, INDEX_ACTION_CACHE)
            except OpenSearchError as delete_error:
                logger.warning(f'Failed to drop cache entry {entry.id}: {delete_error}')
            return None, best['similarity']

        try:
            self.opensearch.update_document(entry.id,
                                            INDEX_ACTION_CACHE,
                                            script={
                                                'source': UPDATE_HIT_SCRIPT,
                                                'params': {
                                                    'now': to_iso(utc_now())
                                                }
                                            })
        except OpenSearchError as e:
            logger.warning(f'Failed to record action cache hit for {entry.id}: {e}')

        logger.debug(f'Action cache hit {entry.id} (similarity {best["similarity"]:.3f})')
        resolution = ActionResolution(action=action, from_cache=True, similarity=best['similarity'], entry_id=entry.id)
        return resolution, best['similarity']

    def _interpret(self, command: str, context: Optional[Dict[str, Any]]):
        prompt = f'Command: {command}'
        if context:
            prompt += f'\nReader context: {json.dumps(context, default=str)}'

        response = self.llm.generate_json(prompt, system_prompt=SYSTEM_PROMPT)
        try:
            payload = parse_json_response(response)
        except json.JSONDecodeError as e:
            raise ActionParseError(f'Action response is not JSON: {e}')
        if payload is None:
            raise ActionParseError(f'Command not understood: {command}')
        return parse_action(payload)

    def _store(self, user_id: str, command: str, embedding, action) -> Optional[str]:
        now = utc_now()
        entry = ActionCacheEntry(id=str(uuid.uuid4()),
                                 user_id=user_id,
                                 command=command,
                                 embedding=embedding,
                                 action=action_to_dict(action),
                                 action_type=action.type,
                                 hit_count=0,
                                 last_used_at=now,
                                 created_at=now)
        try:
            self.opensearch.index_document(entry_to_document(entry), INDEX_ACTION_CACHE, doc_id=entry.id)
            return entry.id
        except OpenSearchError as e:
            logger.warning(f'Failed to cache action for command: {e}')
            return None

    def prune_stale(self,
                    retention_days: Optional[int] = None,
                    user_id: Optional[str] = None,
                    now: Optional[datetime] = None) -> int:
        """Delete entries not used within the retention window.

        Returns:
            Number of entries deleted
        """
        retention_days = self.config.retention_days if retention_days is None else retention_days
        cutoff = to_iso(days_ago(retention_days, now))
        deleted = self.opensearch.delete_older_than(INDEX_ACTION_CACHE, 'last_used_at', cutoff, user_id=user_id)
        logger.info(f'Pruned {deleted} action cache entries unused since {cutoff}')
        return deleted

    def get_stats(self, user_id: str) -> Dict[str, Any]:
        """Entry count, total hits and hits per action type for an owner."""
        try:
            docs = self.opensearch.filter_search(user_id, INDEX_ACTION_CACHE, size=10000)
        except OpenSearchError as e:
            logger.warning(f'Failed to load action cache stats: {e}')
            return {'total_entries': 0, 'total_hits': 0, 'hits_by_type': {}}

        entries = [entry_from_document(doc) for doc in docs]
        hits_by_type: Counter = Counter()
        for entry in entries:
            hits_by_type[entry.action_type] += entry.hit_count
        return {
            'total_entries': len(entries),
            'total_hits': sum(hits_by_type.values()),
            'hits_by_type': dict(hits_by_type),
        }
