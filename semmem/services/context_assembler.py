"""
Context assembly: ranked memories, notes and highlights packed under a token ceiling.
"""

import math
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.core import SOURCE_HIGHLIGHT, SOURCE_MEMORY, SOURCE_NOTE, ContextBudget, ContextItem
from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import ContextConfig, config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import parse_timestamp, utc_now
from .memory_store import MemoryStore

logger = get_logger(__name__)

MEMORY_INDICATORS = ('remember', 'earlier', 'previous', 'before', 'what did', 'mentioned', 'discussed', 'compare',
                     'related', 'similar', 'last time', 'we talked', 'you said', 'i said')

REFERENCE_PATTERN = re.compile(r'\b(my notes?|notes?|highlights?|highlighted|document|chapter|section|page\s+\d+)\b')

SECTION_HEADERS = {
    SOURCE_MEMORY: '## Previous Conversation Memory',
    SOURCE_NOTE: '## Relevant Notes',
    SOURCE_HIGHLIGHT: '## Relevant Highlights',
}
SECTION_ORDER = (SOURCE_MEMORY, SOURCE_NOTE, SOURCE_HIGHLIGHT)

# Share of the item limit requested from each source
SOURCE_SHARE = {SOURCE_MEMORY: 0.5, SOURCE_NOTE: 0.3, SOURCE_HIGHLIGHT: 0.2}


def should_retrieve(query: str) -> bool:
    """True when the query refers back to earlier material."""
    text = (query or '').lower()
    if not text.strip():
        return False
    if any(indicator in text for indicator in MEMORY_INDICATORS):
        return True
    return bool(REFERENCE_PATTERN.search(text))


def format_item(item: ContextItem) -> str:
    label = f'[{item.label}] ' if item.label else ''
    return f'- {label}{item.text}\n'


class ContextAssembler:
    """Builds the retrieval part of a downstream LLM prompt. Never calls that LLM itself."""

    def __init__(self,
                 memory_store: Optional[MemoryStore] = None,
                 notes_store=None,
                 highlights_store=None,
                 embed: Optional[BedrockEmbed] = None,
                 context_config: Optional[ContextConfig] = None):
        """Initialize the assembler.

        Args:
            memory_store: Memory search
            notes_store: Object with search_by_owner(user_id, query_embedding, query_text, limit, document_id)
            highlights_store: Same interface as notes_store
            embed: Embedding client for the query (shared by every source)
            context_config: Token and ranking settings
        """
        self.memory_store = memory_store or MemoryStore()
        self.notes_store = notes_store
        self.highlights_store = highlights_store
        self.embed = embed or self.memory_store.embed
        self.config = context_config or config.context

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self.config.chars_per_token) if text else 0

    def recency(self, created_at: datetime, now: datetime) -> float:
        """Exponential decay in [0, 1] with the configured half-life."""
        age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
        return 0.5**(age_days / self.config.recency_half_life_days)

    def _search_memories(self, user_id: str, query: str, vector: List[float], limit: int) -> List[ContextItem]:
        results = self.memory_store.search(user_id, query, limit=limit, query_embedding=vector)
        return [
            ContextItem(source=SOURCE_MEMORY,
                        id=r.memory.id,
                        text=r.memory.text,
                        similarity=r.similarity,
                        created_at=r.memory.created_at,
                        label=r.memory.entity_type) for r in results
        ]

    @staticmethod
    def _search_store(store, source: str, user_id: str, query: str, vector: Optional[List[float]], limit: int,
                      document_id: Optional[str]) -> List[ContextItem]:
        rows: List[Dict[str, Any]] = store.search_by_owner(user_id, vector, query, limit, document_id)
        items = []
        for row in rows or []:
            text = (row.get('text') or '').strip()
            if not row.get('id') or not text:
                continue
            items.append(
                ContextItem(source=source,
                            id=str(row['id']),
                            text=text,
                            similarity=float(row.get('score', 0.0)),
                            created_at=parse_timestamp(row.get('created_at')),
                            label=row.get('label')))
        return items

    def _gather(self, user_id: str, query: str, vector: Optional[List[float]], limit: int,
                document_id: Optional[str]) -> List[ContextItem]:
        lookups = {}
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix='semmem-ctx') as pool:
            if vector is not None:
                lookups[SOURCE_MEMORY] = pool.submit(self._search_memories, user_id, query, vector,
                                                     math.ceil(limit * SOURCE_SHARE[SOURCE_MEMORY]))
            for source, store in ((SOURCE_NOTE, self.notes_store), (SOURCE_HIGHLIGHT, self.highlights_store)):
                if store is not None:
                    lookups[source] = pool.submit(self._search_store, store, source, user_id, query, vector,
                                                  math.ceil(limit * SOURCE_SHARE[source]), document_id)

            items: List[ContextItem] = []
            for source, future in lookups.items():
                try:
                    items.extend(future.result())
                except Exception as e:
                    logger.warning(f'Context lookup for {source} failed, continuing without it: {e}')
        return items

    def rank(self, items: List[ContextItem], now: datetime) -> List[ContextItem]:
        """Score, dedupe by (source, id) and order items deterministically."""
        best: Dict[tuple, ContextItem] = {}
        for item in items:
            item.rank_score = (self.config.similarity_weight * item.similarity +
                               self.config.recency_weight * self.recency(item.created_at, now))
            key = (item.source, item.id)
            if key not in best or item.rank_score > best[key].rank_score:
                best[key] = item

        ranked = sorted(best.values(), key=lambda i: (i.source, i.id))
        return sorted(ranked, key=lambda i: (round(i.rank_score, 9), i.created_at), reverse=True)

    def assemble(self,
                 user_id: str,
                 query: str,
                 token_ceiling: Optional[int] = None,
                 document_id: Optional[str] = None,
                 limit: Optional[int] = None,
                 force: bool = False,
                 now: Optional[datetime] = None) -> ContextBudget:
        """Retrieve, rank and pack context items without exceeding the token ceiling.

        Items are added greedily in rank order; an item that alone does not fit in the
        remaining budget is dropped and the scan continues with the next one. Section
        headers are counted against the budget when their first item is added.

        Args:
            user_id: Owner of the material
            query: The live user query
            token_ceiling: Maximum estimated tokens of the rendered context
            document_id: Document currently open (scopes notes and highlights)
            limit: Maximum number of items
            force: Retrieve even when the query carries no memory signal
            now: Reference time for recency

        Returns:
            ContextBudget with items in rank order and the rendered text
        """
        token_ceiling = self.config.default_token_ceiling if token_ceiling is None else token_ceiling
        limit = limit or self.config.default_limit
        now = now or utc_now()

        if token_ceiling <= 0 or (not force and not should_retrieve(query)):
            return ContextBudget(items=[], token_estimate=0, token_ceiling=max(token_ceiling, 0), retrieval_skipped=True)

        try:
            vector = self.embed.embed_query(query)
        except BedrockEmbedError as e:
            logger.warning(f'Query embedding failed, using text-only lookups: {e}')
            vector = None

        ranked = self.rank(self._gather(user_id, query, vector, limit, document_id), now)

        used = 0
        selected: List[ContextItem] = []
        sections_started = set()
        dropped = 0
        for item in ranked:
            if len(selected) >= limit:
                break
            item.token_estimate = self.estimate_tokens(format_item(item))
            cost = item.token_estimate
            if item.source not in sections_started:
                cost += self.estimate_tokens(SECTION_HEADERS[item.source] + '\n')
            if used + cost > token_ceiling:
                dropped += 1
                continue
            used += cost
            sections_started.add(item.source)
            selected.append(item)

        budget = ContextBudget(items=selected, token_estimate=used, token_ceiling=token_ceiling, dropped=dropped)
        budget.text = self.render(budget)
        logger.debug(f'Assembled {len(selected)} context items ({used}/{token_ceiling} tokens, {dropped} dropped)')
        return budget

    @staticmethod
    def render(budget: ContextBudget) -> str:
        """Render a budget as sections in a fixed order, items in rank order."""
        parts = []
        for source in SECTION_ORDER:
            items = [item for item in budget.items if item.source == source]
            if not items:
                continue
            parts.append(SECTION_HEADERS[source] + '\n')
            parts.extend(format_item(item) for item in items)
        return ''.join(parts)
