"""
Core data models for the semantic memory and relationship graph.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

ENTITY_TYPES = ('concept', 'question', 'insight', 'reference', 'action')
EXTRACTION_RELATION_TYPES = ('relates_to', 'contradicts', 'supports', 'cites', 'explains')

NODE_MEMORY = 'memory'
NODE_DOCUMENT = 'document'
NODE_KINDS = (NODE_MEMORY, NODE_DOCUMENT)

# Description lifecycle of a relationship edge
STATUS_PENDING = 'pending'
STATUS_PROCESSING = 'processing'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'

ORIGIN_SIMILARITY = 'similarity'
ORIGIN_EXTRACTION = 'extraction'

SOURCE_MEMORY = 'memory'
SOURCE_NOTE = 'note'
SOURCE_HIGHLIGHT = 'highlight'


@dataclass
class Memory:
    """A semantic entity extracted from a conversation or document chunk.

    Memories are append-only; removal only sets `deleted_at`.
    """
    id: str
    user_id: str  # Owner; every query and write is scoped to it
    conversation_id: Optional[str]
    entity_type: str  # One of ENTITY_TYPES
    text: str
    embedding: List[float]
    created_at: datetime
    document_id: Optional[str] = None
    source_message_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    deleted_at: Optional[datetime] = None


@dataclass
class ScoredMemory:
    """A memory returned by similarity search."""
    memory: Memory
    similarity: float


@dataclass
class ExtractedEntity:
    """Typed entity as returned by the extraction LLM call."""
    entity_type: str
    text: str
    source_message_index: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractedRelation:
    """Intra-batch relationship between two extracted entities (list indices)."""
    from_index: int
    to_index: int
    relation_type: str
    strength: float


@dataclass
class Extraction:
    """Parsed result of one extraction call."""
    entities: List[ExtractedEntity]
    relations: List[ExtractedRelation]


@dataclass
class ExtractionResult:
    """Outcome of MemoryStore.extract_and_store."""
    entities_created: int = 0
    relationships_created: int = 0
    skipped_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, int]:
        return {'entitiesCreated': self.entities_created, 'relationshipsCreated': self.relationships_created}


@dataclass
class ExtractionWatermark:
    """Per-conversation extraction progress."""
    user_id: str
    conversation_id: str
    last_message_id: Optional[str]
    processed_count: int
    status: str
    updated_at: datetime
    error: Optional[str] = None


@dataclass
class Relationship:
    """Directed, scored edge between two nodes of the same owner."""
    user_id: str
    source_id: str
    target_id: str
    node_kind: str  # NODE_MEMORY or NODE_DOCUMENT
    score: float  # In [0, 1]
    kind: str  # Score band or extraction relation type
    similarity: Optional[float] = None  # Embedding similarity of an extraction edge
    origin: str = ORIGIN_SIMILARITY
    status: str = STATUS_PENDING
    description: Optional[str] = None
    attempts: int = 0
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def pair_key(self) -> str:
        """Order-independent key shared by an edge and its reverse."""
        return '|'.join(sorted((self.source_id, self.target_id)))


@dataclass
class RelatedItem:
    """One entry of a node's related list."""
    related_id: str
    score: float
    kind: str
    description: Optional[str]
    status: str
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'relatedId': self.related_id,
            'score': self.score,
            'kind': self.kind,
            'description': self.description,
            'status': self.status,
        }


@dataclass
class EmbeddingStoredEvent:
    """Raised after a node's embedding has been persisted."""
    user_id: str
    node_id: str
    node_kind: str
    embedding: List[float]


@dataclass
class ContextItem:
    """One retrieved item competing for the context budget."""
    source: str  # SOURCE_MEMORY, SOURCE_NOTE or SOURCE_HIGHLIGHT
    id: str
    text: str
    similarity: float
    created_at: datetime
    label: Optional[str] = None  # Entity type, page reference, colour...
    rank_score: float = 0.0
    token_estimate: int = 0


@dataclass
class ContextBudget:
    """Ordered retrieval results bounded by a token ceiling."""
    items: List[ContextItem]
    token_estimate: int
    token_ceiling: int
    retrieval_skipped: bool = False
    dropped: int = 0
    text: str = ''


@dataclass
class ActionCacheEntry:
    """Cached translation of a natural-language command."""
    id: str
    user_id: str
    command: str
    embedding: List[float]
    action: Dict[str, Any]  # camelCase action payload
    action_type: str
    hit_count: int
    last_used_at: datetime
    created_at: datetime
