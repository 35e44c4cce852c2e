"""
Structured extraction of typed entities and intra-batch relationships with one LLM call.
"""

import json
from typing import Dict, List, Optional

from ..models.core import ENTITY_TYPES, EXTRACTION_RELATION_TYPES, ExtractedEntity, ExtractedRelation, Extraction
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import config
from ..utils.json_utils import parse_json_response
from ..utils.logging_config import get_logger
from ..utils.vector_utils import clamp_score

logger = get_logger(__name__)

SYSTEM_PROMPT = """
You are a knowledge extraction system. Extract the semantic entities a learner would want to remember from the conversation.

Entity types:
- concept: a topic, method or idea that was discussed
- question: a question the user asked or left open
- insight: a conclusion, explanation or realization
- reference: a paper, book, author, dataset or document that was mentioned
- action: something the user intends to do

Also list relationships between the extracted entities, using their positions in the entity list.
Relationship types: relates_to, contradicts, supports, cites, explains.

Return a JSON object with this exact format:
```json
{
  "entities": [
    {"type": "concept|question|insight|reference|action", "text": "short self-contained statement", "message_index": 0}
  ],
  "relationships": [
    {"from": 0, "to": 1, "type": "relates_to|contradicts|supports|cites|explains", "strength": 0.8}
  ]
}
```

Only extract what is explicitly discussed. Each text must be understandable without the conversation.
Return {"entities": [], "relationships": []} if nothing is worth remembering."""


class ExtractionParseError(Exception):
    """LLM output did not match the expected extraction schema."""
    pass


class MemoryExtractionService:
    """Turn conversation messages into typed entities and relationships."""

    def __init__(self, llm: Optional[BedrockLLM] = None):
        self.llm = llm or BedrockLLM(config.bedrock_llm)

    @staticmethod
    def format_messages(messages: List[Dict[str, str]], context_messages: Optional[List[Dict[str, str]]] = None) -> str:
        parts = []
        if context_messages:
            parts.append('Earlier context (already processed, do not extract from it):')
            for msg in context_messages:
                if msg.get('content', '').strip():
                    parts.append(f'{msg.get("role", "user").capitalize()}: {msg["content"]}')
            parts.append('\nNew messages:')
        for index, msg in enumerate(messages):
            if msg.get('role') in ['user', 'assistant'] and msg.get('content', '').strip():
                parts.append(f'[{index}] {msg["role"].capitalize()}: {msg["content"]}')
        return '\n'.join(parts)

    def extract(self,
                messages: List[Dict[str, str]],
                context_messages: Optional[List[Dict[str, str]]] = None,
                document_title: Optional[str] = None) -> Extraction:
        """Run the extraction call and validate its output.

        Args:
            messages: New messages to extract from ('role', 'content')
            context_messages: Already processed messages shown for context only
            document_title: Title of the document the conversation is about

        Returns:
            Extraction with entities and index-based relationships

        Raises:
            ExtractionParseError: If the response is not a valid extraction object
            BedrockLLMError: If the LLM call fails
        """
        content = self.format_messages(messages, context_messages)
        if not content.strip():
            return Extraction(entities=[], relations=[])

        prompt = f'Extract memories from this conversation:\n{content}'
        if document_title:
            prompt = f'The conversation is about the document "{document_title}".\n\n{prompt}'

        response = self.llm.generate_json(prompt, system_prompt=SYSTEM_PROMPT)
        return self.parse(response, message_count=len(messages))

    @staticmethod
    def parse(response: str, message_count: Optional[int] = None) -> Extraction:
        """Validate a raw extraction response.

        Unknown entity types and empty texts are dropped; relationships that point
        outside the surviving entity list are dropped.
        """
        try:
            data = parse_json_response(response)
        except json.JSONDecodeError as e:
            raise ExtractionParseError(f'Extraction response is not JSON: {e}')

        if isinstance(data, list):
            data = {'entities': data, 'relationships': []}
        if not isinstance(data, dict) or not isinstance(data.get('entities', []), list):
            raise ExtractionParseError(f'Expected an object with an entities list, got {type(data).__name__}')

        entities: List[ExtractedEntity] = []
        index_map: Dict[int, int] = {}
        for raw_index, item in enumerate(data.get('entities') or []):
            if not isinstance(item, dict):
                continue
            entity_type = str(item.get('type', '')).strip().lower()
            text = str(item.get('text', '')).strip()
            if entity_type not in ENTITY_TYPES or not text:
                logger.debug(f'Dropping extracted entity with type {entity_type!r}')
                continue

            message_index = item.get('message_index')
            if not isinstance(message_index, int) or (message_count is not None and not 0 <= message_index < message_count):
                message_index = None

            index_map[raw_index] = len(entities)
            entities.append(ExtractedEntity(entity_type=entity_type, text=text, source_message_index=message_index))

        relations: List[ExtractedRelation] = []
        seen = set()
        for item in data.get('relationships') or []:
            if not isinstance(item, dict):
                continue
            try:
                from_index = index_map[int(item.get('from'))]
                to_index = index_map[int(item.get('to'))]
            except (KeyError, TypeError, ValueError):
                continue
            if from_index == to_index or (from_index, to_index) in seen:
                continue

            relation_type = str(item.get('type', 'relates_to')).strip().lower()
            if relation_type not in EXTRACTION_RELATION_TYPES:
                relation_type = 'relates_to'
            try:
                strength = clamp_score(float(item.get('strength', 0.5)))
            except (TypeError, ValueError):
                strength = 0.5

            seen.add((from_index, to_index))
            relations.append(ExtractedRelation(from_index, to_index, relation_type, strength))

        logger.debug(f'Parsed {len(entities)} entities and {len(relations)} relationships')
        return Extraction(entities=entities, relations=relations)
