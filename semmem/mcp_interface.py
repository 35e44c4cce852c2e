"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .bootstrap import Services, build_services
from .models.actions import ActionParseError, action_to_dict
from .models.core import STATUS_FAILED
from .services.document_index import DocumentIndexError
from .services.memory_store import MemoryStoreError
from .utils.config import config
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger
from .utils.timestamp_utils import to_iso

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Semantic Memory')

_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[Services]) -> None:
    """Replace the process-wide services (tests and embedding applications)."""
    global _services
    _services = services


def _require_user(user_id: str) -> None:
    if not user_id or not user_id.strip():
        raise ValueError('User ID is required')


@mcp.tool()
def extract_memory(user_id: str,
                   conversation_id: str,
                   messages: List[Dict[str, str]],
                   document_id: Optional[str] = None,
                   document_title: Optional[str] = None,
                   wait: bool = False) -> Dict[str, Any]:
    """Extract memories from a conversation.

    Args:
        user_id: User ID
        conversation_id: Conversation ID
        messages: Full message list, each with 'id', 'role' and 'content'
        document_id: Document the conversation is about
        document_title: Title of that document
        wait: Run inline and return counts instead of scheduling in the background

    Returns:
        {'entitiesCreated', 'relationshipsCreated'} when waiting, {'scheduled': True} otherwise
    """
    _require_user(user_id)
    services = get_services()

    if not wait:
        services.tasks.submit(services.memory_store.extract_and_store, user_id, conversation_id, messages, document_id,
                              document_title)
        return {'scheduled': True}

    try:
        result = services.memory_store.extract_and_store(user_id, conversation_id, messages, document_id, document_title)
    except MemoryStoreError as e:
        logger.error(f'Memory extraction failed in MCP call: {e}')
        raise Exception(f'Memory extraction failed: {e}')

    response = result.to_dict()
    if result.skipped_reason:
        response['skipped'] = result.skipped_reason
    return response


@mcp.tool()
def search_memory(user_id: str, query: str, limit: int = 10, entity_type_filter: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Search a user's memories by meaning.

    Args:
        user_id: User ID
        query: Natural language query
        limit: Maximum number of results to return (default: 10)
        entity_type_filter: Only return these entity types

    Returns:
        Ranked list of memories with their similarity
    """
    _require_user(user_id)
    if not query or not query.strip():
        return []

    results = get_services().memory_store.search(user_id, query, entity_types=entity_type_filter, limit=limit)
    logger.debug(f'MCP search returned {len(results)} memories for user {user_id}')
    return [{
        'id': r.memory.id,
        'entityType': r.memory.entity_type,
        'text': r.memory.text,
        'similarity': r.similarity,
        'conversationId': r.memory.conversation_id,
        'documentId': r.memory.document_id,
        'createdAt': to_iso(r.memory.created_at),
    } for r in results]


@mcp.tool()
def related(user_id: str, node_id: str, node_kind: Optional[str] = None) -> List[Dict[str, Any]]:
    """List documents or memories related to a node.

    Args:
        user_id: User ID
        node_id: Document or memory ID
        node_kind: 'document' or 'memory' (both when omitted)

    Returns:
        [{relatedId, score, kind, description, status}], strongest first
    """
    _require_user(user_id)
    items = []
    for item in get_services().graph.get_related(user_id, node_id, node_kind):
        entry = item.to_dict()
        if item.status == STATUS_FAILED:
            entry['note'] = 'analysis unavailable'
        items.append(entry)
    return items


@mcp.tool()
def resolve_action(user_id: str, command: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Translate a natural-language command into a structured action.

    Args:
        user_id: User ID
        command: Natural-language command
        context: Reader state (page number, selected text...)

    Returns:
        {'action', 'fromCache'} or {'error': 'command not understood'}
    """
    _require_user(user_id)
    try:
        resolution = get_services().action_cache.resolve(user_id, command, context)
    except ActionParseError as e:
        logger.info(f'Command not understood: {e}')
        return {'error': 'command not understood'}

    return {
        'action': action_to_dict(resolution.action) if resolution.action is not None else None,
        'fromCache': resolution.from_cache,
        'similarity': resolution.similarity,
    }


@mcp.tool()
def store_document_embedding(user_id: str, document_id: str, text: str, title: Optional[str] = None) -> Dict[str, Any]:
    """Embed a document so it joins the user's document graph.

    Args:
        user_id: User ID
        document_id: Document ID
        text: Extracted document text
        title: Document title

    Returns:
        {'stored': True}
    """
    _require_user(user_id)
    try:
        return {'stored': get_services().documents.store_document_embedding(user_id, document_id, text, title)}
    except DocumentIndexError as e:
        logger.error(f'Document embedding failed in MCP call: {e}')
        raise Exception(f'Document embedding failed: {e}')


@mcp.tool()
def build_context(user_id: str,
                  query: str,
                  token_ceiling: Optional[int] = None,
                  document_id: Optional[str] = None,
                  force: bool = False) -> Dict[str, Any]:
    """Assemble retrieved memories, notes and highlights for a prompt.

    Args:
        user_id: User ID
        query: The user's current query
        token_ceiling: Maximum estimated tokens of the context
        document_id: Document currently open
        force: Retrieve even when the query does not refer back to earlier material

    Returns:
        Rendered context text with its token estimate and the chosen items
    """
    _require_user(user_id)
    budget = get_services().context.assemble(user_id, query, token_ceiling, document_id=document_id, force=force)
    return {
        'context': budget.text,
        'tokenEstimate': budget.token_estimate,
        'tokenCeiling': budget.token_ceiling,
        'retrievalSkipped': budget.retrieval_skipped,
        'items': [{
            'source': item.source,
            'id': item.id,
            'score': round(item.rank_score, 4)
        } for item in budget.items],
    }


@mcp.tool()
def health() -> Dict[str, Any]:
    """Version, key settings and health of the LLM, embedding, graph and vector services."""
    return get_system_info(get_services().clients)


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
