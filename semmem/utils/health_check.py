"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)

__version__ = '0.1.0'

# name -> (service label, client factory, detail key, detail value)
COMPONENTS = {
    'bedrock_llm': ('Amazon Bedrock LLM', lambda: BedrockLLM(config.bedrock_llm), 'model', lambda: config.bedrock_llm.model_id),
    'bedrock_embed':
    ('Amazon Bedrock Embed', lambda: BedrockEmbed(config.bedrock_embed), 'model', lambda: config.bedrock_embed.model_id),
    'neptune': ('Amazon Neptune', lambda: NeptuneClient(config.neptune), 'endpoint', lambda: config.neptune.endpoint),
    'opensearch':
    ('Amazon OpenSearch', lambda: OpenSearchClient(config.opensearch), 'endpoint', lambda: config.opensearch.endpoint),
}


def check_health(clients: Optional[Dict[str, Any]] = None) -> bool:
    """Check the health of all system components.

    Args:
        clients: Already constructed clients by component name (created on demand otherwise)

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = get_health_status(clients)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


def _component_status(service: str, factory: Callable[[], Any], client: Any, detail_key: str, detail: Callable[[], str]) -> Dict[str, Any]:
    try:
        client = client or factory()
        return {'healthy': bool(client.health_check()), 'service': service, detail_key: detail()}
    except Exception as e:
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(clients: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        clients: Already constructed clients by component name

    Returns:
        Dictionary with health status of each component
    """
    clients = clients or {}
    return {
        name: _component_status(service, factory, clients.get(name), detail_key, detail)
        for name, (service, factory, detail_key, detail) in COMPONENTS.items()
    }


def get_system_info(clients: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    return {
        'service_name': 'SemMem',
        'version': __version__,
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'bedrock_embed_model': config.bedrock_embed.model_id,
            'embedding_dimension': config.bedrock_embed.dimension,
            'graph_similarity_floor': config.graph.similarity_floor,
            'action_cache_threshold': config.action_cache.similarity_threshold,
            'action_cache_retention_days': config.action_cache.retention_days,
            'aws_region': config.bedrock_llm.region
        },
        'health_status': get_health_status(clients)
    }
