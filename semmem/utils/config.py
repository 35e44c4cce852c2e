"""
Configuration management for AWS services and memory/graph settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    connect_timeout: int
    read_timeout: int


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    batch_size: int
    max_input_chars: int
    retry_attempts: int
    retry_delay: float
    connect_timeout: int
    read_timeout: int


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_prefix: str
    dimension: int


@dataclass
class MemoryConfig:
    """Configuration for memory extraction and search."""
    min_messages: int
    context_tail_messages: int
    search_limit: int
    candidate_multiplier: int


@dataclass
class GraphConfig:
    """Configuration for the relationship graph engine and description worker."""
    similarity_floor: float
    max_neighbors: int
    write_conflict_retries: int
    lease_seconds: int
    max_attempts: int
    batch_size: int
    poll_interval: float


@dataclass
class ActionCacheConfig:
    """Configuration for the action translation cache."""
    similarity_threshold: float
    retention_days: int
    candidate_pool: int
    prune_interval_hours: int


@dataclass
class ContextConfig:
    """Configuration for context assembly."""
    chars_per_token: int
    default_token_ceiling: int
    default_limit: int
    similarity_weight: float
    recency_weight: float
    recency_half_life_days: float


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    background_workers: int
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    memory: MemoryConfig
    graph: GraphConfig
    action_cache: ActionCacheConfig
    context: ContextConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          connect_timeout=int(os.getenv('BEDROCK_LLM_CONNECT_TIMEOUT', '10')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '60')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              batch_size=int(os.getenv('BEDROCK_EMBED_BATCH_SIZE', '96')),
                                              max_input_chars=int(os.getenv('BEDROCK_EMBED_MAX_INPUT_CHARS', '20000')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')),
                                              connect_timeout=int(os.getenv('BEDROCK_EMBED_CONNECT_TIMEOUT', '5')),
                                              read_timeout=int(os.getenv('BEDROCK_EMBED_READ_TIMEOUT', '20')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Vector search configuration (the kNN mapping always matches the embedding model)
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_prefix=os.getenv('OPENSEARCH_INDEX_PREFIX', 'semmem'),
                                         dimension=bedrock_embed_config.dimension)

    # Memory configuration
    memory_config = MemoryConfig(min_messages=int(os.getenv('MEMORY_MIN_MESSAGES', '4')),
                                 context_tail_messages=int(os.getenv('MEMORY_CONTEXT_TAIL_MESSAGES', '2')),
                                 search_limit=int(os.getenv('MEMORY_SEARCH_LIMIT', '10')),
                                 candidate_multiplier=int(os.getenv('MEMORY_CANDIDATE_MULTIPLIER', '3')))

    # Relationship graph configuration
    graph_config = GraphConfig(similarity_floor=float(os.getenv('GRAPH_SIMILARITY_FLOOR', '0.60')),
                               max_neighbors=int(os.getenv('GRAPH_MAX_NEIGHBORS', '5')),
                               write_conflict_retries=int(os.getenv('GRAPH_WRITE_CONFLICT_RETRIES', '3')),
                               lease_seconds=int(os.getenv('GRAPH_DESCRIPTION_LEASE_SECONDS', '300')),
                               max_attempts=int(os.getenv('GRAPH_DESCRIPTION_MAX_ATTEMPTS', '3')),
                               batch_size=int(os.getenv('GRAPH_DESCRIPTION_BATCH_SIZE', '5')),
                               poll_interval=float(os.getenv('GRAPH_DESCRIPTION_POLL_INTERVAL', '10.0')))

    # Action cache configuration
    action_cache_config = ActionCacheConfig(similarity_threshold=float(os.getenv('ACTION_CACHE_THRESHOLD', '0.85')),
                                            retention_days=int(os.getenv('ACTION_CACHE_RETENTION_DAYS', '90')),
                                            candidate_pool=int(os.getenv('ACTION_CACHE_CANDIDATE_POOL', '50')),
                                            prune_interval_hours=int(os.getenv('ACTION_CACHE_PRUNE_INTERVAL_HOURS', '24')))

    # Context assembly configuration
    context_config = ContextConfig(chars_per_token=int(os.getenv('CONTEXT_CHARS_PER_TOKEN', '4')),
                                   default_token_ceiling=int(os.getenv('CONTEXT_TOKEN_CEILING', '2000')),
                                   default_limit=int(os.getenv('CONTEXT_LIMIT', '15')),
                                   similarity_weight=float(os.getenv('CONTEXT_SIMILARITY_WEIGHT', '0.8')),
                                   recency_weight=float(os.getenv('CONTEXT_RECENCY_WEIGHT', '0.2')),
                                   recency_half_life_days=float(os.getenv('CONTEXT_RECENCY_HALF_LIFE_DAYS', '30')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     background_workers=int(os.getenv('BACKGROUND_WORKERS', '4')),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     memory=memory_config,
                     graph=graph_config,
                     action_cache=action_cache_config,
                     context=context_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
