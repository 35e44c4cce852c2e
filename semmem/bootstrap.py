"""
Wiring of clients and services shared by the MCP server and the background worker.
"""

from dataclasses import dataclass
from typing import Any, Optional

from .services.action_cache import ActionCache
from .services.background import BackgroundTasks, EmbeddingHooks
from .services.context_assembler import ContextAssembler
from .services.description_worker import RelationshipDescriptionWorker
from .services.document_index import DocumentIndex
from .services.memory_extraction import MemoryExtractionService
from .services.memory_store import MemoryStore
from .services.relationship_graph import RelationshipGraphEngine
from .utils.bedrock_embed import BedrockEmbed
from .utils.bedrock_llm import BedrockLLM
from .utils.config import AppConfig, config
from .utils.logging_config import get_logger
from .utils.neptune_client import NeptuneClient
from .utils.opensearch_client import OpenSearchClient, OpenSearchError

logger = get_logger(__name__)


@dataclass
class Services:
    """Every long-lived object of one process."""
    opensearch: Any
    neptune: Any
    embed: Any
    llm: Any
    tasks: Any
    hooks: EmbeddingHooks
    graph: RelationshipGraphEngine
    memory_store: MemoryStore
    documents: DocumentIndex
    context: ContextAssembler
    action_cache: ActionCache

    @property
    def clients(self):
        return {'bedrock_llm': self.llm, 'bedrock_embed': self.embed, 'neptune': self.neptune, 'opensearch': self.opensearch}

    def description_worker(self, worker_id: Optional[str] = None) -> RelationshipDescriptionWorker:
        return RelationshipDescriptionWorker(worker_id=worker_id,
                                             neptune=self.neptune,
                                             opensearch=self.opensearch,
                                             llm=self.llm,
                                             graph_config=self.graph.config)


def build_services(app_config: Optional[AppConfig] = None,
                   opensearch=None,
                   neptune=None,
                   embed=None,
                   llm=None,
                   tasks=None,
                   notes_store=None,
                   highlights_store=None,
                   create_indices: bool = True) -> Services:
    """Construct clients (unless given) and connect the services.

    The relationship graph engine is subscribed to the embedding hooks here, so
    storing a memory or document embedding schedules its graph update.
    """
    app_config = app_config or config
    opensearch = opensearch or OpenSearchClient(app_config.opensearch)
    neptune = neptune or NeptuneClient(app_config.neptune)
    embed = embed or BedrockEmbed(app_config.bedrock_embed)
    llm = llm or BedrockLLM(app_config.bedrock_llm)
    tasks = tasks or BackgroundTasks(max_workers=app_config.background_workers)

    if create_indices:
        try:
            opensearch.create_all_indices()
        except OpenSearchError as e:
            logger.warning(f'Failed to create OpenSearch indexes: {e}')

    hooks = EmbeddingHooks(tasks)
    graph = RelationshipGraphEngine(opensearch=opensearch, neptune=neptune, graph_config=app_config.graph)
    graph.subscribe(hooks)

    memory_store = MemoryStore(opensearch=opensearch,
                               embed=embed,
                               extractor=MemoryExtractionService(llm=llm),
                               graph=graph,
                               hooks=hooks,
                               memory_config=app_config.memory)
    documents = DocumentIndex(opensearch=opensearch, embed=embed, graph=graph, memory_store=memory_store, hooks=hooks)
    context = ContextAssembler(memory_store=memory_store,
                               notes_store=notes_store,
                               highlights_store=highlights_store,
                               embed=embed,
                               context_config=app_config.context)
    action_cache = ActionCache(opensearch=opensearch, embed=embed, llm=llm, cache_config=app_config.action_cache)

    return Services(opensearch=opensearch,
                    neptune=neptune,
                    embed=embed,
                    llm=llm,
                    tasks=tasks,
                    hooks=hooks,
                    graph=graph,
                    memory_store=memory_store,
                    documents=documents,
                    context=context,
                    action_cache=action_cache)
