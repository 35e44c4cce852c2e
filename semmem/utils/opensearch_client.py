"""
OpenSearch client wrapper for vector similarity search and owner-scoped storage.
"""

from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger
from .vector_utils import cosine_similarity

logger = get_logger(__name__)

INDEX_MEMORY = 'memory'
INDEX_DOCUMENT = 'document'
INDEX_ACTION_CACHE = 'action_cache'
INDEX_EXTRACTION_STATE = 'extraction_state'
INDEX_TYPES = (INDEX_MEMORY, INDEX_DOCUMENT, INDEX_ACTION_CACHE, INDEX_EXTRACTION_STATE)
VECTOR_INDEX_TYPES = (INDEX_MEMORY, INDEX_DOCUMENT, INDEX_ACTION_CACHE)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def _keyword():
    return {'type': 'keyword'}


def _date():
    return {'type': 'date'}


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='es', refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def index_name(self, index_type: str) -> str:
        """Physical index name for a logical index type."""
        if index_type not in INDEX_TYPES:
            raise OpenSearchError(f'Unknown index type: {index_type}')
        return f'{self.config.index_prefix}_{index_type}'

    def _vector_field(self) -> Dict[str, Any]:
        return {
            'type': 'knn_vector',
            'dimension': self.config.dimension,
            'method': {
                'name': 'hnsw',
                'space_type': 'cosinesimil',
                'engine': 'lucene'
            }
        }

    def _index_body(self, index_type: str) -> Dict[str, Any]:
        if index_type == INDEX_MEMORY:
            properties = {
                'id': _keyword(),
                'user_id': _keyword(),
                'conversation_id': _keyword(),
                'document_id': _keyword(),
                'source_message_id': _keyword(),
                'entity_type': _keyword(),
                'text': {
                    'type': 'text'
                },
                'metadata': {
                    'type': 'object',
                    'enabled': False
                },
                'embedding': self._vector_field(),
                'created_at': _date(),
                'deleted_at': _date()
            }
        elif index_type == INDEX_DOCUMENT:
            properties = {
                'id': _keyword(),
                'user_id': _keyword(),
                'title': {
                    'type': 'text'
                },
                'excerpt': {
                    'type': 'text',
                    'index': False
                },
                'embedding': self._vector_field(),
                'created_at': _date(),
                'updated_at': _date()
            }
        elif index_type == INDEX_ACTION_CACHE:
            properties = {
                'id': _keyword(),
                'user_id': _keyword(),
                'command': {
                    'type': 'text'
                },
                'action': {
                    'type': 'object',
                    'enabled': False
                },
                'action_type': _keyword(),
                'hit_count': {
                    'type': 'integer'
                },
                'embedding': self._vector_field(),
                'last_used_at': _date(),
                'created_at': _date()
            }
        else:  # extraction state
            return {
                'mappings': {
                    'properties': {
                        'user_id': _keyword(),
                        'conversation_id': _keyword(),
                        'last_message_id': _keyword(),
                        'processed_count': {
                            'type': 'integer'
                        },
                        'status': _keyword(),
                        'error': {
                            'type': 'text'
                        },
                        'updated_at': _date()
                    }
                }
            }

        return {
            'mappings': {
                'properties': properties
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

    def create_index_if_not_exists(self, index_type: str) -> str:
        """
        Create index if it doesn't exist.

        Args:
            index_type: One of INDEX_TYPES

        Returns:
            'exists', 'created' or 'failed'
        """
        index_name = self.index_name(index_type)

        try:
            if self.client.indices.exists(index=index_name):
                logger.debug(f'Index {index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=index_name, body=self._index_body(index_type))
            if response.get('acknowledged', False):
                logger.info(f'Created index {index_name}')
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')
        except Exception as e:
            logger.error(f'Unexpected error creating index {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error creating index: {e}')

    def create_all_indices(self) -> Dict[str, str]:
        """Create every index used by the services."""
        return {index_type: self.create_index_if_not_exists(index_type) for index_type in INDEX_TYPES}

    def index_document(self, document: Dict[str, Any], index_type: str, doc_id: Optional[str] = None, refresh: bool = True) -> bool:
        """
        Index (create or overwrite) a document.

        Args:
            document: Document body
            index_type: One of INDEX_TYPES
            doc_id: Document ID (defaults to document['id'])
            refresh: Wait until the write is visible to search

        Returns:
            True if indexing was successful, False otherwise
        """
        index_name = self.index_name(index_type)
        doc_id = doc_id or document.get('id')

        try:
            kwargs = {'refresh': 'wait_for'} if refresh else {}
            response = self.client.index(index=index_name, body=document, id=doc_id, **kwargs)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document {doc_id} in {index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')

            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error indexing document: {e}')
            raise OpenSearchError(f'Unexpected error indexing document: {e}')

    def get_document(self, doc_id: str, index_type: str) -> Optional[Dict[str, Any]]:
        """
        Get a document source by ID.

        Args:
            doc_id: Document ID
            index_type: One of INDEX_TYPES

        Returns:
            Document source if found, None otherwise
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.get(index=index_name, id=doc_id)
            return response.get('_source') if response.get('found') else None

        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to get document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error getting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error getting document: {e}')

    def update_document(self,
                        doc_id: str,
                        index_type: str,
                        fields: Optional[Dict[str, Any]] = None,
                        script: Optional[Dict[str, Any]] = None) -> bool:
        """
        Partially update a document with new field values or a painless script.

        Args:
            doc_id: Document ID
            index_type: One of INDEX_TYPES
            fields: Fields to merge into the document
            script: Painless script body ({'source': ..., 'params': ...})

        Returns:
            True if the document was updated
        """
        index_name = self.index_name(index_type)
        body = {'script': script} if script else {'doc': fields or {}}

        try:
            response = self.client.update(index=index_name, id=doc_id, body=body, retry_on_conflict=3)
            return response.get('result') in ['updated', 'noop']

        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for update')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to update document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error updating document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error updating document: {e}')

    @staticmethod
    def _filter_clauses(user_id: str, filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        clauses = [{'term': {'user_id': user_id}}]
        for field_name, value in (filters or {}).items():
            if value is None:
                continue
            if isinstance(value, (list, tuple, set)):
                clauses.append({'terms': {field_name: list(value)}})
            else:
                clauses.append({'term': {field_name: value}})
        return clauses

    def vector_search(self,
                      query_vector: List[float],
                      user_id: str,
                      index_type: str,
                      top_k: int = 20,
                      filters: Optional[Dict[str, Any]] = None,
                      exclude_ids: Optional[List[str]] = None,
                      min_similarity: Optional[float] = None,
                      include_deleted: bool = False) -> List[Dict[str, Any]]:
        """
        Perform owner-scoped vector similarity search.

        Similarities are exact cosine values recomputed from the stored vectors,
        so ranking does not depend on the approximate kNN score.

        Args:
            query_vector: Query vector for similarity search
            user_id: Owner to filter results
            index_type: One of VECTOR_INDEX_TYPES
            top_k: Number of results to return
            filters: Extra term/terms filters (field -> value or list)
            exclude_ids: Document IDs to leave out
            min_similarity: Drop results below this cosine similarity
            include_deleted: Keep soft-deleted documents

        Returns:
            List of {'id', 'similarity', 'document'} sorted by similarity desc
        """
        index_name = self.index_name(index_type)
        exclude_ids = list(exclude_ids or [])

        knn_filter: Dict[str, Any] = {'filter': self._filter_clauses(user_id, filters)}
        must_not = []
        if exclude_ids:
            must_not.append({'ids': {'values': exclude_ids}})
        if not include_deleted and index_type == INDEX_MEMORY:
            must_not.append({'exists': {'field': 'deleted_at'}})
        if must_not:
            knn_filter['must_not'] = must_not

        k = top_k + len(exclude_ids)
        search_body = {
            'size': k,
            'query': {
                'knn': {
                    'embedding': {
                        'vector': query_vector,
                        'k': k,
                        'filter': {
                            'bool': knn_filter
                        }
                    }
                }
            }
        }

        try:
            response = self.client.search(index=index_name, body=search_body)

            results = []
            for hit in response['hits']['hits']:
                if hit['_id'] in exclude_ids:
                    continue
                document = dict(hit['_source'])
                stored_vector = document.pop('embedding', None)
                if not stored_vector:
                    continue
                similarity = cosine_similarity(query_vector, stored_vector)
                if min_similarity is not None and similarity < min_similarity:
                    continue
                results.append({'id': hit['_id'], 'similarity': similarity, 'document': document})

            results.sort(key=lambda r: r['similarity'], reverse=True)
            results = results[:top_k]
            logger.debug(f'Vector search on {index_name} returned {len(results)} results for user {user_id}')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in vector search: {e}')
            raise OpenSearchError(f'Unexpected error in vector search: {e}')

    def filter_search(self,
                      user_id: str,
                      index_type: str,
                      filters: Optional[Dict[str, Any]] = None,
                      size: int = 100,
                      sort: Optional[List[Dict[str, Any]]] = None,
                      date_range: Optional[Dict[str, Dict[str, str]]] = None,
                      include_deleted: bool = False,
                      include_embedding: bool = False,
                      search_after: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """
        Fetch owner-scoped documents matching exact filters (no scoring).

        Args:
            user_id: Owner to filter results
            index_type: One of INDEX_TYPES
            filters: Term/terms filters
            size: Maximum number of documents
            sort: OpenSearch sort clauses
            date_range: Range filters, e.g. {'created_at': {'gte': '...'}}
            include_deleted: Keep soft-deleted memories
            include_embedding: Return the stored vectors as well
            search_after: Sort values of the last hit of the previous page

        Returns:
            List of document sources
        """
        index_name = self.index_name(index_type)
        clauses = self._filter_clauses(user_id, filters)
        for field_name, bounds in (date_range or {}).items():
            clauses.append({'range': {field_name: bounds}})

        query: Dict[str, Any] = {'bool': {'filter': clauses}}
        if not include_deleted and index_type == INDEX_MEMORY:
            query['bool']['must_not'] = [{'exists': {'field': 'deleted_at'}}]

        search_body: Dict[str, Any] = {'size': size, 'query': query}
        if not include_embedding:
            search_body['_source'] = {'excludes': ['embedding']}
        if sort:
            search_body['sort'] = sort
        if search_after:
            search_body['search_after'] = search_after

        try:
            response = self.client.search(index=index_name, body=search_body)
            return [hit['_source'] for hit in response['hits']['hits']]

        except OpenSearchException as e:
            logger.error(f'Error performing filter search: {e}')
            raise OpenSearchError(f'Filter search failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in filter search: {e}')
            raise OpenSearchError(f'Unexpected error in filter search: {e}')

    def soft_delete(self, user_id: str, filters: Dict[str, Any], deleted_at: str) -> int:
        """
        Mark matching memories as deleted.

        Args:
            user_id: Owner of the memories
            filters: Term filters selecting the memories (e.g. conversation_id)
            deleted_at: ISO timestamp stored in deleted_at

        Returns:
            Number of memories updated
        """
        index_name = self.index_name(INDEX_MEMORY)
        body = {
            'query': {
                'bool': {
                    'filter': self._filter_clauses(user_id, filters),
                    'must_not': [{
                        'exists': {
                            'field': 'deleted_at'
                        }
                    }]
                }
            },
            'script': {
                'source': 'ctx._source.deleted_at = params.deleted_at',
                'params': {
                    'deleted_at': deleted_at
                }
            }
        }

        try:
            response = self.client.update_by_query(index=index_name, body=body, refresh=True, conflicts='proceed')
            return int(response.get('updated', 0))

        except OpenSearchException as e:
            logger.error(f'Error soft-deleting memories: {e}')
            raise OpenSearchError(f'Soft delete failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error soft-deleting memories: {e}')
            raise OpenSearchError(f'Unexpected error in soft delete: {e}')

    def delete_document(self, doc_id: str, index_type: str) -> bool:
        """
        Delete a document from the index.

        Args:
            doc_id: Document ID to delete
            index_type: One of INDEX_TYPES

        Returns:
            True if deletion was successful, False otherwise
        """
        index_name = self.index_name(index_type)

        try:
            response = self.client.delete(index=index_name, id=doc_id, refresh=True)

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted document {doc_id} from {index_name}')
            else:
                logger.warning(f'Document {doc_id} not found for deletion')

            return success

        except NotFoundError:
            logger.warning(f'Document {doc_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Unexpected error deleting document: {e}')

    def delete_older_than(self, index_type: str, field_name: str, cutoff: str, user_id: Optional[str] = None) -> int:
        """
        Delete documents whose date field is older than the cutoff.

        Args:
            index_type: One of INDEX_TYPES
            field_name: Date field to compare
            cutoff: ISO timestamp; documents strictly older are removed
            user_id: Optional owner to limit the sweep

        Returns:
            Number of documents deleted
        """
        index_name = self.index_name(index_type)
        clauses: List[Dict[str, Any]] = [{'range': {field_name: {'lt': cutoff}}}]
        if user_id:
            clauses.append({'term': {'user_id': user_id}})

        try:
            response = self.client.delete_by_query(index=index_name,
                                                   body={'query': {
                                                       'bool': {
                                                           'filter': clauses
                                                       }
                                                   }},
                                                   refresh=True,
                                                   conflicts='proceed')
            deleted = int(response.get('deleted', 0))
            logger.debug(f'Deleted {deleted} documents from {index_name} older than {cutoff}')
            return deleted

        except OpenSearchException as e:
            logger.error(f'Error deleting old documents from {index_name}: {e}')
            raise OpenSearchError(f'Delete by query failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error deleting old documents from {index_name}: {e}')
            raise OpenSearchError(f'Unexpected error in delete by query: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(self.client.ping())

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
