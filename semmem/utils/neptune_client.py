"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.

Nodes (memories and documents) are vertices with deterministic IDs; relationship
edges use the ID `<source>-><target>`, which makes the ordered pair unique and
lets every write be an upsert.
"""

import time
from functools import wraps
from typing import Any, Dict, List, Optional, Tuple

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import P, T

from ..models.core import (ORIGIN_EXTRACTION, ORIGIN_SIMILARITY, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING,
                           STATUS_PROCESSING, Relationship)
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import to_datetime

logger = get_logger(__name__)

EDGE_LABEL = 'RELATED'
VERTEX_LABELS = {'memory': 'Memory', 'document': 'Document'}


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


class RelationshipWriteConflict(NeptuneError):
    """Concurrent upserts touched the same edge; the write may be retried."""
    pass


def vertex_id(node_kind: str, node_id: str) -> str:
    return f'{node_kind}:{node_id}'


def edge_id(source_id: str, target_id: str) -> str:
    return f'{source_id}->{target_id}'


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    def _wrap(e: Exception) -> NeptuneError:
        if isinstance(e, NeptuneError):
            return e
        if 'concurrentmodification' in str(e).lower():
            return RelationshipWriteConflict(f'Concurrent modification in {func.__name__}: {e}')
        return NeptuneError(f'Failed to {func.__name__}: {e}')

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise _wrap(retry_e)
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise _wrap(e)

    return wrapper


def _edge_from_map(data: Dict[Any, Any]) -> Relationship:
    """Build a Relationship from an element_map() result."""

    def prop(name, default=None):
        value = data.get(name, default)
        if isinstance(value, list):
            value = value[0] if value else default
        return value

    lease_expires = prop('lease_expires_at')
    created = prop('created_at')
    updated = prop('updated_at')
    description = prop('description')
    lease_owner = prop('lease_owner')
    similarity = prop('similarity')
    return Relationship(user_id=prop('user_id', ''),
                        source_id=prop('source_id', ''),
                        target_id=prop('target_id', ''),
                        node_kind=prop('node_kind', ''),
                        score=float(prop('score', 0.0)),
                        kind=prop('kind', ''),
                        origin=prop('origin', ''),
                        similarity=float(similarity) if similarity is not None else None,
                        status=prop('status', STATUS_PENDING),
                        description=description or None,
                        attempts=int(prop('attempts', 0)),
                        lease_owner=lease_owner or None,
                        lease_expires_at=to_datetime(int(lease_expires)) if lease_expires else None,
                        created_at=to_datetime(int(created)) if created else None,
                        updated_at=to_datetime(int(updated)) if updated else None)


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = self.config.region or Session().region_name or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=dict(request.headers.items()),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    @retry_on_connection_error
    def ensure_vertex(self, user_id: str, node_id: str, node_kind: str) -> bool:
        """
        Create a node vertex if it does not exist yet.

        Args:
            user_id: Owner of the node
            node_id: Memory or document ID
            node_kind: 'memory' or 'document'

        Returns:
            True once the vertex exists
        """
        vid = vertex_id(node_kind, node_id)
        self.g.V(vid).fold().coalesce(
            __.unfold(),
            __.addV(VERTEX_LABELS[node_kind]).property(T.id, vid)
            .property('node_id', node_id)
            .property('user_id', user_id)
            .property('node_kind', node_kind)
            .property('created_at', int(time.time()))).iterate()
        return True

    @retry_on_connection_error
    def upsert_edge(self, rel: Relationship) -> bool:
        """
        Create or update one directed edge.

        The description state is kept when the score is unchanged; a new edge or
        a changed score resets it to pending and drops any live lease. A
        similarity write never replaces the type and strength of an edge the
        extractor produced; only its similarity is recorded.

        Args:
            rel: Edge to write

        Returns:
            True if the edge was created or its score changed
        """
        eid = edge_id(rel.source_id, rel.target_id)
        now = int(time.time())
        existing = self.g.E(eid).element_map().to_list()

        if existing:
            current = _edge_from_map(existing[0])
            if current.user_id != rel.user_id:
                raise NeptuneError(f'Edge {eid} belongs to another owner')
            if current.origin == ORIGIN_EXTRACTION and rel.origin == ORIGIN_SIMILARITY:
                self.g.E(eid).property('similarity', rel.score).property('updated_at', now).iterate()
                return False
            changed = abs(current.score - rel.score) > 1e-6 or current.kind != rel.kind
            t = self.g.E(eid).property('score', rel.score).property('kind', rel.kind)\
                .property('origin', rel.origin).property('updated_at', now)
            if changed:
                t = t.property('status', rel.status).property('attempts', 0).property('description', rel.description or '')\
                    .property('lease_owner', '').property('lease_expires_at', 0)
            t.iterate()
            return changed

        self.g.V(vertex_id(rel.node_kind, rel.source_id)).as_('s')\
            .V(vertex_id(rel.node_kind, rel.target_id)).as_('t')\
            .addE(EDGE_LABEL).from_('s').to('t')\
            .property(T.id, eid)\
            .property('user_id', rel.user_id)\
            .property('source_id', rel.source_id)\
            .property('target_id', rel.target_id)\
            .property('node_kind', rel.node_kind)\
            .property('score', rel.score)\
            .property('kind', rel.kind)\
            .property('origin', rel.origin)\
            .property('status', rel.status)\
            .property('description', rel.description or '')\
            .property('attempts', 0)\
            .property('lease_owner', '')\
            .property('lease_expires_at', 0)\
            .property('created_at', now)\
            .property('updated_at', now).iterate()
        return True

    def upsert_relationship_pair(self, rel: Relationship) -> Tuple[bool, bool]:
        """
        Write an edge and its reverse with the same score and kind.

        Args:
            rel: Forward edge (source -> target)

        Returns:
            (forward_changed, reverse_changed)
        """
        self.ensure_vertex(rel.user_id, rel.source_id, rel.node_kind)
        self.ensure_vertex(rel.user_id, rel.target_id, rel.node_kind)
        reverse = Relationship(user_id=rel.user_id,
                               source_id=rel.target_id,
                               target_id=rel.source_id,
                               node_kind=rel.node_kind,
                               score=rel.score,
                               kind=rel.kind,
                               origin=rel.origin,
                               status=rel.status,
                               description=rel.description)
        return self.upsert_edge(rel), self.upsert_edge(reverse)

    @retry_on_connection_error
    def get_outgoing(self, user_id: str, node_id: str, node_kind: str) -> List[Relationship]:
        """
        List edges leaving a node, owner-checked.

        Args:
            user_id: Owner of the node
            node_id: Memory or document ID
            node_kind: 'memory' or 'document'

        Returns:
            Outgoing Relationship objects
        """
        rows = self.g.V(vertex_id(node_kind, node_id)).has('user_id', user_id)\
            .outE(EDGE_LABEL).has('user_id', user_id).element_map().to_list()
        return [_edge_from_map(row) for row in rows]

    @retry_on_connection_error
    def list_edges(self, user_id: str, status: Optional[str] = None, limit: int = 10000) -> List[Relationship]:
        """List an owner's edges, optionally by description status."""
        t = self.g.E().has_label(EDGE_LABEL).has('user_id', user_id)
        if status:
            t = t.has('status', status)
        return [_edge_from_map(row) for row in t.limit(limit).element_map().to_list()]

    @retry_on_connection_error
    def find_claimable(self, now: int, limit: int) -> List[Relationship]:
        """
        Find edges waiting for a description: pending, or processing with an expired lease.

        Args:
            now: Current unix time in seconds
            limit: Maximum number of edges

        Returns:
            Candidate edges (not yet claimed)
        """
        rows = self.g.E().has_label(EDGE_LABEL).or_(
            __.has('status', STATUS_PENDING),
            __.has('status', STATUS_PROCESSING).has('lease_expires_at', P.lt(now))).limit(limit).element_map().to_list()
        return [_edge_from_map(row) for row in rows]

    @retry_on_connection_error
    def claim_edge(self, source_id: str, target_id: str, worker_id: str, now: int, lease_seconds: int) -> bool:
        """
        Atomically move an edge to processing under a lease.

        The condition and the write run in one traversal, so only one worker can
        win a given edge while its lease is live.

        Returns:
            True if this worker now holds the lease
        """
        claimed = self.g.E(edge_id(source_id, target_id)).or_(
            __.has('status', STATUS_PENDING),
            __.has('status', STATUS_PROCESSING).has('lease_expires_at', P.lt(now)))\
            .property('status', STATUS_PROCESSING)\
            .property('lease_owner', worker_id)\
            .property('lease_expires_at', now + lease_seconds)\
            .property('updated_at', now).id_().to_list()
        return bool(claimed)

    @retry_on_connection_error
    def set_edge_state(self,
                       source_id: str,
                       target_id: str,
                       status: str,
                       description: Optional[str] = None,
                       attempts: Optional[int] = None,
                       worker_id: Optional[str] = None) -> bool:
        """
        Update the description state of one edge and release its lease.

        Args:
            source_id: Edge source
            target_id: Edge target
            status: New status
            description: Description text (kept when None)
            attempts: New attempt count (kept when None)
            worker_id: Only update while this worker holds the lease

        Returns:
            True if the edge was updated
        """
        t = self.g.E(edge_id(source_id, target_id))
        if worker_id:
            t = t.has('lease_owner', worker_id)
        t = t.property('status', status)\
            .property('lease_owner', '')\
            .property('lease_expires_at', 0)\
            .property('updated_at', int(time.time()))
        if description is not None:
            t = t.property('description', description)
        if attempts is not None:
            t = t.property('attempts', attempts)
        return bool(t.id_().to_list())

    @retry_on_connection_error
    def delete_node(self, user_id: str, node_id: str, node_kind: str) -> bool:
        """
        Drop a node vertex together with all its edges.

        Args:
            user_id: Owner for the security check
            node_id: Memory or document ID
            node_kind: 'memory' or 'document'

        Returns:
            True once the node is gone
        """
        self.g.V(vertex_id(node_kind, node_id)).has('user_id', user_id).drop().iterate()
        logger.debug(f'Deleted {node_kind} node {node_id} and its edges')
        return True

    @retry_on_connection_error
    def status_counts(self, user_id: str) -> Dict[str, Any]:
        """Edge totals per status and mean score for an owner."""
        counts = self.g.E().has_label(EDGE_LABEL).has('user_id', user_id).group_count().by('status').next()
        scores = self.g.E().has_label(EDGE_LABEL).has('user_id', user_id).values('score').fold().next()
        total = sum(counts.values())
        return {
            'total': total,
            STATUS_PENDING: counts.get(STATUS_PENDING, 0),
            STATUS_PROCESSING: counts.get(STATUS_PROCESSING, 0),
            STATUS_COMPLETED: counts.get(STATUS_COMPLETED, 0),
            STATUS_FAILED: counts.get(STATUS_FAILED, 0),
            'average_score': (sum(scores) / len(scores)) if scores else 0.0,
        }

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        self.g.V().limit(1).count().next()
        return True
