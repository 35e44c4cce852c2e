"""Tests for the relationship graph engine and document embeddings."""

from unittest.mock import patch

import pytest

from semmem.bootstrap import build_services
from semmem.models.core import NODE_DOCUMENT, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING, Relationship
from semmem.services.background import BackgroundTasks
from semmem.services.document_index import DocumentIndexError
from semmem.services.relationship_graph import GraphEngineError, classify_score
from semmem.utils.opensearch_client import INDEX_DOCUMENT
from tests.fakes.fake_models import unit_vector, vector_with_similarity


@pytest.fixture
def two_documents(services, embed):
    """Documents X and Y of user u1 whose embeddings are 0.82 similar."""
    base = unit_vector(0)
    embed.set_vector('Paper on panel data', base)
    embed.set_vector('Follow-up on panel data', vector_with_similarity(base, 0.82, 1))

    services.documents.store_document_embedding('u1', 'X', 'Paper on panel data')
    services.documents.store_document_embedding('u1', 'Y', 'Follow-up on panel data')
    return services


@pytest.mark.parametrize('score,kind', [
    (0.95, 'identical'),
    (0.90, 'identical'),
    (0.82, 'extension'),
    (0.75, 'shared_topic'),
    (0.65, 'tangential'),
])
def test_classify_score(score, kind):
    assert classify_score(score) == kind


def test_similar_documents_are_related_both_ways(two_documents):
    from_x = two_documents.graph.get_related('u1', 'X')
    from_y = two_documents.graph.get_related('u1', 'Y', NODE_DOCUMENT)

    assert [item.related_id for item in from_x] == ['Y']
    assert [item.related_id for item in from_y] == ['X']
    for item in from_x + from_y:
        assert item.score == pytest.approx(0.82)
        assert item.kind == 'extension'
        assert item.status == STATUS_PENDING
        assert item.description is None


def test_below_floor_creates_no_edge(services, embed, neptune):
    base = unit_vector(0)
    embed.set_vector('first', base)
    embed.set_vector('second', vector_with_similarity(base, 0.5, 1))

    services.documents.store_document_embedding('u1', 'X', 'first')
    services.documents.store_document_embedding('u1', 'Y', 'second')

    assert not neptune.edges
    assert services.graph.get_related('u1', 'X') == []


def test_other_owner_documents_are_never_linked(services, embed, neptune):
    embed.set_vector('same text', unit_vector(0))

    services.documents.store_document_embedding('u1', 'X', 'same text')
    services.documents.store_document_embedding('u2', 'Z', 'same text')

    assert not neptune.edges
    assert services.graph.get_related('u2', 'Z') == []


def test_re_storing_a_document_keeps_one_edge_per_direction(two_documents, neptune):
    two_documents.documents.store_document_embedding('u1', 'X', 'Paper on panel data')

    assert sorted(neptune.edges) == [('X', 'Y'), ('Y', 'X')]


def test_document_owned_by_someone_else_is_rejected(two_documents):
    with pytest.raises(DocumentIndexError):
        two_documents.documents.store_document_embedding('u2', 'X', 'Paper on panel data')


def test_write_conflicts_are_retried(services, neptune):
    neptune.conflicts_to_raise = 2

    with patch('semmem.services.relationship_graph.time.sleep') as sleep:
        assert services.graph.link('u1', 'a', 'b', NODE_DOCUMENT, 0.75)

    assert sleep.call_count == 2
    assert neptune.edges[('a', 'b')].kind == 'shared_topic'
    assert ('b', 'a') in neptune.edges


def test_persistent_conflicts_raise(services, neptune):
    neptune.conflicts_to_raise = 10

    with patch('semmem.services.relationship_graph.time.sleep'):
        with pytest.raises(GraphEngineError):
            services.graph.link('u1', 'a', 'b', NODE_DOCUMENT, 0.75)


def test_self_link_is_ignored(services, neptune):
    assert not services.graph.link('u1', 'a', 'a', NODE_DOCUMENT, 1.0)
    assert not neptune.edges


def test_unchanged_score_keeps_description(services, neptune):
    services.graph.link('u1', 'a', 'b', NODE_DOCUMENT, 0.82)
    for source, target in (('a', 'b'), ('b', 'a')):
        neptune.set_edge_state(source, target, STATUS_COMPLETED, description='Both study panel data.', attempts=1)

    assert not services.graph.link('u1', 'a', 'b', NODE_DOCUMENT, 0.82)
    assert neptune.edges[('a', 'b')].status == STATUS_COMPLETED
    assert neptune.edges[('b', 'a')].description == 'Both study panel data.'


def test_changed_score_resets_description(services, neptune):
    services.graph.link('u1', 'a', 'b', NODE_DOCUMENT, 0.82)
    for source, target in (('a', 'b'), ('b', 'a')):
        neptune.set_edge_state(source, target, STATUS_COMPLETED, description='Both study panel data.', attempts=1)

    assert services.graph.link('u1', 'a', 'b', NODE_DOCUMENT, 0.93)

    for key in (('a', 'b'), ('b', 'a')):
        edge = neptune.edges[key]
        assert edge.kind == 'identical'
        assert edge.status == STATUS_PENDING
        assert edge.description is None
        assert edge.attempts == 0


def test_failed_edges_hide_their_description(services, neptune):
    services.graph.link('u1', 'a', 'b', NODE_DOCUMENT, 0.82)
    neptune.edges[('a', 'b')].status = STATUS_FAILED
    neptune.edges[('a', 'b')].description = 'stale'

    [item] = services.graph.get_related('u1', 'a')

    assert item.status == STATUS_FAILED
    assert item.description is None


def test_related_items_are_ordered_by_score_then_recency(services):
    services.graph.link('u1', 'a', 'weak', NODE_DOCUMENT, 0.65)
    services.graph.link('u1', 'a', 'old', NODE_DOCUMENT, 0.75)
    services.graph.link('u1', 'a', 'new', NODE_DOCUMENT, 0.75)
    services.graph.link('u1', 'a', 'strong', NODE_DOCUMENT, 0.91)

    related = services.graph.get_related('u1', 'a')

    assert [item.related_id for item in related] == ['strong', 'new', 'old', 'weak']
    assert related == services.graph.get_related('u1', 'a')


def test_backfill_symmetry_repairs_one_sided_edges(services, neptune):
    neptune.upsert_edge(Relationship('u1', 'a', 'b', NODE_DOCUMENT, 0.8, 'extension'))
    neptune.upsert_edge(Relationship('u2', 'c', 'd', NODE_DOCUMENT, 0.8, 'extension'))

    assert services.graph.backfill_symmetry('u1') == 1
    assert neptune.edges[('b', 'a')].score == pytest.approx(0.8)
    assert ('d', 'c') not in neptune.edges
    assert services.graph.backfill_symmetry('u1') == 0


def test_regenerate_links_nodes_whose_discovery_failed(services, embed, opensearch, neptune):
    base = unit_vector(0)
    embed.set_vector('Paper on panel data', base)
    embed.set_vector('Follow-up on panel data', vector_with_similarity(base, 0.82, 1))
    services.documents.store_document_embedding('u1', 'X', 'Paper on panel data')

    opensearch.fail_search = True
    services.documents.store_document_embedding('u1', 'Y', 'Follow-up on panel data')
    opensearch.fail_search = False
    assert not neptune.edges

    totals = services.graph.regenerate('u1')

    assert totals == {'nodes': 2, 'linked': 2, 'failed': 0}
    assert neptune.edges[('X', 'Y')].score == pytest.approx(0.82)
    assert neptune.edges[('Y', 'X')].kind == 'extension'


def test_regenerate_pages_through_nodes(services, embed, neptune):
    base = unit_vector(0)
    for i in range(5):
        embed.set_vector(f'doc {i}', vector_with_similarity(base, 0.99, 1 + i))
    with patch('semmem.services.relationship_graph.REGENERATE_PAGE_SIZE', 2):
        for i in range(5):
            services.documents.store_document_embedding('u1', f'd{i}', f'doc {i}')
        neptune.edges.clear()

        totals = services.graph.regenerate('u1', NODE_DOCUMENT)

    assert totals['nodes'] == 5
    assert len(neptune.edges) == 20


def test_similarity_pass_keeps_extracted_relation(services, neptune):
    services.graph.link('u1', 'a', 'b', 'memory', 0.8, kind='supports', origin='extraction')

    assert services.graph.link('u1', 'a', 'b', 'memory', 0.72) is False

    for key in (('a', 'b'), ('b', 'a')):
        edge = neptune.edges[key]
        assert (edge.kind, edge.score, edge.origin) == ('supports', pytest.approx(0.8), 'extraction')
        assert edge.similarity == pytest.approx(0.72)


def test_removing_a_document_drops_its_edges(two_documents, opensearch, neptune):
    two_documents.documents.remove_document('u1', 'X')

    assert 'X' not in opensearch.indices[INDEX_DOCUMENT]
    assert not neptune.edges
    assert two_documents.graph.get_related('u1', 'Y') == []


def test_stats_count_edges_by_status(two_documents):
    stats = two_documents.graph.get_stats('u1')

    assert stats['total'] == 2
    assert stats[STATUS_PENDING] == 2
    assert stats[STATUS_COMPLETED] == 0
    assert stats['average_score'] == pytest.approx(0.82)


def test_graph_update_runs_on_background_threads(opensearch, neptune, embed, llm):
    tasks = BackgroundTasks(max_workers=2)
    try:
        services = build_services(opensearch=opensearch, neptune=neptune, embed=embed, llm=llm, tasks=tasks)
        base = unit_vector(0)
        embed.set_vector('left', base)
        embed.set_vector('right', vector_with_similarity(base, 0.95, 1))

        services.documents.store_document_embedding('u1', 'L', 'left')
        tasks.join(timeout=5)
        services.documents.store_document_embedding('u1', 'R', 'right')
        tasks.join(timeout=5)
    finally:
        tasks.shutdown()

    assert neptune.edges[('L', 'R')].kind == 'identical'
    assert neptune.edges[('R', 'L')].kind == 'identical'
