"""Tests for memory extraction, storage and search."""

import json
from datetime import timedelta

import pytest

from semmem.models.core import NODE_MEMORY, STATUS_COMPLETED, STATUS_FAILED, ScoredMemory
from semmem.services.memory_store import (LOCK_STRIPES, SKIP_EMBEDDING_FAILED, SKIP_EXTRACTION_FAILED,
                                          SKIP_NO_NEW_MESSAGES, SKIP_TOO_FEW_MESSAGES, MemoryStoreError,
                                          memory_from_document, rank_scored)
from semmem.utils.bedrock_embed import EmbeddingUnavailable
from semmem.utils.opensearch_client import INDEX_MEMORY
from semmem.utils.timestamp_utils import to_iso, utc_now
from tests.fakes.fake_models import unit_vector, vector_with_similarity

REGRESSION_CONVERSATION = [
    {'id': 'm1', 'role': 'user', 'content': 'Can you explain what regression analysis does in this paper?'},
    {'id': 'm2', 'role': 'assistant', 'content': 'Regression analysis estimates how wages change with education.'},
    {'id': 'm3', 'role': 'user', 'content': 'They also use panel data, right?'},
    {'id': 'm4', 'role': 'assistant', 'content': 'Yes, panel data lets them follow the same workers over years.'},
    {'id': 'm5', 'role': 'user', 'content': 'How does panel data help with omitted variables?'},
]

REGRESSION_EXTRACTION = {
    'entities': [
        {'type': 'concept', 'text': 'Regression analysis of wages on education', 'message_index': 1},
        {'type': 'concept', 'text': 'Panel data following workers over time', 'message_index': 3},
        {'type': 'question', 'text': 'How does panel data address omitted variable bias?', 'message_index': 4},
    ],
    'relationships': [
        {'from': 1, 'to': 0, 'type': 'supports', 'strength': 0.8},
        {'from': 2, 'to': 1, 'type': 'relates_to', 'strength': 0.7},
    ],
}


def conversation(count, start=1):
    return [{
        'id': f'm{i}',
        'role': 'user' if i % 2 else 'assistant',
        'content': f'message number {i} about fixed effects'
    } for i in range(start, start + count)]


def one_concept_per_call(prompt):
    return json.dumps({'entities': [{'type': 'concept', 'text': f'concept from call {prompt.count("[")}'}]})


@pytest.fixture
def regression_llm(llm):
    llm.handler = lambda prompt: json.dumps(REGRESSION_EXTRACTION)
    return llm


def live_memories(opensearch):
    return [doc for doc in opensearch.indices[INDEX_MEMORY].values() if not doc.get('deleted_at')]


def test_regression_conversation_produces_concepts_and_symmetric_edges(services, regression_llm, opensearch, neptune):
    result = services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION, document_id='paper-1')

    assert result.skipped_reason is None
    assert result.entities_created == 3
    assert result.relationships_created >= 1

    docs = live_memories(opensearch)
    concepts = [doc for doc in docs if doc['entity_type'] == 'concept']
    assert any('regression' in doc['text'].lower() for doc in concepts)
    assert all(doc['user_id'] == 'u1' and doc['document_id'] == 'paper-1' for doc in docs)
    assert {doc['source_message_id'] for doc in docs} == {'m2', 'm4', 'm5'}

    assert neptune.edges
    for (source, target), edge in neptune.edges.items():
        reverse = neptune.edges[(target, source)]
        assert reverse.score == pytest.approx(edge.score)
        assert reverse.kind == edge.kind

    watermark = services.memory_store.get_watermark('u1', 'c1')
    assert watermark.status == STATUS_COMPLETED
    assert watermark.last_message_id == 'm5'
    assert watermark.processed_count == 5


def test_similar_extracted_entities_keep_the_extracted_relation(services, regression_llm, embed, opensearch, neptune):
    regression, panel, question = [entity['text'] for entity in REGRESSION_EXTRACTION['entities']]
    base = unit_vector(0)
    embed.set_vector(regression, base)
    embed.set_vector(panel, vector_with_similarity(base, 0.72, 1))
    embed.set_vector(question, unit_vector(5))

    services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    ids = {doc['text']: doc['id'] for doc in live_memories(opensearch)}
    for source, target in ((ids[panel], ids[regression]), (ids[regression], ids[panel])):
        edge = neptune.edges[(source, target)]
        assert edge.kind == 'supports'
        assert edge.score == pytest.approx(0.8)
        assert edge.origin == 'extraction'
        assert edge.similarity == pytest.approx(0.72)


def test_reprocessing_the_same_messages_is_a_no_op(services, regression_llm, opensearch):
    services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)
    calls = regression_llm.json_calls
    stored = len(opensearch.indices[INDEX_MEMORY])

    result = services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    assert result.skipped_reason == SKIP_NO_NEW_MESSAGES
    assert result.entities_created == 0
    assert regression_llm.json_calls == calls
    assert len(opensearch.indices[INDEX_MEMORY]) == stored


def test_too_few_messages_is_skipped(services, llm):
    result = services.memory_store.extract_and_store('u1', 'c1', conversation(2))

    assert result.skipped_reason == SKIP_TOO_FEW_MESSAGES
    assert llm.json_calls == 0


def test_growing_conversation_only_extracts_new_messages(services, llm, opensearch):
    llm.handler = one_concept_per_call
    messages = conversation(4)
    services.memory_store.extract_and_store('u1', 'c1', messages)

    messages = messages + conversation(2, start=5)
    result = services.memory_store.extract_and_store('u1', 'c1', messages)

    assert result.entities_created == 1
    prompt = llm.prompts[-1]
    assert 'Earlier context' in prompt
    assert 'message number 4' in prompt
    assert '[0] User: message number 5' in prompt
    assert '[1] Assistant: message number 6' in prompt
    assert 'message number 1 about' not in prompt
    assert services.memory_store.get_watermark('u1', 'c1').last_message_id == 'm6'


def test_extraction_locks_stay_bounded_across_conversations(services, llm):
    llm.handler = one_concept_per_call
    store = services.memory_store

    for i in range(LOCK_STRIPES * 2):
        store.extract_and_store('u1', f'c{i}', conversation(4))

    assert len(store._locks) == LOCK_STRIPES
    assert store._conversation_lock('u1', 'c7') is store._conversation_lock('u1', 'c7')
    assert not any(lock.locked() for lock in store._locks)


def test_watermark_falls_back_to_processed_count_when_id_is_missing(services, llm):
    llm.handler = one_concept_per_call
    messages = conversation(4)
    services.memory_store.extract_and_store('u1', 'c1', messages)

    renumbered = [dict(msg, id=f'x{i}') for i, msg in enumerate(messages + conversation(1, start=5))]
    result = services.memory_store.extract_and_store('u1', 'c1', renumbered)

    assert result.entities_created == 1
    assert '[0] User: message number 5' in llm.prompts[-1]


def test_embedding_failure_writes_nothing_and_can_be_retried(services, regression_llm, embed, opensearch, neptune):
    embed.fail_with = EmbeddingUnavailable('Bedrock down')

    result = services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    assert result.skipped_reason == SKIP_EMBEDDING_FAILED
    assert not opensearch.indices[INDEX_MEMORY]
    assert not neptune.edges
    watermark = services.memory_store.get_watermark('u1', 'c1')
    assert watermark.status == STATUS_FAILED
    assert watermark.processed_count == 0

    embed.fail_with = None
    retry = services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    assert retry.entities_created == 3
    assert services.memory_store.get_watermark('u1', 'c1').status == STATUS_COMPLETED


def test_invalid_llm_output_marks_extraction_failed(services, llm, opensearch):
    llm.responses = ['this is not json at all']

    result = services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    assert result.skipped_reason == SKIP_EXTRACTION_FAILED
    assert not opensearch.indices[INDEX_MEMORY]
    assert services.memory_store.get_watermark('u1', 'c1').status == STATUS_FAILED


def test_llm_outage_marks_extraction_failed(services, regression_llm):
    regression_llm.fail = True

    result = services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    assert result.skipped_reason == SKIP_EXTRACTION_FAILED


def test_partial_write_is_rolled_back(services, regression_llm, opensearch, neptune):
    opensearch.index_budget[INDEX_MEMORY] = 2

    with pytest.raises(MemoryStoreError):
        services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    assert not opensearch.indices[INDEX_MEMORY]
    assert not neptune.edges
    assert services.memory_store.get_watermark('u1', 'c1').status == STATUS_FAILED


def test_graph_write_failure_is_rolled_back(services, regression_llm, opensearch, neptune):
    neptune.fail_writes = True

    with pytest.raises(MemoryStoreError):
        services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    assert not opensearch.indices[INDEX_MEMORY]


def index_memory(opensearch, memory_id, user_id, text, embedding, created_at, **extra):
    opensearch.index_document(
        dict({
            'id': memory_id,
            'user_id': user_id,
            'conversation_id': 'c1',
            'entity_type': 'concept',
            'text': text,
            'embedding': embedding,
            'created_at': to_iso(created_at),
        }, **extra), INDEX_MEMORY)


def test_search_orders_by_similarity_then_recency(services, opensearch, embed):
    query = unit_vector(0)
    embed.set_vector('panel data', query)
    now = utc_now()
    index_memory(opensearch, 'close', 'u1', 'Panel data', vector_with_similarity(query, 0.9, 1), now - timedelta(days=3))
    index_memory(opensearch, 'tie-old', 'u1', 'Fixed effects', vector_with_similarity(query, 0.7, 2), now - timedelta(days=2))
    index_memory(opensearch, 'tie-new', 'u1', 'Random effects', vector_with_similarity(query, 0.7, 3), now - timedelta(days=1))
    index_memory(opensearch, 'other-owner', 'u2', 'Panel data', query, now)
    index_memory(opensearch, 'gone', 'u1', 'Panel data', query, now, deleted_at=to_iso(now))

    results = services.memory_store.search('u1', 'panel data')

    assert [r.memory.id for r in results] == ['close', 'tie-new', 'tie-old']
    assert results[0].similarity == pytest.approx(0.9)
    assert services.memory_store.search('u1', 'panel data') == results


def test_search_respects_limit_and_filters(services, opensearch, embed):
    query = unit_vector(0)
    embed.set_vector('effects', query)
    now = utc_now()
    for i in range(5):
        index_memory(opensearch, f'm{i}', 'u1', f'memory {i}', vector_with_similarity(query, 0.5 + i / 10, i + 1), now)
    index_memory(opensearch, 'q', 'u1', 'a question', query, now, entity_type='question')

    assert len(services.memory_store.search('u1', 'effects', limit=2)) == 2
    questions = services.memory_store.search('u1', 'effects', entity_types=['question'])
    assert [r.memory.id for r in questions] == ['q']


def test_search_degrades_to_empty_list(services, opensearch, embed):
    embed.fail_with = EmbeddingUnavailable('down')
    assert services.memory_store.search('u1', 'anything') == []

    embed.fail_with = None
    opensearch.fail_search = True
    assert services.memory_store.search('u1', 'anything') == []


def test_rank_scored_is_a_total_order():
    now = utc_now()
    docs = [{'id': name, 'user_id': 'u1', 'created_at': to_iso(now)} for name in ('b', 'a', 'c')]
    ranked = rank_scored([ScoredMemory(memory_from_document(doc), 0.5) for doc in docs])

    assert [r.memory.id for r in ranked] == ['a', 'b', 'c']


def test_delete_by_conversation_soft_deletes_and_drops_edges(services, regression_llm, opensearch, neptune):
    services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    deleted = services.memory_store.delete_by_source('u1', conversation_id='c1')

    assert deleted == 3
    assert len(opensearch.indices[INDEX_MEMORY]) == 3
    assert not live_memories(opensearch)
    assert not neptune.edges
    assert services.memory_store.get_conversation_memories('u1', 'c1') == []


def test_delete_by_source_requires_a_source(services):
    with pytest.raises(MemoryStoreError):
        services.memory_store.delete_by_source('u1')


def test_relationships_of_a_memory(services, regression_llm, opensearch):
    services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)
    by_text = {doc['text']: doc['id'] for doc in live_memories(opensearch)}
    panel = by_text['Panel data following workers over time']

    related = services.memory_store.get_relationships('u1', panel)

    assert {item.related_id for item in related} >= {
        by_text['Regression analysis of wages on education'],
        by_text['How does panel data address omitted variable bias?'],
    }
    assert all(item.status == 'pending' for item in related)
    assert services.memory_store.get_relationships('u2', panel) == []


def test_aggregate_counts_repeated_texts(services, opensearch):
    now = utc_now()
    index_memory(opensearch, 'a', 'u1', 'Panel data', unit_vector(0), now - timedelta(days=2))
    index_memory(opensearch, 'b', 'u1', 'panel  DATA', unit_vector(1), now - timedelta(days=1))
    index_memory(opensearch, 'c', 'u1', 'Fixed effects', unit_vector(2), now)

    aggregated = services.memory_store.aggregate_memories('u1')

    assert aggregated['concept'][0]['text'] == 'Panel data'
    assert aggregated['concept'][0]['count'] == 2
    assert aggregated['concept'][1] == {'text': 'Fixed effects', 'count': 1, 'last_seen': to_iso(now)}


def test_conversation_summary_lists_insights(services, opensearch):
    now = utc_now()
    index_memory(opensearch, 'i1', 'u1', 'Panel data controls for fixed traits', unit_vector(0), now, entity_type='insight')
    index_memory(opensearch, 'c1', 'u1', 'Panel data', unit_vector(1), now)

    assert services.memory_store.conversation_summary('u1', 'c1') == '- Panel data controls for fixed traits'


def test_memories_are_graph_nodes_of_kind_memory(services, regression_llm, neptune):
    services.memory_store.extract_and_store('u1', 'c1', REGRESSION_CONVERSATION)

    assert {edge.node_kind for edge in neptune.edges.values()} == {NODE_MEMORY}
