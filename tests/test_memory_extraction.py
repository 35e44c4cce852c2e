"""Tests for extraction prompt building and response validation."""

import json

import pytest

from semmem.services.memory_extraction import ExtractionParseError, MemoryExtractionService
from tests.fakes.fake_models import FakeLLM


def test_parse_keeps_known_entity_types():
    extraction = MemoryExtractionService.parse(
        json.dumps({
            'entities': [
                {'type': 'Concept', 'text': ' Panel data ', 'message_index': 0},
                {'type': 'emotion', 'text': 'User is excited'},
                {'type': 'question', 'text': ''},
                {'type': 'reference', 'text': 'Wooldridge (2010)', 'message_index': 7},
            ]
        }),
        message_count=3)

    assert [(e.entity_type, e.text) for e in extraction.entities] == [('concept', 'Panel data'),
                                                                      ('reference', 'Wooldridge (2010)')]
    assert extraction.entities[0].source_message_index == 0
    assert extraction.entities[1].source_message_index is None


def test_parse_remaps_relationship_indices_after_drops():
    extraction = MemoryExtractionService.parse(
        json.dumps({
            'entities': [
                {'type': 'concept', 'text': 'Fixed effects'},
                {'type': 'unknown', 'text': 'dropped'},
                {'type': 'insight', 'text': 'Fixed effects remove stable confounders'},
            ],
            'relationships': [
                {'from': 2, 'to': 0, 'type': 'explains', 'strength': 0.9},
                {'from': 2, 'to': 0, 'type': 'supports', 'strength': 0.4},
                {'from': 1, 'to': 0, 'type': 'relates_to'},
                {'from': 0, 'to': 0},
                {'from': 0, 'to': 2, 'type': 'is_a', 'strength': 3},
            ]
        }))

    assert [(r.from_index, r.to_index, r.relation_type, r.strength) for r in extraction.relations] == [
        (1, 0, 'explains', 0.9),
        (0, 1, 'relates_to', 1.0),
    ]


def test_parse_accepts_fenced_json_and_bare_lists():
    fenced = MemoryExtractionService.parse('```json\n{"entities": [{"type": "action", "text": "Reread chapter 2"}]}\n```')
    bare = MemoryExtractionService.parse('[{"type": "concept", "text": "Attrition"}]')

    assert fenced.entities[0].entity_type == 'action'
    assert bare.entities[0].text == 'Attrition'
    assert bare.relations == []


@pytest.mark.parametrize('response', ['not json', '"just a string"', '{"entities": "none"}'])
def test_parse_rejects_malformed_responses(response):
    with pytest.raises(ExtractionParseError):
        MemoryExtractionService.parse(response)


def test_format_messages_marks_context_and_skips_other_roles():
    text = MemoryExtractionService.format_messages(
        [{'role': 'user', 'content': 'What is attrition?'}, {'role': 'system', 'content': 'ignored'},
         {'role': 'assistant', 'content': '  '}],
        context_messages=[{'role': 'assistant', 'content': 'Panel data tracks units.'}])

    assert text.startswith('Earlier context (already processed, do not extract from it):\nAssistant: Panel data tracks units.')
    assert '[0] User: What is attrition?' in text
    assert 'ignored' not in text


def test_extract_includes_document_title():
    llm = FakeLLM(responses=['{"entities": []}'])

    extraction = MemoryExtractionService(llm=llm).extract([{'role': 'user', 'content': 'hi'}], document_title='Labor Economics')

    assert extraction.entities == []
    assert llm.prompts[0].startswith('The conversation is about the document "Labor Economics".')


def test_extract_without_content_skips_llm():
    llm = FakeLLM()

    extraction = MemoryExtractionService(llm=llm).extract([{'role': 'user', 'content': '   '}])

    assert extraction.entities == []
    assert llm.json_calls == 0
