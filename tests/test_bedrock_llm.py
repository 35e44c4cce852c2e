"""Tests for the Bedrock Converse client."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from semmem.utils.bedrock_llm import BedrockLLM, BedrockLLMError
from semmem.utils.config import BedrockLLMConfig


def make_config():
    return BedrockLLMConfig(region='us-east-1',
                            model_id='anthropic.claude-3-haiku-20240307-v1:0',
                            max_tokens=256,
                            temperature=0.0,
                            retry_attempts=3,
                            retry_delay=0.0,
                            connect_timeout=1,
                            read_timeout=1)


def stream(*chunks):
    events = [{'contentBlockDelta': {'delta': {'text': chunk}}} for chunk in chunks]
    events.append({'metadata': {'usage': {'inputTokens': 10, 'outputTokens': 3}}})
    return {'stream': events}


def client_error(code):
    return ClientError({'Error': {'Code': code, 'Message': code}}, 'ConverseStream')


@pytest.fixture
def runtime():
    with patch('semmem.utils.bedrock_llm.boto3.client') as client_factory, \
            patch('semmem.utils.bedrock_llm.time.sleep'):
        runtime = MagicMock()
        client_factory.return_value = runtime
        yield runtime


def test_generate_json_prefills_and_stops_at_fence(runtime):
    runtime.converse_stream.return_value = stream('{"entities": ', '[]}')

    assert BedrockLLM(make_config()).generate_json('extract', system_prompt='sys') == '{"entities": []}'

    kwargs = runtime.converse_stream.call_args.kwargs
    assert kwargs['messages'][-1] == {'role': 'assistant', 'content': [{'text': '```json'}]}
    assert kwargs['inferenceConfig']['stopSequences'] == ['```']
    assert kwargs['system'] == [{'text': 'sys'}]


def test_complete_strips_whitespace(runtime):
    runtime.converse_stream.return_value = stream('  Both cover ', 'panel data.\n')

    assert BedrockLLM(make_config()).complete('describe', system_prompt='sys', max_tokens=50) == 'Both cover panel data.'
    assert runtime.converse_stream.call_args.kwargs['inferenceConfig']['maxTokens'] == 50


def test_throttling_is_retried(runtime):
    runtime.converse_stream.side_effect = [client_error('ThrottlingException'), stream('ok')]

    assert BedrockLLM(make_config()).complete('hi', system_prompt='sys') == 'ok'
    assert runtime.converse_stream.call_count == 2


def test_validation_error_is_not_retried(runtime):
    runtime.converse_stream.side_effect = client_error('ValidationException')

    with pytest.raises(BedrockLLMError):
        BedrockLLM(make_config()).complete('hi', system_prompt='sys')
    assert runtime.converse_stream.call_count == 1


def test_exhausted_retries_raise(runtime):
    runtime.converse_stream.side_effect = client_error('ServiceUnavailableException')

    with pytest.raises(BedrockLLMError):
        BedrockLLM(make_config()).generate_json('hi', system_prompt='sys')
    assert runtime.converse_stream.call_count == 3


def test_health_check_reports_failure(runtime):
    runtime.converse_stream.side_effect = client_error('AccessDeniedException')

    assert BedrockLLM(make_config()).health_check() is False
