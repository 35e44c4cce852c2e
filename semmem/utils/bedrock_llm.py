"""
Amazon Bedrock LLM client used for extraction, relationship descriptions and action translation.
"""

import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)

# Errors a second attempt cannot fix
NON_RETRYABLE_CODES = {'ValidationException', 'AccessDeniedException', 'ResourceNotFoundException'}


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Thin Converse API client; every public call returns plain text."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        self.bedrock_runtime = boto3.client('bedrock-runtime',
                                            region_name=config.region,
                                            config=BotoConfig(connect_timeout=config.connect_timeout,
                                                              read_timeout=config.read_timeout,
                                                              retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _stream_text(self, messages: List[Dict[str, Any]], system_prompt: str, inference: Dict[str, Any]) -> str:
        response = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                        messages=messages,
                                                        system=[{'text': system_prompt}],
                                                        inferenceConfig=inference)
        chunks = []
        for event in response.get('stream') or []:
            if 'contentBlockDelta' in event:
                chunks.append(event['contentBlockDelta']['delta'].get('text', ''))
            elif 'metadata' in event:
                usage = event['metadata'].get('usage', {})
                logger.debug(f'Bedrock LLM usage: in={usage.get("inputTokens")} out={usage.get("outputTokens")}')
        return ''.join(chunks)

    def converse(self,
                 messages: List[Dict[str, Any]],
                 system_prompt: str,
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None,
                 stop_sequences: Optional[List[str]] = None) -> str:
        """
        Run one Converse call, retrying throttling and transient failures.

        Args:
            messages: Messages in Bedrock Converse format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Generated text

        Raises:
            BedrockLLMError: If the request is rejected or all retry attempts fail
        """
        inference = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

        attempts = max(1, self.config.retry_attempts)
        for attempt in range(attempts):
            try:
                text = self._stream_text(messages, system_prompt, inference)
                logger.debug(f'Bedrock LLM returned {len(text)} characters')
                return text

            except ClientError as e:
                code = e.response.get('Error', {}).get('Code', '')
                if code in NON_RETRYABLE_CODES:
                    raise BedrockLLMError(f'Bedrock LLM rejected the request ({code}): {e}')
                last_error: Exception = e
            except BotoCoreError as e:
                last_error = e
            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

            logger.warning(f'Bedrock LLM attempt {attempt + 1}/{attempts} failed: {last_error}')
            if attempt < attempts - 1:
                time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, self.config.retry_delay))

        raise BedrockLLMError(f'Bedrock LLM failed after {attempts} attempts: {last_error}')

    def generate_json(self, user_message: str, system_prompt: str, temperature: Optional[float] = None) -> str:
        """
        Ask for a JSON answer by prefilling a ```json block and stopping at its end.

        Returns:
            Raw response text (the JSON body without fences)
        """
        messages = [
            {'role': 'user', 'content': [{'text': user_message}]},
            {'role': 'assistant', 'content': [{'text': '```json'}]},
        ]
        return self.converse(messages, system_prompt, temperature=temperature, stop_sequences=['```'])

    def complete(self, prompt: str, system_prompt: str, max_tokens: Optional[int] = None) -> str:
        """Plain text completion for a single user prompt."""
        messages = [{'role': 'user', 'content': [{'text': prompt}]}]
        return self.converse(messages, system_prompt, max_tokens=max_tokens).strip()

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(self.complete('Hi', system_prompt="Respond with just 'OK'.", max_tokens=10))
        except BedrockLLMError as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
