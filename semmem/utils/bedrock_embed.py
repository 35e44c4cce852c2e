"""
Amazon Bedrock embedding client wrapper with retry logic and error handling.
"""

import json
import random
import time
from typing import List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger
from .vector_utils import as_float_list

logger = get_logger(__name__)

THROTTLING_CODES = {'ThrottlingException', 'TooManyRequestsException', 'ServiceQuotaExceededException'}
INVALID_INPUT_CODES = {'ValidationException'}


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class EmbeddingRateLimited(BedrockEmbedError):
    """Embedding requests were throttled and retries were exhausted."""
    pass


class EmbeddingInvalidInput(BedrockEmbedError):
    """Text is empty or exceeds the model input budget; truncate before retrying."""
    pass


class EmbeddingUnavailable(BedrockEmbedError):
    """Embedding service is down, timed out, or returned a malformed vector."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        # Bounded timeouts; retries are handled in _call_with_retry
        self.bedrock = boto3.client(service_name='bedrock-runtime',
                                    region_name=config.region,
                                    config=BotoConfig(connect_timeout=config.connect_timeout,
                                                      read_timeout=config.read_timeout,
                                                      retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    @property
    def is_cohere(self) -> bool:
        return 'cohere' in self.model_id.lower()

    @property
    def is_titan(self) -> bool:
        return 'titan' in self.model_id.lower()

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            EmbeddingInvalidInput: If the model rejects the input
            EmbeddingRateLimited: If throttling persists across all attempts
            EmbeddingUnavailable: If all retry attempts fail for any other reason
        """
        body = json.dumps(data)
        throttled = False
        last_error = None

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')

                result = json.loads(response.get('body').read())
                logger.debug('Bedrock Embed request successful')
                return result

            except ClientError as e:
                code = e.response.get('Error', {}).get('Code', '')
                if code in INVALID_INPUT_CODES:
                    raise EmbeddingInvalidInput(f'Bedrock Embed rejected input: {e}')
                throttled = code in THROTTLING_CODES
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                last_error = e

            except BotoCoreError as e:
                throttled = False
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                last_error = e

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise EmbeddingUnavailable(f'Unexpected Bedrock Embed error: {e}')

            if attempt < self.config.retry_attempts - 1:
                # Exponential backoff with jitter
                delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                time.sleep(delay)

        if throttled:
            raise EmbeddingRateLimited(f'Bedrock Embed throttled after {self.config.retry_attempts} attempts: {last_error}')
        raise EmbeddingUnavailable(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {last_error}')

    def _check_input(self, text: Optional[str]) -> str:
        if not text or not text.strip():
            raise EmbeddingInvalidInput('Empty text provided for embedding')
        if len(text) > self.config.max_input_chars:
            raise EmbeddingInvalidInput(f'Text length {len(text)} exceeds limit of {self.config.max_input_chars} characters')
        return text

    def _check_vector(self, vector: Optional[List[float]]) -> List[float]:
        if not vector or len(vector) != self.output_embedding_length:
            got = len(vector) if vector else 0
            raise EmbeddingUnavailable(f'Expected {self.output_embedding_length}-dim embedding, got {got}')
        return as_float_list(vector)

    def _embed_one(self, text: str, input_type: str) -> List[float]:
        text = self._check_input(text)

        if self.is_titan:
            data = {'inputText': text, 'dimensions': self.output_embedding_length, 'normalize': True}
            response = self._call_with_retry(data)
            return self._check_vector(response.get('embedding'))

        elif self.is_cohere:
            data = {'input_type': input_type, 'texts': [text]}
            response = self._call_with_retry(data)
            embeddings = response.get('embeddings') or []
            return self._check_vector(embeddings[0] if embeddings else None)

        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for document text.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed_one(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Args:
            text: Query text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        return self._embed_one(text, 'search_query')

    def embed_batch(self, texts: List[str], input_type: str = 'search_document') -> List[List[float]]:
        """
        Generate embeddings for several texts, preserving order.

        Cohere models accept up to `batch_size` texts per request; Titan models
        take one text per request, so the batch is walked sequentially.

        Args:
            texts: Texts to embed
            input_type: 'search_document' or 'search_query'

        Returns:
            One embedding per input text

        Raises:
            BedrockEmbedError: If any embedding in the batch fails
        """
        if not texts:
            return []

        for text in texts:
            self._check_input(text)

        if not self.is_cohere:
            return [self._embed_one(text, input_type) for text in texts]

        embeddings: List[List[float]] = []
        for start in range(0, len(texts), self.config.batch_size):
            chunk = texts[start:start + self.config.batch_size]
            response = self._call_with_retry({'input_type': input_type, 'texts': chunk})
            vectors = response.get('embeddings') or []
            if len(vectors) != len(chunk):
                raise EmbeddingUnavailable(f'Expected {len(chunk)} embeddings, got {len(vectors)}')
            embeddings.extend(self._check_vector(v) for v in vectors)

        logger.debug(f'Embedded batch of {len(texts)} texts')
        return embeddings

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
