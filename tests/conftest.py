"""Pytest configuration and fixtures."""

import os

# Read by semmem.utils.config at import time, so set before any semmem import
os.environ.setdefault('ENVIRONMENT', 'test')
os.environ.setdefault('LOG_LEVEL', 'DEBUG')
os.environ['BEDROCK_EMBED_DIMENSION'] = '64'
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')

import pytest  # noqa: E402

from semmem.bootstrap import build_services  # noqa: E402
from semmem.services.background import InlineTasks  # noqa: E402
from tests.fakes.fake_models import FakeEmbed, FakeLLM  # noqa: E402
from tests.fakes.fake_stores import FakeNeptune, FakeNotesStore, FakeOpenSearch  # noqa: E402


@pytest.fixture
def opensearch():
    return FakeOpenSearch()


@pytest.fixture
def neptune():
    return FakeNeptune()


@pytest.fixture
def embed():
    return FakeEmbed()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def notes_store():
    return FakeNotesStore()


@pytest.fixture
def highlights_store():
    return FakeNotesStore()


@pytest.fixture
def services(opensearch, neptune, embed, llm, notes_store, highlights_store):
    """Fully wired services over in-memory fakes; background work runs inline."""
    return build_services(opensearch=opensearch,
                          neptune=neptune,
                          embed=embed,
                          llm=llm,
                          tasks=InlineTasks(),
                          notes_store=notes_store,
                          highlights_store=highlights_store)
