"""
Shared fixtures for worldstore tests.
"""

import pytest

from worldstore.config import IndexConfig, StoreConfig
from worldstore.store import QuadStore


@pytest.fixture
def config():
    """Small embeddings keep vector fixtures readable."""
    return StoreConfig(index=IndexConfig(embedding_dimensions=3))


@pytest.fixture
def store(config):
    """In-memory store for one world."""
    s = QuadStore("test-world", config=config)
    yield s
    s.close()
