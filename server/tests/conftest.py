"""
Shared pytest fixtures for deep search server tests.

This module provides common fixtures used across the unit tests.
"""

import sys
from pathlib import Path
from typing import List

import pytest

# Add server directory to path
SERVER_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(SERVER_DIR))

# Test helpers (fakes.py) live next to this file
TESTS_DIR = Path(__file__).parent
sys.path.insert(0, str(TESTS_DIR))

from deepsearch.models import RawResult  # noqa: E402
from fakes import FakeCompletionProvider, FakeSearchProvider, make_result  # noqa: E402


# ============================================
# Configuration Fixtures
# ============================================

@pytest.fixture
def settings():
    """Fresh settings with test-friendly values."""
    from config.settings import SearchSettings
    return SearchSettings(
        environment="test",
        cache_backend="memory",
        completion_timeout=2.0,
        search_timeout=2.0,
        pipeline_timeout=10.0,
    )


# ============================================
# Sample Data Fixtures
# ============================================

@pytest.fixture
def sample_results() -> List[RawResult]:
    """Five distinct results with descending relevance."""
    return [
        make_result(i, relevance=round(0.9 - i * 0.1, 2))
        for i in range(1, 6)
    ]


@pytest.fixture
def berlin_wall_results() -> List[RawResult]:
    """Two sources that disagree on a date."""
    return [
        make_result(
            1,
            title="Fall of the Berlin Wall",
            url="https://history.example.org/berlin-wall",
            snippet="The Berlin Wall fell on 9 November 1989.",
            relevance=0.9,
        ),
        make_result(
            2,
            title="Berlin Wall timeline",
            url="https://blog.example.com/wall-timeline",
            snippet="Demolition of the wall started on 10 November 1989.",
            relevance=0.8,
        ),
    ]


# ============================================
# Provider Fixtures
# ============================================

@pytest.fixture
def search_provider(sample_results):
    """Search provider returning the sample results for every query."""
    return FakeSearchProvider(results=sample_results)


@pytest.fixture
def failing_search_provider():
    """Search provider that is unreachable."""
    return FakeSearchProvider(error=ConnectionError("connection refused"))


@pytest.fixture
def llm_provider():
    """Completion provider with no scripted responses (every call fails)."""
    return FakeCompletionProvider()
