"""Shared fixtures."""

import pytest

from common.http_client import clear_cache
from fakes import InMemorySource

# a 1.1.0 needs a newer c than the one a 1.0.0 was locked with.
BASE_UNIVERSE = {
    "a": {"1.0.0": [("c", "^1.0")], "1.1.0": [("c", "^1.1")]},
    "b": {"1.0.0": [("c", "^1.0")], "1.1.0": [("c", "^1.0")]},
    "c": {"1.0.0": [], "1.1.0": [], "1.2.0": [], "2.0.0": []},
    "e": {"1.0.0": [], "1.1.0": []},
}


@pytest.fixture
def universe():
    return {name: dict(entries) for name, entries in BASE_UNIVERSE.items()}


@pytest.fixture
def fake(universe):
    return InMemorySource(universe)


@pytest.fixture(autouse=True)
def _reset_http_cache():
    clear_cache()
    yield
    clear_cache()
