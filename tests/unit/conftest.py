"""Shared fixtures for the Dex operator unit tests."""

import pytest

from .helpers import FakeResourceStore, make_dexserver, make_secret


@pytest.fixture
def store():
    return FakeResourceStore()


@pytest.fixture
def dexserver(store):
    """A DexServer with one GitHub connector whose secret exists."""
    store.add(make_secret("github-secret", "idp", {"clientSecret": "s3cr3t"}))
    return store.add(make_dexserver())
