"""Shared fixtures for the SevaBoard test suite."""

import pytest

from fakes import InMemoryCatalogStore
from sevaboard.services.catalog_models import Claimant
from sevaboard.services.store import CATEGORIES, ITEMS


@pytest.fixture
def store():
    """Empty in-memory catalog store."""
    return InMemoryCatalogStore()


@pytest.fixture
def claimant():
    return Claimant(name="Asha Patel", email="asha@example.com", phone="+1 555 0100")


@pytest.fixture
def seeded_store(store):
    """
    Two categories with items:

    - sweets: Barfi, jalebi, Ladoo
    - fruit: Apples
    """
    store.put((CATEGORIES,), "sweets", {"name": "Sweets"})
    store.put((CATEGORIES,), "fruit", {"name": "Fruit"})
    store.put((CATEGORIES, "sweets", ITEMS), "ladoo", {"name": "Ladoo", "categoryId": "sweets"})
    store.put((CATEGORIES, "sweets", ITEMS), "barfi", {"name": "Barfi", "categoryId": "sweets"})
    store.put((CATEGORIES, "sweets", ITEMS), "jalebi", {"name": "jalebi", "categoryId": "sweets"})
    store.put((CATEGORIES, "fruit", ITEMS), "apples", {"name": "Apples", "categoryId": "fruit"})
    return store
