"""Database package for SevaBoard."""

from .models import (
    Base,
    Category,
    Item,
    Taken,
    Pledge,
)

__all__ = [
    "Base",
    "Category",
    "Item",
    "Taken",
    "Pledge",
]
