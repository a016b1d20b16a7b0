"""Client-local selection of items chosen but not yet submitted."""

from typing import Dict, Iterator, List

from sevaboard.services.catalog_models import ItemRef


class Selection:
    """
    Toggle set of items keyed by id, in the order they were picked.

    Pure in-memory state: nothing here talks to the store.
    """

    def __init__(self):
        self._items: Dict[str, ItemRef] = {}

    def toggle(self, item: ItemRef) -> bool:
        """Add ``item`` if absent, remove it if present. Returns the new membership."""
        if item.id in self._items:
            del self._items[item.id]
            return False
        self._items[item.id] = item
        return True

    def discard(self, item_id: str) -> bool:
        """Remove ``item_id`` if selected. Returns whether it was."""
        return self._items.pop(item_id, None) is not None

    def clear(self) -> None:
        self._items.clear()

    def items(self) -> List[ItemRef]:
        return list(self._items.values())

    def ids(self) -> List[str]:
        return list(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[ItemRef]:
        return iter(self.items())
