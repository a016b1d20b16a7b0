"""
Claim Allocator: atomic check-and-reserve of a set of items.

One ``submit_claim`` call runs a single store transaction that

1. reads the current claim record of every requested item (from the store,
   never from a Catalog Sync snapshot),
2. aborts with ``ClaimConflictError`` naming the first item, in request
   order, that already has a claim, writing nothing,
3. otherwise writes one claim per item plus one pledge for the whole set.

The store may re-run the transaction body when a concurrent writer
invalidates its reads, so the body only touches the transaction. The
confirmation email is sent strictly after commit and a failure there is
reported on the receipt instead of raised.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from sevaboard.services.catalog_models import Claimant, ClaimRecord, ItemRef, Pledge
from sevaboard.services.notifications import EmailNotifier, NotificationError
from sevaboard.services.store import (
    CatalogStore,
    StoreError,
    Transaction,
    pledge_ref,
    taken_ref,
)


logger = logging.getLogger(__name__)

PLEDGE_ID_ALPHABET = string.digits + string.ascii_lowercase
PLEDGE_ID_SUFFIX_LENGTH = 6


class ClaimError(Exception):
    """Base exception for claim submission failures."""
    pass


class ClaimConflictError(ClaimError):
    """Raised when a requested item already has a claim at transaction-read time."""

    def __init__(self, item_id: str, item_name: str):
        self.item_id = item_id
        self.item_name = item_name
        super().__init__(f"Item already taken: {item_name}")


class ClaimTransientError(ClaimError):
    """Raised when the store is unreachable, refuses access, or the input is malformed."""
    pass


class EmptySelectionError(ClaimTransientError):
    """Raised when a submission names no items."""

    def __init__(self):
        super().__init__("Please select at least one item.")


@dataclass(frozen=True)
class ClaimReceipt:
    """Outcome of a committed claim."""
    pledge: Pledge
    notification_error: Optional[str] = None

    @property
    def notification_failed(self) -> bool:
        return self.notification_error is not None


def generate_pledge_id(now: Optional[float] = None) -> str:
    """
    Millisecond timestamp plus a short random base36 suffix.

    Not guaranteed unique; a collision surfaces as a unique violation on
    insert and the store retries the transaction with a fresh id.
    """
    millis = int((time.time() if now is None else now) * 1000)
    suffix = "".join(secrets.choice(PLEDGE_ID_ALPHABET) for _ in range(PLEDGE_ID_SUFFIX_LENGTH))
    return f"{millis}-{suffix}"


def dedupe_items(items: Sequence[ItemRef]) -> List[ItemRef]:
    """Drop repeated ids, keeping the first occurrence and the order."""
    seen = set()
    unique = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


class ClaimAllocator:
    """Reserves items and records a pledge in one store transaction."""

    def __init__(
        self,
        store: CatalogStore,
        notifier: Optional[EmailNotifier] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        id_factory: Callable[[], str] = generate_pledge_id,
    ):
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.id_factory = id_factory

    async def submit_claim(self, claimant: Claimant, items: Sequence[ItemRef]) -> ClaimReceipt:
        """
        Claim every item in ``items`` for ``claimant``, or none of them.

        Args:
            claimant: Participant contact details copied onto each claim
            items: Items the caller knows about (id + display name), in
                   selection order; repeated ids are ignored

        Returns:
            ClaimReceipt with the committed pledge and, if the confirmation
            email failed, the reason

        Raises:
            EmptySelectionError: If ``items`` is empty (no store interaction)
            ClaimConflictError: If any item is already claimed
            ClaimTransientError: If the store fails or stays contended
        """
        requested = dedupe_items(items)
        if not requested:
            raise EmptySelectionError()

        async def reserve(trx: Transaction) -> Pledge:
            existing = await trx.get_all([taken_ref(item.id) for item in requested])
            for item, claim in zip(requested, existing):
                if claim is not None:
                    raise ClaimConflictError(item.id, item.name)

            now = self.clock()
            for item in requested:
                record = ClaimRecord(
                    by_name=claimant.name,
                    by_email=claimant.email,
                    by_phone=claimant.phone,
                    item_name=item.name,
                    at=now,
                )
                trx.set(taken_ref(item.id), record.to_document())

            pledge = Pledge(
                id=self.id_factory(),
                name=claimant.name,
                email=claimant.email,
                phone=claimant.phone,
                items=tuple(requested),
                created_at=now,
            )
            trx.set(pledge_ref(pledge.id), pledge.to_document())
            return pledge

        try:
            pledge = await self.store.run_transaction(reserve)
        except ClaimConflictError as e:
            logger.info("Claim conflict on item %s (%s)", e.item_id, e.item_name)
            raise
        except StoreError as e:
            logger.warning("Claim transaction failed: %s", e)
            raise ClaimTransientError(str(e)) from e

        logger.info("Pledge %s committed with %d item(s)", pledge.id, len(pledge.items))

        notification_error = await self._notify(claimant, pledge)
        return ClaimReceipt(pledge=pledge, notification_error=notification_error)

    async def _notify(self, claimant: Claimant, pledge: Pledge) -> Optional[str]:
        if self.notifier is None:
            return None
        try:
            await self.notifier.notify_claim(claimant, [item.name for item in pledge.items])
        except NotificationError as e:
            logger.warning("Pledge %s saved but confirmation email failed: %s", pledge.id, e)
            return str(e)
        except Exception as e:
            # The claim is committed; nothing after this point may fail the submission
            logger.warning("Pledge %s saved but notifier raised unexpectedly", pledge.id, exc_info=True)
            return str(e) or type(e).__name__
        return None
