"""
Participant session: one connected client's view and selection.

Each WebSocket connection gets its own session, which owns

- a CatalogSync (live snapshot pushed to the client on every change),
- a Selection (items picked but not yet submitted),
- a reference to the shared ClaimAllocator for submissions.

Snapshots are queued and drained by the connection's send loop, so store
callbacks never block on the network.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from sevaboard.services.catalog_models import (
    EMAIL_MAX_LENGTH,
    NAME_MAX_LENGTH,
    PHONE_MAX_LENGTH,
    CatalogSnapshot,
    Claimant,
)
from sevaboard.services.catalog_sync import CatalogSync
from sevaboard.services.claim_allocator import (
    ClaimAllocator,
    ClaimConflictError,
    ClaimTransientError,
)
from sevaboard.services.selection import Selection
from sevaboard.services.store import CatalogStore


logger = logging.getLogger(__name__)


class ClaimantPayload(BaseModel):
    """Participant contact details as sent by clients."""
    name: str = Field(max_length=NAME_MAX_LENGTH)
    email: str = Field(max_length=EMAIL_MAX_LENGTH)
    phone: str = Field(max_length=PHONE_MAX_LENGTH)

    @field_validator("name", "email", "phone")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    def to_claimant(self) -> Claimant:
        return Claimant(name=self.name, email=self.email, phone=self.phone)


class SessionMessageError(Exception):
    """Raised when a client message cannot be handled."""
    pass


class ParticipantSession:
    """Routes one client's messages and streams its catalog snapshots."""

    def __init__(self, store: CatalogStore, allocator: ClaimAllocator):
        self.sync = CatalogSync(store)
        self.selection = Selection()
        self.allocator = allocator
        self.outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.sync.add_observer(self._on_snapshot)

    async def __aenter__(self) -> "ParticipantSession":
        await self.sync.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.sync.__aexit__(exc_type, exc, tb)

    @property
    def snapshot(self) -> CatalogSnapshot:
        return self.sync.snapshot

    def _on_snapshot(self, snapshot: CatalogSnapshot) -> None:
        self.outbox.put_nowait({"type": "catalog_snapshot", **snapshot.to_dict()})

    def selection_message(self) -> Dict[str, Any]:
        return {
            "type": "selection",
            "items": [item.to_dict() for item in self.selection.items()],
        }

    async def handle(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Handle one client message and return the direct reply, if any.

        Unknown or malformed messages produce an ``error`` reply rather than
        an exception, so one bad frame does not drop the connection.
        """
        try:
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "ping":
                return {"type": "pong"}
            if kind == "toggle":
                return self._toggle(message.get("item_id"))
            if kind == "clear":
                self.selection.clear()
                return self.selection_message()
            if kind == "submit":
                return await self._submit(message.get("claimant"))
            raise SessionMessageError(f"Unknown message type: {kind}")
        except SessionMessageError as e:
            return {"type": "error", "message": str(e)}

    def _toggle(self, item_id: Any) -> Dict[str, Any]:
        if not isinstance(item_id, str) or not item_id:
            raise SessionMessageError("toggle requires an item_id")

        # Removal needs no lookup: the item may have left the catalog meanwhile
        if self.selection.discard(item_id):
            return self.selection_message()

        item = self.snapshot.find_item(item_id)
        if item is None:
            raise SessionMessageError(f"Unknown item: {item_id}")
        # Advisory only: the allocator re-checks against the store on submit
        if self.snapshot.is_taken(item_id):
            raise SessionMessageError(f"Item already taken: {item.name}")

        self.selection.toggle(item.ref())
        return self.selection_message()

    async def _submit(self, payload: Any) -> Dict[str, Any]:
        try:
            claimant = ClaimantPayload.model_validate(payload or {}).to_claimant()
        except ValidationError as e:
            raise SessionMessageError(f"Invalid claimant details: {e.errors()[0]['msg']}") from e

        try:
            receipt = await self.allocator.submit_claim(claimant, self.selection.items())
        except ClaimConflictError as e:
            return {
                "type": "claim_conflict",
                "item_id": e.item_id,
                "item_name": e.item_name,
                "message": str(e),
            }
        except ClaimTransientError as e:
            return {"type": "claim_failed", "message": str(e)}

        self.selection.clear()
        return {
            "type": "claim_confirmed",
            "pledge": receipt.pledge.to_dict(),
            "items": [item.name for item in receipt.pledge.items],
            "notification_error": receipt.notification_error,
        }
