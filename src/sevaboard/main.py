"""
SevaBoard FastAPI application.

Main entry point for the backend API server: REST endpoints for claims,
catalog administration and pledge reporting, plus the participant
WebSocket that streams live catalog snapshots.
"""

import asyncio
import json
import logging
import uuid
from typing import Dict, List, Optional

from fastapi import FastAPI, Depends, HTTPException, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from sevaboard import __version__
from sevaboard.config import settings
from sevaboard.database.session import AsyncSessionFactory
from sevaboard.services.catalog_admin import CatalogAdminService, CatalogAdminError
from sevaboard.services.catalog_models import (
    ID_MAX_LENGTH,
    ITEM_NAME_MAX_LENGTH,
    NAME_MAX_LENGTH,
    ClaimRecord,
    ItemRef,
)
from sevaboard.services.claim_allocator import (
    ClaimAllocator,
    ClaimConflictError,
    ClaimTransientError,
    EmptySelectionError,
)
from sevaboard.services.notifications import EmailNotifier
from sevaboard.services.participant_session import ClaimantPayload, ParticipantSession
from sevaboard.services.pledge_report import EXPORT_FILENAME, PledgeReportService
from sevaboard.services.postgres_store import PostgresCatalogStore
from sevaboard.services.store import CatalogStore, StoreError


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# Create FastAPI application
app = FastAPI(
    title="SevaBoard API",
    description="Live sign-up board: participants claim unique items from shared category lists",
    version=__version__,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict to specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# WebSocket connection manager
class ConnectionManager:
    """
    Tracks active participant WebSocket connections.

    Each connection is keyed by a server-generated id; all outgoing frames
    for a connection go through ``send_message``.
    """

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    async def connect(self, connection_id: str, websocket: WebSocket):
        """Accept a new WebSocket connection."""
        await websocket.accept()
        self.active_connections[connection_id] = websocket

    def disconnect(self, connection_id: str):
        """Remove a WebSocket connection."""
        if connection_id in self.active_connections:
            del self.active_connections[connection_id]

    async def send_message(self, connection_id: str, message: dict):
        """
        Send a JSON message to one connection.

        Args:
            connection_id: Connection identifier
            message: Dictionary to send as JSON
        """
        websocket = self.active_connections.get(connection_id)
        if websocket is not None:
            await websocket.send_text(json.dumps(message))


# Global instances
manager = ConnectionManager()
catalog_store = PostgresCatalogStore(AsyncSessionFactory, listen_dsn=settings.database_url)
email_notifier = EmailNotifier()


def get_store() -> CatalogStore:
    """FastAPI dependency for the catalog store."""
    return catalog_store


def get_notifier() -> Optional[EmailNotifier]:
    """FastAPI dependency for the confirmation email notifier."""
    return email_notifier


def get_allocator(
    store: CatalogStore = Depends(get_store),
    notifier: Optional[EmailNotifier] = Depends(get_notifier),
) -> ClaimAllocator:
    """FastAPI dependency for the claim allocator."""
    return ClaimAllocator(store, notifier)


# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Open the change-feed listener."""
    await catalog_store.start()
    logger.info("Catalog store ready (notifications enabled: %s)", settings.notifications_enabled)


@app.on_event("shutdown")
async def shutdown_event():
    """Close the change-feed listener."""
    await catalog_store.close()
    logger.info("Catalog store closed")


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns basic service status.
    """
    return {
        "status": "healthy",
        "service": "sevaboard-api",
        "version": __version__,
        "connections": len(manager.active_connections),
    }


# Pydantic models for request bodies
class ItemPayload(BaseModel):
    """An item the participant selected."""
    id: str = Field(min_length=1, max_length=ID_MAX_LENGTH)
    name: str = Field(max_length=ITEM_NAME_MAX_LENGTH)


class ClaimRequest(BaseModel):
    """Request model for submitting a claim."""
    claimant: ClaimantPayload
    items: List[ItemPayload]


class CategoryCreateRequest(BaseModel):
    """Request model for adding a category with comma-separated items."""
    name: str = Field(max_length=NAME_MAX_LENGTH)
    items_csv: str = ""


@app.get("/api/catalog")
async def get_catalog(store: CatalogStore = Depends(get_store)):
    """
    One-shot catalog view.

    Returns categories with their items, the claim map and availability
    counts, in the same shape the WebSocket pushes.
    """
    try:
        snapshot = await CatalogAdminService(store).load_snapshot()
    except StoreError as e:
        logger.error("Failed to load catalog: %s", e)
        raise HTTPException(status_code=503, detail="Catalog temporarily unavailable")
    return snapshot.to_dict()


@app.post("/api/claims", status_code=201)
async def submit_claim(
    request: ClaimRequest,
    allocator: ClaimAllocator = Depends(get_allocator),
):
    """
    Claim a set of items, all or nothing.

    Returns:
        The committed pledge plus a warning if the confirmation email failed

    Raises:
        HTTPException: 400 for an empty selection, 409 if any item is
        already taken, 503 if the store is unavailable
    """
    items = [ItemRef(i.id, i.name) for i in request.items]
    try:
        receipt = await allocator.submit_claim(request.claimant.to_claimant(), items)
    except EmptySelectionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ClaimConflictError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "item_id": e.item_id, "item_name": e.item_name},
        )
    except ClaimTransientError as e:
        raise HTTPException(status_code=503, detail=f"Could not save your selection, please retry: {e}")

    response = {
        "pledge": receipt.pledge.to_dict(),
        "notification_error": receipt.notification_error,
    }
    if receipt.notification_failed:
        response["warning"] = "Saved, but sending the confirmation email failed."
    return response


@app.post("/api/admin/categories", status_code=201)
async def admin_add_category(
    request: CategoryCreateRequest,
    store: CatalogStore = Depends(get_store),
):
    """Add a category and its comma-separated items."""
    try:
        return await CatalogAdminService(store).add_category(request.name, request.items_csv)
    except CatalogAdminError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StoreError as e:
        logger.error("Failed to add category: %s", e)
        raise HTTPException(status_code=503, detail="Failed to add category")


@app.delete("/api/admin/categories/{category_id}")
async def admin_remove_category(category_id: str, store: CatalogStore = Depends(get_store)):
    """Remove a category and its items (claims are kept)."""
    try:
        removed = await CatalogAdminService(store).remove_category(category_id)
    except CatalogAdminError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        logger.error("Failed to remove category %s: %s", category_id, e)
        raise HTTPException(status_code=503, detail="Failed to remove category")
    return {"success": True, "category_id": category_id, "items_removed": removed}


@app.delete("/api/admin/taken/{item_id}")
async def admin_release_item(item_id: str, store: CatalogStore = Depends(get_store)):
    """Release a claimed item so it becomes available again."""
    try:
        claim = await CatalogAdminService(store).release_item(item_id)
    except CatalogAdminError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreError as e:
        logger.error("Failed to release item %s: %s", item_id, e)
        raise HTTPException(status_code=503, detail="Failed to release item")
    logger.info("Item %s released by admin", item_id)
    return {"success": True, "item_id": item_id, "released": ClaimRecord.from_document(claim).to_dict()}


@app.get("/api/admin/pledges/summary")
async def admin_pledge_summary(store: CatalogStore = Depends(get_store)):
    """Pledges grouped by email with total items taken, most recent first."""
    try:
        rows = await PledgeReportService(store).summary()
    except StoreError as e:
        logger.error("Failed to load pledges: %s", e)
        raise HTTPException(status_code=503, detail="Failed to load pledges")
    return {"participants": [row.to_dict() for row in rows], "count": len(rows)}


@app.get("/api/admin/pledges/export")
async def admin_pledge_export(store: CatalogStore = Depends(get_store)):
    """Download the grouped pledge report as an Excel workbook."""
    try:
        content = await PledgeReportService(store).export()
    except StoreError as e:
        logger.error("Failed to export pledges: %s", e)
        raise HTTPException(status_code=503, detail="Failed to export pledges")
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{EXPORT_FILENAME}"'},
    )


async def _pump_outbox(session: ParticipantSession, connection_id: str):
    """Forward queued frames to the client, with a heartbeat when idle."""
    while True:
        try:
            message = await asyncio.wait_for(session.outbox.get(), timeout=settings.WS_HEARTBEAT_INTERVAL)
        except asyncio.TimeoutError:
            message = {"type": "heartbeat"}
        await manager.send_message(connection_id, message)


@app.websocket("/ws/catalog")
async def websocket_catalog_endpoint(
    websocket: WebSocket,
    store: CatalogStore = Depends(get_store),
    allocator: ClaimAllocator = Depends(get_allocator),
):
    """
    WebSocket endpoint for one participant.

    Pushes a ``catalog_snapshot`` frame whenever categories, items or claims
    change, and accepts ``ping``, ``toggle``, ``clear`` and ``submit``
    messages (see ParticipantSession).

    Args:
        websocket: WebSocket connection
    """
    connection_id = str(uuid.uuid4())
    await manager.connect(connection_id, websocket)
    try:
        async with ParticipantSession(store, allocator) as session:
            sender = asyncio.create_task(_pump_outbox(session, connection_id))
            try:
                while True:
                    data = await websocket.receive_text()
                    try:
                        message = json.loads(data)
                    except json.JSONDecodeError:
                        reply = {"type": "error", "message": "Messages must be JSON"}
                    else:
                        reply = await session.handle(message)
                    if reply is not None:
                        session.outbox.put_nowait(reply)
            finally:
                sender.cancel()
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected: %s", connection_id)
    except Exception:
        logger.exception("WebSocket error for connection %s", connection_id)
    finally:
        manager.disconnect(connection_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "sevaboard.main:app",
        host=settings.SERVICE_HOST,
        port=settings.SERVICE_PORT,
        reload=True,
    )
