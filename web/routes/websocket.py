"""
WebSocket routes for live listing updates.

Provides:
- /ws/listings - Cache change notifications for product grids
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from iskomarket.observability import get_logger
from web.websocket_manager import LISTINGS_ROOM, manager

router = APIRouter(tags=["websocket"])
logger = get_logger(__name__)


@router.websocket("/ws/listings")
async def listings_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for listing cache changes.

    Receives events:
    - listings.replaced: the cache was replaced by a refresh
    - listings.added / listings.updated / listings.removed: single-record merges
    - listings.advisory_changed: visibility advisory raised or cleared
    - realtime.state_changed: change feed health transition

    Client can send "ping" for keep-alive (responds with "pong").
    """
    conn_info = await manager.connect(websocket, room=LISTINGS_ROOM)

    try:
        while True:
            message = await websocket.receive_text()
            await manager.handle_message(conn_info, message)
    except WebSocketDisconnect:
        logger.debug("Client disconnected normally")
    finally:
        await manager.disconnect(conn_info)


@router.get("/ws/stats")
async def get_websocket_stats():
    """Active connections and message counts."""
    return manager.get_stats()
