from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
import logging

from ..dependencies import get_broadcaster
from ..services.broadcaster import Broadcaster

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws")
async def realtime_endpoint(websocket: WebSocket, broadcaster: Broadcaster = Depends(get_broadcaster)):
    """Realtime subscriptions; see ride_dispatch.schemas.realtime for frames"""
    await websocket.accept()
    connection = await broadcaster.register(websocket.send_text)
    try:
        while True:
            raw = await websocket.receive_text()
            await broadcaster.handle_frame(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.unregister(connection)
