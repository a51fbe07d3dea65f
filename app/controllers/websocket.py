# file: controllers/websocket.py

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status

from app.services.auth import user_id_from_token
from app.services.websocket_manager import ws_manager

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/notifications")
async def websocket_notifications(websocket: WebSocket, token: str = Query(...)):
    """
    Realtime notification frames for the connected user:
      ws://<host>/ws/notifications?token=<JWT>
    """
    user_id = user_id_from_token(token)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await ws_manager.connect(user_id, websocket)
    try:
        while True:
            # Client frames are only keep-alives
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(user_id, websocket)
