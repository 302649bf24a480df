"""WebSocket route for live venue books and feed status."""

from __future__ import annotations

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.websocket.manager import get_book_ws_manager

router = APIRouter(tags=["websocket"])


@router.websocket("/ws")
async def websocket_books(websocket: WebSocket) -> None:
    manager = get_book_ws_manager()
    await websocket.accept()
    await manager.connect(websocket)

    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                continue
            action = message.get("action") or message.get("type")
            if action == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception:
        await manager.disconnect(websocket)
