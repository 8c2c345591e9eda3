from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter()


@router.websocket("/ws/{instance}")
async def instance_events(websocket: WebSocket, instance: str) -> None:
    """Live feed of the instance's routed events for websocket consumers."""
    manager = websocket.app.state.gateway.connections
    await manager.connect(instance, websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(instance, websocket)
