import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from quotebroker.services.container import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streaming"])


@router.websocket("/ws/quotes")
async def quotes_websocket(websocket: WebSocket, services: ServiceContainer = Depends(get_container)):
    proxy = services.stream_proxy
    await websocket.accept()
    client_id = await proxy.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                data = None
            await proxy.handle_message(client_id, data)
    except WebSocketDisconnect:
        logger.info(f"Client {client_id} disconnected")
    finally:
        await proxy.disconnect(client_id)
