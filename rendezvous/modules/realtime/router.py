import itertools
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from loguru import logger

from rendezvous.core.auth import get_websocket_user_id
from .gateway import RealtimeGateway, get_gateway

router = APIRouter(prefix="/v1", tags=["realtime"])

_channel_ids = itertools.count(1)


class WebSocketChannel:
    """
    Hashable handle for one socket; starlette's WebSocket is a Mapping and
    cannot live in the registry's sets.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.id = next(_channel_ids)

    async def send_json(self, data: Any) -> None:
        await self.websocket.send_json(data)

    def __repr__(self) -> str:
        return f"WebSocketChannel(id={self.id})"


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    gateway: RealtimeGateway = Depends(get_gateway),
):
    user_id = get_websocket_user_id(websocket)
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    channel = WebSocketChannel(websocket)
    gateway.connect(user_id, channel)

    try:
        while True:
            frame = await websocket.receive_json()
            if not isinstance(frame, dict):
                await gateway.registry.send(channel, "error", {"error": "Expected {event, data} object"})
                continue
            await gateway.handle_event(user_id, channel, frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        pass
    except ValueError:
        # non-JSON frame; starlette raises JSONDecodeError (a ValueError)
        logger.info(f"[ws] closing on malformed frame | user={user_id}")
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        await gateway.disconnect(user_id, channel)
