from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from hoteldesk.core.config import get_settings
from hoteldesk.dependencies.auth import resolve_user_from_token
from hoteldesk.realtime import ClientConnection, TicketHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/tickets")
async def ticket_channel(websocket: WebSocket, access_token: str | None = Query(default=None)) -> None:
    hub: TicketHub | None = getattr(websocket.app.state, "ticket_hub", None)
    if hub is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    try:
        user = resolve_user_from_token(access_token, get_settings())
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    connection = ClientConnection(user, websocket)
    await hub.connect(connection)
    try:
        while True:
            raw = await websocket.receive_text()
            await hub.handle_text(connection, raw)
    except WebSocketDisconnect:
        logger.debug("Connection %s closed by client", connection.id)
    finally:
        await hub.disconnect(connection)
