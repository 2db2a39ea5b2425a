"""
WebSocket route: real-time alert stream.

Protocol (``/ws/alerts``):

    client → {"lastVersions": {"ALR-…": 2, ...}}     optional, first frame
    server → {"kind": "snapshot", "alerts": [...]}   catch-up batch
    server → {"kind": "created" | "resolved", "alert": {...}}   live, forever

If no hello arrives within ``RESYNC_HELLO_TIMEOUT`` seconds the observer
gets a full snapshot. After a forced resync (slow consumer) the server sends
another snapshot frame. Each connection is a new session; reconnecting
observers resend the versions they retained.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from alerthub.app.alerts.resync import parse_last_versions
from alerthub.app.alerts.service import AlertService
from alerthub.app.core.config import settings
from alerthub.app.core.errors import DeliveryFailure, StoreUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(tags=["stream"])

_DISCONNECTED = object()


async def _read_hello(websocket: WebSocket) -> Any:
    """First client frame → known versions, ``None`` for full snapshot."""
    try:
        message = await asyncio.wait_for(
            websocket.receive_json(), timeout=settings.RESYNC_HELLO_TIMEOUT,
        )
    except asyncio.TimeoutError:
        return None
    except WebSocketDisconnect:
        return _DISCONNECTED
    except (ValueError, KeyError):
        logger.debug("Ignoring malformed hello frame")
        return None
    return parse_last_versions(message if isinstance(message, dict) else None)


async def _until_disconnect(websocket: WebSocket) -> None:
    """Consume (and ignore) client frames until the socket closes."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/alerts")
async def alert_stream(websocket: WebSocket):
    service: AlertService = websocket.app.state.alert_service
    await websocket.accept()

    hello = await _read_hello(websocket)
    if hello is _DISCONNECTED:
        return
    last_versions: Optional[Dict[str, int]] = hello

    session = service.broadcaster.open_session()
    logger.info(
        "Observer connected: session %s (%d known versions)",
        session.session_id, len(last_versions or {}),
        extra={"session_id": session.session_id},
    )

    async def send(payload: Dict[str, Any]) -> None:
        await websocket.send_text(json.dumps(payload))

    pump = asyncio.create_task(service.resync.run(session, send, last_versions))
    listener = asyncio.create_task(_until_disconnect(websocket))
    close_code = 1000

    try:
        done, _ = await asyncio.wait({pump, listener}, return_when=asyncio.FIRST_COMPLETED)
        if pump in done and not pump.cancelled():
            exc = pump.exception()
            if isinstance(exc, DeliveryFailure):
                logger.info("Session %s delivery failed: %s", session.session_id, exc.reason)
            elif isinstance(exc, StoreUnavailable):
                logger.warning("Session %s resync aborted: %s", session.session_id, exc.message)
                close_code = 1011
            elif exc is not None:
                logger.error("Session %s stream error: %s", session.session_id, exc, exc_info=exc)
                close_code = 1011
    finally:
        service.broadcaster.unsubscribe(session)
        for task in (pump, listener):
            task.cancel()
        await asyncio.gather(pump, listener, return_exceptions=True)
        if websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close(code=close_code)
            except RuntimeError:
                pass
        logger.info(
            "Observer disconnected: session %s", session.session_id,
            extra={"session_id": session.session_id},
        )
