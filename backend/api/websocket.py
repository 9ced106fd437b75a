"""WebSocket handler for live event streaming.

Clients connect to ``/ws/{stream_id}`` with a conversation session id or a
tournament id and receive that stream's events: first the stored history,
then live events until the stream is closed (conversation finalized or
expired) or the client disconnects.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events.types import EventType

if TYPE_CHECKING:
    from events.bus import EventBus

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_event_bus: "EventBus | None" = None


def set_event_bus(event_bus: "EventBus") -> None:
    """Set the event bus streamed by the WebSocket handler."""
    global _event_bus
    _event_bus = event_bus
    logger.info("websocket_event_bus_configured")


def get_event_bus() -> "EventBus":
    """Return the configured event bus."""
    if _event_bus is None:
        raise RuntimeError(
            "EventBus not configured for WebSocket handlers. Call set_event_bus() during startup."
        )
    return _event_bus


@websocket_router.websocket("/ws/{stream_id}")
async def websocket_endpoint(websocket: WebSocket, stream_id: str) -> None:
    """WebSocket endpoint for real-time event streaming.

    - Server -> Client: escalation events (history replay, then live)
    - Client -> Server: ``{"type": "ping"}`` answered with a pong

    Args:
        websocket: The WebSocket connection.
        stream_id: Conversation session id or tournament id.
    """
    await websocket.accept()
    logger.info("websocket_connected", stream_id=stream_id)

    event_bus = get_event_bus()
    # The subscription queue is pre-filled with the stream's history.
    queue = event_bus.subscribe(stream_id)

    async def send_events() -> None:
        try:
            while True:
                event = await queue.get()
                if event.type == EventType.SESSION_CLOSED:
                    logger.info("session_closed_sentinel", stream_id=stream_id)
                    await websocket.send_json(event.model_dump(mode="json"))
                    break
                await websocket.send_json(event.model_dump(mode="json"))
        except WebSocketDisconnect:
            logger.info("websocket_disconnect_during_send", stream_id=stream_id)
        except Exception as e:
            logger.error("websocket_send_error", stream_id=stream_id, error=str(e))

    async def receive_commands() -> None:
        try:
            while True:
                data = await websocket.receive_json()
                if not isinstance(data, dict):
                    logger.warning("invalid_ws_message", stream_id=stream_id)
                    continue
                if data.get("type") == "ping":
                    await websocket.send_json(
                        {"type": "pong", "timestamp": data.get("timestamp")}
                    )
                else:
                    logger.warning(
                        "unknown_command",
                        stream_id=stream_id,
                        command_type=data.get("type"),
                    )
        except WebSocketDisconnect:
            logger.info("websocket_disconnect_during_receive", stream_id=stream_id)
        except Exception as e:
            logger.error("websocket_receive_error", stream_id=stream_id, error=str(e))

    try:
        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Either side finishing (close sentinel or disconnect) ends the stream.
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    finally:
        event_bus.unsubscribe(stream_id, queue)
        with contextlib.suppress(Exception):
            await websocket.close()
        logger.info("websocket_cleanup_complete", stream_id=stream_id)
