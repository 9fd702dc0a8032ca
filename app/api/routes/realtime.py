# app/api/routes/realtime.py
import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from app.api.dependencies.services import get_ws_attendance_service
from app.services.attendance_service import AttendanceService
from app.services.fanout import STATISTICS_CHANNEL, meeting_channel

router = APIRouter(prefix="/ws", tags=["realtime"])

logger = logging.getLogger(__name__)


async def _forward(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _receive(websocket: WebSocket) -> None:
    """
    Answer pings until the client goes away.
    """
    while True:
        message = await websocket.receive_json()
        if isinstance(message, dict) and message.get("type") == "ping":
            await websocket.send_json(
                {"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()}
            )


async def _serve(websocket: WebSocket, service: AttendanceService, channel: str) -> None:
    await websocket.accept()
    queue = service.subscribe(channel)
    await websocket.send_json({"type": "connection_ack", "channel": channel})

    tasks = [
        asyncio.create_task(_forward(websocket, queue)),
        asyncio.create_task(_receive(websocket)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("WebSocket on %s closed with error: %s", channel, exc)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        service.unsubscribe(channel, queue)
        logger.debug("WebSocket unsubscribed from %s", channel)


@router.websocket("/meetings/{meeting_id}")
async def meeting_socket(
    websocket: WebSocket,
    meeting_id: str,
    service: AttendanceService = Depends(get_ws_attendance_service),
) -> None:
    """
    Streams sessionJoined, sessionLeft, attendanceUpdated,
    attendanceStatistics and tracking events of one meeting.
    """
    await _serve(websocket, service, meeting_channel(meeting_id))


@router.websocket("/statistics")
async def statistics_socket(
    websocket: WebSocket,
    service: AttendanceService = Depends(get_ws_attendance_service),
) -> None:
    """
    Streams attendanceStatistics for every meeting.
    """
    await _serve(websocket, service, STATISTICS_CHANNEL)
