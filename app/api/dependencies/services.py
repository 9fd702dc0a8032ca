# app/api/dependencies/services.py
from fastapi import Request, WebSocket

from app.services.attendance_service import AttendanceService


def get_attendance_service(request: Request) -> AttendanceService:
    """
    The AttendanceService built by the application factory.
    """
    return request.app.state.attendance_service


def get_ws_attendance_service(websocket: WebSocket) -> AttendanceService:
    return websocket.app.state.attendance_service
