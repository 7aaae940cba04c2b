import asyncio
import contextlib
import json
import time
from typing import Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from loguru import logger
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from ..db import session_scope
from ..errors import AuthError
from ..models.meeting import Meeting
from ..security import AuthUser, IdentityClient, get_identity
from ..services.progress_hub import ProgressHub
from .deps import get_hub

ws_router = APIRouter()

AUTH_TIMEOUT_SEC = 10.0
KEEPALIVE_SEC = 25
CLOSE_UNAUTHORIZED = 4401


async def _safe_send_json(ws: WebSocket, payload: Dict[str, object]) -> bool:
    """Send only while the socket is connected; False when the send was dropped."""
    if ws.application_state != WebSocketState.CONNECTED:
        logger.bind(tag="ws.conn").debug(f"safe_send drop event={payload.get('event')} state={ws.application_state}")
        return False
    try:
        await ws.send_json(payload)
        return True
    except (RuntimeError, WebSocketDisconnect) as exc:
        logger.bind(tag="ws.conn").debug(f"safe_send failed: {exc}")
        return False


async def _safe_close_ws(ws: WebSocket, code: int = 1000) -> None:
    try:
        if ws.client_state in (WebSocketState.CONNECTING, WebSocketState.CONNECTED):
            await ws.close(code=code)
    except RuntimeError as close_err:
        if "close message has been sent" not in str(close_err).lower():
            logger.bind(tag="ws.conn").debug(f"safe_close_ws skipped: {close_err}")


class WebSocketConnection:
    """Hub handle for one socket.

    ``send`` may be called from worker threads; messages go through an
    asyncio queue so a single task writes to the socket, in order.
    """

    def __init__(self, ws: WebSocket, user: AuthUser, loop: asyncio.AbstractEventLoop):
        self.ws = ws
        self.user_id = user.id
        self.email = user.email
        self.loop = loop
        self.outbox: "asyncio.Queue[Optional[dict]]" = asyncio.Queue()

    def send(self, message: dict) -> None:
        self.loop.call_soon_threadsafe(self.outbox.put_nowait, message)

    def close(self) -> None:
        self.outbox.put_nowait(None)

    async def pump(self) -> None:
        while True:
            message = await self.outbox.get()
            if message is None:
                break
            if not await _safe_send_json(self.ws, message):
                break

    async def keepalive(self, interval: int = KEEPALIVE_SEC) -> None:
        while True:
            await asyncio.sleep(interval)
            self.outbox.put_nowait({"event": "ping", "data": {"ts": time.time()}})


async def _read_handshake_token(ws: WebSocket) -> str:
    try:
        raw = await asyncio.wait_for(ws.receive_text(), timeout=AUTH_TIMEOUT_SEC)
        message = json.loads(raw)
    except (asyncio.TimeoutError, ValueError):
        return ""
    if not isinstance(message, dict) or message.get("event") != "auth":
        return ""
    data = message.get("data") or {}
    return str(data.get("token") or "") if isinstance(data, dict) else ""


def _owns_meeting(user_id: str, meeting_id: str) -> bool:
    with session_scope() as db:
        return (
            db.query(Meeting.id)
            .filter(Meeting.id == meeting_id, Meeting.user_id == user_id)
            .first()
            is not None
        )


@ws_router.websocket("/ws")
async def ws_progress(
    ws: WebSocket,
    identity: IdentityClient = Depends(get_identity),
    hub: ProgressHub = Depends(get_hub),
):
    await ws.accept()
    try:
        token = ws.query_params.get("token") or await _read_handshake_token(ws)
    except WebSocketDisconnect:
        return

    try:
        user = await run_in_threadpool(identity.verify, token)
    except AuthError as exc:
        await _safe_send_json(ws, {"event": "error", "data": {"message": exc.message}})
        await _safe_close_ws(ws, code=CLOSE_UNAUTHORIZED)
        return

    conn = WebSocketConnection(ws, user, asyncio.get_running_loop())
    hub.register(conn, user.id)
    conn.send({"event": "connected", "data": {"userId": user.id}})
    pump_task = asyncio.create_task(conn.pump())
    keepalive_task = asyncio.create_task(conn.keepalive())
    log = logger.bind(tag="ws.conn", user=user.id)
    log.info(f"user connected: {user.email} ({user.id})")

    try:
        while True:
            raw = await ws.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                log.debug("ignoring non-JSON message")
                continue
            if not isinstance(message, dict):
                continue
            event = message.get("event")
            meeting_id = message.get("data")
            if event == "subscribe-meeting" and isinstance(meeting_id, str) and meeting_id:
                if await run_in_threadpool(_owns_meeting, user.id, meeting_id):
                    hub.subscribe_meeting(conn, meeting_id)
                    conn.send({"event": "subscribed", "data": meeting_id})
                else:
                    conn.send({"event": "error", "data": {"message": "Meeting not found", "meetingId": meeting_id}})
            elif event == "unsubscribe-meeting" and isinstance(meeting_id, str) and meeting_id:
                hub.unsubscribe_meeting(conn, meeting_id)
                conn.send({"event": "unsubscribed", "data": meeting_id})
            elif event in ("ping", "pong"):
                continue
            else:
                log.debug(f"unknown event {event!r}")
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(conn)
        keepalive_task.cancel()
        conn.close()
        with contextlib.suppress(asyncio.CancelledError):
            await keepalive_task
        with contextlib.suppress(Exception):
            await asyncio.wait_for(pump_task, timeout=2.0)
        await _safe_close_ws(ws)
        log.info(f"user disconnected: {user.email} ({user.id})")
