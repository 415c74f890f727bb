"""
WebSocket Hub — real-time multiplayer connection management.

URL: /ws/{room_code}?playerId={player_id}

Connection flow:
  1. Validate room + player exist (close 4404 / 4403 otherwise)
  2. Accept, register the socket and mark the player connected
  3. Send a private "connected" message with the room snapshot
  4. Message loop: every frame is {type, data}; anything but "ping" is an
     action for the Room Session Manager
  5. On disconnect: unregister and mark the player disconnected

Outbound events reach the sockets through `deliver`, which is registered as a
listener on the Room Session Manager. Rejections go back to the actor only.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from agents.room_manager import room_manager
from models.game import ActionRejected

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


class ConnectionManager:
    """
    Tracks active WebSocket connections per room.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        # {room_code: {player_id: WebSocket}}
        self._rooms: Dict[str, Dict[str, WebSocket]] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, code: str, player_id: str, ws: WebSocket) -> None:
        await ws.accept()
        previous = self._rooms.setdefault(code, {}).get(player_id)
        self._rooms[code][player_id] = ws
        if previous is not None and previous is not ws:
            # Same player opened a second tab; the newest socket wins
            try:
                await previous.close(code=4409, reason="Replaced by a newer connection")
            except Exception:
                logger.debug("[%s] Old socket for %s already closed", code, player_id)
        logger.debug("[%s] %s connected (%d total)", code, player_id, self.count(code))

    def disconnect(self, code: str, player_id: str, ws: Optional[WebSocket] = None) -> bool:
        """Unregister a socket; with `ws`, only if it is still the registered one."""
        room_conns = self._rooms.get(code, {})
        if ws is not None and room_conns.get(player_id) is not ws:
            return False
        removed = room_conns.pop(player_id, None) is not None
        if not room_conns:
            self._rooms.pop(code, None)
        return removed

    def count(self, code: str) -> int:
        return len(self._rooms.get(code, {}))

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send_to(self, code: str, player_id: str, message: Dict) -> None:
        """Send a private message to a single player."""
        ws = self._rooms.get(code, {}).get(player_id)
        if ws:
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning("[%s] send_to %s failed: %s", code, player_id, exc)
                self.disconnect(code, player_id)

    async def broadcast(self, code: str, message: Dict, exclude: Optional[str] = None) -> None:
        """Broadcast a message to all connected players in a room."""
        for pid, ws in list(self._rooms.get(code, {}).items()):
            if pid == exclude:
                continue
            try:
                await ws.send_json(message)
            except Exception as exc:
                logger.warning("[%s] broadcast to %s failed: %s", code, pid, exc)
                self.disconnect(code, pid)

    async def close_room(self, code: str, reason: str) -> None:
        for pid, ws in list(self._rooms.pop(code, {}).items()):
            try:
                await ws.close(code=1000, reason=reason)
            except Exception:
                logger.debug("[%s] Socket for %s already closed", code, pid)

    # ── Room Session Manager listener ─────────────────────────────────────────

    async def deliver(self, code: str, event: Dict[str, Any], to: Optional[List[str]]) -> None:
        if to is None:
            await self.broadcast(code, event)
        else:
            for pid in to:
                await self.send_to(code, pid, event)
        if event.get("type") == "room_closed":
            await self.close_room(code, event.get("reason", "closed"))


manager = ConnectionManager()
room_manager.add_listener(manager.deliver)


# ── WebSocket endpoint ────────────────────────────────────────────────────────

@router.websocket("/ws/{room_code}")
async def websocket_endpoint(
    ws: WebSocket,
    room_code: str,
    playerId: str = Query(..., description="Player UUID from the create/join response"),
):
    code = room_code.upper()

    # ── Validate room and player ───────────────────────────────────────────────
    room = room_manager.get_room(code)
    if room is None:
        await ws.close(code=4404, reason="Room not found")
        return
    if room.get_player(playerId) is None:
        await ws.close(code=4403, reason="Player not found in this room")
        return

    # ── Accept and register ────────────────────────────────────────────────────
    await manager.connect(code, playerId, ws)
    try:
        await room_manager.connect(code, playerId)
    except ActionRejected as exc:
        # Room closed or player removed between validation and accept
        manager.disconnect(code, playerId, ws)
        await ws.close(code=4404, reason=exc.message)
        return

    await manager.send_to(code, playerId, {
        "type": "connected",
        "playerId": playerId,
        "room": room_manager.snapshot(code),
    })

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send_to(code, playerId, {
                    "type": "error",
                    "message": "Invalid JSON",
                    "code": "PARSE_ERROR",
                })
                continue
            if not isinstance(data, dict):
                await manager.send_to(code, playerId, {
                    "type": "error",
                    "message": "Frames must be JSON objects",
                    "code": "PARSE_ERROR",
                })
                continue

            msg_type = data.get("type", "")
            # Frontend sends { type, data: { ... } }; unwrap inner payload for handlers
            inner_data = data.get("data") if isinstance(data.get("data"), dict) else {}
            await _handle_message(code, playerId, msg_type, inner_data)

    except WebSocketDisconnect:
        pass
    finally:
        # A socket replaced by a newer tab must not mark the player offline
        if manager.disconnect(code, playerId, ws):
            await room_manager.disconnect(code, playerId)


# ── Message dispatcher ─────────────────────────────────────────────────────────

async def _handle_message(code: str, player_id: str, msg_type: str, data: Dict) -> None:
    try:
        await _dispatch_message(code, player_id, msg_type, data)
    except WebSocketDisconnect:
        raise
    except Exception:
        logger.exception("[%s] Unhandled error in _handle_message (type=%s)", code, msg_type)
        await manager.send_to(code, player_id, {
            "type": "error", "message": "Internal server error", "code": "SERVER_ERROR",
        })


async def _dispatch_message(code: str, player_id: str, msg_type: str, data: Dict) -> None:
    if msg_type == "ping":
        await manager.send_to(code, player_id, {"type": "pong"})
        return

    result = await room_manager.dispatch(code, player_id, msg_type, data)
    if not result.ok:
        await manager.send_to(code, player_id, {
            "type": "error",
            "message": result.message,
            "code": result.reason.value.upper(),
            "action": msg_type,
        })
