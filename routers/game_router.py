"""
Room HTTP endpoints.

Routes:
  POST /api/rooms                 — Create room + register host as first player
  POST /api/rooms/{code}/join     — Player joins the lobby (or rejoins with playerId)
  GET  /api/rooms/{code}          — Public room snapshot (answers hidden until reveal)
  POST /api/rooms/{code}/bots     — Add a simulated player
  GET  /api/categories            — Categories in the question bank
"""
import logging

from fastapi import APIRouter, HTTPException

from agents.bot_simulator import BotPolicy, bot_simulator
from agents.room_manager import room_manager
from models.game import (
    ActionRejected, AddBotRequest, AddBotResponse,
    CreateRoomRequest, CreateRoomResponse,
    JoinRoomRequest, JoinRoomResponse,
    RejectReason,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["rooms"])

_CONFLICTS = {RejectReason.GAME_IN_PROGRESS, RejectReason.NAME_TAKEN, RejectReason.ROOM_FULL}


def _http_error(exc: ActionRejected) -> HTTPException:
    if exc.reason == RejectReason.UNKNOWN_ROOM:
        status = 404
    elif exc.reason in _CONFLICTS:
        status = 409
    else:
        status = 400
    return HTTPException(status_code=status, detail={"code": exc.reason.value, "message": exc.message})


@router.post("/rooms", response_model=CreateRoomResponse, status_code=201)
async def create_room(body: CreateRoomRequest):
    """Create a new room and register the host as the first player."""
    try:
        code = await room_manager.create_room(body.settings)
        player_id = await room_manager.join(code, body.host_name, avatar=body.avatar)
    except ActionRejected as exc:
        raise _http_error(exc)
    logger.info("[%s] Created by host %s (%s)", code, player_id, body.host_name)
    return CreateRoomResponse(room_code=code, player_id=player_id)


@router.post("/rooms/{code}/join", response_model=JoinRoomResponse)
async def join_room(code: str, body: JoinRoomRequest):
    """Add a player to the lobby. Rejected once the game has started, unless rejoining."""
    code = code.upper()
    try:
        player_id = await room_manager.join(code, body.player_name, avatar=body.avatar, player_id=body.player_id)
    except ActionRejected as exc:
        raise _http_error(exc)
    return JoinRoomResponse(room_code=code, player_id=player_id)


@router.get("/rooms/{code}")
async def get_room(code: str):
    """Public room state. Correct answers only appear while revealing."""
    snapshot = room_manager.snapshot(code)
    if snapshot is None:
        raise HTTPException(status_code=404, detail={"code": "unknown_room", "message": "Room not found"})
    return snapshot


@router.post("/rooms/{code}/bots", response_model=AddBotResponse, status_code=201)
async def add_bot(code: str, body: AddBotRequest):
    try:
        bot = await room_manager.add_bot(code, body.name)
    except ActionRejected as exc:
        raise _http_error(exc)
    policy = BotPolicy.default()
    if body.accuracy is not None:
        policy.accuracy = body.accuracy
    bot_simulator.add_bot(code, bot.id, policy)
    return AddBotResponse(player_id=bot.id, name=bot.name)


@router.get("/categories")
async def list_categories():
    return {"categories": [c.dump() for c in room_manager.bank.categories]}
