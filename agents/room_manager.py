"""
Room Session Manager — the only way into a room.

Owns the keyed store of rooms (code → GameMaster) and exposes:
  inbound   create_room / join / connect / leave / disconnect / dispatch
  outbound  add_listener — every event a room emits, in order

Every call that touches a room takes that room's lock, so for one room the
N-th accepted action is always applied after the (N-1)-th; different rooms
never wait on each other. Rejections come back as ActionResult values and
are never broadcast.

Presence rules:
  - Leaving in the lobby removes the player; leaving mid-game only marks them
    disconnected so their score survives a rejoin.
  - The host role moves to the earliest-joined connected human.
  - A room without connected humans is torn down after a grace period.
"""
import logging
import random
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from agents.game_master import GameMaster
from config import settings
from models.game import (
    ActionRejected, ActionResult, GameSettings, Phase, Player, RejectReason, Room,
)
from services.question_bank import QuestionBank, get_question_bank
from services.timers import TimerCoordinator, now_ms, timers as default_timers

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any], Optional[List[str]]], Awaitable[None]]

BOT_NAMES = ["Ada", "Bolt", "Cosmo", "Dot", "Echo", "Fizz", "Gizmo", "Hex", "Iris", "Jinx", "Koda", "Luma"]


class RoomManager:
    def __init__(
        self,
        timers: Optional[TimerCoordinator] = None,
        bank: Optional[QuestionBank] = None,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
    ):
        self.timers = timers or default_timers
        self.clock = clock
        self.rng = rng or random.Random()
        self._bank = bank
        self._rooms: Dict[str, GameMaster] = {}
        self._listeners: List[Listener] = []

    @property
    def bank(self) -> QuestionBank:
        return self._bank or get_question_bank()

    # ── Listeners ─────────────────────────────────────────────────────────────

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    async def _deliver(self, code: str, event: Dict[str, Any], to: Optional[List[str]]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(code, event, to)
            except Exception:
                logger.exception("[%s] Listener failed on %s", code, event.get("type"))

    # ── Lookups ───────────────────────────────────────────────────────────────

    def get_master(self, code: str) -> Optional[GameMaster]:
        return self._rooms.get(code.upper())

    def get_room(self, code: str) -> Optional[Room]:
        gm = self.get_master(code)
        return gm.room if gm else None

    def snapshot(self, code: str) -> Optional[Dict[str, Any]]:
        gm = self.get_master(code)
        return gm.snapshot() if gm else None

    def room_codes(self) -> List[str]:
        return list(self._rooms)

    def _require(self, code: str) -> GameMaster:
        gm = self.get_master(code)
        if gm is None or gm.closed:
            raise ActionRejected(RejectReason.UNKNOWN_ROOM, f"Room {code} not found")
        return gm

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def _new_code(self) -> str:
        while True:
            code = "".join(self.rng.choice(settings.room_code_chars) for _ in range(settings.room_code_length))
            if code not in self._rooms:
                return code

    async def create_room(self, game_settings: Optional[Dict[str, Any]] = None) -> str:
        """Create an empty room. Raises ActionRejected(invalid_settings)."""
        room_settings = GameSettings().merge(game_settings) if game_settings else GameSettings()
        code = self._new_code()
        gm = GameMaster(
            Room(code=code, settings=room_settings),
            self.bank,
            self.timers,
            self._deliver,
            clock=self.clock,
            rng=random.Random(self.rng.getrandbits(64)),
            on_close=self._forget,
        )
        self._rooms[code] = gm
        # Torn down unless somebody joins within the grace period
        self._schedule_teardown(gm)
        logger.info("[%s] Room created", code)
        return code

    def _forget(self, code: str) -> None:
        self._rooms.pop(code, None)

    def _schedule_teardown(self, gm: GameMaster) -> None:
        async def teardown() -> None:
            async with gm.lock:
                if gm.closed or gm.room.connected_humans():
                    return
                gm.close("empty")
                await gm.flush()

        self.timers.schedule(f"{gm.code}:teardown", settings.empty_room_cleanup_ms, teardown)

    def shutdown(self) -> None:
        for code, gm in list(self._rooms.items()):
            gm.closed = True
            self.timers.cancel_all(f"{code}:")
        self._rooms.clear()

    clear = shutdown

    # ── Membership ────────────────────────────────────────────────────────────

    async def join(
        self,
        code: str,
        name: Optional[str],
        avatar: str = "",
        player_id: Optional[str] = None,
        is_bot: bool = False,
    ) -> str:
        """
        Join (or rejoin with a known player_id) and return the player id.
        Raises ActionRejected for unknown_room / game_in_progress / room_full / name_taken.
        """
        gm = self._require(code)
        async with gm.lock:
            try:
                return self._join_locked(gm, name, avatar, player_id, is_bot)
            finally:
                await gm.flush()

    def _join_locked(self, gm: GameMaster, name: Optional[str], avatar: str, player_id: Optional[str], is_bot: bool) -> str:
        room = gm.room
        if gm.closed:
            raise ActionRejected(RejectReason.UNKNOWN_ROOM, f"Room {room.code} not found")
        if player_id:
            existing = room.get_player(player_id)
            if existing is not None:
                self._reconnect_locked(gm, existing)
                return existing.id

        if room.phase != Phase.LOBBY:
            raise ActionRejected(RejectReason.GAME_IN_PROGRESS, "The game has already started")
        if len(room.players) >= settings.max_players:
            raise ActionRejected(RejectReason.ROOM_FULL, f"Room is full ({settings.max_players} players)")
        name = (name or "").strip() or (self._bot_name(room) if is_bot else "")
        if not name:
            raise ActionRejected(RejectReason.INVALID_PAYLOAD, "A name is required")
        if any(p.name.lower() == name.lower() for p in room.players):
            raise ActionRejected(RejectReason.NAME_TAKEN, f"{name} is already taken")

        player = Player(
            id=str(uuid.uuid4()),
            name=name,
            avatar=avatar,
            is_bot=is_bot,
            join_seq=room.next_join_seq,
        )
        room.next_join_seq += 1
        room.players.append(player)
        if not is_bot:
            self.timers.cancel(f"{room.code}:teardown")
        self._ensure_host(gm)
        gm.emit("player_joined", player=player.to_public(), hostId=room.host_id)
        gm.emit_room_update()
        logger.info("[%s] %s joined as %s%s", room.code, name, player.id, " (bot)" if is_bot else "")
        return player.id

    def _bot_name(self, room: Room) -> str:
        taken = {p.name.lower() for p in room.players}
        for candidate in BOT_NAMES:
            if candidate.lower() not in taken:
                return candidate
        return f"Bot {room.next_join_seq + 1}"

    async def add_bot(self, code: str, name: Optional[str] = None) -> Player:
        player_id = await self.join(code, name, avatar="🤖", is_bot=True)
        return self.get_room(code).get_player(player_id)

    async def connect(self, code: str, player_id: str) -> Player:
        """A known player (re)opened their connection."""
        gm = self._require(code)
        async with gm.lock:
            player = gm.room.get_player(player_id)
            if player is None:
                raise ActionRejected(RejectReason.UNKNOWN_PLAYER, "Player not found in this room")
            self._reconnect_locked(gm, player)
            await gm.flush()
            return player

    def _reconnect_locked(self, gm: GameMaster, player: Player) -> None:
        was_connected = player.connected
        player.connected = True
        if not player.is_bot:
            self.timers.cancel(f"{gm.code}:teardown")
        self._ensure_host(gm)
        if not was_connected:
            gm.emit("player_reconnected", playerId=player.id, name=player.name)
            gm.emit_room_update()
            logger.info("[%s] %s reconnected (score %d)", gm.code, player.id, player.score)

    async def leave(self, code: str, player_id: str) -> ActionResult:
        gm = self.get_master(code)
        if gm is None or gm.closed:
            return ActionResult.rejected(RejectReason.UNKNOWN_ROOM)
        async with gm.lock:
            player = gm.room.get_player(player_id)
            if player is None:
                return ActionResult.rejected(RejectReason.UNKNOWN_PLAYER)
            removed = gm.room.phase == Phase.LOBBY
            if removed:
                gm.room.players.remove(player)
                gm.room.stats.pop(player.id, None)
            else:
                player.connected = False
            gm.emit("player_left", playerId=player.id, name=player.name, removed=removed, reason="left")
            logger.info("[%s] %s left (%s)", gm.code, player.id, "removed" if removed else "kept as disconnected")
            self._after_presence_change(gm, player.id)
            await gm.flush()
        return ActionResult.accepted({"removed": removed})

    async def disconnect(self, code: str, player_id: str) -> None:
        gm = self.get_master(code)
        if gm is None or gm.closed:
            return
        async with gm.lock:
            player = gm.room.get_player(player_id)
            if player is None or not player.connected:
                return
            player.connected = False
            gm.emit("player_left", playerId=player.id, name=player.name, removed=False, reason="disconnected")
            logger.info("[%s] %s disconnected", gm.code, player.id)
            self._after_presence_change(gm, player.id)
            await gm.flush()

    def _after_presence_change(self, gm: GameMaster, player_id: str) -> None:
        self._ensure_host(gm)
        gm.emit_room_update()
        gm.on_player_disconnected(player_id)
        if not gm.closed and not gm.room.connected_humans():
            self._schedule_teardown(gm)

    def _ensure_host(self, gm: GameMaster) -> None:
        """Keep the host role on a connected human, earliest join first."""
        room = gm.room
        host = room.get_player(room.host_id) if room.host_id else None
        if host is not None and host.connected and not host.is_bot:
            return
        humans = sorted(room.connected_humans(), key=lambda p: p.join_seq)
        if humans:
            new_host = humans[0].id
        elif host is None:
            new_host = None
        else:
            return
        if new_host != room.host_id:
            room.host_id = new_host
            if new_host:
                gm.emit("host_changed", hostId=new_host)
                logger.info("[%s] Host is now %s", room.code, new_host)

    # ── Actions ───────────────────────────────────────────────────────────────

    async def dispatch(
        self, code: str, player_id: str, action: str, data: Optional[Dict[str, Any]] = None
    ) -> ActionResult:
        """Apply one inbound action; always returns, never raises."""
        if action == "leave":
            return await self.leave(code, player_id)
        gm = self.get_master(code)
        if gm is None or gm.closed:
            return ActionResult.rejected(RejectReason.UNKNOWN_ROOM)
        async with gm.lock:
            if gm.closed:
                return ActionResult.rejected(RejectReason.UNKNOWN_ROOM)
            try:
                result = ActionResult.accepted(gm.handle_action(player_id, action, data if data is not None else {}))
            except ActionRejected as exc:
                # Wrong phase, lost races and bad payloads are routine traffic
                logger.debug("[%s] %s from %s rejected: %s (%s)", code, action, player_id, exc.reason.value, exc.message)
                gm.discard_outbox()
                result = ActionResult.rejected(exc.reason, exc.message)
            except Exception:
                logger.exception("[%s] Error handling %s from %s", code, action, player_id)
                result = ActionResult.rejected(RejectReason.INTERNAL_ERROR, "Internal server error")
            await gm.flush()
        return result


# Module-level singleton shared by the routers and the bot simulator
room_manager = RoomManager()
