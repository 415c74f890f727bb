"""
Bot Simulator — plays for the bot players in every room.

Bots are ordinary players as far as the game is concerned: the simulator
listens to room events and, after a human-like random delay, submits the same
actions a client would through RoomManager.dispatch. Each planned action is a
timer keyed "{code}:bot:{bot_id}:{intent}". It is dropped if, by the time it
fires, the room has moved on from the phase epoch or the question, duel round,
reroll or list turn it was planned for.

Listeners run while the room lock is held, so nothing here dispatches
directly; every action goes through a timer.
"""
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from agents.room_manager import RoomManager, room_manager
from config import settings
from models.game import (
    CollectiveListState, DiceRoyaleState, HotButtonState, LosersPickState, Phase,
    Player, QuestionType, RPSChoice, RPSDuelState, VotingState,
)
from services.timers import TimerCoordinator, timers as default_timers

logger = logging.getLogger(__name__)

WRONG_BUZZER_ANSWER = "no idea"


@dataclass
class BotPolicy:
    accuracy: float = 0.6
    min_delay_ms: int = 1000
    max_delay_ms: int = 4000

    @classmethod
    def default(cls) -> "BotPolicy":
        return cls(
            accuracy=settings.bot_accuracy,
            min_delay_ms=settings.bot_min_delay_ms,
            max_delay_ms=settings.bot_max_delay_ms,
        )


class BotSimulator:
    def __init__(
        self,
        rooms: RoomManager,
        timers: Optional[TimerCoordinator] = None,
        rng: Optional[random.Random] = None,
    ):
        self.rooms = rooms
        self.timers = timers or default_timers
        self.rng = rng or random.Random()
        self._policies: Dict[Tuple[str, str], BotPolicy] = {}
        rooms.add_listener(self.on_event)

    def add_bot(self, code: str, player_id: str, policy: Optional[BotPolicy] = None) -> None:
        self._policies[(code.upper(), player_id)] = policy or BotPolicy.default()

    def policy(self, code: str, player_id: str) -> BotPolicy:
        return self._policies.get((code, player_id)) or BotPolicy.default()

    def _bots(self, code: str, ids: Optional[List[str]] = None) -> List[Player]:
        room = self.rooms.get_room(code)
        if room is None:
            return []
        bots = [p for p in room.players if p.is_bot and p.connected]
        if ids is not None:
            bots = [p for p in bots if p.id in ids]
        return bots

    # ── Scheduling ────────────────────────────────────────────────────────────

    def _plan(
        self,
        code: str,
        bot_id: str,
        intent: str,
        action: str,
        data: Dict[str, Any],
        extra_delay_ms: int = 0,
    ) -> None:
        gm = self.rooms.get_master(code)
        if gm is None:
            return
        planned_in = _sub_phase_token(gm.room.epoch, gm.room.sub_engine)
        policy = self.policy(code, bot_id)
        delay = self.rng.randint(policy.min_delay_ms, max(policy.min_delay_ms, policy.max_delay_ms)) + extra_delay_ms

        async def act() -> None:
            current = self.rooms.get_master(code)
            if current is None or current.closed:
                return
            if _sub_phase_token(current.room.epoch, current.room.sub_engine) != planned_in:
                logger.debug("[%s] Dropping stale %s for bot %s", code, intent, bot_id)
                return
            result = await self.rooms.dispatch(code, bot_id, action, data)
            if not result.ok:
                logger.debug("[%s] Bot %s %s rejected: %s", code, bot_id, action, result.reason.value)

        self.timers.schedule(f"{code}:bot:{bot_id}:{intent}", delay, act)

    # ── Event handling ────────────────────────────────────────────────────────

    async def on_event(self, code: str, event: Dict[str, Any], to: Optional[List[str]]) -> None:
        kind = event.get("type")
        if kind == "room_closed":
            self.timers.cancel_all(f"{code}:bot:")
            for key in [k for k in self._policies if k[0] == code]:
                self._policies.pop(key, None)
            return
        if kind == "player_left" and event.get("removed"):
            self.timers.cancel_all(f"{code}:bot:{event.get('playerId')}:")
            self._policies.pop((code, event.get("playerId")), None)
            return

        gm = self.rooms.get_master(code)
        if gm is None or not self._bots(code):
            return
        if kind == "phase_changed":
            self.timers.cancel_all(f"{code}:bot:")
            # Several transitions can share one flush; only the latest one matters
            if event.get("epoch") == gm.room.epoch:
                self._on_phase(code, gm.room.phase, gm.room.sub_engine)
        elif kind == "dice_tie":
            for bot in self._bots(code, event.get("tiedIds")):
                self._plan(code, bot.id, "dice", "dice_roll", {}, extra_delay_ms=settings.dice_result_ms)
        elif kind == "rps_round_started":
            for bot in self._bots(code, [event.get("player1Id"), event.get("player2Id")]):
                choice = self.rng.choice(list(RPSChoice))
                self._plan(code, bot.id, "rps", "rps_choice", {"choice": choice.value})
        elif kind == "category_pick_window":
            for bot in self._bots(code, [event.get("playerId")]):
                pick = self.rng.choice(event.get("candidates") or [{}])
                self._plan(code, bot.id, "pick", "pick_category", {"categoryId": pick.get("id")})
        elif kind == "buzzer_open":
            self._on_buzzer_open(code, event)
        elif kind == "buzz_won":
            self._on_buzz_won(code, event.get("playerId"))
        elif kind == "collective_list_turn":
            self._on_list_turn(code, event.get("playerId"))

    def _on_phase(self, code: str, phase: Phase, state: Any) -> None:
        gm = self.rooms.get_master(code)
        if phase == Phase.CATEGORY_VOTING and isinstance(state, VotingState):
            for bot in self._bots(code, state.eligible_ids):
                category = self.rng.choice(state.candidates)
                self._plan(code, bot.id, "vote", "vote_category", {"categoryId": category.id})
        elif phase == Phase.CATEGORY_LOSERS_PICK and isinstance(state, LosersPickState):
            for bot in self._bots(code, [state.picker_id]):
                category = self.rng.choice(state.candidates)
                self._plan(code, bot.id, "pick", "loser_pick_category", {"categoryId": category.id})
        elif phase == Phase.CATEGORY_DICE_ROYALE and isinstance(state, DiceRoyaleState):
            for bot in self._bots(code, list(state.rolls)):
                if state.can_roll(bot.id):
                    self._plan(code, bot.id, "dice", "dice_roll", {})
        elif phase == Phase.QUESTION:
            question = gm.room.current_question
            for bot in self._bots(code):
                if self.rng.random() < self.policy(code, bot.id).accuracy:
                    index = question.correct_index
                else:
                    wrong = [i for i in range(len(question.answers)) if i != question.correct_index]
                    index = self.rng.choice(wrong or [0])
                self._plan(code, bot.id, "answer", "submit_answer", {"answerIndex": index})
        elif phase == Phase.ESTIMATION:
            question = gm.room.current_question
            if question.type != QuestionType.ESTIMATION:
                return
            for bot in self._bots(code):
                # Better bots guess closer to the truth
                spread = 0.05 + (1 - self.policy(code, bot.id).accuracy) * 0.5
                guess = question.correct_value * (1 + self.rng.uniform(-spread, spread))
                self._plan(code, bot.id, "answer", "submit_estimation", {"value": round(guess, 2)})
        elif phase == Phase.REMATCH_VOTING:
            for bot in self._bots(code):
                self._plan(code, bot.id, "rematch", "vote_rematch", {"vote": "yes"})

    def _on_buzzer_open(self, code: str, event: Dict[str, Any]) -> None:
        attempted = set(event.get("attemptedIds") or [])
        for bot in self._bots(code):
            self.timers.cancel(f"{code}:bot:{bot.id}:buzz")
            if bot.id in attempted:
                continue
            # Bots that don't know the answer usually keep their hands off the buzzer
            if self.rng.random() < self.policy(code, bot.id).accuracy:
                self._plan(code, bot.id, "buzz", "buzz", {})

    def _on_buzz_won(self, code: str, player_id: Optional[str]) -> None:
        gm = self.rooms.get_master(code)
        state = gm.room.sub_engine
        if not isinstance(state, HotButtonState) or state.current_question is None:
            return
        for bot in self._bots(code, [player_id]):
            if self.rng.random() < self.policy(code, bot.id).accuracy:
                text = state.current_question.answer
            else:
                text = WRONG_BUZZER_ANSWER
            self._plan(code, bot.id, "buzz_answer", "submit_buzzer_answer", {"text": text})

    def _on_list_turn(self, code: str, player_id: Optional[str]) -> None:
        gm = self.rooms.get_master(code)
        state = gm.room.sub_engine
        if not isinstance(state, CollectiveListState):
            return
        for bot in self._bots(code, [player_id]):
            open_items = [item for item in state.items if item.claimed_by is None]
            if open_items and self.rng.random() < self.policy(code, bot.id).accuracy:
                self._plan(code, bot.id, "list", "collective_list_submit", {"text": self.rng.choice(open_items).display})
            else:
                self._plan(code, bot.id, "list", "collective_list_skip", {})


def _sub_phase_token(epoch: int, state: Any) -> Tuple[Any, ...]:
    """Where the room stands inside a phase; a bot intent only fires at the same spot."""
    if isinstance(state, HotButtonState):
        return epoch, state.question_index, len(state.attempted_ids)
    if isinstance(state, RPSDuelState):
        return epoch, state.round_no
    if isinstance(state, DiceRoyaleState):
        return epoch, state.reroll_round
    if isinstance(state, CollectiveListState):
        return epoch, state.turn_number
    return (epoch,)


# Module-level singleton, registered with the shared room manager
bot_simulator = BotSimulator(room_manager)
