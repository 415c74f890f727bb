"""
Category mini-games — decide which category the next round is played in.

Five engines, one per CategoryMode:
  voting       — every eligible player casts one vote; most votes wins
  wheel        — the winning segment is fixed when the wheel is created
  losers_pick  — the lowest-scoring connected player picks
  dice_royale  — everyone rolls 2d6; ties reroll among the tied players only
  rps_duel     — two random players, first to 2 wins; winner picks

Engines are stateless. Their state lives in room.sub_engine (one tagged model
per mode); the GameMaster passes itself in as the context for emitting events,
scheduling timers and committing the selected category. Every action handler
raises ActionRejected before touching state.
"""
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from config import settings
from models.game import (
    ActionRejected, Category, CategoryMode, DiceRoyaleState, LosersPickState,
    Player, RejectReason, RPSChoice, RPSDuelState, RPSRound, VotingState, WheelState,
)

if TYPE_CHECKING:
    from agents.game_master import GameMaster

logger = logging.getLogger(__name__)

MAX_DICE_REROLL_ROUNDS = 10
RPS_WINS_NEEDED = 2
MAX_RPS_ROUNDS = 10

# choice → the choice it beats
RPS_BEATS: Dict[RPSChoice, RPSChoice] = {
    RPSChoice.ROCK: RPSChoice.SCISSORS,
    RPSChoice.SCISSORS: RPSChoice.PAPER,
    RPSChoice.PAPER: RPSChoice.ROCK,
}


# ── Pure helpers ──────────────────────────────────────────────────────────────

def resolve_votes(votes: Dict[str, str], candidates: List[Category], rng) -> Category:
    """
    Most votes wins. Ties go to the tied category whose first vote came in
    earliest (votes is insertion-ordered). No votes at all: random candidate.
    """
    if not votes:
        return rng.choice(candidates)
    tally: Dict[str, int] = {}
    for category_id in votes.values():
        tally[category_id] = tally.get(category_id, 0) + 1
    best = max(tally.values())
    leaders = {cid for cid, count in tally.items() if count == best}
    winner_id = next(cid for cid in votes.values() if cid in leaders)
    return next(c for c in candidates if c.id == winner_id)


def dice_leaders(rolls: Dict[str, Optional[List[int]]], contenders: List[str]) -> List[str]:
    """Contenders sharing the maximum sum, in contender order."""
    totals = {pid: sum(rolls[pid] or ()) for pid in contenders}
    best = max(totals.values())
    return [pid for pid in contenders if totals[pid] == best]


def rps_winner(a: RPSChoice, b: RPSChoice) -> int:
    """1 if a wins, 2 if b wins, 0 on a tie."""
    if a == b:
        return 0
    return 1 if RPS_BEATS[a] == b else 2


def choose_picker(players: List[Player]) -> Optional[Player]:
    """Lowest score among connected players; earliest join breaks ties."""
    connected = [p for p in players if p.connected]
    if not connected:
        return None
    return min(connected, key=lambda p: (p.score, p.join_seq))


def _find_candidate(candidates: List[Category], category_id: Any) -> Category:
    for c in candidates:
        if c.id == category_id:
            return c
    raise ActionRejected(RejectReason.INVALID_PAYLOAD, f"{category_id!r} is not a candidate")


# ── Base ──────────────────────────────────────────────────────────────────────

class CategoryGame:
    mode: CategoryMode
    min_players = 1
    # Rounds that must pass before the mode may be drawn again (0 = no cooldown)
    cooldown_rounds = 0

    def create(self, gm: "GameMaster") -> Optional[Any]:
        raise NotImplementedError

    def duration_ms(self) -> int:
        raise NotImplementedError

    def start(self, gm: "GameMaster", state: Any) -> None:
        raise NotImplementedError

    def handle(self, gm: "GameMaster", state: Any, player: Player, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
        raise ActionRejected(RejectReason.WRONG_PHASE, f"{action} is not accepted in {self.mode.value}")

    def check_complete(self, gm: "GameMaster", state: Any) -> None:
        """Re-evaluated when a player disconnects."""

    def random_pick(self, gm: "GameMaster", state: Any) -> None:
        category = gm.rng.choice(state.candidates)
        logger.info("[%s] %s: no pick in time, random %s", gm.room.code, self.mode.value, category.id)
        gm.select_category(category, picked_by=None)


class PickWindowGame(CategoryGame):
    """Mini-games whose winner gets a timed, exclusive category pick."""

    def open_pick_window(self, gm: "GameMaster", state: Any) -> None:
        state.stage = "pick"
        timer_end = gm.set_timer_end(settings.pick_window_ms)
        gm.emit(
            "category_pick_window",
            playerId=state.winner_id,
            candidates=[c.dump() for c in state.candidates],
            timerEnd=timer_end,
        )
        gm.schedule("pick_window", settings.pick_window_ms, self._on_pick_timeout, gm, state.winner_id)

    def _on_pick_timeout(self, gm: "GameMaster", winner_id: str) -> None:
        state = gm.room.sub_engine
        if getattr(state, "kind", None) != self.mode.value or state.stage != "pick" or state.winner_id != winner_id:
            return
        self.random_pick(gm, state)

    def pick(self, gm: "GameMaster", state: Any, player: Player, data: Dict[str, Any]) -> Dict[str, Any]:
        if state.stage != "pick":
            raise ActionRejected(RejectReason.WRONG_PHASE, "The pick window is not open")
        if player.id != state.winner_id:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "Only the winner may pick")
        category = _find_candidate(state.candidates, data.get("categoryId"))
        gm.select_category(category, picked_by=player.id)
        return {"categoryId": category.id}


# ── Voting ────────────────────────────────────────────────────────────────────

class VotingGame(CategoryGame):
    mode = CategoryMode.VOTING

    def create(self, gm: "GameMaster") -> VotingState:
        return VotingState(
            candidates=list(gm.room.candidates),
            eligible_ids=[p.id for p in gm.room.connected_players()],
        )

    def duration_ms(self) -> int:
        return settings.category_voting_ms

    def start(self, gm: "GameMaster", state: VotingState) -> None:
        gm.schedule("category_voting", settings.category_voting_ms, self._on_timeout, gm)

    def handle(self, gm, state: VotingState, player, action, data):
        if action != "vote_category":
            return super().handle(gm, state, player, action, data)
        if player.id not in state.eligible_ids:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "You joined after voting opened")
        if player.id in state.votes:
            raise ActionRejected(RejectReason.ALREADY_ACTED, "You already voted")
        category = _find_candidate(state.candidates, data.get("categoryId"))

        state.votes[player.id] = category.id
        player.has_acted = True
        gm.emit("votes_updated", votes=dict(state.votes), tally=self.tally(state))
        self.check_complete(gm, state)
        return {"categoryId": category.id}

    @staticmethod
    def tally(state: VotingState) -> Dict[str, int]:
        counts = {c.id: 0 for c in state.candidates}
        for category_id in state.votes.values():
            counts[category_id] += 1
        return counts

    def check_complete(self, gm, state: VotingState) -> None:
        for pid in state.eligible_ids:
            player = gm.room.get_player(pid)
            if pid not in state.votes and player is not None and player.connected:
                return
        self._resolve(gm, state)

    def _on_timeout(self, gm: "GameMaster") -> None:
        state = gm.room.sub_engine
        if isinstance(state, VotingState):
            self._resolve(gm, state)

    def _resolve(self, gm: "GameMaster", state: VotingState) -> None:
        category = resolve_votes(state.votes, state.candidates, gm.rng)
        logger.info("[%s] Voting result: %s (%d votes cast)", gm.room.code, category.id, len(state.votes))
        gm.select_category(category, picked_by=None)


# ── Wheel ─────────────────────────────────────────────────────────────────────

class WheelGame(CategoryGame):
    mode = CategoryMode.WHEEL

    def create(self, gm: "GameMaster") -> WheelState:
        segments = list(gm.room.candidates)[: settings.wheel_segments]
        return WheelState(candidates=segments, winning_index=gm.rng.randrange(len(segments)))

    def duration_ms(self) -> int:
        return settings.wheel_spin_ms

    def start(self, gm: "GameMaster", state: WheelState) -> None:
        gm.schedule("category_wheel", settings.wheel_spin_ms, self._on_spin_done, gm)

    def _on_spin_done(self, gm: "GameMaster") -> None:
        state = gm.room.sub_engine
        if isinstance(state, WheelState):
            gm.select_category(state.candidates[state.winning_index], picked_by=None)


# ── Loser's pick ──────────────────────────────────────────────────────────────

class LosersPickGame(CategoryGame):
    mode = CategoryMode.LOSERS_PICK
    min_players = 2
    cooldown_rounds = 2

    def create(self, gm: "GameMaster") -> Optional[LosersPickState]:
        picker = choose_picker(gm.room.players)
        if picker is None:
            return None
        return LosersPickState(candidates=list(gm.room.candidates), picker_id=picker.id)

    def duration_ms(self) -> int:
        return settings.losers_pick_ms

    def start(self, gm: "GameMaster", state: LosersPickState) -> None:
        gm.schedule("category_losers_pick", settings.losers_pick_ms, self._on_timeout, gm)

    def handle(self, gm, state: LosersPickState, player, action, data):
        if action not in ("loser_pick_category", "pick_category"):
            return super().handle(gm, state, player, action, data)
        if player.id != state.picker_id:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "Only the player in last place may pick")
        category = _find_candidate(state.candidates, data.get("categoryId"))
        gm.select_category(category, picked_by=player.id)
        return {"categoryId": category.id}

    def _on_timeout(self, gm: "GameMaster") -> None:
        state = gm.room.sub_engine
        if isinstance(state, LosersPickState):
            self.random_pick(gm, state)


# ── Dice royale ───────────────────────────────────────────────────────────────

class DiceRoyaleGame(PickWindowGame):
    mode = CategoryMode.DICE_ROYALE
    min_players = 2

    def create(self, gm: "GameMaster") -> DiceRoyaleState:
        return DiceRoyaleState(
            candidates=list(gm.room.candidates),
            rolls={p.id: None for p in gm.room.connected_players()},
        )

    def duration_ms(self) -> int:
        return settings.dice_rolling_ms

    def start(self, gm: "GameMaster", state: DiceRoyaleState) -> None:
        gm.schedule("dice_rolling", settings.dice_rolling_ms, self._on_roll_timeout, gm, state.reroll_round)

    def handle(self, gm, state: DiceRoyaleState, player, action, data):
        if action == "dice_roll":
            return self.roll(gm, state, player)
        if action in ("pick_category", "loser_pick_category"):
            return self.pick(gm, state, player, data)
        return super().handle(gm, state, player, action, data)

    def roll(self, gm: "GameMaster", state: DiceRoyaleState, player: Player) -> Dict[str, Any]:
        if state.stage != "rolling":
            raise ActionRejected(RejectReason.WRONG_PHASE, "Dice are not being rolled right now")
        if player.id not in state.rolls or (state.tied_ids and player.id not in state.tied_ids):
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "You are not in this roll")
        if not state.can_roll(player.id):
            raise ActionRejected(RejectReason.ALREADY_ACTED, "You already rolled")

        values = self._roll_pair(gm, state, player.id)
        player.has_acted = True
        if not state.pending_ids():
            self._resolve(gm, state)
        return {"values": values}

    def _roll_pair(self, gm: "GameMaster", state: DiceRoyaleState, player_id: str, auto: bool = False) -> List[int]:
        values = [gm.rng.randint(1, 6), gm.rng.randint(1, 6)]
        state.rolls[player_id] = values
        gm.emit(
            "dice_roll_result",
            playerId=player_id,
            values=values,
            total=sum(values),
            rerollRound=state.reroll_round,
            auto=auto,
        )
        return values

    def _on_roll_timeout(self, gm: "GameMaster", reroll_round: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, DiceRoyaleState) or state.stage != "rolling" or state.reroll_round != reroll_round:
            return
        for pid in state.pending_ids():
            self._roll_pair(gm, state, pid, auto=True)
        self._resolve(gm, state)

    def _resolve(self, gm: "GameMaster", state: DiceRoyaleState) -> None:
        contenders = list(state.tied_ids) or list(state.rolls)
        leaders = dice_leaders(state.rolls, contenders)
        if len(leaders) == 1:
            self._declare_winner(gm, state, leaders[0])
            return
        if state.reroll_round >= MAX_DICE_REROLL_ROUNDS:
            winner = gm.rng.choice(leaders)
            logger.info("[%s] Dice still tied after %d rerolls, random winner %s", gm.room.code, state.reroll_round, winner)
            self._declare_winner(gm, state, winner)
            return

        state.stage = "tie"
        state.tied_ids = leaders
        state.reroll_round += 1
        gm.set_timer_end(settings.dice_result_ms)
        gm.emit("dice_tie", tiedIds=list(leaders), round=state.reroll_round)
        gm.schedule("dice_tie", settings.dice_result_ms, self._start_reroll, gm, state.reroll_round)

    def _start_reroll(self, gm: "GameMaster", reroll_round: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, DiceRoyaleState) or state.stage != "tie" or state.reroll_round != reroll_round:
            return
        for pid in state.tied_ids:
            state.rolls[pid] = None
            player = gm.room.get_player(pid)
            if player:
                player.has_acted = False
        state.stage = "rolling"
        gm.set_timer_end(settings.dice_reroll_ms)
        gm.emit_room_update()
        gm.schedule("dice_rolling", settings.dice_reroll_ms, self._on_roll_timeout, gm, reroll_round)

    def _declare_winner(self, gm: "GameMaster", state: DiceRoyaleState, winner_id: str) -> None:
        state.stage = "result"
        state.winner_id = winner_id
        gm.set_timer_end(settings.dice_result_ms)
        gm.emit(
            "dice_royale_winner",
            playerId=winner_id,
            total=sum(state.rolls.get(winner_id) or ()),
            rerollRounds=state.reroll_round,
        )
        logger.info("[%s] Dice royale won by %s", gm.room.code, winner_id)
        gm.schedule("dice_result", settings.dice_result_ms, self._after_result, gm, winner_id)

    def _after_result(self, gm: "GameMaster", winner_id: str) -> None:
        state = gm.room.sub_engine
        if isinstance(state, DiceRoyaleState) and state.stage == "result" and state.winner_id == winner_id:
            self.open_pick_window(gm, state)


# ── Rock-paper-scissors duel ──────────────────────────────────────────────────

class RPSDuelGame(PickWindowGame):
    mode = CategoryMode.RPS_DUEL
    min_players = 2

    def create(self, gm: "GameMaster") -> Optional[RPSDuelState]:
        connected = gm.room.connected_players()
        if len(connected) < 2:
            return None
        first, second = gm.rng.sample(connected, 2)
        return RPSDuelState(
            candidates=list(gm.room.candidates),
            player1_id=first.id,
            player2_id=second.id,
            wins={first.id: 0, second.id: 0},
        )

    def duration_ms(self) -> int:
        return settings.rps_round_ms

    def start(self, gm: "GameMaster", state: RPSDuelState) -> None:
        self._start_round(gm, state)

    def _start_round(self, gm: "GameMaster", state: RPSDuelState) -> None:
        state.stage = "choosing"
        state.current_choices = {}
        timer_end = gm.set_timer_end(settings.rps_round_ms)
        gm.emit(
            "rps_round_started",
            roundNo=state.round_no,
            player1Id=state.player1_id,
            player2Id=state.player2_id,
            wins=dict(state.wins),
            timerEnd=timer_end,
        )
        gm.schedule("rps_round", settings.rps_round_ms, self._on_round_timeout, gm, state.round_no)

    def handle(self, gm, state: RPSDuelState, player, action, data):
        if action == "rps_choice":
            return self.choose(gm, state, player, data)
        if action in ("pick_category", "loser_pick_category"):
            return self.pick(gm, state, player, data)
        return super().handle(gm, state, player, action, data)

    def choose(self, gm: "GameMaster", state: RPSDuelState, player: Player, data: Dict[str, Any]) -> Dict[str, Any]:
        if state.stage != "choosing":
            raise ActionRejected(RejectReason.WRONG_PHASE, "No round is open")
        if player.id not in state.contestants:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "You are not in this duel")
        if player.id in state.current_choices:
            raise ActionRejected(RejectReason.ALREADY_ACTED, "You already chose")
        try:
            choice = RPSChoice(data.get("choice"))
        except ValueError:
            raise ActionRejected(RejectReason.INVALID_PAYLOAD, "choice must be rock, paper or scissors")

        state.current_choices[player.id] = choice
        player.has_acted = True
        gm.emit_room_update()
        if len(state.current_choices) == 2:
            self._resolve_round(gm, state)
        return {"choice": choice.value}

    def _on_round_timeout(self, gm: "GameMaster", round_no: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, RPSDuelState) or state.stage != "choosing" or state.round_no != round_no:
            return
        for pid in state.contestants:
            if pid not in state.current_choices:
                state.current_choices[pid] = gm.rng.choice(list(RPSChoice))
        self._resolve_round(gm, state)

    def _resolve_round(self, gm: "GameMaster", state: RPSDuelState) -> None:
        choices = dict(state.current_choices)
        outcome = rps_winner(choices[state.player1_id], choices[state.player2_id])
        winner_id = {1: state.player1_id, 2: state.player2_id}.get(outcome)
        state.rounds_played += 1
        if winner_id is None:
            state.tie_rounds += 1
        else:
            state.wins[winner_id] = state.wins.get(winner_id, 0) + 1
            state.history.append(RPSRound(round_no=state.round_no, choices=choices, winner_id=winner_id))
        state.stage = "revealing"
        for pid in state.contestants:
            player = gm.room.get_player(pid)
            if player:
                player.has_acted = False

        gm.emit(
            "rps_round_result",
            roundNo=state.round_no,
            choices={pid: c.value for pid, c in choices.items()},
            winnerId=winner_id,
            tie=winner_id is None,
            wins=dict(state.wins),
        )

        champion = next((pid for pid in state.contestants if state.wins.get(pid, 0) >= RPS_WINS_NEEDED), None)
        if champion is None and state.rounds_played >= MAX_RPS_ROUNDS:
            w1, w2 = state.wins.get(state.player1_id, 0), state.wins.get(state.player2_id, 0)
            if w1 != w2:
                champion = state.player1_id if w1 > w2 else state.player2_id
            else:
                champion = gm.rng.choice(state.contestants)
            logger.info("[%s] RPS duel hit the round cap, %s wins", gm.room.code, champion)

        gm.set_timer_end(settings.rps_result_ms)
        if champion is not None:
            state.winner_id = champion
            gm.emit("rps_duel_winner", playerId=champion, wins=dict(state.wins))
            logger.info("[%s] RPS duel won by %s (%s)", gm.room.code, champion, state.wins)
            gm.schedule("rps_result", settings.rps_result_ms, self._after_duel, gm, champion)
        else:
            gm.schedule("rps_result", settings.rps_result_ms, self._next_round, gm, state.round_no)

    def _next_round(self, gm: "GameMaster", round_no: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, RPSDuelState) or state.stage != "revealing" or state.round_no != round_no:
            return
        state.round_no += 1
        self._start_round(gm, state)

    def _after_duel(self, gm: "GameMaster", winner_id: str) -> None:
        state = gm.room.sub_engine
        if isinstance(state, RPSDuelState) and state.stage == "revealing" and state.winner_id == winner_id:
            self.open_pick_window(gm, state)


# Stateless singletons, one per mode
CATEGORY_GAMES: Dict[CategoryMode, CategoryGame] = {
    game.mode: game
    for game in (VotingGame(), WheelGame(), LosersPickGame(), DiceRoyaleGame(), RPSDuelGame())
}
