"""
Game Master — one instance per room. Pure deterministic Python.

Responsibilities:
- Phase transitions (lobby → round announcement → category game → category
  announcement → questions/reveals → scoreboard → … → final → rematch voting)
- Routing player actions to the active category game or bonus round
- Question flow: drawing, answer collection, reveal scoring
- Final rankings, per-player statistics and awards
- Rematch voting

Concurrency: every mutation runs synchronously while `lock` is held. Timer
callbacks capture the phase epoch when scheduled and become silent no-ops once
the room has moved on. Events go to an outbox and are flushed, still under the
lock, so every listener sees them in the order they happened.
"""
import asyncio
import logging
import math
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from agents.bonus_rounds import BONUS_ROUNDS
from agents.category_games import CATEGORY_GAMES
from config import settings
from models.game import (
    CATEGORY_PHASES, ActionRejected, AnswerResult, BonusType, Category, CategoryMode,
    FinalRanking, LosersPickState, PendingBonus, Phase, Player, PlayerStats,
    QuestionType, RejectReason, Room, ScoreBreakdown, VotingState,
)
from services import scoring
from services.question_bank import QuestionBank
from services.timers import TimerCoordinator, now_ms

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
Deliver = Callable[[str, Event, Optional[List[str]]], Awaitable[None]]

CATEGORY_ACTIONS = {"vote_category", "dice_roll", "rps_choice", "loser_pick_category", "pick_category"}
BONUS_ACTIONS = {"buzz", "submit_buzzer_answer", "collective_list_submit", "collective_list_skip"}
ANSWER_PHASES = (Phase.QUESTION, Phase.ESTIMATION)


class GameMaster:
    """
    Deterministic game logic for a single room.
    Owned by the RoomManager; nothing else mutates `room`.
    """

    def __init__(
        self,
        room: Room,
        bank: QuestionBank,
        timers: TimerCoordinator,
        deliver: Deliver,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
        on_close: Optional[Callable[[str], None]] = None,
    ):
        self.room = room
        self.bank = bank
        self.timers = timers
        self.clock = clock
        self.rng = rng or random.Random()
        self.lock = asyncio.Lock()
        self.closed = False
        self._deliver = deliver
        self._on_close = on_close
        self._outbox: List[Tuple[Event, Optional[List[str]]]] = []

    @property
    def code(self) -> str:
        return self.room.code

    def now(self) -> int:
        return self.clock()

    # ── Events ────────────────────────────────────────────────────────────────

    def emit(self, event_type: str, to: Optional[List[str]] = None, **fields: Any) -> None:
        """Queue an event; `to` restricts delivery to those player ids."""
        self._outbox.append(({"type": event_type, **fields}, to))

    def emit_room_update(self) -> None:
        self.emit("room_update", room=self.snapshot())

    def snapshot(self) -> Dict[str, Any]:
        return self.room.to_public(self.now(), settings.hot_button_reveal_ms_per_char)

    def discard_outbox(self) -> None:
        self._outbox.clear()

    async def flush(self) -> None:
        while self._outbox:
            event, to = self._outbox.pop(0)
            await self._deliver(self.code, event, to)

    # ── Timers ────────────────────────────────────────────────────────────────

    def _timer_key(self, name: str) -> str:
        return f"{self.code}:phase:{name}"

    def set_timer_end(self, delay_ms: int) -> int:
        self.room.timer_end = self.now() + delay_ms
        return self.room.timer_end

    def schedule(self, name: str, delay_ms: int, callback: Callable[..., None], *args: Any) -> None:
        """
        Run callback(*args) after delay_ms, under the room lock.
        Fires only if the room is still in the phase epoch it was scheduled in.
        """
        epoch = self.room.epoch

        async def fire() -> None:
            async with self.lock:
                if self.closed or self.room.epoch != epoch:
                    logger.debug(
                        "[%s] Stale timer %s ignored (scheduled in epoch %d, now %d)",
                        self.code, name, epoch, self.room.epoch,
                    )
                    return
                try:
                    callback(*args)
                finally:
                    await self.flush()

        self.timers.schedule(self._timer_key(name), delay_ms, fire)

    def cancel_timer(self, name: str) -> None:
        self.timers.cancel(self._timer_key(name))

    # ── Phase transitions ─────────────────────────────────────────────────────

    def _enter(self, phase: Phase, sub_engine: Any = None, duration_ms: Optional[int] = None, **extra: Any) -> None:
        """
        The single transition path: cancel the outgoing phase's timers, bump
        the epoch, swap the sub-engine, set timer_end and announce the phase.
        """
        self.timers.cancel_all(f"{self.code}:phase:")
        previous = self.room.phase
        self.room.epoch += 1
        self.room.phase = phase
        self.room.sub_engine = sub_engine
        self.room.timer_end = self.now() + duration_ms if duration_ms else None
        for p in self.room.players:
            p.has_acted = False
        logger.info(
            "[%s] Phase: %s → %s (round %d, epoch %d)",
            self.code, previous.value, phase.value, self.room.current_round, self.room.epoch,
        )
        self.emit(
            "phase_changed",
            phase=phase.value,
            epoch=self.room.epoch,
            timerEnd=self.room.timer_end,
            room=self.snapshot(),
            **extra,
        )

    def close(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self.timers.cancel_all(f"{self.code}:")
        self.emit("room_closed", reason=reason)
        logger.info("[%s] Room closed (%s)", self.code, reason)
        if self._on_close:
            self._on_close(self.code)

    # ── Action dispatch ───────────────────────────────────────────────────────

    def handle_action(self, player_id: str, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and apply one player action. Must be called with `lock` held.
        Raises ActionRejected (before any mutation); returns result data.
        """
        player = self.room.get_player(player_id)
        if player is None:
            raise ActionRejected(RejectReason.UNKNOWN_PLAYER, "Player not found in this room")
        if not isinstance(data, dict):
            raise ActionRejected(RejectReason.INVALID_PAYLOAD, "data must be an object")

        if action == "start_game":
            return self._on_start_game(player)
        elif action == "update_settings":
            return self._on_update_settings(player, data)
        elif action == "next":
            return self._on_next(player)
        elif action == "submit_answer":
            return self._on_submit_answer(player, data)
        elif action == "submit_estimation":
            return self._on_submit_estimation(player, data)
        elif action in CATEGORY_ACTIONS:
            return self._on_category_action(player, action, data)
        elif action in BONUS_ACTIONS:
            return self._on_bonus_action(player, action, data)
        elif action == "vote_rematch":
            return self._on_vote_rematch(player, data)
        raise ActionRejected(RejectReason.INVALID_ACTION, f"Unknown action: {action!r}")

    def _require_host(self, player: Player) -> None:
        if player.id != self.room.host_id:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "Only the host can do that")

    def _require_phase(self, *phases: Phase) -> None:
        if self.room.phase not in phases:
            raise ActionRejected(
                RejectReason.WRONG_PHASE,
                f"Not allowed during {self.room.phase.value}",
            )

    # ── Lobby ─────────────────────────────────────────────────────────────────

    def _on_start_game(self, player: Player) -> Dict[str, Any]:
        self._require_host(player)
        self._require_phase(Phase.LOBBY)
        for p in self.room.players:
            p.score = 0
            p.streak = 0
            p.reset_answer()
        self.room.current_round = 0
        self.room.stats = {p.id: PlayerStats() for p in self.room.players}
        self.room.last_mode_rounds = {}
        self.room.final_rankings = []
        logger.info("[%s] Game started by %s with %d players", self.code, player.id, len(self.room.players))
        self._next_round()
        return {}

    def _on_update_settings(self, player: Player, data: Dict[str, Any]) -> Dict[str, Any]:
        self._require_host(player)
        self._require_phase(Phase.LOBBY)
        if not data:
            raise ActionRejected(RejectReason.INVALID_SETTINGS, "No settings given")
        updated = self.room.settings.merge(data)
        self.room.settings = updated
        self.emit_room_update()
        return {"settings": updated.dump()}

    # ── Rounds ────────────────────────────────────────────────────────────────

    def _next_round(self) -> None:
        room = self.room
        room.current_round += 1
        if room.current_round > room.settings.max_rounds:
            self._enter_final()
            return
        room.question_index = 0
        room.round_questions = []
        room.selected_category = None
        room.category_mode = None
        room.candidates = []
        room.last_results = []

        s = room.settings
        is_last = room.current_round == s.max_rounds
        if (is_last and s.final_round_always_bonus) or self.rng.random() * 100 < s.bonus_round_chance:
            pending = self._prepare_bonus()
            if pending is not None:
                self._enter_bonus_announcement(pending)
                return
        self._enter_round_announcement(self._choose_mode())

    def _choose_mode(self) -> CategoryMode:
        """Weighted draw over modes that have enough players and are off cooldown."""
        connected = len(self.room.connected_players())
        weights = self.room.settings.category_mode_weights
        modes: List[CategoryMode] = []
        mode_weights: List[int] = []
        for mode, game in CATEGORY_GAMES.items():
            weight = weights.get(mode, 0)
            if weight <= 0 or connected < game.min_players:
                continue
            last = self.room.last_mode_rounds.get(mode)
            if game.cooldown_rounds and last is not None and self.room.current_round - last <= game.cooldown_rounds:
                continue
            modes.append(mode)
            mode_weights.append(weight)
        if not modes:
            return CategoryMode.VOTING
        return self.rng.choices(modes, weights=mode_weights)[0]

    def _enter_round_announcement(self, mode: CategoryMode) -> None:
        candidates = self.bank.random_categories(settings.voting_category_count, self.rng)
        if not candidates:
            logger.warning("[%s] Question bank has no usable categories; ending the game", self.code)
            self._enter_final()
            return
        self.room.candidates = candidates

        # The mini-game state is drawn now so the announcement can name the
        # picker / duellists; it carries over into the category phase.
        state = CATEGORY_GAMES[mode].create(self)
        if state is None:
            logger.info("[%s] %s not playable right now, falling back to voting", self.code, mode.value)
            mode = CategoryMode.VOTING
            state = CATEGORY_GAMES[mode].create(self)
        self.room.category_mode = mode
        self.room.last_mode_rounds[mode] = self.room.current_round

        extra: Dict[str, Any] = {"categoryMode": mode.value, "round": self.room.current_round}
        if isinstance(state, LosersPickState):
            extra["pickerId"] = state.picker_id
        self._enter(
            Phase.ROUND_ANNOUNCEMENT, sub_engine=state,
            duration_ms=settings.round_announcement_ms, **extra,
        )
        self.schedule("round_announcement", settings.round_announcement_ms, self._begin_category_game)

    def _begin_category_game(self) -> None:
        mode = self.room.category_mode
        game = CATEGORY_GAMES[mode]
        state = self.room.sub_engine
        self._enter(CATEGORY_PHASES[mode], sub_engine=state, duration_ms=game.duration_ms(), categoryMode=mode.value)
        game.start(self, state)

    def _on_category_action(self, player: Player, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
        state = self.room.sub_engine
        if self.room.phase not in CATEGORY_PHASES.values() or state is None or self.room.category_mode is None:
            raise ActionRejected(RejectReason.WRONG_PHASE, "No category game is running")
        return CATEGORY_GAMES[self.room.category_mode].handle(self, state, player, action, data)

    def select_category(self, category: Category, picked_by: Optional[str]) -> None:
        """Commit the round's category and move on to the category announcement."""
        room = self.room
        room.selected_category = category
        self.emit(
            "category_selected",
            categoryId=category.id,
            category=category.dump(),
            pickedBy=picked_by,
            categoryMode=room.category_mode.value if room.category_mode else None,
        )
        s = room.settings
        questions = self.bank.draw_questions(
            category.id,
            s.questions_per_round,
            s.difficulty_mix,
            exclude_ids=room.used_question_ids,
            include_estimation=s.enable_estimation,
            rng=self.rng,
        )
        if not questions:
            logger.warning("[%s] No questions left in %s; skipping to the scoreboard", self.code, category.id)
            self._enter_scoreboard()
            return
        room.round_questions = questions
        room.question_index = 0
        logger.info("[%s] Round %d category: %s (%d questions)", self.code, room.current_round, category.id, len(questions))
        self._enter(
            Phase.CATEGORY_ANNOUNCEMENT,
            duration_ms=settings.category_announcement_ms,
            category=category.dump(),
            pickedBy=picked_by,
        )
        self.schedule("category_announcement", settings.category_announcement_ms, self._start_question)

    # ── Questions ─────────────────────────────────────────────────────────────

    def _start_question(self) -> None:
        room = self.room
        question = room.current_question
        for p in room.players:
            p.reset_answer()
        room.used_question_ids.add(question.id)
        room.question_started_at = self.now()
        window_ms = room.settings.time_per_question * 1000
        phase = Phase.ESTIMATION if question.type == QuestionType.ESTIMATION else Phase.QUESTION
        self._enter(
            phase,
            duration_ms=window_ms,
            questionIndex=room.question_index,
            totalQuestions=len(room.round_questions),
        )
        self.schedule("question", window_ms, self._on_question_timeout, room.question_index)

    def _on_submit_answer(self, player: Player, data: Dict[str, Any]) -> Dict[str, Any]:
        self._require_phase(Phase.QUESTION)
        if player.has_acted:
            raise ActionRejected(RejectReason.ALREADY_ACTED, "You already answered")
        question = self.room.current_question
        index = data.get("answerIndex")
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(question.answers):
            raise ActionRejected(RejectReason.INVALID_PAYLOAD, "answerIndex out of range")

        player.answer_index = index
        player.answer_elapsed_ms = max(0, self.now() - self.room.question_started_at)
        player.has_acted = True
        self.emit_room_update()
        self._check_all_answered()
        return {"answerIndex": index}

    def _on_submit_estimation(self, player: Player, data: Dict[str, Any]) -> Dict[str, Any]:
        self._require_phase(Phase.ESTIMATION)
        if player.has_acted:
            raise ActionRejected(RejectReason.ALREADY_ACTED, "You already answered")
        value = data.get("value")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ActionRejected(RejectReason.INVALID_PAYLOAD, "value must be a finite number")

        player.estimation = float(value)
        player.answer_elapsed_ms = max(0, self.now() - self.room.question_started_at)
        player.has_acted = True
        self.emit_room_update()
        self._check_all_answered()
        return {"value": value}

    def _check_all_answered(self) -> None:
        if self.room.phase not in ANSWER_PHASES:
            return
        connected = self.room.connected_players()
        if connected and all(p.has_acted for p in connected):
            self._reveal()

    def _on_question_timeout(self, index: int) -> None:
        if self.room.phase in ANSWER_PHASES and self.room.question_index == index:
            self._reveal()

    def _reveal(self) -> None:
        room = self.room
        question = room.current_question
        players = room.players
        estimation = question.type == QuestionType.ESTIMATION

        # Every breakdown is computed before any of them is applied
        if estimation:
            breakdowns = scoring.score_estimations(
                {p.id: p.estimation for p in players},
                question.correct_value,
                {p.id: p.streak for p in players},
            )
        else:
            window_ms = room.settings.time_per_question * 1000
            breakdowns = {
                p.id: scoring.score_choice(
                    question.correct_index, p.answer_index, p.answer_elapsed_ms, window_ms, p.streak,
                )
                for p in players
            }
        scoring.apply_all([(p, breakdowns[p.id]) for p in players])

        results: List[AnswerResult] = []
        for p in players:
            answer = p.estimation if estimation else p.answer_index
            deviation = (
                scoring.deviation_percent(p.estimation, question.correct_value)
                if estimation and p.estimation is not None else None
            )
            self._record_stats(p, breakdowns[p.id], answer is not None, deviation)
            results.append(AnswerResult(
                player_id=p.id,
                question_id=question.id,
                answered=answer is not None,
                answer=answer,
                elapsed_ms=p.answer_elapsed_ms,
                deviation_percent=deviation,
                breakdown=breakdowns[p.id],
                total_score=p.score,
            ))
        room.last_results = results

        self._enter(Phase.REVEALING, duration_ms=settings.reveal_ms)
        self.emit(
            "answer_result",
            questionId=question.id,
            question=question.to_public(reveal=True),
            results=[r.dump() for r in results],
        )
        self.schedule("reveal", settings.reveal_ms, self._after_reveal)

    def _record_stats(self, player: Player, breakdown: ScoreBreakdown, answered: bool, deviation: Optional[float]) -> None:
        stats = self.room.stats.setdefault(player.id, PlayerStats())
        if answered:
            stats.answers_total += 1
        if breakdown.correct:
            stats.answers_correct += 1
            elapsed = player.answer_elapsed_ms
            if deviation is None and elapsed is not None and (
                stats.fastest_correct_ms is None or elapsed < stats.fastest_correct_ms
            ):
                stats.fastest_correct_ms = elapsed
        stats.longest_streak = max(stats.longest_streak, player.streak)
        if deviation is not None:
            stats.estimation_count += 1
            stats.estimation_deviation_sum += deviation

    def _after_reveal(self) -> None:
        self.room.question_index += 1
        if self.room.question_index < len(self.room.round_questions):
            self._start_question()
        else:
            self._enter_scoreboard()

    def _on_next(self, player: Player) -> Dict[str, Any]:
        """Host skips the remaining reveal or scoreboard wait."""
        self._require_host(player)
        if self.room.phase == Phase.REVEALING:
            self._after_reveal()
        elif self.room.phase == Phase.SCOREBOARD:
            self._next_round()
        else:
            raise ActionRejected(RejectReason.WRONG_PHASE, "Nothing to skip right now")
        return {}

    # ── Scoreboard ────────────────────────────────────────────────────────────

    def standings(self) -> List[Dict[str, Any]]:
        ranks = scoring.competition_ranks([(p.id, p.score) for p in self.room.players])
        ordered = sorted(self.room.players, key=lambda p: (ranks[p.id], p.join_seq))
        return [
            {"playerId": p.id, "name": p.name, "score": p.score, "streak": p.streak, "rank": ranks[p.id]}
            for p in ordered
        ]

    def _enter_scoreboard(self) -> None:
        self._enter(Phase.SCOREBOARD, duration_ms=settings.scoreboard_ms, standings=self.standings())
        self.schedule("scoreboard", settings.scoreboard_ms, self._next_round)

    # ── Bonus rounds ──────────────────────────────────────────────────────────

    def _prepare_bonus(self) -> Optional[PendingBonus]:
        """Pick a bonus type by weight among those with unused content."""
        s = self.room.settings
        used = self.room.used_bonus_ids
        kinds: List[BonusType] = []
        weights: List[int] = []
        for kind, weight in s.bonus_type_weights.items():
            if weight <= 0 or not self.bank.has_bonus(kind, used):
                continue
            if kind == BonusType.COLLECTIVE_LIST and len(self.room.connected_players()) < 2:
                continue
            kinds.append(kind)
            weights.append(weight)
        if not kinds:
            return None

        kind = self.rng.choices(kinds, weights=weights)[0]
        if kind == BonusType.HOT_BUTTON:
            questions = self.bank.draw_hot_button_questions(s.hot_button_questions_per_round, used, self.rng)
            used.update(q.id for q in questions)
            return PendingBonus(kind=kind, hot_button_questions=questions)
        question = self.bank.draw_bonus_question(kind, used, self.rng)
        used.add(question.id)
        return PendingBonus(kind=kind, list_question=question)

    def _enter_bonus_announcement(self, pending: PendingBonus) -> None:
        self.room.pending_bonus = pending
        self._enter(
            Phase.BONUS_ROUND_ANNOUNCEMENT,
            duration_ms=settings.bonus_announcement_ms,
            bonusType=pending.kind.value,
            round=self.room.current_round,
        )
        self.schedule("bonus_announcement", settings.bonus_announcement_ms, self._start_bonus_round)

    def _start_bonus_round(self) -> None:
        pending = self.room.pending_bonus
        bonus = BONUS_ROUNDS[pending.kind]
        state = bonus.create(self, pending)
        self.room.pending_bonus = None
        self._enter(Phase.BONUS_ROUND, sub_engine=state, duration_ms=bonus.intro_ms(), bonusType=pending.kind.value)
        bonus.start(self, state)

    def _on_bonus_action(self, player: Player, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
        state = self.room.sub_engine
        if self.room.phase != Phase.BONUS_ROUND or state is None or state.kind not in {k.value for k in BONUS_ROUNDS}:
            raise ActionRejected(RejectReason.WRONG_PHASE, "No bonus round is running")
        return BONUS_ROUNDS[BonusType(state.kind)].handle(self, state, player, action, data)

    def finish_bonus_round(self, kind: BonusType, results: List[Dict[str, Any]], **details: Any) -> None:
        self._enter(Phase.BONUS_ROUND_RESULT, duration_ms=settings.bonus_result_ms, bonusType=kind.value)
        self.emit("bonus_round_result", bonusType=kind.value, results=results, **details)
        self.schedule("bonus_result", settings.bonus_result_ms, self._enter_scoreboard)

    # ── Final ─────────────────────────────────────────────────────────────────

    def _enter_final(self) -> None:
        room = self.room
        ranks = scoring.competition_ranks([(p.id, p.score) for p in room.players])
        ordered = sorted(room.players, key=lambda p: (ranks[p.id], p.join_seq))
        room.final_rankings = [
            FinalRanking(
                rank=ranks[p.id],
                player_id=p.id,
                name=p.name,
                score=p.score,
                stats=room.stats.get(p.id, PlayerStats()),
            )
            for p in ordered
        ]
        awards = self.awards()
        self._enter(Phase.FINAL, duration_ms=settings.final_results_ms)
        self.emit(
            "final_rankings",
            rankings=[r.dump() for r in room.final_rankings],
            awards=awards,
        )
        winners = [r.name for r in room.final_rankings if r.rank == 1]
        logger.info("[%s] Game over. Winner(s): %s", self.code, winners)
        self.schedule("final", settings.final_results_ms, self._enter_rematch_voting)

    def awards(self) -> List[Dict[str, Any]]:
        """Superlatives from the per-player stats; ties go to the earliest joiner."""
        room = self.room
        tracked = [(p, room.stats[p.id]) for p in room.players if p.id in room.stats]

        def best(award: str, metric: Callable[[PlayerStats], Optional[float]], lowest: bool = False) -> Optional[Dict[str, Any]]:
            scored = [(p, metric(s)) for p, s in tracked]
            scored = [(p, v) for p, v in scored if v is not None]
            if not scored:
                return None
            pick = min if lowest else max
            player, value = pick(scored, key=lambda pv: pv[1])
            return {"award": award, "playerId": player.id, "name": player.name, "value": value}

        candidates = [
            best("fastest_answer", lambda s: s.fastest_correct_ms, lowest=True),
            best("longest_streak", lambda s: s.longest_streak or None),
            best("closest_estimator", lambda s: s.average_deviation, lowest=True),
            best("most_accurate", lambda s: s.answers_correct / s.answers_total if s.answers_total else None),
        ]
        return [a for a in candidates if a is not None]

    # ── Rematch ───────────────────────────────────────────────────────────────

    def _enter_rematch_voting(self) -> None:
        self.room.rematch_votes = {}
        self._enter(Phase.REMATCH_VOTING, duration_ms=settings.rematch_voting_ms)
        self.schedule("rematch", settings.rematch_voting_ms, self._resolve_rematch)

    def _on_vote_rematch(self, player: Player, data: Dict[str, Any]) -> Dict[str, Any]:
        self._require_phase(Phase.REMATCH_VOTING)
        if player.id in self.room.rematch_votes:
            raise ActionRejected(RejectReason.ALREADY_ACTED, "You already voted")
        vote = data.get("vote")
        if isinstance(vote, str):
            vote = {"yes": True, "no": False}.get(vote.lower())
        if not isinstance(vote, bool):
            raise ActionRejected(RejectReason.INVALID_PAYLOAD, "vote must be yes or no")

        self.room.rematch_votes[player.id] = vote
        player.has_acted = True
        self.emit("rematch_vote_update", votes=dict(self.room.rematch_votes))
        self._check_rematch_complete()
        return {"vote": vote}

    def _check_rematch_complete(self) -> None:
        if self.room.phase != Phase.REMATCH_VOTING:
            return
        connected = self.room.connected_players()
        if connected and all(p.id in self.room.rematch_votes for p in connected):
            self._resolve_rematch()

    def _resolve_rematch(self) -> None:
        """Yes-voters stay for a fresh lobby; everyone else (silent included) leaves."""
        room = self.room
        staying = [p for p in room.players if room.rematch_votes.get(p.id) is True]
        removed = [p.id for p in room.players if room.rematch_votes.get(p.id) is not True]
        if not any(not p.is_bot for p in staying):
            self.emit("rematch_result", rematch=False, remainingIds=[], removedIds=removed)
            self.close("no_rematch")
            return

        room.players = staying
        for pid in removed:
            room.stats.pop(pid, None)
        if room.host_id not in {p.id for p in staying}:
            humans = sorted((p for p in staying if not p.is_bot), key=lambda p: (not p.connected, p.join_seq))
            room.host_id = humans[0].id
            self.emit("host_changed", hostId=room.host_id)

        for p in staying:
            p.score = 0
            p.streak = 0
            p.reset_answer()
        room.current_round = 0
        room.question_index = 0
        room.round_questions = []
        room.selected_category = None
        room.category_mode = None
        room.candidates = []
        room.last_results = []
        room.last_mode_rounds = {}
        room.stats = {}
        room.final_rankings = []
        room.rematch_votes = {}

        logger.info("[%s] Rematch with %d players (%d left)", self.code, len(staying), len(removed))
        self.emit(
            "rematch_result",
            rematch=True,
            remainingIds=[p.id for p in staying],
            removedIds=removed,
            hostId=room.host_id,
        )
        self._enter(Phase.LOBBY)

    # ── Presence ──────────────────────────────────────────────────────────────

    def on_player_disconnected(self, player_id: str) -> None:
        """Phases that wait on "every connected player" re-check completion."""
        phase = self.room.phase
        state = self.room.sub_engine
        if phase in ANSWER_PHASES:
            self._check_all_answered()
        elif phase == Phase.CATEGORY_VOTING and isinstance(state, VotingState):
            CATEGORY_GAMES[CategoryMode.VOTING].check_complete(self, state)
        elif phase == Phase.REMATCH_VOTING:
            self._check_rematch_complete()
