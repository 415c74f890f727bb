"""
Bonus rounds — played instead of a category round.

HotButtonRound
  Progressive reveal: the question text appears at a fixed speed. The first
  buzz wins an exclusive answer window (compare-and-set on buzzed_player_id)
  and freezes the reveal. Correct: 1500 + speed bonus by revealed percent.
  Wrong or silent: -500, the buzz is released and buzzing re-opens after a
  short pause while eligible players and attempts remain.

CollectiveListRound
  Players take turns naming items of a list (worst score first). A fuzzy
  match on an unclaimed item claims it and the same player goes again; a
  miss, a duplicate, a pass or a timeout eliminates them. Last player standing
  (or everyone left when the list runs out) takes rank 1.

Like the category games these engines are stateless; their state is the
tagged model in room.sub_engine.
"""
import logging
from typing import TYPE_CHECKING, Any, Dict, List

from config import settings
from models.game import (
    ActionRejected, BonusType, CollectiveListState, Elimination, HotButtonHistoryEntry,
    HotButtonState, ListItemState, PendingBonus, Player, RejectReason,
)
from services import scoring
from utils.fuzzy import answer_matches, check_answer

if TYPE_CHECKING:
    from agents.game_master import GameMaster

logger = logging.getLogger(__name__)


def _text(data: Dict[str, Any]) -> str:
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ActionRejected(RejectReason.INVALID_PAYLOAD, "text must be a non-empty string")
    return text.strip()


class BonusRound:
    kind: BonusType

    def create(self, gm: "GameMaster", pending: PendingBonus) -> Any:
        raise NotImplementedError

    def intro_ms(self) -> int:
        raise NotImplementedError

    def start(self, gm: "GameMaster", state: Any) -> None:
        raise NotImplementedError

    def handle(self, gm: "GameMaster", state: Any, player: Player, action: str, data: Dict[str, Any]) -> Dict[str, Any]:
        raise ActionRejected(RejectReason.WRONG_PHASE, f"{action} is not accepted in {self.kind.value}")


# ── Hot button ────────────────────────────────────────────────────────────────

class HotButtonRound(BonusRound):
    kind = BonusType.HOT_BUTTON

    def create(self, gm: "GameMaster", pending: PendingBonus) -> HotButtonState:
        return HotButtonState(
            questions=list(pending.hot_button_questions),
            round_scores={p.id: 0 for p in gm.room.players},
        )

    def intro_ms(self) -> int:
        return settings.hot_button_intro_ms

    def start(self, gm: "GameMaster", state: HotButtonState) -> None:
        gm.schedule("hb_intro", settings.hot_button_intro_ms, self._open_question, gm, 0)

    def handle(self, gm, state: HotButtonState, player, action, data):
        if action == "buzz":
            return self.buzz(gm, state, player)
        if action == "submit_buzzer_answer":
            return self.answer(gm, state, player, _text(data))
        return super().handle(gm, state, player, action, data)

    # ── Question lifecycle ────────────────────────────────────────────────────

    def _open_question(self, gm: "GameMaster", index: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, HotButtonState) or state.stage not in ("intro", "result"):
            return
        if index != 0 and index != state.question_index + 1:
            return
        state.question_index = index
        state.stage = "reveal"
        state.reveal_elapsed_ms = 0
        state.reveal_started_at = gm.now()
        state.buzzed_player_id = None
        state.buzz_percent = 0
        state.attempted_ids = set()
        self._open_buzzer(gm, state, settings.hot_button_buzzer_ms, rebuzz=False)

    def _open_buzzer(self, gm: "GameMaster", state: HotButtonState, window_ms: int, rebuzz: bool) -> None:
        question = state.current_question
        timer_end = gm.set_timer_end(window_ms)
        gm.emit(
            "buzzer_open",
            questionIndex=state.question_index,
            totalQuestions=len(state.questions),
            questionId=question.id,
            textLength=len(question.text),
            revealMsPerChar=settings.hot_button_reveal_ms_per_char,
            revealedPercent=state.revealed_percent(gm.now(), settings.hot_button_reveal_ms_per_char),
            attemptedIds=sorted(state.attempted_ids),
            rebuzz=rebuzz,
            timerEnd=timer_end,
        )
        gm.schedule("hb_buzzer", window_ms, self._on_buzzer_timeout, gm, state.question_index)

    def buzz(self, gm: "GameMaster", state: HotButtonState, player: Player) -> Dict[str, Any]:
        if state.stage == "answering":
            # Lost the race: somebody already holds the buzz
            raise ActionRejected(RejectReason.ALREADY_BUZZED, "Another player buzzed first")
        if state.stage != "reveal":
            raise ActionRejected(RejectReason.WRONG_PHASE, "Buzzing is closed")
        if player.id in state.attempted_ids:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "You already tried this question")
        if not player.connected:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "Disconnected players cannot buzz")

        now = gm.now()
        percent = state.revealed_percent(now, settings.hot_button_reveal_ms_per_char)
        state.buzzed_player_id = player.id
        state.buzz_percent = percent
        state.reveal_elapsed_ms = state.reveal_ms(now)
        state.reveal_started_at = None
        state.stage = "answering"
        gm.cancel_timer("hb_buzzer")
        timer_end = gm.set_timer_end(settings.hot_button_answer_ms)
        gm.emit("buzz_won", playerId=player.id, revealedPercent=percent, timerEnd=timer_end)
        gm.schedule(
            "hb_answer", settings.hot_button_answer_ms,
            self._on_answer_timeout, gm, state.question_index, player.id,
        )
        return {"revealedPercent": percent}

    def answer(self, gm: "GameMaster", state: HotButtonState, player: Player, text: str) -> Dict[str, Any]:
        if state.stage != "answering":
            raise ActionRejected(RejectReason.WRONG_PHASE, "Nobody holds the buzz")
        if player.id != state.buzzed_player_id:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "Only the buzz holder may answer")
        question = state.current_question
        correct = answer_matches(text, question.answer, question.aliases, settings.fuzzy_threshold)
        points = self._resolve_attempt(gm, state, player.id, correct, text)
        return {"correct": correct, "points": points}

    def _on_answer_timeout(self, gm: "GameMaster", index: int, player_id: str) -> None:
        state = gm.room.sub_engine
        if (
            not isinstance(state, HotButtonState)
            or state.stage != "answering"
            or state.question_index != index
            or state.buzzed_player_id != player_id
        ):
            return
        self._resolve_attempt(gm, state, player_id, correct=False, text=None)

    def _resolve_attempt(self, gm: "GameMaster", state: HotButtonState, player_id: str, correct: bool, text) -> int:
        breakdown = scoring.score_hot_button(correct, state.buzz_percent)
        player = gm.room.get_player(player_id)
        if player:
            scoring.apply_breakdown(player, breakdown)
        state.round_scores[player_id] = state.round_scores.get(player_id, 0) + breakdown.points
        state.attempted_ids.add(player_id)
        gm.emit(
            "buzzer_answer_result",
            playerId=player_id,
            text=text,
            correct=correct,
            timedOut=text is None,
            points=breakdown.points,
            breakdown=breakdown.dump(),
        )
        if correct:
            self._finish_question(gm, state, answered_by=player_id, points=breakdown.points)
            return breakdown.points

        state.buzzed_player_id = None
        eligible = [p for p in gm.room.connected_players() if p.id not in state.attempted_ids]
        remaining_ms = settings.hot_button_buzzer_ms - state.reveal_elapsed_ms
        if eligible and len(state.attempted_ids) < settings.hot_button_max_rebuzz and remaining_ms > 0:
            state.stage = "rebuzz"
            gm.set_timer_end(settings.hot_button_rebuzz_delay_ms)
            gm.schedule(
                "hb_rebuzz", settings.hot_button_rebuzz_delay_ms,
                self._reopen, gm, state.question_index, len(state.attempted_ids),
            )
        else:
            self._finish_question(gm, state, answered_by=None, points=0)
        return breakdown.points

    def _reopen(self, gm: "GameMaster", index: int, attempts: int) -> None:
        state = gm.room.sub_engine
        if (
            not isinstance(state, HotButtonState)
            or state.stage != "rebuzz"
            or state.question_index != index
            or len(state.attempted_ids) != attempts
        ):
            return
        state.stage = "reveal"
        state.reveal_started_at = gm.now()
        remaining_ms = settings.hot_button_buzzer_ms - state.reveal_elapsed_ms
        self._open_buzzer(gm, state, remaining_ms, rebuzz=True)

    def _on_buzzer_timeout(self, gm: "GameMaster", index: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, HotButtonState) or state.stage != "reveal" or state.question_index != index:
            return
        self._finish_question(gm, state, answered_by=None, points=0)

    def _finish_question(self, gm: "GameMaster", state: HotButtonState, answered_by, points: int) -> None:
        question = state.current_question
        now = gm.now()
        percent = (
            state.buzz_percent if answered_by
            else state.revealed_percent(now, settings.hot_button_reveal_ms_per_char)
        )
        state.reveal_elapsed_ms = state.reveal_ms(now)
        state.reveal_started_at = None
        state.buzzed_player_id = None
        state.stage = "result"
        state.history.append(HotButtonHistoryEntry(
            question_id=question.id,
            text=question.text,
            answer=question.answer,
            answered_by=answered_by,
            correct=answered_by is not None,
            points=points,
            revealed_percent=percent,
        ))
        timer_end = gm.set_timer_end(settings.hot_button_result_ms)
        gm.emit(
            "hot_button_question_result",
            questionId=question.id,
            questionText=question.text,
            answer=question.answer,
            answeredBy=answered_by,
            points=points,
            roundScores=dict(state.round_scores),
            timerEnd=timer_end,
        )
        logger.info(
            "[%s] Hot button Q%d: %s",
            gm.room.code, state.question_index + 1, answered_by or "unresolved",
        )
        gm.schedule("hb_result", settings.hot_button_result_ms, self._advance, gm, state.question_index)

    def _advance(self, gm: "GameMaster", index: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, HotButtonState) or state.stage != "result" or state.question_index != index:
            return
        if index + 1 < len(state.questions):
            self._open_question(gm, index + 1)
            return
        state.stage = "finished"
        ranks = scoring.competition_ranks(list(state.round_scores.items()))
        results = []
        for pid, points in state.round_scores.items():
            player = gm.room.get_player(pid)
            results.append({
                "playerId": pid,
                "name": player.name if player else pid,
                "points": points,
                "rank": ranks[pid],
                "correctAnswers": sum(1 for h in state.history if h.answered_by == pid),
            })
        results.sort(key=lambda r: (r["rank"], r["name"]))
        gm.finish_bonus_round(self.kind, results, history=[h.dump() for h in state.history])


# ── Collective list ───────────────────────────────────────────────────────────

class CollectiveListRound(BonusRound):
    kind = BonusType.COLLECTIVE_LIST

    def create(self, gm: "GameMaster", pending: PendingBonus) -> CollectiveListState:
        question = pending.list_question
        order = sorted(gm.room.connected_players(), key=lambda p: (p.score, p.join_seq))
        ids = [p.id for p in order]
        return CollectiveListState(
            question_id=question.id,
            topic=question.topic,
            description=question.description,
            items=[ListItemState(id=i.id, display=i.display, aliases=list(i.aliases)) for i in question.items],
            turn_order=ids,
            active_ids=list(ids),
            claim_counts={pid: 0 for pid in ids},
            points_per_item=scoring.COLLECTIVE_POINTS_PER_ITEM,
        )

    def intro_ms(self) -> int:
        return settings.collective_list_intro_ms

    def start(self, gm: "GameMaster", state: CollectiveListState) -> None:
        if len(state.active_ids) <= 1:
            self._finish(gm, state)
            return
        gm.schedule("cl_intro", settings.collective_list_intro_ms, self._first_turn, gm)

    def handle(self, gm, state: CollectiveListState, player, action, data):
        if action == "collective_list_submit":
            return self.submit(gm, state, player, _text(data))
        if action == "collective_list_skip":
            self._require_turn(state, player)
            self._eliminate(gm, state, player.id, "skip")
            return {}
        return super().handle(gm, state, player, action, data)

    @staticmethod
    def _require_turn(state: CollectiveListState, player: Player) -> None:
        if state.stage != "turn":
            raise ActionRejected(RejectReason.WRONG_PHASE, "No turn is running")
        if player.id != state.current_turn_id:
            raise ActionRejected(RejectReason.NOT_ELIGIBLE, "It is not your turn")

    # ── Turns ─────────────────────────────────────────────────────────────────

    def _first_turn(self, gm: "GameMaster") -> None:
        state = gm.room.sub_engine
        if isinstance(state, CollectiveListState) and state.stage == "intro":
            self._start_turn(gm, state, state.active_ids[0])

    def _start_turn(self, gm: "GameMaster", state: CollectiveListState, player_id: str) -> None:
        state.stage = "turn"
        state.current_turn_id = player_id
        state.turn_index = state.active_ids.index(player_id)
        state.turn_number += 1
        timer_end = gm.set_timer_end(settings.collective_list_turn_ms)
        gm.emit(
            "collective_list_turn",
            playerId=player_id,
            turnNumber=state.turn_number,
            activeIds=list(state.active_ids),
            claimedIds=state.claimed_ids,
            timerEnd=timer_end,
        )
        gm.schedule("cl_turn", settings.collective_list_turn_ms, self._on_turn_timeout, gm, state.turn_number)

    def submit(self, gm: "GameMaster", state: CollectiveListState, player: Player, text: str) -> Dict[str, Any]:
        self._require_turn(state, player)
        match = check_answer(text, state.items, state.claimed_ids, settings.fuzzy_threshold)
        if not match.is_match:
            reason = "duplicate" if match.already_claimed else "wrong"
            self._eliminate(gm, state, player.id, reason, text=text, item_id=match.item_id)
            return {"matched": False, "reason": reason}

        item = next(i for i in state.items if i.id == match.item_id)
        item.claimed_by = player.id
        item.claimed_at = gm.now()
        state.claim_counts[player.id] = state.claim_counts.get(player.id, 0) + 1
        scoring.apply_breakdown(player, scoring.score_collective_claim(state.points_per_item))
        gm.emit(
            "collective_list_claim",
            itemId=item.id,
            display=item.display,
            playerId=player.id,
            text=text,
            matchType=match.match_type,
            confidence=round(match.confidence, 3),
            claimedCount=len(state.claimed_ids),
            totalItems=len(state.items),
        )
        if len(state.claimed_ids) == len(state.items):
            self._finish(gm, state)
        else:
            self._start_turn(gm, state, player.id)
        return {"matched": True, "itemId": item.id}

    def _on_turn_timeout(self, gm: "GameMaster", turn_number: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, CollectiveListState) or state.stage != "turn" or state.turn_number != turn_number:
            return
        self._eliminate(gm, state, state.current_turn_id, "timeout")

    def _eliminate(self, gm: "GameMaster", state: CollectiveListState, player_id: str, reason: str,
                   text: str = None, item_id: str = None) -> None:
        rank = len(state.active_ids)
        position = state.active_ids.index(player_id)
        state.active_ids.remove(player_id)
        state.eliminated.append(Elimination(player_id=player_id, rank=rank, reason=reason))
        state.current_turn_id = None
        gm.emit(
            "player_eliminated",
            playerId=player_id,
            rank=rank,
            reason=reason,
            text=text,
            itemId=item_id,
            activeIds=list(state.active_ids),
        )
        logger.info("[%s] Collective list: %s out at rank %d (%s)", gm.room.code, player_id, rank, reason)

        if len(state.active_ids) <= 1:
            self._finish(gm, state)
            return
        next_id = state.active_ids[position % len(state.active_ids)]
        state.stage = "between"
        gm.set_timer_end(settings.collective_list_turn_delay_ms)
        gm.schedule(
            "cl_between", settings.collective_list_turn_delay_ms,
            self._next_turn, gm, next_id, state.turn_number,
        )

    def _next_turn(self, gm: "GameMaster", player_id: str, turn_number: int) -> None:
        state = gm.room.sub_engine
        if not isinstance(state, CollectiveListState) or state.stage != "between" or state.turn_number != turn_number:
            return
        if player_id not in state.active_ids:
            player_id = state.active_ids[0]
        self._start_turn(gm, state, player_id)

    def _finish(self, gm: "GameMaster", state: CollectiveListState) -> None:
        state.stage = "finished"
        state.current_turn_id = None
        survivors = list(state.active_ids)
        for pid in survivors:
            state.eliminated.append(Elimination(player_id=pid, rank=1, reason="survivor"))
            player = gm.room.get_player(pid)
            if player:
                scoring.apply_breakdown(player, scoring.score_collective_placement(1, len(survivors)))

        results: List[Dict[str, Any]] = []
        for entry in state.eliminated:
            player = gm.room.get_player(entry.player_id)
            claims = state.claim_counts.get(entry.player_id, 0)
            bonus = scoring.placement_bonus(entry.rank, len(survivors))
            results.append({
                "playerId": entry.player_id,
                "name": player.name if player else entry.player_id,
                "rank": entry.rank,
                "reason": entry.reason,
                "itemsClaimed": claims,
                "itemPoints": claims * state.points_per_item,
                "placementBonus": bonus,
                "points": claims * state.points_per_item + bonus,
            })
        results.sort(key=lambda r: (r["rank"], r["name"]))
        logger.info("[%s] Collective list finished; rank 1: %s", gm.room.code, survivors)
        gm.finish_bonus_round(
            self.kind,
            results,
            topic=state.topic,
            items=[i.dump() for i in state.items],
        )


BONUS_ROUNDS: Dict[BonusType, BonusRound] = {
    r.kind: r for r in (HotButtonRound(), CollectiveListRound())
}
