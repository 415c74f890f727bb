"""
Scoring Engine — pure functions, no hidden state.

Every formula here is a function of its arguments only, so replaying the same
(question, answer, latency, streak) tuple always yields the same breakdown.
Breakdowns are frozen; `apply_breakdown` is the only writer of score/streak.

  Choice:       base 1000 + time bonus (remaining window / 100 ms) + streak bonus
  Estimation:   accuracy (≤1000, 0 past 100% deviation) + rank bonus + perfect bonus
  Hot button:   base 1500 + speed tier by revealed fraction, or a fixed penalty
  Collective:   per-item points + placement bonus keyed by final rank
"""
import math
from typing import Dict, List, Optional, Sequence, Tuple

from models.game import Player, ScoreBreakdown

# ── Choice ────────────────────────────────────────────────────────────────────

CHOICE_BASE_POINTS = 1000
TIME_BONUS_DIVISOR_MS = 100
STREAK_MULTIPLIER = 50
MAX_STREAK_BONUS = 250

# ── Estimation ────────────────────────────────────────────────────────────────

MAX_ACCURACY_POINTS = 1000
MAX_DEVIATION_PERCENT = 100
ESTIMATION_RANK_BONUSES = (300, 200, 100)
ESTIMATION_BASE_RANK_BONUS = 50
PERFECT_BONUS = 500

# ── Hot button ────────────────────────────────────────────────────────────────

HOT_BUTTON_BASE_POINTS = 1500
HOT_BUTTON_WRONG_PENALTY = -500
# (max revealed percent, bonus): earlier buzz, bigger bonus
HOT_BUTTON_SPEED_TIERS: Tuple[Tuple[int, int], ...] = (
    (25, 500),
    (50, 300),
    (75, 150),
    (100, 50),
)

# ── Collective list ───────────────────────────────────────────────────────────

COLLECTIVE_POINTS_PER_ITEM = 400
WINNER_BONUS_SOLO = 500
WINNER_BONUS_SHARED = 250


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _total(**parts: int) -> int:
    return sum(parts.values())


# ── Choice questions ──────────────────────────────────────────────────────────

def streak_bonus(prior_streak: int) -> int:
    return min(prior_streak * STREAK_MULTIPLIER, MAX_STREAK_BONUS)


def time_bonus(elapsed_ms: int, window_ms: int) -> int:
    """Monotonically decreasing in elapsed time; zero at or past the window."""
    remaining = window_ms - elapsed_ms
    return max(0, remaining // TIME_BONUS_DIVISOR_MS)


def score_choice(
    correct_index: int,
    answer_index: Optional[int],
    elapsed_ms: Optional[int],
    window_ms: int,
    prior_streak: int,
) -> ScoreBreakdown:
    if answer_index is None or elapsed_ms is None or answer_index != correct_index:
        return ScoreBreakdown(correct=False, streak=0)
    parts = {
        "base_points": CHOICE_BASE_POINTS,
        "time_bonus": time_bonus(elapsed_ms, window_ms),
        "streak_bonus": streak_bonus(prior_streak),
    }
    return ScoreBreakdown(correct=True, points=_total(**parts), streak=prior_streak + 1, **parts)


# ── Estimation questions ──────────────────────────────────────────────────────

def deviation_percent(value: float, correct_value: float) -> float:
    return abs(value - correct_value) / max(abs(correct_value), 1) * 100


def accuracy_points(value: float, correct_value: float) -> int:
    pct = deviation_percent(value, correct_value)
    if pct > MAX_DEVIATION_PERCENT:
        return 0
    return _round_half_up(MAX_ACCURACY_POINTS * (1 - pct / 100))


def rank_bonus(rank: int) -> int:
    """rank is 1-based, closest first."""
    if 1 <= rank <= len(ESTIMATION_RANK_BONUSES):
        return ESTIMATION_RANK_BONUSES[rank - 1]
    return ESTIMATION_BASE_RANK_BONUS


def estimation_ranks(estimates: Dict[str, float], correct_value: float) -> Dict[str, int]:
    """Competition ranking by absolute deviation; equal deviations share a rank."""
    ordered = sorted(estimates.items(), key=lambda kv: abs(kv[1] - correct_value))
    ranks: Dict[str, int] = {}
    previous: Optional[float] = None
    rank = 0
    for position, (player_id, value) in enumerate(ordered, start=1):
        diff = abs(value - correct_value)
        if previous is None or diff != previous:
            rank = position
            previous = diff
        ranks[player_id] = rank
    return ranks


def score_estimation(
    value: Optional[float],
    correct_value: float,
    rank: Optional[int],
    prior_streak: int,
) -> ScoreBreakdown:
    if value is None or rank is None:
        return ScoreBreakdown(correct=False, streak=0)
    accuracy = accuracy_points(value, correct_value)
    parts = {
        "accuracy_points": accuracy,
        "rank_bonus": rank_bonus(rank),
        "perfect_bonus": PERFECT_BONUS if value == correct_value else 0,
    }
    hit = accuracy > 0
    return ScoreBreakdown(
        correct=hit,
        points=_total(**parts),
        streak=prior_streak + 1 if hit else 0,
        **parts,
    )


def score_estimations(
    estimates: Dict[str, Optional[float]],
    correct_value: float,
    prior_streaks: Dict[str, int],
) -> Dict[str, ScoreBreakdown]:
    """Score every player of one estimation question at once (ranks need all values)."""
    answered = {pid: v for pid, v in estimates.items() if v is not None}
    ranks = estimation_ranks(answered, correct_value)
    return {
        pid: score_estimation(value, correct_value, ranks.get(pid), prior_streaks.get(pid, 0))
        for pid, value in estimates.items()
    }


# ── Hot button ────────────────────────────────────────────────────────────────

def hot_button_speed_bonus(revealed_percent: int) -> int:
    for threshold, bonus in HOT_BUTTON_SPEED_TIERS:
        if revealed_percent <= threshold:
            return bonus
    return HOT_BUTTON_SPEED_TIERS[-1][1]


def score_hot_button(correct: bool, revealed_percent: int) -> ScoreBreakdown:
    if not correct:
        return ScoreBreakdown(correct=False, penalty=HOT_BUTTON_WRONG_PENALTY, points=HOT_BUTTON_WRONG_PENALTY)
    speed = hot_button_speed_bonus(revealed_percent)
    return ScoreBreakdown(
        correct=True,
        base_points=HOT_BUTTON_BASE_POINTS,
        speed_bonus=speed,
        points=HOT_BUTTON_BASE_POINTS + speed,
    )


# ── Collective list ───────────────────────────────────────────────────────────

def placement_bonus(rank: int, winners: int) -> int:
    if rank != 1:
        return 0
    return WINNER_BONUS_SOLO if winners == 1 else WINNER_BONUS_SHARED


def score_collective_claim(points_per_item: int = COLLECTIVE_POINTS_PER_ITEM) -> ScoreBreakdown:
    return ScoreBreakdown(correct=True, base_points=points_per_item, points=points_per_item)


def score_collective_placement(rank: int, winners: int) -> ScoreBreakdown:
    bonus = placement_bonus(rank, winners)
    return ScoreBreakdown(correct=rank == 1, placement_bonus=bonus, points=bonus)


# ── Application ───────────────────────────────────────────────────────────────

def apply_breakdown(player: Player, breakdown: ScoreBreakdown) -> None:
    """Apply points and streak together; the only place score/streak change."""
    new_score = player.score + breakdown.points
    new_streak = player.streak if breakdown.streak is None else breakdown.streak
    player.score, player.streak = new_score, new_streak


def apply_all(pairs: Sequence[Tuple[Player, ScoreBreakdown]]) -> None:
    """Breakdowns are fully computed before this runs, so no partial application."""
    for player, breakdown in pairs:
        apply_breakdown(player, breakdown)


def competition_ranks(scores: List[Tuple[str, int]]) -> Dict[str, int]:
    """Highest score first; equal scores share a rank (1, 1, 3 …)."""
    ordered = sorted(scores, key=lambda kv: kv[1], reverse=True)
    ranks: Dict[str, int] = {}
    previous: Optional[int] = None
    rank = 0
    for position, (player_id, score) in enumerate(ordered, start=1):
        if previous is None or score != previous:
            rank = position
            previous = score
        ranks[player_id] = rank
    return ranks
