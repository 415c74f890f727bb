"""Scoring formulas: choice, estimation, hot button, collective list, ranking."""
import pytest

from models.game import Player, ScoreBreakdown
from services import scoring


def make_player(score=0, streak=0):
    return Player(id="p", name="P", score=score, streak=streak)


class TestChoiceScoring:
    def test_correct_answer_scores_base_time_and_streak(self):
        b = scoring.score_choice(2, 2, elapsed_ms=4_000, window_ms=20_000, prior_streak=3)
        assert b.correct
        assert b.base_points == 1000
        assert b.time_bonus == 160
        assert b.streak_bonus == 150
        assert b.points == 1310
        assert b.streak == 4

    def test_streak_bonus_is_capped(self):
        assert scoring.streak_bonus(5) == 250
        assert scoring.streak_bonus(40) == 250

    def test_wrong_answer_resets_streak_and_scores_nothing(self):
        b = scoring.score_choice(2, 1, elapsed_ms=1_000, window_ms=20_000, prior_streak=7)
        assert not b.correct
        assert b.points == 0
        assert b.streak == 0

    def test_no_answer_resets_streak(self):
        b = scoring.score_choice(0, None, elapsed_ms=None, window_ms=20_000, prior_streak=2)
        assert b.points == 0
        assert b.streak == 0

    def test_time_bonus_decreases_and_floors_at_zero(self):
        assert scoring.time_bonus(0, 20_000) == 200
        assert scoring.time_bonus(10_000, 20_000) == 100
        assert scoring.time_bonus(20_000, 20_000) == 0
        assert scoring.time_bonus(25_000, 20_000) == 0


class TestEstimationScoring:
    def test_accuracy_points_linear_in_deviation(self):
        assert scoring.accuracy_points(100, 100) == 1000
        assert scoring.accuracy_points(90, 100) == 900
        assert scoring.accuracy_points(250, 100) == 0

    def test_zero_correct_value_does_not_divide_by_zero(self):
        assert scoring.deviation_percent(0.5, 0) == 50.0

    def test_ranks_share_equal_deviation(self):
        ranks = scoring.estimation_ranks({"a": 110, "b": 90, "c": 130}, 100)
        assert ranks == {"a": 1, "b": 1, "c": 3}

    def test_rank_bonus_table(self):
        assert [scoring.rank_bonus(r) for r in (1, 2, 3, 4, 9)] == [300, 200, 100, 50, 50]

    def test_perfect_guess_gets_perfect_bonus(self):
        results = scoring.score_estimations({"a": 206, "b": 200}, 206, {"a": 0, "b": 1})
        assert results["a"].perfect_bonus == 500
        assert results["a"].points == 1000 + 300 + 500
        assert results["b"].perfect_bonus == 0
        assert results["b"].streak == 2

    def test_missing_estimate_scores_zero(self):
        results = scoring.score_estimations({"a": None, "b": 50}, 100, {"a": 4})
        assert results["a"].points == 0
        assert results["a"].streak == 0
        assert results["b"].rank_bonus == 300

    def test_far_off_estimate_keeps_rank_bonus_but_breaks_streak(self):
        results = scoring.score_estimations({"a": 1000}, 100, {"a": 3})
        assert results["a"].accuracy_points == 0
        assert results["a"].points == 300
        assert results["a"].streak == 0


class TestHotButtonScoring:
    def test_speed_tiers(self):
        assert scoring.hot_button_speed_bonus(10) == 500
        assert scoring.hot_button_speed_bonus(25) == 500
        assert scoring.hot_button_speed_bonus(40) == 300
        assert scoring.hot_button_speed_bonus(75) == 150
        assert scoring.hot_button_speed_bonus(100) == 50

    def test_correct_and_wrong(self):
        assert scoring.score_hot_button(True, 30).points == 1800
        wrong = scoring.score_hot_button(False, 30)
        assert wrong.points == -500
        assert wrong.streak is None


class TestCollectiveScoring:
    def test_placement_bonus(self):
        assert scoring.placement_bonus(1, 1) == 500
        assert scoring.placement_bonus(1, 2) == 250
        assert scoring.placement_bonus(2, 1) == 0

    def test_claim_points(self):
        assert scoring.score_collective_claim().points == 400


class TestApplication:
    def test_apply_breakdown_sets_score_and_streak_together(self):
        p = make_player(score=100, streak=2)
        scoring.apply_breakdown(p, ScoreBreakdown(points=50, streak=3))
        assert (p.score, p.streak) == (150, 3)

    def test_none_streak_leaves_streak_alone(self):
        p = make_player(score=100, streak=2)
        scoring.apply_breakdown(p, scoring.score_hot_button(False, 10))
        assert (p.score, p.streak) == (-400, 2)

    def test_competition_ranks(self):
        ranks = scoring.competition_ranks([("a", 10), ("b", 30), ("c", 10), ("d", 5)])
        assert ranks == {"b": 1, "a": 2, "c": 2, "d": 4}


class TestPureScoring:
    @pytest.fixture(autouse=True)
    def no_application(self, monkeypatch):
        applied = []
        monkeypatch.setattr(scoring, "apply_breakdown", lambda *args: applied.append(args))
        yield
        assert applied == []

    def test_repeated_calls_agree(self):
        calls = [
            lambda: scoring.score_choice(1, 1, elapsed_ms=3_000, window_ms=20_000, prior_streak=2),
            lambda: scoring.score_estimations({"a": 95, "b": 130, "c": None}, 100, {"a": 1, "b": 4}),
            lambda: scoring.score_hot_button(True, 40),
            lambda: scoring.score_hot_button(False, 40),
            lambda: scoring.score_collective_placement(1, 2),
        ]
        for call in calls:
            assert call() == call()

    def test_scoring_leaves_players_untouched(self):
        p = make_player(score=700, streak=3)
        scoring.score_choice(0, 0, elapsed_ms=1_000, window_ms=20_000, prior_streak=p.streak)
        scoring.score_estimations({p.id: 100}, 100, {p.id: p.streak})
        scoring.score_hot_button(False, 90)
        scoring.score_collective_placement(1, 1)
        assert (p.score, p.streak) == (700, 3)
