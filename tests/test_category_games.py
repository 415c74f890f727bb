"""Category mini-games: voting, wheel, loser's pick, dice royale, RPS duel."""
import random

import pytest

from agents.category_games import (
    MAX_DICE_REROLL_ROUNDS, choose_picker, dice_leaders, resolve_votes, rps_winner,
)
from models.game import ActionRejected, Category, Phase, Player, RejectReason, RPSChoice

from conftest import phase_key


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class ScriptedRandom(random.Random):
    """Random whose dice come from a script; everything else stays seeded."""

    def __init__(self, dice):
        super().__init__(99)
        self.dice = list(dice)

    def randint(self, a, b):
        return self.dice.pop(0)


def settings_for(mode):
    return dict(
        maxRounds=1,
        questionsPerRound=1,
        enableEstimation=False,
        finalRoundAlwaysBonus=False,
        categoryModeWeights={mode: 100},
    )


async def act(gm, player_id, action, **data):
    result = gm.handle_action(player_id, action, data)
    await gm.flush()
    return result


def rejected(gm, player_id, action, **data) -> RejectReason:
    with pytest.raises(ActionRejected) as exc:
        gm.handle_action(player_id, action, data)
    gm.discard_outbox()
    return exc.value.reason


async def enter_mode(make_master, timers, mode, players=3):
    gm = make_master(players=players, **settings_for(mode))
    await act(gm, "p1", "start_game")
    await timers.fire(phase_key("TEST", "round_announcement"))
    return gm


CATS = [Category(id="alpha", name="A"), Category(id="beta", name="B"), Category(id="gamma", name="C")]


# ===========================================================================
# Pure helpers
# ===========================================================================

class TestHelpers:
    def test_most_votes_wins(self):
        votes = {"p1": "beta", "p2": "alpha", "p3": "alpha"}
        assert resolve_votes(votes, CATS, random.Random(1)).id == "alpha"

    def test_tie_goes_to_earliest_first_vote(self):
        votes = {"p1": "gamma", "p2": "alpha", "p3": "alpha", "p4": "gamma"}
        assert resolve_votes(votes, CATS, random.Random(1)).id == "gamma"

    def test_no_votes_picks_a_candidate(self):
        assert resolve_votes({}, CATS, random.Random(1)) in CATS

    def test_dice_leaders(self):
        rolls = {"a": [6, 5], "b": [5, 6], "c": [1, 2]}
        assert dice_leaders(rolls, ["a", "b", "c"]) == ["a", "b"]
        assert dice_leaders(rolls, ["c"]) == ["c"]

    def test_rps_winner(self):
        assert rps_winner(RPSChoice.ROCK, RPSChoice.SCISSORS) == 1
        assert rps_winner(RPSChoice.ROCK, RPSChoice.PAPER) == 2
        assert rps_winner(RPSChoice.PAPER, RPSChoice.PAPER) == 0

    def test_picker_is_lowest_connected_score(self):
        players = [
            Player(id="a", name="A", score=100, join_seq=0),
            Player(id="b", name="B", score=0, join_seq=1, connected=False),
            Player(id="c", name="C", score=50, join_seq=2),
            Player(id="d", name="D", score=50, join_seq=3),
        ]
        assert choose_picker(players).id == "c"
        assert choose_picker([]) is None


# ===========================================================================
# Voting
# ===========================================================================

@pytest.mark.asyncio
class TestVoting:
    async def test_all_votes_resolve_immediately(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "voting")
        assert gm.room.phase == Phase.CATEGORY_VOTING
        await act(gm, "p1", "vote_category", categoryId="beta")
        tally = recorder.last("votes_updated")["tally"]
        assert tally["beta"] == 1 and tally["alpha"] == 0
        await act(gm, "p2", "vote_category", categoryId="beta")
        await act(gm, "p3", "vote_category", categoryId="alpha")
        assert recorder.last("category_selected")["categoryId"] == "beta"
        assert gm.room.phase == Phase.CATEGORY_ANNOUNCEMENT

    async def test_vote_validation(self, make_master, timers):
        gm = await enter_mode(make_master, timers, "voting")
        assert rejected(gm, "p1", "vote_category", categoryId="nope") == RejectReason.INVALID_PAYLOAD
        assert rejected(gm, "p1", "dice_roll") == RejectReason.WRONG_PHASE
        await act(gm, "p1", "vote_category", categoryId="alpha")
        assert rejected(gm, "p1", "vote_category", categoryId="beta") == RejectReason.ALREADY_ACTED

    async def test_late_joiner_cannot_vote(self, make_master, timers):
        gm = await enter_mode(make_master, timers, "voting")
        gm.room.players.append(Player(id="p4", name="Late", join_seq=3))
        assert rejected(gm, "p4", "vote_category", categoryId="alpha") == RejectReason.NOT_ELIGIBLE

    async def test_timeout_tie_goes_to_first_vote(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "voting")
        await act(gm, "p1", "vote_category", categoryId="gamma")
        await act(gm, "p2", "vote_category", categoryId="alpha")
        await timers.fire(phase_key("TEST", "category_voting"))
        assert recorder.last("category_selected")["categoryId"] == "gamma"

    async def test_disconnect_of_last_voter_resolves(self, make_master, timers):
        gm = await enter_mode(make_master, timers, "voting")
        await act(gm, "p1", "vote_category", categoryId="alpha")
        await act(gm, "p2", "vote_category", categoryId="alpha")
        gm.room.get_player("p3").connected = False
        gm.on_player_disconnected("p3")
        assert gm.room.phase == Phase.CATEGORY_ANNOUNCEMENT


# ===========================================================================
# Wheel & loser's pick
# ===========================================================================

@pytest.mark.asyncio
class TestWheel:
    async def test_spin_lands_on_predetermined_segment(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "wheel")
        assert gm.room.phase == Phase.CATEGORY_WHEEL
        state = gm.room.sub_engine
        expected = state.candidates[state.winning_index].id
        assert rejected(gm, "p1", "vote_category", categoryId=expected) == RejectReason.WRONG_PHASE
        await timers.fire(phase_key("TEST", "category_wheel"))
        assert recorder.last("category_selected")["categoryId"] == expected


@pytest.mark.asyncio
class TestLosersPick:
    async def test_picker_announced_and_picks(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "losers_pick")
        assert gm.room.phase == Phase.CATEGORY_LOSERS_PICK
        announcement = [e for e in recorder.of("phase_changed") if e["phase"] == "round_announcement"][-1]
        assert announcement["pickerId"] == "p1"

        assert rejected(gm, "p2", "loser_pick_category", categoryId="beta") == RejectReason.NOT_ELIGIBLE
        await act(gm, "p1", "loser_pick_category", categoryId="beta")
        selected = recorder.last("category_selected")
        assert selected["categoryId"] == "beta"
        assert selected["pickedBy"] == "p1"

    async def test_timeout_picks_randomly(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "losers_pick")
        await timers.fire(phase_key("TEST", "category_losers_pick"))
        selected = recorder.last("category_selected")
        assert selected["pickedBy"] is None
        assert selected["categoryId"] in {"alpha", "beta", "gamma"}


# ===========================================================================
# Dice royale
# ===========================================================================

@pytest.mark.asyncio
class TestDiceRoyale:
    async def test_tie_rerolls_only_the_tied(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "dice_royale")
        assert gm.room.phase == Phase.CATEGORY_DICE_ROYALE
        gm.rng = ScriptedRandom([6, 6, 6, 6, 1, 1, 2, 3, 6, 5])

        await act(gm, "p1", "dice_roll")
        assert rejected(gm, "p1", "dice_roll") == RejectReason.ALREADY_ACTED
        await act(gm, "p2", "dice_roll")
        await act(gm, "p3", "dice_roll")
        tie = recorder.last("dice_tie")
        assert tie["tiedIds"] == ["p1", "p2"]
        assert tie["round"] == 1
        assert rejected(gm, "p1", "dice_roll") == RejectReason.WRONG_PHASE

        await timers.fire(phase_key("TEST", "dice_tie"))
        assert rejected(gm, "p3", "dice_roll") == RejectReason.NOT_ELIGIBLE
        await act(gm, "p1", "dice_roll")
        await act(gm, "p2", "dice_roll")
        winner = recorder.last("dice_royale_winner")
        assert winner["playerId"] == "p2"
        assert winner["total"] == 11
        assert winner["rerollRounds"] == 1

        await timers.fire(phase_key("TEST", "dice_result"))
        window = recorder.last("category_pick_window")
        assert window["playerId"] == "p2"
        assert rejected(gm, "p1", "pick_category", categoryId="alpha") == RejectReason.NOT_ELIGIBLE
        await act(gm, "p2", "pick_category", categoryId="gamma")
        assert recorder.last("category_selected")["categoryId"] == "gamma"

    async def test_timeout_auto_rolls(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "dice_royale")
        gm.rng = ScriptedRandom([1, 1, 6, 6, 2, 2])
        await act(gm, "p1", "dice_roll")
        await timers.fire(phase_key("TEST", "dice_rolling"))
        auto = [e for e in recorder.of("dice_roll_result") if e["auto"]]
        assert sorted(e["playerId"] for e in auto) == ["p2", "p3"]
        assert recorder.last("dice_royale_winner")["playerId"] == "p2"

    async def test_reroll_cap_picks_a_leader(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "dice_royale")
        gm.rng = ScriptedRandom([3, 3, 3, 3, 1, 1])
        gm.room.sub_engine.reroll_round = MAX_DICE_REROLL_ROUNDS
        for pid in ("p1", "p2", "p3"):
            await act(gm, pid, "dice_roll")
        assert recorder.last("dice_tie") is None
        assert recorder.last("dice_royale_winner")["playerId"] in {"p1", "p2"}

    async def test_pick_window_timeout(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "dice_royale")
        gm.rng = ScriptedRandom([6, 6, 1, 1, 1, 2])
        for pid in ("p1", "p2", "p3"):
            await act(gm, pid, "dice_roll")
        await timers.fire(phase_key("TEST", "dice_result"))
        await timers.fire(phase_key("TEST", "pick_window"))
        assert recorder.last("category_selected")["pickedBy"] is None
        assert gm.room.phase == Phase.CATEGORY_ANNOUNCEMENT


# ===========================================================================
# Rock-paper-scissors duel
# ===========================================================================

@pytest.mark.asyncio
class TestRPSDuel:
    async def test_first_to_two_wins_ties_discarded(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "rps_duel", players=2)
        assert gm.room.phase == Phase.CATEGORY_RPS_DUEL
        state = gm.room.sub_engine
        a, b = state.player1_id, state.player2_id
        assert recorder.last("rps_round_started")["roundNo"] == 1

        await act(gm, a, "rps_choice", choice="rock")
        assert gm.snapshot()["subEngine"]["currentChoices"] == {a: True}
        await act(gm, b, "rps_choice", choice="scissors")
        assert recorder.last("rps_round_result")["winnerId"] == a
        assert rejected(gm, a, "rps_choice", choice="rock") == RejectReason.WRONG_PHASE

        await timers.fire(phase_key("TEST", "rps_result"))
        await act(gm, a, "rps_choice", choice="paper")
        await act(gm, b, "rps_choice", choice="paper")
        assert recorder.last("rps_round_result")["tie"] is True

        await timers.fire(phase_key("TEST", "rps_result"))
        await act(gm, a, "rps_choice", choice="paper")
        await act(gm, b, "rps_choice", choice="rock")
        assert recorder.last("rps_duel_winner")["playerId"] == a
        assert state.wins == {a: 2, b: 0}
        assert len(state.history) == 2

        await timers.fire(phase_key("TEST", "rps_result"))
        assert recorder.last("category_pick_window")["playerId"] == a

    async def test_choice_validation(self, make_master, timers):
        gm = await enter_mode(make_master, timers, "rps_duel", players=3)
        state = gm.room.sub_engine
        outsider = next(p.id for p in gm.room.players if p.id not in state.contestants)
        assert rejected(gm, outsider, "rps_choice", choice="rock") == RejectReason.NOT_ELIGIBLE
        assert rejected(gm, state.player1_id, "rps_choice", choice="lizard") == RejectReason.INVALID_PAYLOAD
        await act(gm, state.player1_id, "rps_choice", choice="rock")
        assert rejected(gm, state.player1_id, "rps_choice", choice="paper") == RejectReason.ALREADY_ACTED

    async def test_timeout_fills_missing_choice(self, make_master, timers, recorder):
        gm = await enter_mode(make_master, timers, "rps_duel", players=2)
        state = gm.room.sub_engine
        await act(gm, state.player1_id, "rps_choice", choice="rock")
        await timers.fire(phase_key("TEST", "rps_round"))
        result = recorder.last("rps_round_result")
        assert set(result["choices"]) == {state.player1_id, state.player2_id}
        assert result["choices"][state.player1_id] == "rock"
