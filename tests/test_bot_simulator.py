"""BotSimulator plays through the same RoomManager.dispatch path as clients."""
import random

import pytest

from agents.bot_simulator import BotPolicy, BotSimulator
from models.game import Phase

from conftest import phase_key

SETTINGS = {
    "maxRounds": 1,
    "questionsPerRound": 2,
    "enableEstimation": False,
    "finalRoundAlwaysBonus": False,
    "categoryModeWeights": {"voting": 100},
}


@pytest.fixture
def sim(rooms, timers):
    return BotSimulator(rooms, timers=timers, rng=random.Random(5))


async def room_with_bot(rooms, sim, accuracy=1.0):
    code = await rooms.create_room(SETTINGS)
    alice = await rooms.join(code, "Alice")
    bot = await rooms.add_bot(code)
    sim.add_bot(code, bot.id, BotPolicy(accuracy=accuracy, min_delay_ms=100, max_delay_ms=100))
    await rooms.dispatch(code, alice, "start_game")
    await sim.timers.fire(phase_key(code, "round_announcement"))
    return code, alice, bot


@pytest.mark.asyncio
class TestBotSimulator:
    async def test_bot_votes_after_delay(self, rooms, sim, timers):
        code, alice, bot = await room_with_bot(rooms, sim)
        key = f"{code}:bot:{bot.id}:vote"
        assert rooms.get_room(code).phase == Phase.CATEGORY_VOTING
        assert timers.delay(key) == 100

        await timers.fire(key)
        assert bot.id in rooms.get_room(code).sub_engine.votes

    async def test_accurate_bot_answers_correctly(self, rooms, sim, timers):
        code, alice, bot = await room_with_bot(rooms, sim)
        await rooms.dispatch(code, alice, "vote_category", {"categoryId": "alpha"})
        await timers.fire(f"{code}:bot:{bot.id}:vote")
        await timers.fire(phase_key(code, "category_announcement"))

        room = rooms.get_room(code)
        assert room.phase == Phase.QUESTION
        await timers.fire(f"{code}:bot:{bot.id}:answer")
        assert room.get_player(bot.id).answer_index == room.current_question.correct_index

    async def test_stale_plan_is_dropped(self, rooms, sim, timers, recorder):
        code, alice, bot = await room_with_bot(rooms, sim)
        planned = timers.take(f"{code}:bot:{bot.id}:vote")
        # Voting times out before the bot gets round to it
        await timers.fire(phase_key(code, "category_voting"))
        recorder.clear()
        await planned()
        assert recorder.of("votes_updated") == []

    async def test_phase_change_cancels_pending_plans(self, rooms, sim, timers):
        code, alice, bot = await room_with_bot(rooms, sim)
        await timers.fire(phase_key(code, "category_voting"))
        assert timers.pending(f"{code}:bot:{bot.id}:vote") == []

    async def test_closed_room_forgets_bots(self, rooms, sim, timers):
        code, alice, bot = await room_with_bot(rooms, sim)
        await rooms.dispatch(code, alice, "leave")
        await timers.fire(f"{code}:teardown")
        assert timers.pending(f"{code}:") == []
        assert sim._policies == {}


# ---------------------------------------------------------------------------
# Plans inside one phase
# ---------------------------------------------------------------------------

HOT_BUTTON_SETTINGS = {
    "maxRounds": 1,
    "finalRoundAlwaysBonus": True,
    "enableEstimation": False,
    "hotButtonQuestionsPerRound": 2,
    "bonusTypeWeights": {"hot_button": 100},
    "categoryModeWeights": {"voting": 100},
}


async def hot_button_with_bot(rooms, sim):
    code = await rooms.create_room(HOT_BUTTON_SETTINGS)
    alice = await rooms.join(code, "Alice")
    bot = await rooms.add_bot(code)
    sim.add_bot(code, bot.id, BotPolicy(accuracy=1.0, min_delay_ms=100, max_delay_ms=100))
    await rooms.dispatch(code, alice, "start_game")
    await sim.timers.fire(phase_key(code, "bonus_announcement"))
    await sim.timers.fire(phase_key(code, "hb_intro"))
    return code, alice, bot, rooms.get_room(code).sub_engine


async def alice_takes_first_question(rooms, code, alice, state):
    await rooms.dispatch(code, alice, "buzz")
    await rooms.dispatch(code, alice, "submit_buzzer_answer", {"text": state.current_question.answer})
    assert state.stage == "result"


@pytest.mark.asyncio
class TestPlansWithinPhase:
    async def test_buzz_from_previous_question_is_dropped(self, rooms, sim, timers, recorder):
        code, alice, bot, state = await hot_button_with_bot(rooms, sim)
        planned = timers.take(f"{code}:bot:{bot.id}:buzz")
        await alice_takes_first_question(rooms, code, alice, state)

        # The bot sits the second question out
        sim.policy(code, bot.id).accuracy = 0.0
        await timers.fire(phase_key(code, "hb_result"))
        assert state.question_index == 1
        assert timers.pending(f"{code}:bot:{bot.id}:buzz") == []

        recorder.clear()
        await planned()
        assert state.stage == "reveal"
        assert state.buzzed_player_id is None
        assert recorder.of("buzz_won") == []

    async def test_next_question_replaces_pending_buzz(self, rooms, sim, timers):
        code, alice, bot, state = await hot_button_with_bot(rooms, sim)
        key = f"{code}:bot:{bot.id}:buzz"
        assert timers.pending(key) == [key]
        await alice_takes_first_question(rooms, code, alice, state)

        sim.policy(code, bot.id).accuracy = 0.0
        await timers.fire(phase_key(code, "hb_result"))
        assert key in timers.cancelled
        assert timers.pending(key) == []

    async def test_buzz_answer_survives_until_resolved(self, rooms, sim, timers):
        code, alice, bot, state = await hot_button_with_bot(rooms, sim)
        await timers.fire(f"{code}:bot:{bot.id}:buzz")
        assert state.buzzed_player_id == bot.id

        await timers.fire(f"{code}:bot:{bot.id}:buzz_answer")
        assert state.history[-1].answered_by == bot.id
