"""
Shared fixtures: deterministic timers, clock, RNG and a tiny question bank.

Nothing here sleeps. ManualTimers records every scheduled callback and only
runs one when a test fires its key, so phase flows are stepped explicitly.
"""
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import pytest

from agents.game_master import GameMaster
from agents.room_manager import RoomManager, room_manager
from models.game import GameSettings, Player, Room
from services.question_bank import QuestionBank


# ---------------------------------------------------------------------------
# Timers / clock
# ---------------------------------------------------------------------------

class ManualTimers:
    """TimerCoordinator stand-in; callbacks run only when fired by the test."""

    def __init__(self):
        self.scheduled: Dict[str, Tuple[int, Callable[[], Awaitable[None]]]] = {}
        self.cancelled: List[str] = []

    def schedule(self, key: str, delay_ms: int, callback: Callable[[], Awaitable[None]]) -> None:
        self.cancel(key)
        self.scheduled[key] = (delay_ms, callback)

    def cancel(self, key: str) -> bool:
        if self.scheduled.pop(key, None) is not None:
            self.cancelled.append(key)
            return True
        return False

    def cancel_all(self, prefix: str) -> int:
        keys = [k for k in self.scheduled if k.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def pending(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.scheduled if k.startswith(prefix))

    def shutdown(self) -> None:
        self.scheduled.clear()

    def delay(self, key: str) -> int:
        return self.scheduled[key][0]

    def take(self, key: str) -> Callable[[], Awaitable[None]]:
        """Remove a timer without firing it; the test decides when (or if) to run it."""
        return self.scheduled.pop(key)[1]

    async def fire(self, key: str) -> None:
        _, callback = self.scheduled.pop(key)
        await callback()


class FakeClock:
    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class Recorder:
    """Event listener that keeps everything a room emits, in order."""

    def __init__(self):
        self.events: List[Tuple[Dict[str, Any], Optional[List[str]]]] = []

    async def __call__(self, code: str, event: Dict[str, Any], to: Optional[List[str]]) -> None:
        self.events.append((event, to))

    def types(self) -> List[str]:
        return [e["type"] for e, _ in self.events]

    def of(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e, _ in self.events if e["type"] == event_type]

    def last(self, event_type: str) -> Optional[Dict[str, Any]]:
        found = self.of(event_type)
        return found[-1] if found else None

    def clear(self) -> None:
        self.events.clear()


# ---------------------------------------------------------------------------
# Question bank
# ---------------------------------------------------------------------------

def _choice(qid: str, category: str, difficulty: str = "easy") -> Dict[str, Any]:
    return {
        "id": qid, "categoryId": category, "type": "choice", "difficulty": difficulty,
        "text": f"Question {qid}?", "answers": ["Right", "Wrong A", "Wrong B", "Wrong C"],
        "correctIndex": 0,
    }


BANK_DATA: Dict[str, Any] = {
    "categories": [
        {"id": "alpha", "name": "Alpha"},
        {"id": "beta", "name": "Beta"},
        {"id": "gamma", "name": "Gamma"},
    ],
    "questions": [
        _choice("a-1", "alpha"), _choice("a-2", "alpha", "medium"), _choice("a-3", "alpha", "hard"),
        {
            "id": "a-est", "categoryId": "alpha", "type": "estimation", "difficulty": "medium",
            "text": "How many bones are in the adult human body?", "correctValue": 206,
        },
        _choice("b-1", "beta"), _choice("b-2", "beta", "medium"), _choice("b-3", "beta", "hard"),
        _choice("g-1", "gamma"), _choice("g-2", "gamma", "medium"),
    ],
    "hotButton": [
        {"id": "hb-1", "text": "This city on the Seine is the capital of France.", "answer": "Paris"},
        {
            "id": "hb-2", "text": "He published the theory of general relativity in 1915.",
            "answer": "Albert Einstein", "aliases": ["Einstein"],
        },
    ],
    "collectiveLists": [
        {
            "id": "cl-primary", "topic": "Primary colours",
            "items": [
                {"id": "red", "display": "Red"},
                {"id": "blue", "display": "Blue"},
                {"id": "yellow", "display": "Yellow"},
            ],
        },
    ],
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def timers() -> ManualTimers:
    return ManualTimers()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
def bank() -> QuestionBank:
    return QuestionBank.from_dict(BANK_DATA)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_master(bank, timers, clock, rng, recorder):
    """Build a GameMaster for a room with players p1..pN (p1 hosts)."""

    def _make(players: int = 3, code: str = "TEST", **settings: Any) -> GameMaster:
        room = Room(code=code, settings=GameSettings().merge(settings) if settings else GameSettings())
        for i in range(players):
            room.players.append(Player(id=f"p{i + 1}", name=f"Player {i + 1}", join_seq=i))
        room.next_join_seq = players
        room.host_id = "p1" if players else None
        return GameMaster(room, bank, timers, recorder, clock=clock, rng=rng)

    return _make


@pytest.fixture
def rooms(bank, timers, clock, rng, recorder) -> RoomManager:
    manager = RoomManager(timers=timers, bank=bank, clock=clock, rng=rng)
    manager.add_listener(recorder)
    return manager


@pytest.fixture(autouse=True)
def clear_room_registry():
    room_manager.clear()
    yield
    room_manager.clear()


def phase_key(code: str, name: str) -> str:
    return f"{code}:phase:{name}"
