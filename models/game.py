from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Optional, List, Dict, Any, Literal, Set, Union
from enum import Enum


class CamelModel(BaseModel):
    """Wire format is camelCase; Python attributes stay snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Phase(str, Enum):
    LOBBY = "lobby"
    ROUND_ANNOUNCEMENT = "round_announcement"
    CATEGORY_VOTING = "category_voting"
    CATEGORY_WHEEL = "category_wheel"
    CATEGORY_LOSERS_PICK = "category_losers_pick"
    CATEGORY_DICE_ROYALE = "category_dice_royale"
    CATEGORY_RPS_DUEL = "category_rps_duel"
    CATEGORY_ANNOUNCEMENT = "category_announcement"
    QUESTION = "question"
    ESTIMATION = "estimation"
    REVEALING = "revealing"
    SCOREBOARD = "scoreboard"
    BONUS_ROUND_ANNOUNCEMENT = "bonus_round_announcement"
    BONUS_ROUND = "bonus_round"
    BONUS_ROUND_RESULT = "bonus_round_result"
    FINAL = "final"
    REMATCH_VOTING = "rematch_voting"


class QuestionType(str, Enum):
    CHOICE = "choice"
    ESTIMATION = "estimation"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class CategoryMode(str, Enum):
    VOTING = "voting"
    WHEEL = "wheel"
    LOSERS_PICK = "losers_pick"
    DICE_ROYALE = "dice_royale"
    RPS_DUEL = "rps_duel"


class BonusType(str, Enum):
    HOT_BUTTON = "hot_button"
    COLLECTIVE_LIST = "collective_list"


class RPSChoice(str, Enum):
    ROCK = "rock"
    PAPER = "paper"
    SCISSORS = "scissors"


CATEGORY_PHASES: Dict[CategoryMode, Phase] = {
    CategoryMode.VOTING: Phase.CATEGORY_VOTING,
    CategoryMode.WHEEL: Phase.CATEGORY_WHEEL,
    CategoryMode.LOSERS_PICK: Phase.CATEGORY_LOSERS_PICK,
    CategoryMode.DICE_ROYALE: Phase.CATEGORY_DICE_ROYALE,
    CategoryMode.RPS_DUEL: Phase.CATEGORY_RPS_DUEL,
}


# ── Rejections ────────────────────────────────────────────────────────────────

class RejectReason(str, Enum):
    UNKNOWN_ROOM = "unknown_room"
    UNKNOWN_PLAYER = "unknown_player"
    WRONG_PHASE = "wrong_phase"
    NOT_ELIGIBLE = "not_eligible"
    ALREADY_ACTED = "already_acted"
    ALREADY_BUZZED = "already_buzzed"
    INVALID_ACTION = "invalid_action"
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_SETTINGS = "invalid_settings"
    ROOM_FULL = "room_full"
    GAME_IN_PROGRESS = "game_in_progress"
    NAME_TAKEN = "name_taken"
    INTERNAL_ERROR = "internal_error"


class ActionRejected(Exception):
    """Raised by engines before any mutation; converted to ActionResult by dispatch."""

    def __init__(self, reason: RejectReason, message: str = ""):
        super().__init__(message or reason.value)
        self.reason = reason
        self.message = message or reason.value


class ActionResult(CamelModel):
    ok: bool
    reason: Optional[RejectReason] = None
    message: str = ""
    data: Dict[str, Any] = {}

    @classmethod
    def accepted(cls, data: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(ok=True, data=data or {})

    @classmethod
    def rejected(cls, reason: RejectReason, message: str = "") -> "ActionResult":
        return cls(ok=False, reason=reason, message=message or reason.value)


# ── Settings ──────────────────────────────────────────────────────────────────

DEFAULT_MODE_WEIGHTS: Dict[CategoryMode, int] = {
    CategoryMode.VOTING: 25,
    CategoryMode.WHEEL: 25,
    CategoryMode.LOSERS_PICK: 15,
    CategoryMode.DICE_ROYALE: 20,
    CategoryMode.RPS_DUEL: 15,
}


class GameSettings(CamelModel):
    model_config = ConfigDict(extra="forbid")

    max_rounds: int = Field(5, ge=1, le=20)
    questions_per_round: int = Field(5, ge=1, le=20)
    time_per_question: int = Field(20, ge=5, le=120)  # seconds
    bonus_round_chance: int = Field(0, ge=0, le=100)  # percent
    final_round_always_bonus: bool = True
    enable_estimation: bool = True
    hot_button_questions_per_round: int = Field(5, ge=1, le=10)
    category_mode_weights: Dict[CategoryMode, int] = Field(
        default_factory=lambda: dict(DEFAULT_MODE_WEIGHTS)
    )
    bonus_type_weights: Dict[BonusType, int] = Field(
        default_factory=lambda: {BonusType.HOT_BUTTON: 50, BonusType.COLLECTIVE_LIST: 50}
    )
    difficulty_mix: Dict[Difficulty, float] = Field(
        default_factory=lambda: {
            Difficulty.EASY: 0.4, Difficulty.MEDIUM: 0.4, Difficulty.HARD: 0.2,
        }
    )

    @field_validator("category_mode_weights", "bonus_type_weights")
    @classmethod
    def _weights_usable(cls, v: Dict[Any, int]) -> Dict[Any, int]:
        if any(w < 0 for w in v.values()) or not any(w > 0 for w in v.values()):
            raise ValueError("weights must be non-negative with at least one positive")
        return v

    @field_validator("difficulty_mix")
    @classmethod
    def _mix_usable(cls, v: Dict[Difficulty, float]) -> Dict[Difficulty, float]:
        if any(share < 0 for share in v.values()) or sum(v.values()) <= 0:
            raise ValueError("difficulty mix must be non-negative and sum above zero")
        return v

    def merge(self, partial: Dict[str, Any]) -> "GameSettings":
        """Return a validated copy with `partial` applied (camelCase or snake_case keys).

        Raises ActionRejected(invalid_settings); the receiver keeps its prior values.
        """
        by_alias = {to_camel(name): name for name in type(self).model_fields}
        merged = self.model_dump()
        for key, value in partial.items():
            merged[by_alias.get(key, key)] = value
        try:
            return type(self).model_validate(merged)
        except ValidationError as exc:
            detail = "; ".join(
                f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()
            )
            raise ActionRejected(RejectReason.INVALID_SETTINGS, detail)


# ── Content (read-only, drawn from the question bank) ────────────────────────

class Category(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    icon: str = ""


class Question(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    category_id: str
    type: QuestionType = QuestionType.CHOICE
    difficulty: Difficulty = Difficulty.MEDIUM
    answers: List[str] = []
    correct_index: Optional[int] = None
    correct_value: Optional[float] = None
    unit: str = ""
    explanation: str = ""

    def to_public(self, reveal: bool = False) -> Dict[str, Any]:
        """Correct answer fields are only included once the question is revealed."""
        exclude: Set[str] = set() if reveal else {"correct_index", "correct_value", "explanation"}
        return self.model_dump(by_alias=True, mode="json", exclude=exclude)


class HotButtonQuestion(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    answer: str
    aliases: List[str] = []
    category_id: str = ""
    difficulty: Difficulty = Difficulty.MEDIUM


class ListItem(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display: str
    aliases: List[str] = []


class CollectiveListQuestion(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    topic: str
    description: str = ""
    category_id: str = ""
    items: List[ListItem]


# ── Players ───────────────────────────────────────────────────────────────────

class PlayerStats(CamelModel):
    answers_total: int = 0
    answers_correct: int = 0
    fastest_correct_ms: Optional[int] = None
    longest_streak: int = 0
    estimation_count: int = 0
    estimation_deviation_sum: float = 0.0

    @property
    def average_deviation(self) -> Optional[float]:
        if not self.estimation_count:
            return None
        return self.estimation_deviation_sum / self.estimation_count


class Player(CamelModel):
    id: str
    name: str
    avatar: str = ""
    score: int = 0
    streak: int = 0
    connected: bool = True
    is_bot: bool = False
    join_seq: int = 0
    has_acted: bool = False
    answer_index: Optional[int] = None
    estimation: Optional[float] = None
    answer_elapsed_ms: Optional[int] = None

    def reset_answer(self) -> None:
        self.has_acted = False
        self.answer_index = None
        self.estimation = None
        self.answer_elapsed_ms = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "avatar": self.avatar,
            "score": self.score,
            "streak": self.streak,
            "connected": self.connected,
            "isBot": self.is_bot,
            "hasActed": self.has_acted,
        }


# ── Category mini-game states ────────────────────────────────────────────────

class VotingState(CamelModel):
    kind: Literal["voting"] = "voting"
    candidates: List[Category] = []
    eligible_ids: List[str] = []
    votes: Dict[str, str] = {}  # player_id → category_id, in submission order


class WheelState(CamelModel):
    kind: Literal["wheel"] = "wheel"
    candidates: List[Category] = []
    winning_index: int = 0


class LosersPickState(CamelModel):
    kind: Literal["losers_pick"] = "losers_pick"
    candidates: List[Category] = []
    picker_id: str


class DiceRoyaleState(CamelModel):
    kind: Literal["dice_royale"] = "dice_royale"
    candidates: List[Category] = []
    stage: Literal["rolling", "tie", "result", "pick"] = "rolling"
    rolls: Dict[str, Optional[List[int]]] = {}
    tied_ids: List[str] = []
    reroll_round: int = 0
    winner_id: Optional[str] = None

    def can_roll(self, player_id: str) -> bool:
        if self.stage != "rolling" or player_id not in self.rolls:
            return False
        if self.tied_ids and player_id not in self.tied_ids:
            return False
        return self.rolls[player_id] is None

    def pending_ids(self) -> List[str]:
        contenders = self.tied_ids or list(self.rolls)
        return [pid for pid in contenders if self.rolls.get(pid) is None]


class RPSRound(CamelModel):
    round_no: int
    choices: Dict[str, RPSChoice]
    winner_id: str


class RPSDuelState(CamelModel):
    kind: Literal["rps_duel"] = "rps_duel"
    candidates: List[Category] = []
    stage: Literal["choosing", "revealing", "pick"] = "choosing"
    player1_id: str
    player2_id: str
    round_no: int = 1
    rounds_played: int = 0
    tie_rounds: int = 0
    current_choices: Dict[str, RPSChoice] = {}
    history: List[RPSRound] = []  # non-tie rounds only
    wins: Dict[str, int] = {}
    winner_id: Optional[str] = None

    @property
    def contestants(self) -> List[str]:
        return [self.player1_id, self.player2_id]


# ── Bonus-round states ────────────────────────────────────────────────────────

class HotButtonHistoryEntry(CamelModel):
    question_id: str
    text: str
    answer: str
    answered_by: Optional[str] = None
    correct: bool = False
    points: int = 0
    revealed_percent: int = 0


class HotButtonState(CamelModel):
    kind: Literal["hot_button"] = "hot_button"
    stage: Literal["intro", "reveal", "answering", "rebuzz", "result", "finished"] = "intro"
    questions: List[HotButtonQuestion]
    question_index: int = 0
    reveal_elapsed_ms: int = 0          # reveal time banked before the running segment
    reveal_started_at: Optional[int] = None
    buzzed_player_id: Optional[str] = None
    buzz_percent: int = 0
    attempted_ids: Set[str] = set()
    round_scores: Dict[str, int] = {}
    history: List[HotButtonHistoryEntry] = []

    @property
    def current_question(self) -> Optional[HotButtonQuestion]:
        if 0 <= self.question_index < len(self.questions):
            return self.questions[self.question_index]
        return None

    def reveal_ms(self, now_ms: int) -> int:
        running = now_ms - self.reveal_started_at if self.reveal_started_at is not None else 0
        return self.reveal_elapsed_ms + max(0, running)

    def revealed_percent(self, now_ms: int, ms_per_char: int) -> int:
        question = self.current_question
        if question is None:
            return 100
        full_ms = max(1, len(question.text) * ms_per_char)
        return min(100, (self.reveal_ms(now_ms) * 100) // full_ms)


class ListItemState(CamelModel):
    id: str
    display: str
    aliases: List[str] = []
    claimed_by: Optional[str] = None
    claimed_at: Optional[int] = None


class Elimination(CamelModel):
    player_id: str
    rank: int
    reason: Literal["wrong", "duplicate", "timeout", "skip", "survivor"]


class CollectiveListState(CamelModel):
    kind: Literal["collective_list"] = "collective_list"
    stage: Literal["intro", "turn", "between", "finished"] = "intro"
    question_id: str
    topic: str
    description: str = ""
    items: List[ListItemState]
    turn_order: List[str]
    active_ids: List[str]
    eliminated: List[Elimination] = []
    turn_index: int = 0
    current_turn_id: Optional[str] = None
    turn_number: int = 0
    claim_counts: Dict[str, int] = {}
    points_per_item: int = 400

    @property
    def claimed_ids(self) -> List[str]:
        return [item.id for item in self.items if item.claimed_by]


SubEngineState = Annotated[
    Union[
        VotingState,
        WheelState,
        LosersPickState,
        DiceRoyaleState,
        RPSDuelState,
        HotButtonState,
        CollectiveListState,
    ],
    Field(discriminator="kind"),
]


class PendingBonus(CamelModel):
    kind: BonusType
    hot_button_questions: List[HotButtonQuestion] = []
    list_question: Optional[CollectiveListQuestion] = None


# ── Derived results (write-once) ──────────────────────────────────────────────

class ScoreBreakdown(CamelModel):
    model_config = ConfigDict(frozen=True)

    correct: bool = False
    base_points: int = 0
    time_bonus: int = 0
    streak_bonus: int = 0
    accuracy_points: int = 0
    rank_bonus: int = 0
    perfect_bonus: int = 0
    speed_bonus: int = 0
    penalty: int = 0
    placement_bonus: int = 0
    points: int = 0
    streak: Optional[int] = None  # None leaves the player's streak untouched


class AnswerResult(CamelModel):
    model_config = ConfigDict(frozen=True)

    player_id: str
    question_id: str
    answered: bool
    answer: Optional[Union[int, float]] = None  # choice index or estimate
    elapsed_ms: Optional[int] = None
    deviation_percent: Optional[float] = None
    breakdown: ScoreBreakdown
    total_score: int


class FinalRanking(CamelModel):
    model_config = ConfigDict(frozen=True)

    rank: int
    player_id: str
    name: str
    score: int
    stats: PlayerStats


# ── Room ──────────────────────────────────────────────────────────────────────

class Room(CamelModel):
    code: str
    host_id: Optional[str] = None
    players: List[Player] = []
    settings: GameSettings = Field(default_factory=GameSettings)
    phase: Phase = Phase.LOBBY
    epoch: int = 0
    current_round: int = 0
    question_index: int = 0
    round_questions: List[Question] = []
    question_started_at: Optional[int] = None
    category_mode: Optional[CategoryMode] = None
    candidates: List[Category] = []
    selected_category: Optional[Category] = None
    sub_engine: Optional[SubEngineState] = None
    pending_bonus: Optional[PendingBonus] = None
    timer_end: Optional[int] = None  # epoch ms
    used_question_ids: Set[str] = set()
    used_bonus_ids: Set[str] = set()
    last_mode_rounds: Dict[CategoryMode, int] = {}
    last_results: List[AnswerResult] = []
    stats: Dict[str, PlayerStats] = {}
    rematch_votes: Dict[str, bool] = {}
    final_rankings: List[FinalRanking] = []
    next_join_seq: int = 0

    # ── Lookups ───────────────────────────────────────────────────────────────

    def get_player(self, player_id: str) -> Optional[Player]:
        for p in self.players:
            if p.id == player_id:
                return p
        return None

    def connected_players(self) -> List[Player]:
        return [p for p in self.players if p.connected]

    def connected_humans(self) -> List[Player]:
        return [p for p in self.players if p.connected and not p.is_bot]

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.question_index < len(self.round_questions):
            return self.round_questions[self.question_index]
        return None

    # ── Snapshot ──────────────────────────────────────────────────────────────

    def to_public(self, now_ms: int, ms_per_char: int) -> Dict[str, Any]:
        """Client-safe snapshot: hides answers, unclaimed aliases and unrevealed text."""
        revealing = self.phase == Phase.REVEALING
        question = self.current_question
        in_question = self.phase in (Phase.QUESTION, Phase.ESTIMATION, Phase.REVEALING)
        players = sorted(
            (p.to_public() for p in self.players),
            key=lambda p: p["score"], reverse=True,
        )
        return {
            "code": self.code,
            "hostId": self.host_id,
            "players": players,
            "settings": self.settings.dump(),
            "phase": self.phase.value,
            "epoch": self.epoch,
            "currentRound": self.current_round,
            "questionIndex": self.question_index,
            "totalQuestions": len(self.round_questions),
            "currentQuestion": question.to_public(reveal=revealing) if question and in_question else None,
            "categoryMode": self.category_mode.value if self.category_mode else None,
            "candidates": [c.dump() for c in self.candidates],
            "selectedCategory": self.selected_category.dump() if self.selected_category else None,
            "subEngine": _sub_engine_public(self.sub_engine, now_ms, ms_per_char),
            "timerEnd": self.timer_end,
            "lastResults": [r.dump() for r in self.last_results] if revealing else [],
            "bonusType": self.pending_bonus.kind.value if self.pending_bonus else None,
            "rematchVotes": dict(self.rematch_votes),
            "finalRankings": [r.dump() for r in self.final_rankings],
            "serverTime": now_ms,
        }


def _sub_engine_public(state: Optional[BaseModel], now_ms: int, ms_per_char: int) -> Optional[Dict[str, Any]]:
    if state is None:
        return None
    if isinstance(state, HotButtonState):
        data = state.model_dump(by_alias=True, mode="json", exclude={"questions"})
        question = state.current_question
        percent = state.revealed_percent(now_ms, ms_per_char)
        if question is not None:
            shown = (len(question.text) * percent) // 100
            data["currentQuestionText"] = question.text[:shown]
            data["currentQuestionId"] = question.id
        data["revealedPercent"] = percent
        data["totalQuestions"] = len(state.questions)
        return data
    if isinstance(state, CollectiveListState):
        data = state.dump()
        for item in data["items"]:
            if not item["claimedBy"]:
                item["display"] = None
                item["aliases"] = []
        return data
    if isinstance(state, RPSDuelState):
        data = state.dump()
        # choices stay hidden until both contestants have locked in
        data["currentChoices"] = {pid: True for pid in state.current_choices}
        return data
    return state.dump()


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateRoomRequest(CamelModel):
    host_name: str = "Host"
    avatar: str = ""
    settings: Optional[Dict[str, Any]] = None


class CreateRoomResponse(CamelModel):
    room_code: str
    player_id: str


class JoinRoomRequest(CamelModel):
    player_name: str
    avatar: str = ""
    player_id: Optional[str] = None


class JoinRoomResponse(CamelModel):
    room_code: str
    player_id: str


class AddBotRequest(CamelModel):
    name: Optional[str] = None
    accuracy: Optional[float] = Field(None, ge=0.0, le=1.0)


class AddBotResponse(CamelModel):
    player_id: str
    name: str

