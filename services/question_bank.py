"""
Question bank — read-only lookup used to populate rounds.

Backed by a JSON seed file (the content-management subsystem exports to this
shape). The engine only queries it; nothing here is mutated after load.

JSON shape:
  {
    "categories":      [{id, name, icon}],
    "questions":       [{id, categoryId, type, difficulty, text, answers, correctIndex}
                        | {…, type: "estimation", correctValue, unit}],
    "hotButton":       [{id, text, answer, aliases, categoryId, difficulty}],
    "collectiveLists": [{id, topic, description, categoryId, items: [{id, display, aliases}]}]
  }
"""
import json
import logging
import os
import random
from typing import Any, Dict, Iterable, List, Optional, Union

from config import settings
from models.game import (
    BonusType, Category, CollectiveListQuestion, Difficulty,
    HotButtonQuestion, Question, QuestionType,
)

logger = logging.getLogger(__name__)

_BUNDLED_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "questions.json")


class QuestionBank:
    def __init__(
        self,
        categories: List[Category],
        questions: List[Question],
        hot_button: Optional[List[HotButtonQuestion]] = None,
        collective_lists: Optional[List[CollectiveListQuestion]] = None,
    ):
        self.categories = list(categories)
        self.questions = list(questions)
        self.hot_button = list(hot_button or [])
        self.collective_lists = list(collective_lists or [])
        self._by_category: Dict[str, List[Question]] = {}
        for q in self.questions:
            self._by_category.setdefault(q.category_id, []).append(q)

    # ── Loading ───────────────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuestionBank":
        return cls(
            categories=[Category.model_validate(c) for c in data.get("categories", [])],
            questions=[Question.model_validate(q) for q in data.get("questions", [])],
            hot_button=[HotButtonQuestion.model_validate(q) for q in data.get("hotButton", [])],
            collective_lists=[
                CollectiveListQuestion.model_validate(q) for q in data.get("collectiveLists", [])
            ],
        )

    @classmethod
    def load(cls, path: str) -> "QuestionBank":
        with open(path, encoding="utf-8") as fh:
            bank = cls.from_dict(json.load(fh))
        logger.info(
            "Question bank loaded from %s (%d categories, %d questions, %d hot-button, %d lists)",
            path, len(bank.categories), len(bank.questions),
            len(bank.hot_button), len(bank.collective_lists),
        )
        return bank

    # ── Categories ────────────────────────────────────────────────────────────

    def category(self, category_id: str) -> Optional[Category]:
        for c in self.categories:
            if c.id == category_id:
                return c
        return None

    def random_categories(self, count: int, rng: Optional[random.Random] = None) -> List[Category]:
        """Categories that actually have questions, in random order."""
        rng = rng or random.Random()
        usable = [c for c in self.categories if self._by_category.get(c.id)]
        return rng.sample(usable, min(count, len(usable)))

    # ── Questions ─────────────────────────────────────────────────────────────

    def draw_questions(
        self,
        category_id: str,
        count: int,
        difficulty_mix: Dict[Difficulty, float],
        exclude_ids: Iterable[str] = (),
        include_estimation: bool = True,
        rng: Optional[random.Random] = None,
    ) -> List[Question]:
        """
        Draw up to `count` unused questions of one category.

        Each difficulty gets a quota proportional to its share of the mix
        (largest remainder); short buckets are topped up from whatever is left.
        """
        rng = rng or random.Random()
        excluded = set(exclude_ids)
        pool = [
            q for q in self._by_category.get(category_id, [])
            if q.id not in excluded and (include_estimation or q.type != QuestionType.ESTIMATION)
        ]
        if not pool:
            # Every question of the category was used already; allow repeats
            pool = [
                q for q in self._by_category.get(category_id, [])
                if include_estimation or q.type != QuestionType.ESTIMATION
            ]

        drawn: List[Question] = []
        for difficulty, quota in _quotas(count, difficulty_mix).items():
            bucket = [q for q in pool if q.difficulty == difficulty and q not in drawn]
            drawn.extend(rng.sample(bucket, min(quota, len(bucket))))
        if len(drawn) < count:
            rest = [q for q in pool if q not in drawn]
            drawn.extend(rng.sample(rest, min(count - len(drawn), len(rest))))
        rng.shuffle(drawn)
        return drawn

    # ── Bonus content ─────────────────────────────────────────────────────────

    def draw_hot_button_questions(
        self, count: int, exclude_ids: Iterable[str] = (), rng: Optional[random.Random] = None
    ) -> List[HotButtonQuestion]:
        rng = rng or random.Random()
        excluded = set(exclude_ids)
        pool = [q for q in self.hot_button if q.id not in excluded]
        return rng.sample(pool, min(count, len(pool)))

    def draw_collective_list(
        self, exclude_ids: Iterable[str] = (), rng: Optional[random.Random] = None
    ) -> Optional[CollectiveListQuestion]:
        rng = rng or random.Random()
        excluded = set(exclude_ids)
        pool = [q for q in self.collective_lists if q.id not in excluded]
        return rng.choice(pool) if pool else None

    def draw_bonus_question(
        self, kind: BonusType, exclude_ids: Iterable[str] = (), rng: Optional[random.Random] = None
    ) -> Optional[Union[HotButtonQuestion, CollectiveListQuestion]]:
        """One unused piece of bonus content of `kind`, or None when exhausted."""
        if kind == BonusType.COLLECTIVE_LIST:
            return self.draw_collective_list(exclude_ids, rng)
        drawn = self.draw_hot_button_questions(1, exclude_ids, rng)
        return drawn[0] if drawn else None

    def has_bonus(self, kind: BonusType, exclude_ids: Iterable[str] = ()) -> bool:
        excluded = set(exclude_ids)
        source = self.hot_button if kind == BonusType.HOT_BUTTON else self.collective_lists
        return any(q.id not in excluded for q in source)

    def question(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)


def _quotas(count: int, mix: Dict[Difficulty, float]) -> Dict[Difficulty, int]:
    total = sum(mix.values())
    if total <= 0 or count <= 0:
        return {}
    exact = {d: count * share / total for d, share in mix.items()}
    quotas = {d: int(v) for d, v in exact.items()}
    leftover = count - sum(quotas.values())
    by_remainder = sorted(exact, key=lambda d: exact[d] - quotas[d], reverse=True)
    for d in by_remainder[:leftover]:
        quotas[d] += 1
    return quotas


_question_bank: Optional[QuestionBank] = None


def get_question_bank() -> QuestionBank:
    """Lazy singleton — loaded on first call from settings.question_bank_path."""
    global _question_bank
    if _question_bank is None:
        _question_bank = QuestionBank.load(settings.question_bank_path or _BUNDLED_PATH)
    return _question_bank
