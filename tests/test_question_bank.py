"""Question bank loading and drawing."""
import random

from models.game import BonusType, Category, Difficulty, QuestionType
from services.question_bank import _BUNDLED_PATH, QuestionBank, _quotas

from conftest import BANK_DATA

MIX = {Difficulty.EASY: 0.4, Difficulty.MEDIUM: 0.4, Difficulty.HARD: 0.2}


class TestQuotas:
    def test_largest_remainder(self):
        assert _quotas(3, MIX) == {Difficulty.EASY: 1, Difficulty.MEDIUM: 1, Difficulty.HARD: 1}
        assert _quotas(5, MIX) == {Difficulty.EASY: 2, Difficulty.MEDIUM: 2, Difficulty.HARD: 1}

    def test_empty_mix(self):
        assert _quotas(5, {}) == {}


class TestDrawQuestions:
    def test_respects_difficulty_mix(self, bank):
        drawn = bank.draw_questions("alpha", 3, MIX, include_estimation=False, rng=random.Random(1))
        assert {q.id for q in drawn} == {"a-1", "a-2", "a-3"}

    def test_can_exclude_estimation(self, bank):
        for seed in range(10):
            drawn = bank.draw_questions("alpha", 4, MIX, include_estimation=False, rng=random.Random(seed))
            assert all(q.type == QuestionType.CHOICE for q in drawn)

    def test_used_questions_are_skipped(self, bank):
        drawn = bank.draw_questions("beta", 5, MIX, exclude_ids={"b-1", "b-2"}, rng=random.Random(3))
        assert [q.id for q in drawn] == ["b-3"]

    def test_exhausted_category_allows_repeats(self, bank):
        drawn = bank.draw_questions("gamma", 2, MIX, exclude_ids={"g-1", "g-2"}, rng=random.Random(3))
        assert {q.id for q in drawn} == {"g-1", "g-2"}

    def test_unknown_category_draws_nothing(self, bank):
        assert bank.draw_questions("nope", 3, MIX) == []


class TestCategoriesAndBonus:
    def test_random_categories_only_with_questions(self):
        data = dict(BANK_DATA, categories=BANK_DATA["categories"] + [{"id": "empty", "name": "Empty"}])
        bank = QuestionBank.from_dict(data)
        picked = bank.random_categories(10, random.Random(2))
        assert sorted(c.id for c in picked) == ["alpha", "beta", "gamma"]

    def test_category_lookup(self, bank):
        assert bank.category("beta") == Category(id="beta", name="Beta")
        assert bank.category("missing") is None

    def test_bonus_availability_respects_used_ids(self, bank):
        assert bank.has_bonus(BonusType.HOT_BUTTON)
        assert not bank.has_bonus(BonusType.HOT_BUTTON, {"hb-1", "hb-2"})
        assert not bank.has_bonus(BonusType.COLLECTIVE_LIST, {"cl-primary"})

    def test_hot_button_draw_excludes_used(self, bank):
        drawn = bank.draw_hot_button_questions(5, {"hb-1"}, random.Random(4))
        assert [q.id for q in drawn] == ["hb-2"]

    def test_collective_list_draw(self, bank):
        assert bank.draw_collective_list().id == "cl-primary"
        assert bank.draw_collective_list({"cl-primary"}) is None

    def test_draw_bonus_question_by_kind(self, bank):
        assert bank.draw_bonus_question(BonusType.COLLECTIVE_LIST).id == "cl-primary"
        assert bank.draw_bonus_question(BonusType.HOT_BUTTON, {"hb-1"}).id == "hb-2"
        assert bank.draw_bonus_question(BonusType.HOT_BUTTON, {"hb-1", "hb-2"}) is None


class TestBundledBank:
    def test_bundled_file_loads(self):
        bank = QuestionBank.load(_BUNDLED_PATH)
        assert len(bank.categories) == 8
        for category in bank.categories:
            assert len(bank.draw_questions(category.id, 5, MIX)) == 5
        assert bank.has_bonus(BonusType.HOT_BUTTON)
        assert bank.has_bonus(BonusType.COLLECTIVE_LIST)

    def test_bundled_choice_questions_are_well_formed(self):
        bank = QuestionBank.load(_BUNDLED_PATH)
        for q in bank.questions:
            if q.type == QuestionType.CHOICE:
                assert 0 <= q.correct_index < len(q.answers)
            else:
                assert q.correct_value is not None
