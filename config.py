from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    # CORS origins; set ALLOWED_ORIGINS env var for production (JSON list)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    # Extra production origin; appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    question_bank_path: str = ""  # empty = bundled data/questions.json

    # ── Room limits ───────────────────────────────────────────────────────────
    max_players: int = 12
    room_code_length: int = 4
    room_code_chars: str = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    voting_category_count: int = 8
    wheel_segments: int = 8
    fuzzy_threshold: float = 0.85
    hot_button_max_rebuzz: int = 2

    # ── Timings (ms) ──────────────────────────────────────────────────────────
    round_announcement_ms: int = 5500
    category_voting_ms: int = 15000
    wheel_spin_ms: int = 5000
    losers_pick_ms: int = 15000
    pick_window_ms: int = 15000
    dice_rolling_ms: int = 15500
    dice_reroll_ms: int = 10000
    dice_result_ms: int = 3000
    rps_round_ms: int = 10000
    rps_result_ms: int = 3000
    category_announcement_ms: int = 5500
    reveal_ms: int = 6000
    scoreboard_ms: int = 10000
    bonus_announcement_ms: int = 5500
    hot_button_intro_ms: int = 6000
    hot_button_buzzer_ms: int = 25000
    hot_button_answer_ms: int = 15000
    hot_button_reveal_ms_per_char: int = 50
    hot_button_result_ms: int = 4000
    hot_button_rebuzz_delay_ms: int = 2500
    collective_list_intro_ms: int = 3000
    collective_list_turn_ms: int = 15000
    collective_list_turn_delay_ms: int = 2700
    bonus_result_ms: int = 8000
    final_results_ms: int = 8000
    rematch_voting_ms: int = 20000
    empty_room_cleanup_ms: int = 60000

    # ── Bot simulator ─────────────────────────────────────────────────────────
    bot_min_delay_ms: int = 1000
    bot_max_delay_ms: int = 4000
    bot_accuracy: float = 0.6

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
