"""
プランナー全体で共有する設定値・定数。
Shared configuration and constants for the planner modules.
"""

import os


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# LLMモデル設定
# LLM model configuration
LLM_MODEL_NAME = os.getenv("LLM_MODEL_NAME", "openai/gpt-oss-20b")
LLM_DETAILS_MODEL_NAME = os.getenv("LLM_DETAILS_MODEL_NAME") or LLM_MODEL_NAME
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.7)

# 候補地の件数（保証はしない）
# Expected number of candidate destinations (not guaranteed)
DESTINATION_RESULT_COUNT = _env_int("DESTINATION_RESULT_COUNT", 3)
NEARBY_ATTRACTION_COUNT = 5
MAX_CITIES_PER_TRIP = 3

# 疑似進捗の設定（表示専用で、実際の生成状況とは無関係）
# Synthetic progress settings (cosmetic only, not tied to real generation state)
PROGRESS_INTERVAL_SECONDS = _env_float("PROGRESS_INTERVAL_SECONDS", 2.0)
PROGRESS_CAP = _env_int("PROGRESS_CAP", 95)
PROGRESS_MIN_STEP = 5
PROGRESS_MAX_STEP = 14

# 旅程の日数
# Trip lengths in days
WEEK_TRIP_DAYS = 7
DEFAULT_TRIP_DAYS = 3

# 質問フローのカテゴリ
# Question flow categories
CATEGORY_DESTINATION_TYPE = "destinationType"
CATEGORY_SPECIFIC_COUNTRY = "specificCountry"
CATEGORY_TRAVEL_MONTH = "travelMonth"
CATEGORY_TRIP_PREFERENCES = "tripPreferences"
CATEGORY_DURATION = "duration"

OPTION_SPECIFIC_COUNTRY = "I have a specific country in mind"
OPTION_DISCOVER = "Help me discover destinations"
OPTION_USE_PROFILE = "Use my profile preferences"
OPTION_CUSTOMIZE = "Customize preferences for this trip"

MONTHS = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

QUESTIONS = [
    {
        "category": CATEGORY_DESTINATION_TYPE,
        "question": "Do you already know where you want to go?",
        "options": [OPTION_SPECIFIC_COUNTRY, OPTION_DISCOVER],
    },
    {
        "category": CATEGORY_TRAVEL_MONTH,
        "question": "When are you planning to travel?",
        "options": MONTHS,
    },
    {
        "category": CATEGORY_TRIP_PREFERENCES,
        "question": "How should we shape this trip?",
        "options": [OPTION_USE_PROFILE, OPTION_CUSTOMIZE],
    },
    {
        "category": CATEGORY_DURATION,
        "question": "How long will you be travelling?",
        "options": ["Weekend", "1 week", "2 weeks", "1 month", "More than 1 month"],
    },
]

# 具体的な国を入力するステップ（質問リスト外）
# Free-text country step (outside the question list)
SPECIFIC_COUNTRY_INDEX = -1
SPECIFIC_COUNTRY_QUESTION = {
    "category": CATEGORY_SPECIFIC_COUNTRY,
    "question": "Which country would you like to visit?",
    "options": [],
}

# 単一選択のカテゴリ
# Single-choice categories
EXCLUSIVE_CATEGORIES = {CATEGORY_DESTINATION_TYPE, CATEGORY_TRIP_PREFERENCES, CATEGORY_SPECIFIC_COUNTRY}

# プロフィールの travel_styles キーとカテゴリの対応
# Mapping from profile travel_styles keys to preference categories
PROFILE_STYLE_CATEGORIES = {
    "Travel Type & Group": "travelType",
    "Pace & Detail Level": "travelStyle",
    "Budget": "budget",
    "Accommodation Style": "accommodation",
    "Transportation Preference": "transportation",
}
PROFILE_INTEREST_CATEGORY = "interests"
PROFILE_INTERESTS_PER_CATEGORY = 5
PROFILE_INTERESTS_TOTAL = 10

# 指定国の候補地の既定値
# Defaults for a destination the user named directly
SPECIFIC_COUNTRY_MATCH = 100
SPECIFIC_COUNTRY_RATING = 4.8
SPECIFIC_COUNTRY_PRICE_RANGE = "Varies by region"

ACTIVITY_TYPES = ("attraction", "meal", "transport", "rest", "accommodation")
ACCOMMODATION_NAMES = ("Grand Hotel", "Plaza Hotel", "Boutique Inn", "Luxury Suites", "City Lodge")
ACCOMMODATION_DURATION = "12h"

FALLBACK_IMAGE_URL = "https://source.unsplash.com/featured/?{query},travel"

# SSEストリームの設定
# SSE stream settings
EVENT_STREAM_KEEPALIVE_SECONDS = _env_float("EVENT_STREAM_KEEPALIVE_SECONDS", 15.0)
