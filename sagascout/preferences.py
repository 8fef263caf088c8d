"""
質問フローに沿って旅行の好みを収集するモジュール。
Collects travel preferences through the guided question flow.

受け付けた変更はすべてセッションストアへ反映し、リロード後も途中から再開できます。
Every accepted change is mirrored to the session store so a reload resumes mid-flow.
"""

import hashlib
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sagascout import redis_client
from sagascout.constants import (
    CATEGORY_DESTINATION_TYPE,
    CATEGORY_SPECIFIC_COUNTRY,
    CATEGORY_TRIP_PREFERENCES,
    EXCLUSIVE_CATEGORIES,
    OPTION_CUSTOMIZE,
    OPTION_SPECIFIC_COUNTRY,
    OPTION_USE_PROFILE,
    PROFILE_INTEREST_CATEGORY,
    PROFILE_INTERESTS_PER_CATEGORY,
    PROFILE_INTERESTS_TOTAL,
    PROFILE_STYLE_CATEGORIES,
    QUESTIONS,
    SPECIFIC_COUNTRY_INDEX,
    SPECIFIC_COUNTRY_QUESTION,
)
from sagascout.schemas import PreferenceSet

logger = logging.getLogger(__name__)

MAX_OPTION_LENGTH = 200


def clean_option(value: Any, max_length: int = MAX_OPTION_LENGTH) -> Optional[str]:
    """
    選択肢文字列のサニタイズを行う
    Sanitize an option string: drop control chars, collapse whitespace, cap length.
    """
    if value is None:
        return None
    text = re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]", "", str(value))
    text = " ".join(text.split())
    if not text:
        return None
    return text[:max_length]


def clean_preferences(preferences: Optional[Mapping[str, Iterable[Any]]]) -> PreferenceSet:
    """
    空のカテゴリと重複を取り除いた PreferenceSet を返す
    Return a PreferenceSet with empty categories and duplicate options removed.
    """
    cleaned: PreferenceSet = {}
    if not preferences:
        return cleaned
    for category, options in preferences.items():
        key = clean_option(category)
        if not key or options is None:
            continue
        if isinstance(options, str):
            options = [options]
        values: List[str] = []
        for option in options:
            text = clean_option(option)
            if text and text not in values:
                values.append(text)
        if values:
            cleaned[key] = values
    return cleaned


def merge_preferences(base: Mapping[str, List[str]], extra: Mapping[str, Iterable[Any]]) -> PreferenceSet:
    """
    既存の選択を残したまま追加の選択をマージする（全置換はしない）
    Merge extra selections into the base without replacing it wholesale.
    """
    merged = clean_preferences(base)
    for category, options in clean_preferences(extra).items():
        current = merged.setdefault(category, [])
        for option in options:
            if option not in current:
                current.append(option)
    return merged


def canonical_preferences(preferences: Mapping[str, Iterable[Any]]) -> str:
    cleaned = clean_preferences(preferences)
    canonical = {category: sorted(options) for category, options in cleaned.items()}
    return json.dumps(canonical, sort_keys=True, ensure_ascii=False, separators=(",", ":"))


def fingerprint(preferences: Mapping[str, Iterable[Any]]) -> str:
    """
    キー順・選択肢順に依存しない好みの指紋
    Preference fingerprint independent of category and option order.
    """
    return hashlib.sha256(canonical_preferences(preferences).encode("utf-8")).hexdigest()


def render_preferences(preferences: Mapping[str, Iterable[Any]]) -> str:
    """プロンプト用に "category: a, b" 形式の行へ変換する / Render "category: a, b" lines for prompts."""
    cleaned = clean_preferences(preferences)
    return "\n".join(f"{category}: {', '.join(options)}" for category, options in cleaned.items())


def profile_preferences(profile: Optional[Mapping[str, Any]], limited: bool) -> PreferenceSet:
    """
    プロフィールから既定の好みを組み立てる
    Build default preferences from a stored profile.

    limited=True の場合、興味はカテゴリごとに5件、合計10件までに絞ります。
    With limited=True interests are capped at 5 per category and 10 overall.
    """
    if not profile:
        return {}
    defaults: Dict[str, List[Any]] = {}
    styles = profile.get("travel_styles") or {}
    if isinstance(styles, Mapping):
        for style_key, category in PROFILE_STYLE_CATEGORIES.items():
            values = styles.get(style_key)
            if values:
                defaults[category] = list(values) if not isinstance(values, str) else [values]

    interests: List[Any] = []
    raw_interests = profile.get("travel_interests") or {}
    if isinstance(raw_interests, Mapping):
        for values in raw_interests.values():
            if isinstance(values, str):
                values = [values]
            values = list(values or [])
            interests.extend(values[:PROFILE_INTERESTS_PER_CATEGORY] if limited else values)
    if limited:
        interests = interests[:PROFILE_INTERESTS_TOTAL]
    if interests:
        defaults[PROFILE_INTEREST_CATEGORY] = interests
    return clean_preferences(defaults)


class PreferenceCollector:
    """
    カテゴリごとの選択を蓄積する質問フローの状態
    Question-flow state accumulating selections per category.
    """

    def __init__(
        self,
        session_id: str,
        preferences: Optional[PreferenceSet] = None,
        index: int = 0,
        customizing: bool = False,
        profile: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.session_id = session_id
        self.preferences = clean_preferences(preferences)
        self.index = index
        self.customizing = customizing
        self.profile = profile

    @classmethod
    def load(cls, session_id: str, profile: Optional[Mapping[str, Any]] = None) -> "PreferenceCollector":
        """セッションストアから状態を復元する / Restore state from the session store."""
        index = redis_client.get_question_index(session_id)
        if index != SPECIFIC_COUNTRY_INDEX and not 0 <= index <= len(QUESTIONS):
            index = 0
        return cls(
            session_id,
            preferences=redis_client.get_selected_preferences(session_id),
            index=index,
            customizing=redis_client.is_customizing(session_id),
            profile=profile,
        )

    def _persist(self) -> None:
        redis_client.save_selected_preferences(self.session_id, self.preferences)
        redis_client.save_question_index(self.session_id, self.index)
        redis_client.save_customizing(self.session_id, self.customizing)

    @property
    def is_complete(self) -> bool:
        return self.index >= len(QUESTIONS)

    @property
    def wants_specific_country(self) -> bool:
        return self.preferences.get(CATEGORY_DESTINATION_TYPE) == [OPTION_SPECIFIC_COUNTRY]

    @property
    def specific_country(self) -> Optional[str]:
        if not self.wants_specific_country:
            return None
        values = self.preferences.get(CATEGORY_SPECIFIC_COUNTRY)
        return values[0] if values else None

    def current_question(self) -> Optional[Dict[str, Any]]:
        if self.index == SPECIFIC_COUNTRY_INDEX:
            return SPECIFIC_COUNTRY_QUESTION
        if self.is_complete:
            return None
        return QUESTIONS[self.index]

    def current_category(self) -> Optional[str]:
        question = self.current_question()
        return question["category"] if question else None

    def record_selection(self, category: str, option: str) -> PreferenceSet:
        """
        選択を記録する。通常カテゴリはトグル、単一選択カテゴリは置き換え
        Record a selection: toggle for ordinary categories, replace for exclusive ones.
        """
        category = clean_option(category)
        option = clean_option(option)
        if not category or not option:
            return self.preferences

        if category in EXCLUSIVE_CATEGORIES:
            self.preferences[category] = [option]
            self._apply_exclusive_side_effects(category, option)
        else:
            current = self.preferences.get(category, [])
            if option in current:
                current = [value for value in current if value != option]
            else:
                current = current + [option]
            if current:
                self.preferences[category] = current
            else:
                self.preferences.pop(category, None)

        self._persist()
        return self.preferences

    def _apply_exclusive_side_effects(self, category: str, option: str) -> None:
        if category == CATEGORY_DESTINATION_TYPE and option != OPTION_SPECIFIC_COUNTRY:
            self.preferences.pop(CATEGORY_SPECIFIC_COUNTRY, None)
        elif category == CATEGORY_TRIP_PREFERENCES:
            if option == OPTION_USE_PROFILE:
                self.customizing = False
                self.preferences = merge_preferences(self.preferences, profile_preferences(self.profile, limited=True))
            elif option == OPTION_CUSTOMIZE:
                # 詳細設定の画面を開いた状態にする
                # Mark the customization surface as open
                self.customizing = True
                self.preferences = merge_preferences(self.preferences, profile_preferences(self.profile, limited=False))

    def apply_customization(self, extra: Mapping[str, Iterable[Any]]) -> PreferenceSet:
        """詳細設定の結果をマージする / Merge the result of the customization surface."""
        self.preferences = merge_preferences(self.preferences, extra)
        self.customizing = False
        self._persist()
        return self.preferences

    def advance(self) -> bool:
        """
        次のカテゴリへ進む。現在のカテゴリが未選択なら何もしない
        Move to the next category; a no-op while the current category is empty.
        """
        category = self.current_category()
        if category is None or not self.preferences.get(category):
            return False
        if self.index == SPECIFIC_COUNTRY_INDEX:
            self.index = 1
        elif self.index == 0 and self.wants_specific_country:
            self.index = SPECIFIC_COUNTRY_INDEX
        else:
            self.index += 1
        self._persist()
        return True

    def go_back(self) -> bool:
        """
        前のカテゴリを開き直す（選択は消さない）
        Re-open the previous category without clearing its selections.
        """
        if self.index == 0:
            return False
        if self.index == SPECIFIC_COUNTRY_INDEX:
            self.index = 0
        elif self.index == 1 and self.wants_specific_country:
            self.index = SPECIFIC_COUNTRY_INDEX
        else:
            self.index -= 1
        self._persist()
        return True

    def reset(self) -> None:
        self.preferences = {}
        self.index = 0
        self.customizing = False
        self._persist()

    def state(self) -> Dict[str, Any]:
        return {
            "question": self.current_question(),
            "index": self.index,
            "selections": self.preferences,
            "customizing": self.customizing,
            "complete": self.is_complete,
        }
