"""
選択された目的地の旅程を用意するモジュール。
Produces the itinerary for a chosen destination.

公開済みの旅程があれば日付だけずらして再利用し、なければAIで生成します。
A stored public itinerary is reused with shifted dates; otherwise the AI generates a new one.
"""

import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from sagascout import generation, inflight, locations, persistence
from sagascout.constants import CATEGORY_DURATION, DEFAULT_TRIP_DAYS, WEEK_TRIP_DAYS
from sagascout.errors import PersistenceFailure
from sagascout.preferences import clean_preferences, fingerprint
from sagascout.schemas import Destination, Itinerary, PreferenceSet

logger = logging.getLogger(__name__)

SOURCE_PUBLIC = "public"
SOURCE_GENERATED = "generated"
SOURCE_REGENERATED = "regenerated"


@dataclass
class GenerationResult:
    itinerary: Itinerary
    source: str
    saved: Optional[Dict[str, Any]] = None
    # 新規保存した旅程について公開/非公開を確認するかどうか
    # Whether the caller should ask the user to confirm visibility of a newly saved itinerary
    visibility_prompt: bool = False
    shared: bool = False


def trip_length(preferences: PreferenceSet) -> int:
    """選択した期間に "week" を含めば7日、それ以外は3日 / 7 days if a duration option contains "week", else 3."""
    options = preferences.get(CATEGORY_DURATION) or []
    return WEEK_TRIP_DAYS if any("week" in option for option in options) else DEFAULT_TRIP_DAYS


def shift_dates(itinerary: Union[Itinerary, Dict[str, Any]], start_date: datetime.date) -> Itinerary:
    """
    各日の日付を開始日からの連番に書き換える（内容は変更しない）
    Rewrite day dates to start_date + offset, leaving activities untouched.
    """
    source = itinerary if isinstance(itinerary, Itinerary) else Itinerary.model_validate(itinerary)
    shifted = source.model_copy(deep=True)
    for offset, day in enumerate(shifted.days):
        day.date = start_date + datetime.timedelta(days=offset)
    return shifted


def _public_itinerary(destination: Destination, start_date: datetime.date) -> Optional[Itinerary]:
    try:
        record = persistence.find_public_itinerary(destination.key)
    except SQLAlchemyError as e:
        logger.error("Public itinerary lookup failed for %s: %s", destination.title, e)
        return None
    if record is None:
        return None
    try:
        itinerary = shift_dates(record["itinerary"], start_date)
    except ValidationError as e:
        logger.warning("Ignoring malformed public itinerary %s: %s", record.get("id"), e)
        return None
    if not itinerary.days:
        return None
    logger.info("Reusing public itinerary %s for %s", record.get("id"), destination.title)
    return itinerary


def _save_locations(itinerary: Itinerary) -> None:
    try:
        locations.save_itinerary_locations(itinerary)
    except SQLAlchemyError as e:
        logger.warning("Skipping location cache update: %s", e)


def _record_for_user(
    result: GenerationResult,
    destination: Destination,
    preference_fingerprint: str,
    user_id: str,
) -> None:
    persistence.save_destination(user_id, destination)
    try:
        if persistence.has_user_itinerary(user_id, destination.key):
            return
        result.saved = persistence.save_itinerary(
            user_id,
            destination.title,
            result.itinerary,
            preference_fingerprint=preference_fingerprint,
            is_public=True,
        )
        result.visibility_prompt = True
    except (SQLAlchemyError, PersistenceFailure) as e:
        logger.error("Failed to store itinerary for %s: %s", destination.title, e)


def _produce(
    destination: Destination,
    preferences: PreferenceSet,
    start_date: datetime.date,
    user_id: Optional[str],
) -> GenerationResult:
    itinerary = _public_itinerary(destination, start_date)
    source = SOURCE_PUBLIC
    if itinerary is None:
        itinerary = generation.generate_itinerary(
            destination.title, preferences, start_date, trip_length(preferences)
        )
        source = SOURCE_GENERATED

    result = GenerationResult(itinerary=itinerary, source=source)
    _save_locations(itinerary)
    if user_id:
        _record_for_user(result, destination, fingerprint(preferences), user_id)
    return result


def generate(
    destination: Destination,
    preferences: PreferenceSet,
    start_date: datetime.date,
    user_id: Optional[str] = None,
) -> GenerationResult:
    """
    旅程を用意する。同一条件の同時呼び出しは1回の処理にまとめる
    Produce an itinerary, collapsing concurrent identical calls into one.

    AIの失敗は呼び出し元へ伝播し、座標キャッシュの失敗は無視します。
    AI failures propagate; location cache failures are swallowed.
    """
    preferences = clean_preferences(preferences)
    key = inflight.request_key(destination.key, fingerprint(preferences), start_date, user_id)
    result, shared = inflight.run_once(key, lambda: _produce(destination, preferences, start_date, user_id))
    if shared:
        return GenerationResult(itinerary=result.itinerary, source=result.source, saved=result.saved, shared=True)
    return result


def _previous_start(previous: Optional[Itinerary]) -> datetime.date:
    if previous is not None and previous.days:
        return previous.days[0].date
    return datetime.date.today()


def regenerate(
    destination: Destination,
    preferences: PreferenceSet,
    previous: Optional[Union[Itinerary, Dict[str, Any]]] = None,
) -> GenerationResult:
    """
    以前の開始日と日数のまま、AIで旅程を作り直す（公開旅程は参照しない）
    Generate a fresh itinerary with the previous start date and day count, skipping public records.
    """
    if isinstance(previous, dict):
        try:
            previous = Itinerary.model_validate(previous)
        except ValidationError as e:
            logger.warning("Previous itinerary is malformed; using defaults: %s", e)
            previous = None
    start_date = _previous_start(previous)
    length = len(previous.days) if previous is not None and previous.days else DEFAULT_TRIP_DAYS
    itinerary = generation.generate_itinerary(destination.title, clean_preferences(preferences), start_date, length)
    _save_locations(itinerary)
    return GenerationResult(itinerary=itinerary, source=SOURCE_REGENERATED)
