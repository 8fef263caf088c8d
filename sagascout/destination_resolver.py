"""
好みから候補地を決定するモジュール。
Resolves candidate destinations from accumulated preferences.

高コストなAI呼び出しの前に、必ず永続ストアのキャッシュを確認します。
Durable storage is always checked before the expensive AI call.
"""

import logging
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from sagascout import generation, persistence
from sagascout.constants import (
    CATEGORY_DESTINATION_TYPE,
    CATEGORY_SPECIFIC_COUNTRY,
    OPTION_SPECIFIC_COUNTRY,
    SPECIFIC_COUNTRY_MATCH,
    SPECIFIC_COUNTRY_PRICE_RANGE,
    SPECIFIC_COUNTRY_RATING,
)
from sagascout.preferences import clean_preferences, fingerprint
from sagascout.schemas import Destination, DestinationDetails, PreferenceSet, destination_key

logger = logging.getLogger(__name__)


def specific_country_destination(country: str) -> Destination:
    """ユーザーが国を指定した場合の候補地 / The single candidate for a country the user named."""
    return Destination(
        title=country,
        description=(
            f"Explore the beauty and culture of {country}. "
            "This destination was selected based on your specific request."
        ),
        image=generation.fallback_image(country),
        match_percentage=SPECIFIC_COUNTRY_MATCH,
        rating=SPECIFIC_COUNTRY_RATING,
        price_range=SPECIFIC_COUNTRY_PRICE_RANGE,
    )


def _requested_country(preferences: PreferenceSet) -> Optional[str]:
    if preferences.get(CATEGORY_DESTINATION_TYPE) != [OPTION_SPECIFIC_COUNTRY]:
        return None
    values = preferences.get(CATEGORY_SPECIFIC_COUNTRY)
    return values[0] if values else None


def _cached_destinations(user_id: str, preference_fingerprint: str) -> Optional[List[Destination]]:
    try:
        stored = persistence.find_search_results(user_id, preference_fingerprint)
    except SQLAlchemyError as e:
        logger.error("Search criteria lookup failed; falling back to AI: %s", e)
        return None
    if stored is None:
        return None
    try:
        return [Destination.model_validate(item) for item in stored]
    except ValidationError as e:
        logger.warning("Ignoring malformed stored search result: %s", e)
        return None


def resolve(preferences: PreferenceSet, user_id: Optional[str] = None) -> List[Destination]:
    """
    候補地を返す（通常3件、保証はしない）
    Return candidate destinations (usually three, not guaranteed).

    1. 国が指定されていればその国のみを返す
    2. 認証済みなら同一の好みによる保存済み結果をそのまま返す
    3. それ以外はAIで生成し、同じ指紋で保存する（保存失敗は無視）
    1) A named country short-circuits to that country alone.
    2) Authenticated callers get the stored result for identical preferences verbatim.
    3) Otherwise ask the AI and store the result under the same fingerprint, tolerating write failures.

    AIの解析失敗は ParseFailure、通信失敗は BackendFailure として呼び出し元へ伝播します。
    ParseFailure and BackendFailure propagate to the caller.
    """
    preferences = clean_preferences(preferences)
    country = _requested_country(preferences)
    if country:
        return [specific_country_destination(country)]

    preference_fingerprint = fingerprint(preferences)
    if user_id:
        cached = _cached_destinations(user_id, preference_fingerprint)
        if cached is not None:
            logger.info("Using stored destinations for fingerprint %s", preference_fingerprint[:12])
            return cached

    destinations = generation.search_destinations(preferences)
    if user_id:
        persistence.save_search_results(user_id, preference_fingerprint, preferences, destinations)
    return destinations


def resolve_details(
    destination: Destination,
    preferences: PreferenceSet,
    user_id: Optional[str] = None,
) -> Destination:
    """
    目的地の詳細を付与する。キャッシュがあればAIを呼ばずにそれを使う
    Attach rich details to the destination, using the cached row without calling the AI when present.
    """
    if destination.details is not None:
        return destination

    title_key = destination_key(destination.title)
    cached = None
    try:
        cached = persistence.find_destination_details(title_key)
    except SQLAlchemyError as e:
        logger.error("Destination details lookup failed; falling back to AI: %s", e)

    if cached is not None:
        try:
            destination.details = DestinationDetails.model_validate(cached)
            return destination
        except ValidationError as e:
            logger.warning("Ignoring malformed cached details for %s: %s", destination.title, e)

    details = generation.destination_details(destination.title, clean_preferences(preferences))
    if user_id:
        persistence.save_destination_details(destination.title, details, user_id)
    destination.details = details
    return destination
