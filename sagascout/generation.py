"""
生成AIへのプロンプト構築と応答JSONの解析。
Prompt construction for the AI backend and parsing of its JSON replies.
"""

import datetime
import json
import logging
import random
import re
from typing import Any, Dict, List, Optional, Tuple, Type, Union

from pydantic import ValidationError

from sagascout import llm_client
from sagascout.constants import (
    ACCOMMODATION_DURATION,
    ACCOMMODATION_NAMES,
    DESTINATION_RESULT_COUNT,
    FALLBACK_IMAGE_URL,
    LLM_DETAILS_MODEL_NAME,
    MAX_CITIES_PER_TRIP,
    NEARBY_ATTRACTION_COUNT,
)
from sagascout.errors import ParseFailure
from sagascout.preferences import render_preferences
from sagascout.schemas import (
    Activity,
    Day,
    Destination,
    DestinationDetails,
    Itinerary,
    NearbyAttraction,
    PreferenceSet,
)

logger = logging.getLogger(__name__)

JsonPayload = Union[Dict[str, Any], List[Any]]

_CLOSERS = {"{": "}", "[": "]"}
_COST_PATTERN = re.compile(r"\$\s*([\d,]+)")
_NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?")
_TIME_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})")


# JSON抽出
# JSON extraction
def _strip_code_fences(text: str) -> str:
    """
    ``` で囲まれたコードフェンスを除去する
    Remove surrounding triple-backtick code fences from text.
    """
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()
    if len(lines) >= 2 and lines[0].startswith("```") and lines[-1].startswith("```"):
        return "\n".join(lines[1:-1]).strip()
    return stripped


def _balanced_end(text: str, start: int) -> int:
    """
    start位置の括弧に対応する閉じ括弧の位置を返す（文字列内は無視）
    Return the index of the bracket closing the one at `start`, or -1.
    """
    stack = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]"):
            if not stack or stack.pop() != char:
                return -1
            if not stack:
                return index
    return -1


def find_json_span(text: str, openers: str = "[{") -> Optional[str]:
    """
    テキスト中で最初に現れる、対応の取れた [...] または {...} を返す
    Return the first balanced `[...]` or `{...}` span in the text.
    """
    for start, char in enumerate(text):
        if char not in openers:
            continue
        end = _balanced_end(text, start)
        if end != -1:
            return text[start : end + 1]
    return None


def parse_json_payload(text: Optional[str], expected: Type = dict) -> JsonPayload:
    """
    AI応答から期待する型のJSONを取り出す
    Extract JSON of the expected type from an AI reply.

    前後の説明文は無視し、見つからない場合は ParseFailure を送出します。
    Surrounding commentary is ignored; raises ParseFailure when nothing usable is found.
    """
    cleaned = _strip_code_fences(str(text or ""))
    opener = "[" if expected is list else "{"
    remaining = cleaned
    while True:
        span = find_json_span(remaining, opener)
        if span is None:
            break
        try:
            data = json.loads(span)
        except ValueError:
            data = None
        if isinstance(data, expected):
            return data
        remaining = remaining[remaining.index(span) + 1 :]
    logger.warning("AI reply did not contain a JSON %s: %.200s", expected.__name__, cleaned)
    raise ParseFailure(f"AI reply did not contain a JSON {expected.__name__}")


# 候補地
# Destinations
def fallback_image(title: str) -> str:
    query = "+".join(title.split()) or "travel"
    return FALLBACK_IMAGE_URL.format(query=query)


def build_destination_prompt(preferences: PreferenceSet, count: int = DESTINATION_RESULT_COUNT) -> str:
    return (
        "Based on these travel preferences:\n"
        f"{render_preferences(preferences)}\n\n"
        f"Generate exactly {count} destinations that match these preferences. "
        "Return only a JSON array where every item has this exact structure:\n"
        "{\n"
        '  "title": "Country or region",\n'
        '  "description": "Brief description",\n'
        '  "image": "",\n'
        '  "matchPercentage": 85,\n'
        '  "rating": 4.5,\n'
        '  "priceRange": "$200-300/day"\n'
        "}"
    )


def parse_destinations(text: str) -> List[Destination]:
    """
    候補地の配列を解析し、数値項目を補正する
    Parse a destination array and coerce its numeric fields.
    """
    items = parse_json_payload(text, expected=list)
    destinations = []
    for item in items:
        if not isinstance(item, dict):
            raise ParseFailure("Destination entries must be JSON objects")
        try:
            destination = Destination.model_validate(item)
        except ValidationError as err:
            raise ParseFailure(f"Destination entry has an unexpected shape: {err}") from err
        if not destination.image:
            destination.image = fallback_image(destination.title)
        destinations.append(destination)
    return destinations


def search_destinations(preferences: PreferenceSet) -> List[Destination]:
    text = llm_client.complete(build_destination_prompt(preferences))
    return parse_destinations(text)


# 目的地の詳細
# Destination details
def build_details_prompt(title: str, preferences: PreferenceSet) -> str:
    return (
        f"Generate the top 3-5 cities in {title} with activities and events based on these preferences:\n"
        f"{render_preferences(preferences)}\n\n"
        "Return a JSON object with exactly this structure. Include exactly 3 activities per city "
        "and leave image fields empty:\n"
        "{\n"
        '  "cities": [{"name": "City", "description": "...", "image": "",\n'
        '    "activities": [{"name": "...", "description": "...", "duration": "2-3 hours",'
        ' "image": "", "bestTime": "Morning", "price": "$50"}],\n'
        '    "events": [{"name": "...", "description": "...", "date": "Specific date/period", "image": ""}]}],\n'
        '  "weather": {"temperature": "20-25°C", "conditions": "Sunny", "rainfall": "Low"},\n'
        '  "transportation": {"options": ["Metro", "Bus"], "costs": "$20-30/day"},\n'
        '  "accommodation": {"types": ["Hotels"], "priceRanges": "$100-200/night",'
        ' "recommendations": ["City Center"]}\n'
        "}\n"
        "Return ONLY the JSON object, no other text."
    )


def parse_details(text: str) -> DestinationDetails:
    data = parse_json_payload(text, expected=dict)
    try:
        return DestinationDetails.model_validate(data)
    except ValidationError as err:
        raise ParseFailure(f"Destination details have an unexpected shape: {err}") from err


def destination_details(title: str, preferences: PreferenceSet) -> DestinationDetails:
    text = llm_client.complete(build_details_prompt(title, preferences), model_name=LLM_DETAILS_MODEL_NAME)
    return parse_details(text)


# 周辺スポット
# Nearby attractions
def build_nearby_prompt(lat: float, lng: float, city: str = "") -> str:
    where = f" in {city}" if city else ""
    return (
        f"Given these coordinates: latitude {lat}, longitude {lng}{where}, "
        f"suggest {NEARBY_ATTRACTION_COUNT} nearby tourist attractions or points of interest.\n\n"
        "Return ONLY a JSON array with this structure (no other text):\n"
        '[{"name": "Attraction Name", "description": "Brief description", '
        '"duration": "1-2h", "location": "Address or area", "type": "attraction"}]'
    )


def nearby_attractions(lat: float, lng: float, city: str = "") -> List[NearbyAttraction]:
    text = llm_client.complete(build_nearby_prompt(lat, lng, city))
    items = parse_json_payload(text, expected=list)
    try:
        return [NearbyAttraction.model_validate(item) for item in items if isinstance(item, dict)]
    except ValidationError as err:
        raise ParseFailure(f"Nearby attractions have an unexpected shape: {err}") from err


# 旅程
# Itineraries
def build_cities_prompt(destination: str, preferences: PreferenceSet, length: int) -> str:
    city_count = min(length, MAX_CITIES_PER_TRIP)
    return (
        "Based on these travel preferences:\n"
        f"{render_preferences(preferences)}\n\n"
        f"Generate a list of {city_count} cities to visit in {destination} for a {length}-day trip.\n"
        "Return only a JSON array with this structure:\n"
        '[{"name": "City Name", "description": "Why this city matches the preferences", "daysToSpend": 2}]\n\n'
        f"Important: the total daysToSpend across all cities must equal {length}."
    )


def build_city_plan_prompt(
    city: str,
    destination: str,
    preferences: PreferenceSet,
    days: int,
    start_date: datetime.date,
) -> str:
    return (
        f"Generate a detailed day-by-day itinerary for {city}, {destination} based on these preferences:\n"
        f"{render_preferences(preferences)}\n\n"
        f"Duration: {days} days\n"
        f"Start Date: {start_date.isoformat()}\n\n"
        "You MUST respond with VALID JSON only, using this format:\n"
        "{\n"
        '  "days": [{"date": "YYYY-MM-DD", "city": "' + city + '", "activities": [\n'
        '    {"time": "HH:MM", "title": "Activity name", "duration": "X hours", "location": "Place, '
        + city + '",\n'
        '     "description": "Brief description", "type": "attraction | meal | transport | rest | accommodation",\n'
        '     "lat": 0.0, "long": 0.0}]}],\n'
        '  "summary": "Brief summary of the visit to ' + city + '",\n'
        '  "totalActivities": 10,\n'
        '  "estimatedCost": "$X,XXX"\n'
        "}\n"
        "The last activity of every day must be the accommodation where travelers spend the night."
    )


def _parse_cities(text: str, length: int) -> List[Tuple[str, int]]:
    items = parse_json_payload(text, expected=list)
    cities: List[Tuple[str, int]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = " ".join(str(item.get("name") or "").split())
        if not name:
            continue
        try:
            days = int(float(item.get("daysToSpend") or 1))
        except (TypeError, ValueError):
            days = 1
        cities.append((name, max(1, days)))
    if not cities:
        raise ParseFailure("AI reply did not contain any cities")
    return _balance_city_days(cities[:MAX_CITIES_PER_TRIP], length)


def _balance_city_days(cities: List[Tuple[str, int]], length: int) -> List[Tuple[str, int]]:
    """
    都市ごとの日数の合計が旅程日数と一致するように調整する
    Adjust per-city day counts so they sum to the trip length.
    """
    balanced: List[Tuple[str, int]] = []
    remaining = length
    for index, (name, days) in enumerate(cities):
        if remaining <= 0:
            break
        if index == len(cities) - 1:
            days = remaining
        days = min(days, remaining)
        balanced.append((name, days))
        remaining -= days
    return balanced


def _duration_hours(label: str) -> float:
    match = _NUMBER_PATTERN.search(label or "")
    if not match:
        return 0.0
    value = float(match.group(0))
    lowered = label.lower()
    if "h" in lowered:
        return value
    if "min" in lowered:
        return value / 60
    return 0.0


def _accommodation_time(last: Optional[Activity]) -> str:
    """
    最後の活動の開始時刻と所要時間から宿泊の開始時刻を求める（24時で折り返す）
    Start time for the overnight stay: the last activity's time plus its duration, wrapping at midnight.
    """
    if last is None:
        return "20:00"
    match = _TIME_PATTERN.match(last.time)
    if not match:
        return "20:00"
    start_minutes = int(match.group(1)) * 60 + int(match.group(2))
    total = (start_minutes + int(round(_duration_hours(last.duration) * 60))) % (24 * 60)
    return f"{total // 60:02d}:{total % 60:02d}"


def ensure_accommodation_last(day: Day, city: str, rng: Optional[random.Random] = None) -> Day:
    """
    各日の最後の活動を宿泊にそろえる（既存の宿泊は置き換える）
    Make the overnight stay the single, final activity of the day.
    """
    chooser = rng or random
    activities = [activity for activity in day.activities if activity.type != "accommodation"]
    hotel = f"{city} {chooser.choice(ACCOMMODATION_NAMES)}"
    activities.append(
        Activity(
            time=_accommodation_time(activities[-1] if activities else None),
            title=f"Overnight Stay at {hotel}",
            duration=ACCOMMODATION_DURATION,
            location=hotel,
            description="Check in to your accommodation for the night and rest for tomorrow's adventures.",
            type="accommodation",
        )
    )
    day.activities = activities
    return day


def _cost_value(label: str) -> int:
    match = _COST_PATTERN.search(label or "")
    if not match:
        return 0
    try:
        return int(match.group(1).replace(",", ""))
    except ValueError:
        return 0


def _parse_city_days(text: str, city: str, start_date: datetime.date, limit: int) -> Tuple[List[Day], int]:
    data = parse_json_payload(text, expected=dict)
    raw_days = data.get("days")
    if not isinstance(raw_days, list) or not raw_days:
        raise ParseFailure(f"Itinerary for {city} has no days")
    days: List[Day] = []
    for offset, raw_day in enumerate(raw_days[:limit]):
        if not isinstance(raw_day, dict):
            raise ParseFailure(f"Itinerary for {city} contains a malformed day")
        payload = dict(raw_day)
        payload["date"] = start_date + datetime.timedelta(days=offset)
        payload["city"] = payload.get("city") or city
        try:
            days.append(Day.model_validate(payload))
        except ValidationError as err:
            raise ParseFailure(f"Itinerary for {city} has an unexpected shape: {err}") from err
    return days, _cost_value(str(data.get("estimatedCost") or ""))


def generate_itinerary(
    destination: str,
    preferences: PreferenceSet,
    start_date: datetime.date,
    length: int,
    rng: Optional[random.Random] = None,
) -> Itinerary:
    """
    都市リストを求めてから都市ごとの日程を生成し、1つの旅程にまとめる
    Ask for a city list, then a day plan per city, and stitch them into one itinerary.

    日付は開始日から連続するように書き換えます。
    Day dates are rewritten to consecutive dates from the start date.
    """
    if length < 1:
        length = 1
    cities = _parse_cities(llm_client.complete(build_cities_prompt(destination, preferences, length)), length)

    all_days: List[Day] = []
    cost_total = 0
    cursor = start_date
    for city, city_days in cities:
        text = llm_client.complete(build_city_plan_prompt(city, destination, preferences, city_days, cursor))
        days, cost = _parse_city_days(text, city, cursor, city_days)
        for day in days:
            ensure_accommodation_last(day, city, rng)
        all_days.extend(days)
        cost_total += cost
        cursor += datetime.timedelta(days=city_days)

    for offset, day in enumerate(all_days):
        day.date = start_date + datetime.timedelta(days=offset)

    city_summary = ", ".join(f"{city} ({days} days)" for city, days in cities)
    return Itinerary(
        days=all_days,
        summary=f"{length}-day trip to {destination} visiting {city_summary}.",
        total_activities=sum(len(day.activities) for day in all_days),
        estimated_cost=f"${cost_total:,}",
    )
