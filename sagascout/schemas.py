"""
旅程・目的地のデータモデル（Pydantic）。
Pydantic models for destinations and itineraries.

JSONの項目名は従来どおりのcamelCaseをエイリアスとして保持します。
Wire field names keep their camelCase form as aliases.
"""

import hashlib
import math
import time
import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sagascout.constants import ACTIVITY_TYPES

PreferenceSet = Dict[str, List[str]]


def normalize_title(title: str) -> str:
    """大文字小文字と空白の揺れを吸収したタイトル / Title with case and whitespace folded."""
    return " ".join(str(title or "").split()).casefold()


def destination_key(title: str) -> str:
    """
    目的地タイトルから安定した識別子を生成する
    Derive a stable identifier from a destination title.
    """
    return hashlib.sha256(normalize_title(title).encode("utf-8")).hexdigest()


def _coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        """JSON互換の辞書へ変換する / Dump to a JSON-compatible dict using wire names."""
        return self.model_dump(mode="json", by_alias=True)


class Activity(WireModel):
    time: str = Field(description="開始時刻 / time of day", default="")
    title: str = Field(description="活動名 / activity title", default="")
    duration: str = Field(description="所要時間 / duration label", default="")
    location: str = Field(description="場所 / free-text location", default="")
    description: Optional[str] = None
    type: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = Field(default=None, alias="long")

    @field_validator("time", "title", "duration", "location", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _coerce_text(value)

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> Optional[str]:
        tag = _coerce_text(value).lower()
        return tag if tag in ACTIVITY_TYPES else None

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def _coordinate(cls, value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


class Day(WireModel):
    date: datetime.date
    city: Optional[str] = None
    activities: List[Activity] = Field(default_factory=list)


class Itinerary(WireModel):
    days: List[Day] = Field(default_factory=list)
    summary: str = ""
    total_activities: int = Field(default=0, alias="totalActivities")
    estimated_cost: str = Field(default="", alias="estimatedCost")

    @field_validator("summary", "estimated_cost", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _coerce_text(value)

    @field_validator("total_activities", mode="before")
    @classmethod
    def _count(cls, value: Any) -> int:
        try:
            return max(0, int(float(value)))
        except (TypeError, ValueError):
            return 0


class CityDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    description: str = ""
    image: str = ""
    activities: List[Dict[str, Any]] = Field(default_factory=list)
    events: List[Dict[str, Any]] = Field(default_factory=list)


class DestinationDetails(BaseModel):
    """
    目的地の詳細コンテンツ。未知のキーもそのまま保持します。
    Rich destination content. Unknown keys are kept as-is.
    """
    model_config = ConfigDict(extra="allow")

    cities: List[CityDetail] = Field(default_factory=list)
    activities: List[Dict[str, Any]] = Field(default_factory=list)
    events: List[Dict[str, Any]] = Field(default_factory=list)
    attractions: List[Dict[str, Any]] = Field(default_factory=list)
    weather: Any = None
    transportation: Any = None
    accommodation: Any = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class Destination(WireModel):
    title: str
    description: str = ""
    image: str = ""
    match_percentage: int = Field(default=0, alias="matchPercentage")
    rating: float = 0.0
    price_range: str = Field(default="", alias="priceRange")
    details: Optional[DestinationDetails] = None
    itinerary: Optional[Itinerary] = None

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        title = " ".join(_coerce_text(value).split())
        if not title:
            raise ValueError("title is required")
        return title

    @field_validator("description", "image", "price_range", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _coerce_text(value)

    @field_validator("match_percentage", mode="before")
    @classmethod
    def _match(cls, value: Any) -> int:
        try:
            number = float(str(value).replace("%", "").strip())
        except (TypeError, ValueError):
            return 0
        if not math.isfinite(number):
            return 0
        return int(min(100, max(0, round(number))))

    @field_validator("rating", mode="before")
    @classmethod
    def _rating(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        if not math.isfinite(number):
            return 0.0
        return min(5.0, max(0.0, number))

    @property
    def key(self) -> str:
        return destination_key(self.title)

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude={"details"})
        data["details"] = self.details.to_wire() if self.details else None
        return data


EventStatus = Literal["generating", "complete", "error", "clear"]


class ItineraryEvent(WireModel):
    """
    旅程更新の通知ペイロード
    Notification payload for itinerary updates.
    """
    status: EventStatus
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    itinerary: Optional[Itinerary] = None
    message: Optional[str] = None
    timestamp: float = Field(default_factory=time.time)


class NearbyAttraction(WireModel):
    name: str = ""
    description: str = ""
    duration: str = ""
    location: str = ""
    type: Optional[str] = None

    @field_validator("name", "description", "duration", "location", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return _coerce_text(value)

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> Optional[str]:
        tag = _coerce_text(value).lower()
        return tag if tag in ACTIVITY_TYPES else None
