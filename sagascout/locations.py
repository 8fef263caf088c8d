"""
活動・都市の座標キャッシュ。
Coordinate cache for activities and cities.

地図表示用の補助データのため、保存の失敗は致命的ではありません。
The cache only feeds map rendering, so failed writes are never fatal.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sagascout.database import SessionLocal
from sagascout.models import Location
from sagascout.schemas import Itinerary

logger = logging.getLogger(__name__)


def normalize_location_name(name: Optional[str]) -> str:
    return " ".join(str(name or "").split()).lower()


def city_segment(location: Optional[str]) -> str:
    """場所文字列の最後のカンマ区切り要素 / Trailing comma-delimited segment of a location."""
    parts = [part.strip() for part in str(location or "").split(",") if part.strip()]
    return parts[-1] if parts else ""


def save_location(name: Optional[str], lat: Optional[float], lng: Optional[float]) -> bool:
    """
    座標を保存する。重複は成功として扱う
    Store coordinates for a name; an existing entry counts as success.
    """
    key = normalize_location_name(name)
    if not key or lat is None or lng is None:
        return False
    db = SessionLocal()
    try:
        if db.query(Location.id).filter(Location.name == key).first():
            return True
        db.add(Location(name=key, lat=float(lat), lng=float(lng)))
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Failed to save location %s: %s", key, e)
        return False
    finally:
        db.close()


def save_itinerary_locations(itinerary: Itinerary) -> int:
    """
    座標付きの活動ごとに、活動名と都市名の両方で座標を保存する
    Save activity-level and city-level coordinates for every activity that carries them.
    """
    saved = 0
    for day in itinerary.days:
        for activity in day.activities:
            if not activity.has_coordinates:
                continue
            if save_location(activity.location or activity.title, activity.lat, activity.lng):
                saved += 1
            city = city_segment(activity.location)
            if city:
                save_location(city, activity.lat, activity.lng)
    return saved


def coordinates_for(text: Optional[str]) -> Optional[Tuple[float, float]]:
    """
    名前の部分一致、次に都市要素で座標を探す
    Look up coordinates by substring match, then by the trailing city segment.
    """
    key = normalize_location_name(text)
    if not key:
        return None
    db = SessionLocal()
    try:
        row = db.query(Location).filter(Location.name.ilike(f"%{key}%")).first()
        if row is None:
            city = normalize_location_name(city_segment(text))
            if city:
                row = db.query(Location).filter(Location.name.ilike(f"%{city}%")).first()
        return (row.lat, row.lng) if row is not None else None
    except SQLAlchemyError as e:
        logger.warning("Location lookup failed for %s: %s", key, e)
        return None
    finally:
        db.close()
