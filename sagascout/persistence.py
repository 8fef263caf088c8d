"""
目的地・旅程・検索条件の永続化。
Durable storage for destinations, itineraries and search criteria.

補助的なキャッシュへの書き込み失敗はログに残して無視し、主要な結果を妨げません。
Failed writes to auxiliary caches are logged and swallowed so they never block the primary result.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from sagascout.database import SessionLocal
from sagascout.errors import PersistenceFailure
from sagascout.models import (
    DestinationDetail,
    DestinationRecord,
    ItineraryRecord,
    Profile,
    SearchCriteria,
)
from sagascout.schemas import Destination, DestinationDetails, Itinerary, PreferenceSet, destination_key

logger = logging.getLogger(__name__)


def _itinerary_to_dict(record: ItineraryRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "destination": record.destination,
        "title_key": record.title_key,
        "itinerary": record.itinerary_data,
        "summary": record.summary,
        "total_activities": record.total_activities,
        "estimated_cost": record.estimated_cost,
        "is_public": bool(record.is_public),
        "share_id": record.share_id,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


# 検索条件
# Search criteria
def find_search_results(user_id: str, preference_fingerprint: str) -> Optional[List[Dict[str, Any]]]:
    """
    同じ好みの指紋で保存済みの候補地リストを返す
    Return the stored destination list for an identical preference fingerprint.
    """
    db = SessionLocal()
    try:
        row = (
            db.query(SearchCriteria)
            .filter(SearchCriteria.user_id == user_id, SearchCriteria.fingerprint == preference_fingerprint)
            .order_by(SearchCriteria.id.desc())
            .first()
        )
        if row is None or not isinstance(row.destinations, list):
            return None
        return row.destinations
    finally:
        db.close()


def save_search_results(
    user_id: str,
    preference_fingerprint: str,
    preferences: PreferenceSet,
    destinations: List[Destination],
) -> bool:
    db = SessionLocal()
    try:
        db.add(
            SearchCriteria(
                user_id=user_id,
                fingerprint=preference_fingerprint,
                preferences=preferences,
                destinations=[destination.to_wire() for destination in destinations],
            )
        )
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to store search criteria for user %s: %s", user_id, e)
        return False
    finally:
        db.close()


# 目的地の詳細
# Destination details
def find_destination_details(title_key: str) -> Optional[Dict[str, Any]]:
    db = SessionLocal()
    try:
        row = db.query(DestinationDetail).filter(DestinationDetail.title_key == title_key).first()
        return row.details if row is not None else None
    finally:
        db.close()


def save_destination_details(title: str, details: DestinationDetails, user_id: Optional[str] = None) -> bool:
    db = SessionLocal()
    try:
        db.add(
            DestinationDetail(
                title=title,
                title_key=destination_key(title),
                details=details.to_wire(),
                created_by=user_id,
            )
        )
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to cache details for %s: %s", title, e)
        return False
    finally:
        db.close()


# 目的地
# Destinations
def save_destination(user_id: str, destination: Destination) -> bool:
    """
    ユーザーの目的地を未登録の場合のみ保存する
    Insert the destination for the user when no row exists yet.
    """
    db = SessionLocal()
    try:
        exists = (
            db.query(DestinationRecord.id)
            .filter(DestinationRecord.user_id == user_id, DestinationRecord.title_key == destination.key)
            .first()
        )
        if exists:
            return True
        db.add(
            DestinationRecord(
                user_id=user_id,
                title=destination.title,
                title_key=destination.key,
                description=destination.description,
                image=destination.image,
                match_percentage=destination.match_percentage,
                rating=destination.rating,
                price_range=destination.price_range,
            )
        )
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Failed to store destination %s for user %s: %s", destination.title, user_id, e)
        return False
    finally:
        db.close()


# 旅程
# Itineraries
def find_public_itinerary(title_key: str) -> Optional[Dict[str, Any]]:
    """
    同じ目的地の公開旅程を1件返す（最初に見つかったもの）
    Return the first public itinerary stored for the destination.
    """
    db = SessionLocal()
    try:
        row = (
            db.query(ItineraryRecord)
            .filter(ItineraryRecord.title_key == title_key, ItineraryRecord.is_public.is_(True))
            .order_by(ItineraryRecord.id.asc())
            .first()
        )
        return _itinerary_to_dict(row) if row is not None else None
    finally:
        db.close()


def has_user_itinerary(user_id: str, title_key: str) -> bool:
    db = SessionLocal()
    try:
        row = (
            db.query(ItineraryRecord.id)
            .filter(ItineraryRecord.user_id == user_id, ItineraryRecord.title_key == title_key)
            .first()
        )
        return row is not None
    finally:
        db.close()


def save_itinerary(
    user_id: str,
    destination_title: str,
    itinerary: Itinerary,
    preference_fingerprint: Optional[str] = None,
    is_public: bool = True,
) -> Dict[str, Any]:
    """
    旅程のスナップショットを保存する（既定は公開）
    Persist an itinerary snapshot (public by default).
    """
    db = SessionLocal()
    try:
        record = ItineraryRecord(
            user_id=user_id,
            criteria_fingerprint=preference_fingerprint,
            destination=destination_title,
            title_key=destination_key(destination_title),
            itinerary_data=itinerary.to_wire(),
            summary=itinerary.summary,
            total_activities=itinerary.total_activities,
            estimated_cost=itinerary.estimated_cost,
            is_public=is_public,
            share_id=uuid.uuid4().hex,
        )
        db.add(record)
        db.commit()
        db.refresh(record)
        return _itinerary_to_dict(record)
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceFailure(f"Failed to save itinerary for {destination_title}: {e}") from e
    finally:
        db.close()


def set_itinerary_visibility(itinerary_id: int, user_id: str, is_public: bool) -> Optional[Dict[str, Any]]:
    db = SessionLocal()
    try:
        record = (
            db.query(ItineraryRecord)
            .filter(ItineraryRecord.id == itinerary_id, ItineraryRecord.user_id == user_id)
            .first()
        )
        if record is None:
            return None
        record.is_public = bool(is_public)
        db.commit()
        db.refresh(record)
        return _itinerary_to_dict(record)
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceFailure(f"Failed to update itinerary {itinerary_id}: {e}") from e
    finally:
        db.close()


def list_itineraries(user_id: str) -> List[Dict[str, Any]]:
    db = SessionLocal()
    try:
        rows = (
            db.query(ItineraryRecord)
            .filter(ItineraryRecord.user_id == user_id)
            .order_by(ItineraryRecord.id.desc())
            .all()
        )
        return [_itinerary_to_dict(row) for row in rows]
    finally:
        db.close()


def get_itinerary(itinerary_id: int, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    所有者または公開中の旅程のみ返す
    Return the itinerary only to its owner or when it is public.
    """
    db = SessionLocal()
    try:
        record = db.query(ItineraryRecord).filter(ItineraryRecord.id == itinerary_id).first()
        if record is None:
            return None
        if not record.is_public and record.user_id != user_id:
            return None
        return _itinerary_to_dict(record)
    finally:
        db.close()


def get_shared_itinerary(share_id: str) -> Optional[Dict[str, Any]]:
    db = SessionLocal()
    try:
        record = db.query(ItineraryRecord).filter(ItineraryRecord.share_id == share_id).first()
        return _itinerary_to_dict(record) if record is not None else None
    finally:
        db.close()


def delete_itinerary(itinerary_id: int, user_id: str) -> bool:
    db = SessionLocal()
    try:
        deleted = (
            db.query(ItineraryRecord)
            .filter(ItineraryRecord.id == itinerary_id, ItineraryRecord.user_id == user_id)
            .delete()
        )
        db.commit()
        return deleted > 0
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceFailure(f"Failed to delete itinerary {itinerary_id}: {e}") from e
    finally:
        db.close()


# プロフィール
# Profiles
def get_profile(user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    db = SessionLocal()
    try:
        profile = db.query(Profile).filter(Profile.user_id == user_id).first()
        if profile is None:
            return None
        return {
            "travel_styles": profile.travel_styles or {},
            "travel_interests": profile.travel_interests or {},
        }
    finally:
        db.close()
