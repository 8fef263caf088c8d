from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, Text, UniqueConstraint

from sagascout.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Profile(Base):
    """
    ユーザーの旅行プロフィール（既定の好み）
    A user's travel profile used as preference defaults.
    """
    __tablename__ = "profiles"

    id: Column = Column(Integer, primary_key=True, index=True)
    user_id: Column = Column(String(64), unique=True, index=True, nullable=False)
    # {"Budget": ["Mid-range"], ...}
    travel_styles: Column = Column(JSON, nullable=True)
    # {"Culture": ["Museums", ...], ...}
    travel_interests: Column = Column(JSON, nullable=True)


class SearchCriteria(Base):
    """
    好みの指紋ごとに保存した候補地検索の結果
    Stored destination search results keyed by preference fingerprint.
    """
    __tablename__ = "search_criteria"

    id: Column = Column(Integer, primary_key=True, index=True)
    user_id: Column = Column(String(64), index=True, nullable=False)
    fingerprint: Column = Column(String(64), index=True, nullable=False)
    preferences: Column = Column(JSON, nullable=False)
    destinations: Column = Column(JSON, nullable=False)
    created_at: Column = Column(DateTime(timezone=True), default=_utcnow)


class DestinationRecord(Base):
    """
    ユーザーが選んだ目的地
    A destination chosen by a user.
    """
    __tablename__ = "destinations"
    __table_args__ = (UniqueConstraint("user_id", "title_key", name="uq_destinations_user_title"),)

    id: Column = Column(Integer, primary_key=True, index=True)
    user_id: Column = Column(String(64), index=True, nullable=False)
    title: Column = Column(String(255), nullable=False)
    title_key: Column = Column(String(64), index=True, nullable=False)
    description: Column = Column(Text, nullable=True)
    image: Column = Column(Text, nullable=True)
    match_percentage: Column = Column(Integer, nullable=True)
    rating: Column = Column(Float, nullable=True)
    price_range: Column = Column(String(128), nullable=True)
    created_at: Column = Column(DateTime(timezone=True), default=_utcnow)


class DestinationDetail(Base):
    """
    目的地ごとの詳細コンテンツのキャッシュ（タイトル単位で1行）
    Cached rich content per destination (one row per title key).
    """
    __tablename__ = "destination_details"

    id: Column = Column(Integer, primary_key=True, index=True)
    title: Column = Column(String(255), nullable=False)
    title_key: Column = Column(String(64), unique=True, index=True, nullable=False)
    details: Column = Column(JSON, nullable=False)
    created_by: Column = Column(String(64), nullable=True)
    created_at: Column = Column(DateTime(timezone=True), default=_utcnow)


class ItineraryRecord(Base):
    """
    保存された旅程のスナップショット
    A saved itinerary snapshot.
    """
    __tablename__ = "itineraries"

    id: Column = Column(Integer, primary_key=True, index=True)
    user_id: Column = Column(String(64), index=True, nullable=False)
    criteria_fingerprint: Column = Column(String(64), nullable=True)
    destination: Column = Column(String(255), nullable=False)
    title_key: Column = Column(String(64), index=True, nullable=False)
    itinerary_data: Column = Column(JSON, nullable=False)
    summary: Column = Column(Text, nullable=True)
    total_activities: Column = Column(Integer, nullable=True)
    estimated_cost: Column = Column(String(64), nullable=True)
    is_public: Column = Column(Boolean, nullable=False, default=True)
    share_id: Column = Column(String(64), unique=True, index=True, nullable=True)
    created_at: Column = Column(DateTime(timezone=True), default=_utcnow)


class Location(Base):
    """
    活動や都市の座標キャッシュ
    Coordinate cache for activities and cities.
    """
    __tablename__ = "locations"

    id: Column = Column(Integer, primary_key=True, index=True)
    name: Column = Column(String(255), unique=True, index=True, nullable=False)
    lat: Column = Column(Float, nullable=False)
    lng: Column = Column(Float, nullable=False)
