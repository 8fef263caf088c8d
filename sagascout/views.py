"""
旅程を表示するビューの状態モデル。
View-state model for surfaces that render the itinerary.

マウント時にセッションストアのスナップショットを読み込み、以降はイベントバスの通知で更新します。
Mounting reads the session-store snapshot; later changes arrive through the event bus.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from sagascout import event_bus, redis_client
from sagascout.schemas import Activity, Day, Itinerary, ItineraryEvent

logger = logging.getLogger(__name__)


class ScheduleView:
    def __init__(
        self,
        session_id: str,
        bus: Optional[event_bus.EventBus] = None,
        on_change: Optional[Callable[["ScheduleView"], None]] = None,
    ) -> None:
        self.session_id = session_id
        self.bus = bus or event_bus.bus
        self.on_change = on_change
        self.days: List[Day] = []
        self.selected_day = 0
        self.status = "idle"
        self.progress = 0
        self.error: Optional[str] = None
        self.marker = 0
        self._lock = threading.RLock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def generating(self) -> bool:
        return self.status == "generating"

    @property
    def activities(self) -> List[Activity]:
        with self._lock:
            if not self.days or not 0 <= self.selected_day < len(self.days):
                return []
            return self.days[self.selected_day].activities

    def mount(self) -> "ScheduleView":
        """
        スナップショットを読み込み、通知の購読を開始する
        Load the durable snapshot and start listening for notifications.
        """
        self.reload()
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(event_bus.itinerary_topic(self.session_id), self._on_event)
        return self

    def unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def reload(self) -> None:
        data = redis_client.get_generated_itinerary(self.session_id)
        itinerary = None
        if data:
            try:
                itinerary = Itinerary.model_validate(data)
            except ValidationError as e:
                logger.warning("Ignoring malformed itinerary snapshot for %s: %s", self.session_id, e)
        with self._lock:
            self.days = [day.model_copy(deep=True) for day in itinerary.days] if itinerary else []
            self.selected_day = 0
            self.status = "complete" if itinerary else "idle"
            self.marker = redis_client.get_update_marker(self.session_id)

    def refresh_if_stale(self) -> bool:
        """
        更新マーカーが進んでいればスナップショットを読み直す
        Re-read the snapshot when the update marker has moved.
        """
        if redis_client.get_update_marker(self.session_id) == self.marker:
            return False
        self.reload()
        self._changed()
        return True

    def _on_event(self, event: event_bus.Event) -> None:
        payload = event.payload
        if isinstance(payload, ItineraryEvent):
            self.apply(payload)

    def apply(self, event: ItineraryEvent) -> None:
        with self._lock:
            if event.status == "generating":
                if self.status != "generating":
                    self.progress = 0
                self.status = "generating"
                self.error = None
                # 表示上の進捗は後戻りさせない
                # Displayed progress never moves backwards
                self.progress = max(self.progress, event.progress or 0)
            elif event.status == "complete":
                self.status = "complete"
                self.progress = 100
                self.error = None
                if event.itinerary is not None:
                    self.days = [day.model_copy(deep=True) for day in event.itinerary.days]
                    self.selected_day = 0
                self.marker = redis_client.get_update_marker(self.session_id)
            elif event.status == "error":
                self.status = "error"
                self.error = event.message or "Itinerary generation failed."
            elif event.status == "clear":
                self.days = []
                self.selected_day = 0
                self.status = "idle"
                self.progress = 0
                self.error = None
                self.marker = redis_client.get_update_marker(self.session_id)
        self._changed()

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def select_day(self, index: int) -> bool:
        with self._lock:
            if not 0 <= index < len(self.days):
                return False
            self.selected_day = index
        self._changed()
        return True

    def reorder_activity(self, day_index: int, from_index: int, to_index: int) -> bool:
        """表示上の並べ替え（保存はしない） / Local reorder, not persisted."""
        with self._lock:
            if not 0 <= day_index < len(self.days):
                return False
            activities = self.days[day_index].activities
            if not (0 <= from_index < len(activities) and 0 <= to_index < len(activities)):
                return False
            activity = activities.pop(from_index)
            activities.insert(to_index, activity)
        self._changed()
        return True

    def delete_activity(self, day_index: int, index: int) -> bool:
        """表示上の削除（保存はしない） / Local delete, not persisted."""
        with self._lock:
            if not 0 <= day_index < len(self.days):
                return False
            activities = self.days[day_index].activities
            if not 0 <= index < len(activities):
                return False
            activities.pop(index)
        self._changed()
        return True

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": self.status,
                "progress": self.progress,
                "generating": self.generating,
                "error": self.error,
                "selected_day": self.selected_day,
                "days": [day.to_wire() for day in self.days],
                "marker": self.marker,
            }
