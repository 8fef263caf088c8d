"""
生成した旅程をセッションストアへ保存し、購読中のビューへ通知するモジュール。
Persists generated itineraries to the session store and notifies subscribed views.

生成中の進捗は表示用の疑似値であり、実際の生成状況とは無関係です。
Progress reported while generating is synthetic and carries no information about the real call.
"""

import logging
import random
import threading
from typing import Callable, Optional

from sagascout import event_bus, redis_client
from sagascout.constants import (
    PROGRESS_CAP,
    PROGRESS_INTERVAL_SECONDS,
    PROGRESS_MAX_STEP,
    PROGRESS_MIN_STEP,
)
from sagascout.itinerary_generator import GenerationResult
from sagascout.schemas import Destination, Itinerary, ItineraryEvent, PreferenceSet

logger = logging.getLogger(__name__)


class ProgressTicker(threading.Thread):
    """
    一定間隔で疑似進捗を通知するスレッド（上限で止まる）
    Thread emitting a randomly increasing, capped progress value at a fixed interval.
    """

    def __init__(
        self,
        emit: Callable[[int], None],
        interval: float = PROGRESS_INTERVAL_SECONDS,
        cap: int = PROGRESS_CAP,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(daemon=True)
        self._emit = emit
        self._interval = interval
        self._cap = cap
        self._rng = rng or random.Random()
        self._stopped = threading.Event()
        self.progress = 0

    def run(self) -> None:
        while not self._stopped.wait(self._interval):
            step = self._rng.randint(PROGRESS_MIN_STEP, PROGRESS_MAX_STEP)
            self.progress = min(self._cap, self.progress + step)
            try:
                self._emit(self.progress)
            except Exception:
                logger.exception("Progress notification failed")

    def stop(self) -> None:
        self._stopped.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join()


class ItineraryPropagator:
    """
    セッション単位の旅程ストア（唯一の正とする状態）と通知の窓口
    Session-scoped itinerary store and notification entry point.
    """

    def __init__(
        self,
        session_id: str,
        bus: Optional[event_bus.EventBus] = None,
        interval: float = PROGRESS_INTERVAL_SECONDS,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session_id = session_id
        self.bus = bus or event_bus.bus
        self.interval = interval
        self.rng = rng
        self.topic = event_bus.itinerary_topic(session_id)

    def notify(self, event: ItineraryEvent) -> int:
        return self.bus.publish(self.topic, event)

    def publish(self, itinerary: Itinerary, destination: Destination, preferences: PreferenceSet) -> int:
        """
        (a) 旅程と目的地を保存 (b) 更新マーカーを進める (c) complete を通知
        (a) store itinerary and destination, (b) advance the update marker, (c) emit complete.
        """
        attached = destination.model_copy(update={"itinerary": itinerary})
        redis_client.save_generated_itinerary(self.session_id, itinerary.to_wire())
        redis_client.save_selected_destination(self.session_id, attached.to_wire())
        redis_client.save_selected_preferences(self.session_id, preferences)
        marker = redis_client.bump_update_marker(self.session_id)
        self.notify(ItineraryEvent(status="complete", progress=100, itinerary=itinerary))
        return marker

    def clear(self) -> int:
        redis_client.delete_keys(
            self.session_id,
            redis_client.GENERATED_ITINERARY,
            redis_client.SELECTED_DESTINATION,
        )
        marker = redis_client.bump_update_marker(self.session_id)
        self.notify(ItineraryEvent(status="clear"))
        return marker

    def fail(self, message: str) -> int:
        return self.notify(ItineraryEvent(status="error", message=message))

    def _emit_progress(self, progress: int) -> None:
        self.notify(ItineraryEvent(status="generating", progress=progress))

    def track_generation(
        self,
        produce: Callable[[], GenerationResult],
        destination: Destination,
        preferences: PreferenceSet,
    ) -> GenerationResult:
        """
        生成中は疑似進捗を流し、完了時に publish、失敗時は error を通知して再送出する
        Stream synthetic progress while producing, publish on success, emit error and re-raise on failure.

        キャンセルはできません。一度始まった生成は完了か失敗まで実行されます。
        There is no cancellation; generation always runs to completion or failure.
        """
        self._emit_progress(0)
        ticker = ProgressTicker(self._emit_progress, interval=self.interval, rng=self.rng)
        ticker.start()
        try:
            result = produce()
        except Exception as e:
            ticker.stop()
            logger.error("Itinerary generation failed for %s: %s", destination.title, e)
            self.fail(str(e))
            raise
        ticker.stop()
        self.publish(result.itinerary, destination, preferences)
        return result
