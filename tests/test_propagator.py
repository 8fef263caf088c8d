"""
`propagator` と `views` による旅程状態の伝播を検証するテスト。
Tests for itinerary state propagation through `propagator` and `views`.
"""
import datetime
import random
import threading
import unittest

import planner_fakes

from sagascout import event_bus, itinerary_generator, redis_client
from sagascout.errors import BackendFailure
from sagascout.propagator import ItineraryPropagator, ProgressTicker
from sagascout.schemas import Destination, Itinerary, ItineraryEvent
from sagascout.views import ScheduleView

SESSION = "propagation-session"
DESTINATION = Destination(title="Kyoto, Japan")


def _itinerary(dates=("2030-01-01", "2030-01-02")):
    return Itinerary.model_validate(planner_fakes.stored_itinerary(dates))


class PropagatorTests(unittest.TestCase):
    def setUp(self):
        planner_fakes.reset_runtime()
        self.propagator = ItineraryPropagator(SESSION)

    def test_publish_writes_snapshot_before_notifying(self):
        """
        EN: Test publish writes snapshot before notifying behavior.
        JP: 通知の時点でスナップショットと更新マーカーが保存済みである挙動を検証するテスト。
        """
        seen = []

        def handler(event):
            seen.append((
                event.payload.status,
                redis_client.get_generated_itinerary(SESSION) is not None,
                redis_client.get_update_marker(SESSION),
            ))

        event_bus.bus.subscribe(event_bus.itinerary_topic(SESSION), handler)
        marker = self.propagator.publish(_itinerary(), DESTINATION, {"duration": ["1 week"]})

        self.assertEqual(seen, [("complete", True, marker)])
        stored_destination = redis_client.get_selected_destination(SESSION)
        self.assertEqual(stored_destination["title"], "Kyoto, Japan")
        self.assertEqual(len(stored_destination["itinerary"]["days"]), 2)
        self.assertEqual(redis_client.get_selected_preferences(SESSION), {"duration": ["1 week"]})

    def test_update_marker_strictly_increases(self):
        markers = [self.propagator.publish(_itinerary(), DESTINATION, {}) for _ in range(3)]
        markers.append(self.propagator.clear())
        self.assertEqual(markers, sorted(set(markers)))

    def test_clear_empties_every_subscribed_view(self):
        """
        EN: Test clear empties every subscribed view behavior.
        JP: clear 通知で全ビューの日と活動が空になる挙動を検証するテスト。
        """
        self.propagator.publish(_itinerary(), DESTINATION, {})
        views = [ScheduleView(SESSION).mount() for _ in range(3)]
        views[1].select_day(1)
        views[2].delete_activity(0, 0)
        for view in views:
            self.assertTrue(view.days)

        self.propagator.clear()

        for view in views:
            self.assertEqual(view.days, [])
            self.assertEqual(view.activities, [])
        self.assertIsNone(redis_client.get_generated_itinerary(SESSION))

    def test_track_generation_streams_progress_then_completes(self):
        """
        EN: Test track generation streams progress then completes behavior.
        JP: 生成中に進捗が単調増加で通知され、最後に complete となる挙動を検証するテスト。
        """
        propagator = ItineraryPropagator(SESSION, interval=0.01, rng=random.Random(7))
        events = []
        event_bus.bus.subscribe(event_bus.itinerary_topic(SESSION), lambda e: events.append(e.payload))
        ticks = threading.Event()

        def produce():
            ticks.wait(0.5)
            return itinerary_generator.GenerationResult(itinerary=_itinerary(), source="generated")

        propagator.track_generation(produce, DESTINATION, {})

        statuses = [event.status for event in events]
        self.assertEqual(statuses[0], "generating")
        self.assertEqual(statuses[-1], "complete")
        self.assertNotIn("error", statuses)
        progress = [event.progress for event in events if event.status == "generating"]
        self.assertEqual(progress[0], 0)
        self.assertEqual(progress, sorted(progress))
        self.assertTrue(all(value <= 95 for value in progress))
        self.assertIsNotNone(redis_client.get_generated_itinerary(SESSION))

    def test_track_generation_emits_error_and_reraises(self):
        events = []
        event_bus.bus.subscribe(event_bus.itinerary_topic(SESSION), lambda e: events.append(e.payload))

        def produce():
            raise BackendFailure("quota exceeded")

        with self.assertRaises(BackendFailure):
            self.propagator.track_generation(produce, DESTINATION, {})
        self.assertEqual([event.status for event in events], ["generating", "error"])
        self.assertEqual(events[-1].message, "quota exceeded")
        self.assertIsNone(redis_client.get_generated_itinerary(SESSION))


class ProgressTickerTests(unittest.TestCase):
    def test_progress_is_capped(self):
        values = []
        done = threading.Event()

        def emit(progress):
            values.append(progress)
            if len(values) >= 30:
                done.set()

        ticker = ProgressTicker(emit, interval=0.001, cap=95, rng=random.Random(3))
        ticker.start()
        self.assertTrue(done.wait(5))
        ticker.stop()
        self.assertEqual(values, sorted(values))
        self.assertEqual(values[-1], 95)


class EventBusTests(unittest.TestCase):
    def test_failing_handler_does_not_stop_delivery(self):
        bus = event_bus.EventBus()
        received = []

        def broken(_event):
            raise RuntimeError("view crashed")

        bus.subscribe("topic", broken)
        bus.subscribe("topic", lambda event: received.append(event.payload))
        self.assertEqual(bus.publish("topic", "hello"), 1)
        self.assertEqual(received, ["hello"])

    def test_unsubscribe_stops_delivery(self):
        bus = event_bus.EventBus()
        received = []
        unsubscribe = bus.subscribe("topic", received.append)
        unsubscribe()
        self.assertEqual(bus.publish("topic", "ignored"), 0)
        self.assertEqual(received, [])
        self.assertEqual(bus.subscriber_count("topic"), 0)


class ScheduleViewTests(unittest.TestCase):
    def setUp(self):
        planner_fakes.reset_runtime()
        self.propagator = ItineraryPropagator(SESSION)

    def test_view_mounted_after_publish_reads_snapshot(self):
        """
        EN: Test view mounted after publish reads snapshot behavior.
        JP: 通知後にマウントしたビューがスナップショットから状態を得る挙動を検証するテスト。
        """
        self.propagator.publish(_itinerary(), DESTINATION, {})
        view = ScheduleView(SESSION).mount()
        self.assertEqual(view.status, "complete")
        self.assertEqual(view.days[0].date, datetime.date(2030, 1, 1))
        self.assertEqual(view.marker, redis_client.get_update_marker(SESSION))

    def test_refresh_if_stale_recovers_missed_notification(self):
        view = ScheduleView(SESSION).mount()
        view.unmount()
        self.propagator.publish(_itinerary(), DESTINATION, {})
        self.assertEqual(view.days, [])

        self.assertTrue(view.refresh_if_stale())
        self.assertEqual(len(view.days), 2)
        self.assertFalse(view.refresh_if_stale())

    def test_local_edits_are_not_persisted(self):
        self.propagator.publish(_itinerary(("2030-01-01",)), DESTINATION, {})
        view = ScheduleView(SESSION).mount()
        view.days[0].activities.append(view.days[0].activities[0].model_copy(update={"title": "Lunch"}))

        self.assertTrue(view.reorder_activity(0, 1, 0))
        self.assertEqual(view.activities[0].title, "Lunch")
        self.assertTrue(view.delete_activity(0, 1))
        self.assertFalse(view.delete_activity(0, 5))

        stored = redis_client.get_generated_itinerary(SESSION)
        self.assertEqual([a["title"] for a in stored["days"][0]["activities"]], ["Temple visit 0"])

    def test_generating_progress_never_moves_backwards(self):
        view = ScheduleView(SESSION).mount()
        view.apply(ItineraryEvent(status="generating", progress=0))
        view.apply(ItineraryEvent(status="generating", progress=40))
        view.apply(ItineraryEvent(status="generating", progress=20))
        self.assertTrue(view.generating)
        self.assertEqual(view.progress, 40)
        view.apply(ItineraryEvent(status="error", message="failed"))
        self.assertFalse(view.generating)
        self.assertEqual(view.error, "failed")


if __name__ == "__main__":
    unittest.main()
