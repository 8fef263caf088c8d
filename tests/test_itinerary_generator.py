"""
`itinerary_generator` の再利用・生成・保存の挙動を検証するテスト。
Tests for reuse, generation and persistence in `itinerary_generator`.
"""
import datetime
import threading
import unittest
from concurrent.futures import Future
from unittest import mock

import planner_fakes

from sagascout import inflight, itinerary_generator, locations, persistence
from sagascout.errors import BackendFailure
from sagascout.schemas import Destination, Itinerary

KYOTO = Destination(title="Kyoto, Japan", match_percentage=90, rating=4.7)


def _store_public_kyoto(owner="author"):
    itinerary = Itinerary.model_validate(planner_fakes.stored_itinerary())
    return persistence.save_itinerary(owner, "Kyoto, Japan", itinerary, is_public=True)


def _ai_replies(city="Kyoto", days=3):
    return [planner_fakes.cities_reply((city, days)), planner_fakes.city_plan_reply(city, days)]


class TripLengthTests(unittest.TestCase):
    def test_week_options_give_seven_days(self):
        self.assertEqual(itinerary_generator.trip_length({"duration": ["2 weeks"]}), 7)
        self.assertEqual(itinerary_generator.trip_length({"duration": ["1 week"]}), 7)

    def test_other_options_give_three_days(self):
        self.assertEqual(itinerary_generator.trip_length({"duration": ["Weekend"]}), 3)
        self.assertEqual(itinerary_generator.trip_length({"duration": ["1 month"]}), 3)
        self.assertEqual(itinerary_generator.trip_length({}), 3)


class GenerateTests(unittest.TestCase):
    def setUp(self):
        planner_fakes.reset_runtime()

    def test_public_itinerary_is_date_shifted(self):
        """
        EN: Test public itinerary is date shifted behavior.
        JP: 公開旅程が開始日に合わせて日付のみずらされる挙動を検証するテスト。
        """
        _store_public_kyoto()
        with mock.patch("sagascout.llm_client.complete") as complete:
            result = itinerary_generator.generate(KYOTO, {"duration": ["Weekend"]}, datetime.date(2024, 4, 1))

        complete.assert_not_called()
        self.assertEqual(result.source, itinerary_generator.SOURCE_PUBLIC)
        self.assertEqual(
            [day.date.isoformat() for day in result.itinerary.days],
            ["2024-04-01", "2024-04-02", "2024-04-03"],
        )
        self.assertEqual(
            [day.activities[0].title for day in result.itinerary.days],
            ["Temple visit 0", "Temple visit 1", "Temple visit 2"],
        )
        self.assertEqual(result.itinerary.days[0].activities[0].time, "10:00")

    def test_shift_dates_is_independent_of_stored_dates(self):
        start = datetime.date(2031, 12, 30)
        for dates in (("2020-02-28", "2020-02-29"), ("2099-01-01", "1999-07-07")):
            shifted = itinerary_generator.shift_dates(planner_fakes.stored_itinerary(dates), start)
            self.assertEqual([d.date for d in shifted.days], [start, start + datetime.timedelta(days=1)])

    def test_generated_itinerary_is_saved_once_per_user(self):
        """
        EN: Test generated itinerary is saved once per user behavior.
        JP: 生成した旅程がユーザーごとに1回だけ公開で保存される挙動を検証するテスト。
        """
        destination = Destination(title="Lisbon")
        with mock.patch("sagascout.llm_client.complete", side_effect=_ai_replies("Lisbon")):
            first = itinerary_generator.generate(destination, {}, datetime.date(2030, 1, 1), user_id="user-1")

        self.assertEqual(first.source, itinerary_generator.SOURCE_GENERATED)
        self.assertTrue(first.visibility_prompt)
        self.assertTrue(first.saved["is_public"])
        self.assertEqual(len(persistence.list_itineraries("user-1")), 1)

        with mock.patch("sagascout.llm_client.complete") as complete:
            second = itinerary_generator.generate(destination, {}, datetime.date(2030, 2, 1), user_id="user-1")
        complete.assert_not_called()
        self.assertEqual(second.source, itinerary_generator.SOURCE_PUBLIC)
        self.assertFalse(second.visibility_prompt)
        self.assertEqual(len(persistence.list_itineraries("user-1")), 1)

    def test_anonymous_generation_is_not_saved(self):
        with mock.patch("sagascout.llm_client.complete", side_effect=_ai_replies("Lisbon")):
            result = itinerary_generator.generate(Destination(title="Lisbon"), {}, datetime.date(2030, 1, 1))
        self.assertIsNone(result.saved)
        self.assertIsNone(persistence.find_public_itinerary(Destination(title="Lisbon").key))

    def test_locations_are_saved_with_city_segment(self):
        _store_public_kyoto()
        itinerary_generator.generate(KYOTO, {}, datetime.date(2024, 4, 1))
        self.assertEqual(locations.coordinates_for("Higashiyama, Kyoto"), (34.99, 135.78))
        self.assertEqual(locations.coordinates_for("Kyoto"), (34.99, 135.78))

    def test_location_failures_are_swallowed(self):
        _store_public_kyoto()
        with mock.patch.object(locations, "save_location", return_value=False):
            result = itinerary_generator.generate(KYOTO, {}, datetime.date(2024, 4, 1))
        self.assertEqual(len(result.itinerary.days), 3)

    def test_ai_failure_propagates(self):
        with mock.patch("sagascout.llm_client.complete", side_effect=BackendFailure("offline")):
            with self.assertRaises(BackendFailure):
                itinerary_generator.generate(Destination(title="Lisbon"), {}, datetime.date(2030, 1, 1))

    def test_concurrent_identical_requests_share_one_generation(self):
        """
        EN: Test concurrent identical requests share one generation behavior.
        JP: 同一条件の同時リクエストが1回の生成を共有する挙動を検証するテスト。
        """
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_produce(destination, preferences, start_date, user_id):
            calls.append(destination.title)
            started.set()
            release.wait(5)
            return itinerary_generator.GenerationResult(
                itinerary=itinerary_generator.shift_dates(planner_fakes.stored_itinerary(), start_date),
                source=itinerary_generator.SOURCE_GENERATED,
            )

        joined = threading.Event()

        class SignallingFuture(Future):
            def result(self, timeout=None):
                joined.set()
                return super().result(timeout)

        def run():
            results.append(itinerary_generator.generate(KYOTO, {}, datetime.date(2030, 1, 1)))

        results = []
        with mock.patch.object(itinerary_generator, "_produce", side_effect=slow_produce), \
                mock.patch.object(inflight, "Future", SignallingFuture):
            first = threading.Thread(target=run)
            first.start()
            self.assertTrue(started.wait(5))
            second = threading.Thread(target=run)
            second.start()
            # 2件目が先行リクエストの結果待ちに入るまで待つ
            # Wait until the second caller is waiting on the first caller's result
            self.assertTrue(joined.wait(5))
            release.set()
            first.join(5)
            second.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(len(results), 2)
        self.assertEqual(sorted(result.shared for result in results), [False, True])


class RegenerateTests(unittest.TestCase):
    def setUp(self):
        planner_fakes.reset_runtime()

    def test_regenerate_reuses_start_date_and_length(self):
        """
        EN: Test regenerate reuses start date and length behavior.
        JP: 再生成で以前の開始日と日数を使い、公開旅程を参照しない挙動を検証するテスト。
        """
        _store_public_kyoto()
        previous = planner_fakes.stored_itinerary(("2030-03-03", "2030-03-04"))
        with mock.patch("sagascout.llm_client.complete", side_effect=_ai_replies("Kyoto", 2)) as complete:
            result = itinerary_generator.regenerate(KYOTO, {}, previous)
        self.assertEqual(complete.call_count, 2)
        self.assertEqual(result.source, itinerary_generator.SOURCE_REGENERATED)
        self.assertEqual(
            [day.date.isoformat() for day in result.itinerary.days],
            ["2030-03-03", "2030-03-04"],
        )

    def test_regenerate_without_previous_uses_three_days(self):
        with mock.patch("sagascout.llm_client.complete", side_effect=_ai_replies("Kyoto", 3)) as complete:
            result = itinerary_generator.regenerate(KYOTO, {}, None)
        self.assertIn("for a 3-day trip", complete.call_args_list[0].args[0])
        self.assertEqual(result.itinerary.days[0].date, datetime.date.today())


if __name__ == "__main__":
    unittest.main()
