"""
`destination_resolver` のキャッシュ優先の挙動を検証するテスト。
Tests for cache-before-generate behavior in `destination_resolver`.
"""
import unittest
from unittest import mock

import planner_fakes

from sqlalchemy.exc import OperationalError

from sagascout import destination_resolver, persistence
from sagascout.constants import OPTION_SPECIFIC_COUNTRY, OPTION_USE_PROFILE
from sagascout.errors import BackendFailure
from sagascout.schemas import Destination, DestinationDetails

SCENARIO_PREFERENCES = {
    "travelMonth": ["June"],
    "tripPreferences": [OPTION_USE_PROFILE],
    "duration": ["1 week"],
}


class ResolveTests(unittest.TestCase):
    def setUp(self):
        planner_fakes.reset_runtime()

    def test_second_resolve_uses_stored_result(self):
        """
        EN: Test second resolve uses stored result behavior.
        JP: 同一の好みで2回目の解決時に保存済みの結果を使う挙動を検証するテスト。
        """
        reply = planner_fakes.destinations_reply("Iceland", "Norway", "Scotland")
        with mock.patch("sagascout.llm_client.complete", return_value=reply) as complete:
            first = destination_resolver.resolve(SCENARIO_PREFERENCES, user_id="user-1")
            reordered = {
                "duration": ["1 week"],
                "tripPreferences": [OPTION_USE_PROFILE],
                "travelMonth": ["June"],
            }
            second = destination_resolver.resolve(reordered, user_id="user-1")

        self.assertEqual(complete.call_count, 1)
        self.assertEqual(len(first), 3)
        self.assertEqual([d.title for d in second], ["Iceland", "Norway", "Scotland"])
        self.assertEqual([d.to_wire() for d in first], [d.to_wire() for d in second])

    def test_anonymous_callers_skip_the_cache(self):
        reply = planner_fakes.destinations_reply("Iceland")
        with mock.patch("sagascout.llm_client.complete", return_value=reply) as complete:
            destination_resolver.resolve(SCENARIO_PREFERENCES)
            destination_resolver.resolve(SCENARIO_PREFERENCES)
        self.assertEqual(complete.call_count, 2)

    def test_specific_country_skips_ai(self):
        """
        EN: Test specific country skips ai behavior.
        JP: 国が指定された場合にAIを呼ばずに1件返す挙動を検証するテスト。
        """
        preferences = {"destinationType": [OPTION_SPECIFIC_COUNTRY], "specificCountry": ["Portugal"]}
        with mock.patch("sagascout.llm_client.complete") as complete:
            result = destination_resolver.resolve(preferences, user_id="user-1")
        complete.assert_not_called()
        self.assertEqual(len(result), 1)
        self.assertEqual(result[0].title, "Portugal")
        self.assertEqual(result[0].match_percentage, 100)
        self.assertAlmostEqual(result[0].rating, 4.8)
        self.assertEqual(result[0].price_range, "Varies by region")

    def test_storage_failures_do_not_block_result(self):
        """
        EN: Test storage failures do not block result behavior.
        JP: 保存・参照の失敗が結果を妨げない挙動を検証するテスト。
        """
        reply = planner_fakes.destinations_reply("Iceland", "Norway")
        failure = OperationalError("SELECT", {}, Exception("db down"))
        with mock.patch("sagascout.llm_client.complete", return_value=reply), \
                mock.patch.object(persistence, "find_search_results", side_effect=failure), \
                mock.patch.object(persistence, "save_search_results", return_value=False) as save:
            result = destination_resolver.resolve(SCENARIO_PREFERENCES, user_id="user-1")
        self.assertEqual(len(result), 2)
        save.assert_called_once()

    def test_backend_failure_propagates(self):
        with mock.patch("sagascout.llm_client.complete", side_effect=BackendFailure("quota")):
            with self.assertRaises(BackendFailure):
                destination_resolver.resolve(SCENARIO_PREFERENCES, user_id="user-1")


class ResolveDetailsTests(unittest.TestCase):
    def setUp(self):
        planner_fakes.reset_runtime()

    def test_cached_details_are_returned_without_ai(self):
        """
        EN: Test cached details are returned without ai behavior.
        JP: 詳細キャッシュがあればAIを呼ばずに返す挙動を検証するテスト。
        """
        persistence.save_destination_details(
            "Kyoto, Japan",
            DestinationDetails(activities=[{"name": "Fushimi Inari"}]),
            user_id="someone-else",
        )
        destination = Destination(title="  kyoto,   JAPAN ")
        with mock.patch("sagascout.llm_client.complete") as complete:
            resolved = destination_resolver.resolve_details(destination, {})
        complete.assert_not_called()
        self.assertEqual(resolved.details.activities[0]["name"], "Fushimi Inari")

    def test_details_are_generated_and_cached_for_users(self):
        reply = 'Details follow: {"cities": [{"name": "Porto", "activities": [], "events": []}]}'
        with mock.patch("sagascout.llm_client.complete", return_value=reply) as complete:
            first = destination_resolver.resolve_details(Destination(title="Portugal"), {}, user_id="user-1")
            second = destination_resolver.resolve_details(Destination(title="Portugal"), {}, user_id="user-2")
        self.assertEqual(complete.call_count, 1)
        self.assertEqual(first.details.cities[0].name, "Porto")
        self.assertEqual(second.details.cities[0].name, "Porto")


if __name__ == "__main__":
    unittest.main()
