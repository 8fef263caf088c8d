"""
`redis_client` のインメモリフォールバックを検証するテスト。
Tests for the in-memory fallback in `redis_client`.
"""
import time
import unittest

import planner_fakes  # noqa: F401

from sagascout import redis_client


class MemoryFallbackTests(unittest.TestCase):
    def setUp(self):
        redis_client._memory_store.clear()

    def tearDown(self):
        redis_client._memory_store.clear()

    def test_write_sweeps_expired_entries(self):
        """
        EN: Test write sweeps expired entries behavior.
        JP: 書き込み時に、読まれていない期限切れエントリも削除される挙動を検証するテスト。
        """
        now = time.time()
        redis_client._memory_store["planner:old:generated_itinerary"] = ("{}", now - 10)
        redis_client._memory_store["planner:live:generated_itinerary"] = ("{}", now + 600)
        redis_client._memory_store["planner:forever:question_index"] = ("0", None)

        redis_client._memory_set("planner:new:question_index", "1")

        self.assertNotIn("planner:old:generated_itinerary", redis_client._memory_store)
        self.assertIn("planner:live:generated_itinerary", redis_client._memory_store)
        self.assertIn("planner:forever:question_index", redis_client._memory_store)
        self.assertEqual(redis_client._memory_get("planner:new:question_index"), "1")

    def test_expired_entry_is_not_returned(self):
        redis_client._memory_store["planner:old:customizing"] = ("true", time.time() - 1)
        self.assertIsNone(redis_client._memory_get("planner:old:customizing"))
        self.assertNotIn("planner:old:customizing", redis_client._memory_store)


if __name__ == "__main__":
    unittest.main()
