"""
`inflight` の実行中リクエスト共有を検証するテスト。
Tests for in-flight request sharing in `inflight`.
"""
import datetime
import threading
import unittest

from sagascout import inflight


class InflightRegistryTests(unittest.TestCase):
    """
    実行中レジストリの登録・解除と例外伝播を確認する
    Verify registration, cleanup and exception propagation.
    """
    def test_run_once_returns_result_and_cleans_up(self):
        """
        EN: Test run once returns result and cleans up behavior.
        JP: 結果を返し、完了後にキーが解除される挙動を検証するテスト。
        """
        key = ("kyoto", "fp", "2030-01-01", "")
        result, shared = inflight.run_once(key, lambda: 42)
        self.assertEqual(result, 42)
        self.assertFalse(shared)
        self.assertFalse(inflight.is_in_flight(key))

    def test_exception_cleans_up_and_propagates(self):
        """
        EN: Test exception cleans up and propagates behavior.
        JP: 例外時にキーが解除され、例外が伝播する挙動を検証するテスト。
        """
        key = ("lisbon", "fp", "2030-01-01", "")

        def boom():
            raise ValueError("boom")

        with self.assertRaises(ValueError):
            inflight.run_once(key, boom)
        self.assertFalse(inflight.is_in_flight(key))

    def test_joiner_receives_owner_failure(self):
        """
        EN: Test joiner receives owner failure behavior.
        JP: 先行呼び出しの失敗が後続にも伝播する挙動を検証するテスト。
        """
        key = ("oslo", "fp", "2030-01-01", "")
        started = threading.Event()
        release = threading.Event()
        errors = []

        def failing():
            started.set()
            release.wait(5)
            raise RuntimeError("backend down")

        def owner():
            try:
                inflight.run_once(key, failing)
            except RuntimeError as exc:
                errors.append(("owner", str(exc)))

        thread = threading.Thread(target=owner)
        thread.start()
        self.assertTrue(started.wait(5))
        self.assertTrue(inflight.is_in_flight(key))

        future = inflight._inflight[key]
        release.set()
        with self.assertRaises(RuntimeError):
            future.result(5)
        thread.join(5)
        self.assertEqual(errors, [("owner", "backend down")])
        self.assertFalse(inflight.is_in_flight(key))

    def test_request_key_includes_start_date_and_user(self):
        day = datetime.date(2030, 1, 1)
        self.assertNotEqual(
            inflight.request_key("k", "fp", day),
            inflight.request_key("k", "fp", day + datetime.timedelta(days=1)),
        )
        self.assertNotEqual(
            inflight.request_key("k", "fp", day, "a"),
            inflight.request_key("k", "fp", day, "b"),
        )


if __name__ == "__main__":
    unittest.main()
