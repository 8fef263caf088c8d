#!/usr/bin/env python3
import os
import pathlib
import sys
import unittest

ROOT_DIR = pathlib.Path(__file__).resolve().parent.parent
TESTS_DIR = ROOT_DIR / "tests"
EXCLUDED_MODULES = set()

if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))


def _iter_test_cases(suite: unittest.TestSuite):
    for item in suite:
        if isinstance(item, unittest.TestSuite):
            yield from _iter_test_cases(item)
        else:
            yield item


def _build_unit_suite() -> unittest.TestSuite:
    loader = unittest.TestLoader()
    discovered = loader.discover(start_dir=str(TESTS_DIR), pattern="test_*.py")

    filtered_suite = unittest.TestSuite()
    for case in _iter_test_cases(discovered):
        module_name = case.__class__.__module__
        if module_name in EXCLUDED_MODULES:
            continue
        filtered_suite.addTest(case)
    return filtered_suite


def main() -> int:
    # database.py と redis_client.py はインポート時に設定を読むため先に既定値を入れる
    # database.py and redis_client.py read their settings at import time.
    os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    os.environ.setdefault("REDIS_CONNECT_ON_IMPORT", "false")

    suite = _build_unit_suite()
    if suite.countTestCases() == 0:
        print("No unit tests were discovered.")
        return 1

    if EXCLUDED_MODULES:
        print("Excluded modules:", ", ".join(sorted(EXCLUDED_MODULES)))
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)
    return 0 if result.wasSuccessful() else 1


if __name__ == "__main__":
    raise SystemExit(main())
