"""
同一の生成リクエストを1つにまとめる実行中レジストリ。
In-flight registry that collapses identical generation requests onto one call.

同じキーで同時に呼ばれた場合、後続の呼び出しは先行する呼び出しの Future を共有します。
Concurrent callers with the same key share the first caller's Future.
"""

import datetime
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Hashable, Optional, Tuple, TypeVar

T = TypeVar("T")

_inflight: Dict[Hashable, Future] = {}
_inflight_guard = threading.Lock()


def request_key(
    title_key: str,
    preference_fingerprint: str,
    start_date: datetime.date,
    user_id: Optional[str] = None,
) -> Tuple[str, str, str, str]:
    return (title_key, preference_fingerprint, start_date.isoformat(), user_id or "")


def is_in_flight(key: Hashable) -> bool:
    with _inflight_guard:
        return key in _inflight


def run_once(key: Hashable, produce: Callable[[], T]) -> Tuple[T, bool]:
    """
    キーごとに produce を1回だけ実行し、結果を共有する
    Run `produce` once per key and share its outcome.

    戻り値は (結果, 共有されたかどうか)。先行呼び出しの例外は後続にも伝播します。
    Returns (result, shared). The first caller's exception propagates to every joiner.
    """
    with _inflight_guard:
        future = _inflight.get(key)
        owner = future is None
        if owner:
            future = Future()
            _inflight[key] = future

    if not owner:
        return future.result(), True

    try:
        result = produce()
    except BaseException as exc:
        future.set_exception(exc)
        raise
    else:
        future.set_result(result)
        return result, False
    finally:
        with _inflight_guard:
            if _inflight.get(key) is future:
                _inflight.pop(key, None)
