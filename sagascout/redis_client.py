"""
計画セッションの状態をRedisに保存する（インメモリの簡易フォールバック付き）。
Per-planning-session state in Redis, with a lightweight in-memory fallback.

値はすべてJSONで保存します。
All values are stored as JSON.
"""

import os
import json
import redis
import logging
import time
import threading
from typing import Any, Dict, List, Optional, Tuple

from sagascout.constants import _env_bool, _env_float, _env_int

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

REDIS_SESSION_TTL_SECONDS = _env_int("REDIS_SESSION_TTL_SECONDS", 172800)
REDIS_SOCKET_TIMEOUT_SECONDS = _env_float("REDIS_SOCKET_TIMEOUT_SECONDS", 2.0)
REDIS_CONNECT_TIMEOUT_SECONDS = _env_float("REDIS_CONNECT_TIMEOUT_SECONDS", 2.0)
REDIS_HEALTH_CHECK_INTERVAL = _env_int("REDIS_HEALTH_CHECK_INTERVAL", 30)
REDIS_RECONNECT_RETRIES = _env_int("REDIS_RECONNECT_RETRIES", 3)
REDIS_RECONNECT_INITIAL_DELAY_SECONDS = _env_float("REDIS_RECONNECT_INITIAL_DELAY_SECONDS", 0.5)
REDIS_RECONNECT_MAX_DELAY_SECONDS = _env_float("REDIS_RECONNECT_MAX_DELAY_SECONDS", 5.0)
REDIS_RECONNECT_MIN_INTERVAL_SECONDS = _env_float("REDIS_RECONNECT_MIN_INTERVAL_SECONDS", 2.0)
REDIS_FAIL_FAST = _env_bool("REDIS_FAIL_FAST", False)
REDIS_ALLOW_FALLBACK = _env_bool("REDIS_ALLOW_FALLBACK", True)
REDIS_CONNECT_ON_IMPORT = _env_bool("REDIS_CONNECT_ON_IMPORT", True)

# セッション内のキー種別
# Key types stored per session
SELECTED_DESTINATION = "selected_destination"
SELECTED_PREFERENCES = "selected_preferences"
GENERATED_ITINERARY = "generated_itinerary"
ITINERARY_UPDATE = "itinerary_update"
CANDIDATE_DESTINATIONS = "destinations"
QUESTION_INDEX = "question_index"
CUSTOMIZING = "customizing"

SESSION_KEY_TYPES = (
    SELECTED_DESTINATION,
    SELECTED_PREFERENCES,
    GENERATED_ITINERARY,
    ITINERARY_UPDATE,
    CANDIDATE_DESTINATIONS,
    QUESTION_INDEX,
    CUSTOMIZING,
)

# Redisクライアントの状態管理
# Redis client state tracking
redis_client: Optional[Any] = None
_redis_lock = threading.Lock()
_marker_lock = threading.Lock()
_last_health_check = 0.0
_last_reconnect_attempt = 0.0

# Redisが使えない場合の簡易フォールバック（単一プロセス限定）
# In-memory fallback when Redis is unavailable (single-process only)
_memory_store: Dict[str, Tuple[str, Optional[float]]] = {}


def _should_use_fallback() -> bool:
    if REDIS_FAIL_FAST:
        return False
    return REDIS_ALLOW_FALLBACK


def _supports_ping(client: Any) -> bool:
    return hasattr(client, "ping") and callable(getattr(client, "ping"))


def _ping_if_available(client: Any) -> None:
    if _supports_ping(client):
        client.ping()


def _fail_fast(reason: str, err: Optional[Exception] = None) -> None:
    if not REDIS_FAIL_FAST:
        return
    if err is not None:
        logger.critical("Redis unavailable (%s): %s", reason, err, exc_info=True)
    else:
        logger.critical("Redis unavailable (%s)", reason)
    os._exit(1)


def _create_redis_client() -> Optional[Any]:
    try:
        client = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_connect_timeout=REDIS_CONNECT_TIMEOUT_SECONDS,
            retry_on_timeout=True,
            health_check_interval=REDIS_HEALTH_CHECK_INTERVAL,
        )
        _ping_if_available(client)
        return client
    except redis.RedisError as e:
        logger.error("Failed to connect to Redis: %s", e)
        return None


def _connect_with_retries() -> Optional[Any]:
    retries = max(1, REDIS_RECONNECT_RETRIES)
    delay = max(0.0, REDIS_RECONNECT_INITIAL_DELAY_SECONDS)

    for attempt in range(1, retries + 1):
        client = _create_redis_client()
        if client is not None:
            return client
        if attempt < retries:
            sleep_for = min(delay, REDIS_RECONNECT_MAX_DELAY_SECONDS)
            if sleep_for > 0:
                time.sleep(sleep_for)
            delay = min(max(delay * 2, 0.1), REDIS_RECONNECT_MAX_DELAY_SECONDS)
    return None


def _health_check_due(now: float) -> bool:
    if REDIS_HEALTH_CHECK_INTERVAL <= 0:
        return False
    return now - _last_health_check >= REDIS_HEALTH_CHECK_INTERVAL


def _mark_unhealthy(reason: str, err: Optional[Exception] = None) -> None:
    global redis_client, _last_health_check
    if err is not None:
        logger.error("Redis %s failed: %s", reason, err, exc_info=True)
    else:
        logger.error("Redis %s failed", reason)
    with _redis_lock:
        redis_client = None
        _last_health_check = 0.0
    _fail_fast(reason, err)


def get_redis_client() -> Optional[Any]:
    global redis_client, _last_health_check, _last_reconnect_attempt
    now = time.time()

    with _redis_lock:
        client = redis_client
        if client is not None:
            if _health_check_due(now):
                _last_health_check = now
                try:
                    _ping_if_available(client)
                except redis.RedisError as e:
                    redis_client = None
                    client = None
                    logger.warning("Redis health check failed: %s", e)

        if client is not None:
            return client

        if not REDIS_FAIL_FAST and now - _last_reconnect_attempt < REDIS_RECONNECT_MIN_INTERVAL_SECONDS:
            return None
        _last_reconnect_attempt = now

        client = _connect_with_retries()
        if client is not None:
            redis_client = client
            _last_health_check = now
            return client

    _fail_fast("reconnect")
    return None


def _sweep_memory_store(now: float) -> int:
    """期限切れのエントリを削除する / Drop expired fallback entries."""
    expired = [key for key, (_, expires_at) in list(_memory_store.items()) if expires_at and now > expires_at]
    for key in expired:
        _memory_store.pop(key, None)
    return len(expired)


def _memory_set(key: str, value: str) -> None:
    now = time.time()
    _sweep_memory_store(now)
    ttl = REDIS_SESSION_TTL_SECONDS if REDIS_SESSION_TTL_SECONDS > 0 else None
    expires_at = now + ttl if ttl else None
    _memory_store[key] = (value, expires_at)


def _memory_get(key: str) -> Optional[str]:
    item = _memory_store.get(key)
    if not item:
        return None
    value, expires_at = item
    if expires_at and time.time() > expires_at:
        _memory_store.pop(key, None)
        return None
    return value


def _memory_delete(*keys: str) -> None:
    for key in keys:
        _memory_store.pop(key, None)


def get_session_key(session_id: str, key_type: str) -> str:
    """
    セッションIDに基づいたRedisキーを生成する
    Build a Redis key from session ID and key type.

    例: planner:abc-123:generated_itinerary
    Example: planner:abc-123:generated_itinerary
    """
    return f"planner:{session_id}:{key_type}"


def _set_with_ttl(key: str, value: str) -> None:
    """
    TTL（有効期限）付きで値を設定するヘルパー関数
    Helper to set a value with TTL.
    """
    client = get_redis_client()
    if not client:
        if _should_use_fallback():
            _memory_set(key, value)
        return
    try:
        if REDIS_SESSION_TTL_SECONDS > 0:
            client.setex(key, REDIS_SESSION_TTL_SECONDS, value)
        else:
            client.set(key, value)
    except redis.RedisError as e:
        _mark_unhealthy("set", e)
        if _should_use_fallback():
            _memory_set(key, value)


def _get_raw(key: str) -> Optional[str]:
    try:
        client = get_redis_client()
        if client:
            return client.get(key)
        if _should_use_fallback():
            logger.debug("Redis client is not available; using in-memory fallback.")
            return _memory_get(key)
        return None
    except redis.RedisError as e:
        _mark_unhealthy("get", e)
        if _should_use_fallback():
            return _memory_get(key)
        return None


def _delete(*keys: str) -> None:
    try:
        client = get_redis_client()
        if client:
            client.delete(*keys)
        elif _should_use_fallback():
            _memory_delete(*keys)
    except redis.RedisError as e:
        _mark_unhealthy("delete", e)
        if _should_use_fallback():
            _memory_delete(*keys)


def get_json(session_id: str, key_type: str) -> Optional[Any]:
    """
    セッションのJSON値を取得する（壊れた値は無視）
    Read a JSON value for a session, ignoring corrupt payloads.
    """
    raw = _get_raw(get_session_key(session_id, key_type))
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding malformed %s snapshot for session %s", key_type, session_id)
        return None


def save_json(session_id: str, key_type: str, value: Any) -> None:
    """
    セッションのJSON値を上書き保存する
    Overwrite a JSON value for a session.
    """
    _set_with_ttl(get_session_key(session_id, key_type), json.dumps(value, ensure_ascii=False))


def delete_keys(session_id: str, *key_types: str) -> None:
    _delete(*(get_session_key(session_id, key_type) for key_type in key_types))


def get_selected_preferences(session_id: str) -> Dict[str, List[str]]:
    data = get_json(session_id, SELECTED_PREFERENCES)
    return data if isinstance(data, dict) else {}


def save_selected_preferences(session_id: str, preferences: Dict[str, List[str]]) -> None:
    save_json(session_id, SELECTED_PREFERENCES, preferences)


def get_selected_destination(session_id: str) -> Optional[Dict[str, Any]]:
    data = get_json(session_id, SELECTED_DESTINATION)
    return data if isinstance(data, dict) else None


def save_selected_destination(session_id: str, destination: Dict[str, Any]) -> None:
    save_json(session_id, SELECTED_DESTINATION, destination)


def get_generated_itinerary(session_id: str) -> Optional[Dict[str, Any]]:
    data = get_json(session_id, GENERATED_ITINERARY)
    return data if isinstance(data, dict) else None


def save_generated_itinerary(session_id: str, itinerary: Dict[str, Any]) -> None:
    save_json(session_id, GENERATED_ITINERARY, itinerary)


def get_candidate_destinations(session_id: str) -> List[Dict[str, Any]]:
    data = get_json(session_id, CANDIDATE_DESTINATIONS)
    return data if isinstance(data, list) else []


def save_candidate_destinations(session_id: str, destinations: List[Dict[str, Any]]) -> None:
    save_json(session_id, CANDIDATE_DESTINATIONS, destinations)


def get_question_index(session_id: str) -> int:
    data = get_json(session_id, QUESTION_INDEX)
    return data if isinstance(data, int) else 0


def save_question_index(session_id: str, index: int) -> None:
    save_json(session_id, QUESTION_INDEX, index)


def is_customizing(session_id: str) -> bool:
    return get_json(session_id, CUSTOMIZING) is True


def save_customizing(session_id: str, customizing: bool) -> None:
    save_json(session_id, CUSTOMIZING, bool(customizing))


def get_update_marker(session_id: str) -> int:
    """
    旅程の更新マーカー（ミリ秒）を取得する
    Read the itinerary update marker in milliseconds.
    """
    data = get_json(session_id, ITINERARY_UPDATE)
    return data if isinstance(data, int) else 0


def bump_update_marker(session_id: str) -> int:
    """
    更新マーカーを単調増加で書き込む
    Write a strictly increasing update marker and return it.
    """
    with _marker_lock:
        previous = get_update_marker(session_id)
        marker = max(int(time.time() * 1000), previous + 1)
        save_json(session_id, ITINERARY_UPDATE, marker)
    return marker


def reset_session(session_id: str) -> None:
    """
    指定されたセッションIDに関連する全データを削除する
    Delete all planning data associated with a session ID.
    """
    delete_keys(session_id, *SESSION_KEY_TYPES)


# 初期接続（失敗時はフォールバック／fail-fast）
# Initial connection (fallback or fail-fast on failure)
if redis_client is None and REDIS_CONNECT_ON_IMPORT:
    if REDIS_FAIL_FAST:
        redis_client = _connect_with_retries()
        if redis_client is None:
            _fail_fast("startup")
    else:
        redis_client = _create_redis_client()
