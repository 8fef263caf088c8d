"""
データベース接続と初期化のユーティリティ。
Database connection and initialization utilities.
"""

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
import os
import time
import logging
from typing import Any, Dict

# ロギング設定
# Configure logging
logger = logging.getLogger(__name__)

# 環境変数からデータベースURLを取得
# Read database URL from environment
DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable must be set")


def _engine_options(url: str) -> Dict[str, Any]:
    """
    SQLiteのインメモリDBでは接続を共有する
    Share one connection across threads for in-memory SQLite.
    """
    if url.startswith("sqlite") and ":memory:" in url:
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def _db_init_lock_key() -> int:
    """
    DB初期化用のアドバイザリロックキーを取得する
    Get advisory lock key used for DB initialization.
    """
    raw = os.getenv("DB_INIT_LOCK_KEY", "561207").strip()
    try:
        return int(raw)
    except ValueError:
        return 561207


def _uses_advisory_lock(connection) -> bool:
    return connection.dialect.name == "postgresql"


def _acquire_db_init_lock(connection) -> None:
    """
    DB初期化の同時実行を防ぐためのアドバイザリロックを取得する
    Acquire advisory lock to prevent concurrent DB initialization.
    """
    if _uses_advisory_lock(connection):
        connection.execute(text("SELECT pg_advisory_lock(:key)"), {"key": _db_init_lock_key()})


def _release_db_init_lock(connection) -> None:
    """
    DB初期化のアドバイザリロックを解放する
    Release advisory lock after DB initialization.
    """
    if _uses_advisory_lock(connection):
        connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": _db_init_lock_key()})


def init_db(max_retries: int = 30, retry_interval: float = 2) -> None:
    """
    データベースの初期化を行う関数
    Initialize the database schema with retries.

    コンテナ起動直後など、DBが準備できていない場合に備えてリトライします。
    Retries while the database is still starting up, then creates tables.
    """
    # モデル定義をメタデータへ登録
    # Register model tables on the metadata
    from sagascout import models  # noqa: F401

    for i in range(max_retries):
        try:
            with engine.begin() as connection:
                _acquire_db_init_lock(connection)
                try:
                    Base.metadata.create_all(bind=connection)
                finally:
                    _release_db_init_lock(connection)
            logger.info("Database initialized successfully.")
            return
        except OperationalError as e:
            if i < max_retries - 1:
                logger.warning(
                    "Database not ready yet, retrying in %s seconds... (Attempt %d/%d)",
                    retry_interval, i + 1, max_retries,
                )
                time.sleep(retry_interval)
            else:
                logger.error("Could not connect to database after multiple attempts.")
                raise e
