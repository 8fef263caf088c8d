"""
開発用サーバーの起動スクリプト。
Development server entry point.
"""

import logging
import os

from dotenv import load_dotenv

# .envファイルの読み込み（設定値を読む各モジュールより先に実行）
# Load .env before any module reads its configuration
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from sagascout.app import create_app  # noqa: E402

app = create_app()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5003")), threaded=True)
