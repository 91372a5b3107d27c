"""
Common - ログ設定

全サービスで同じフォーマットのログを標準出力に出す（コンテナ向け）。
各モジュールは logging.getLogger(__name__) でロガーを取得する。
"""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] - %(message)s"


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # 外部ライブラリのリクエスト単位ログは抑える
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
