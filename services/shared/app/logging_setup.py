"""Shared — ロギング初期化"""

import logging

from .config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """プロセス起動時に一度だけ呼ぶ。"""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # redis クライアントの接続ログは冗長なので抑制
    logging.getLogger("redis").setLevel(logging.WARNING)
