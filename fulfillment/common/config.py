"""
共通 — 設定

各サービスの main.py と同じく環境変数から読む。
接続先 URL は各 main.py 側で読み、ここには共有のチューニング値だけを置く。
"""

import logging
import os

RESERVATION_TTL_SECONDS = int(os.environ.get("RESERVATION_TTL_SECONDS", "900"))
EXPIRY_SWEEP_INTERVAL_SECONDS = float(
    os.environ.get("EXPIRY_SWEEP_INTERVAL_SECONDS", "300")
)
# レプリカ間のスイープロックの期限。スイープ中は 1/3 ごとに延長する
EXPIRY_SWEEP_LOCK_SECONDS = float(os.environ.get("EXPIRY_SWEEP_LOCK_SECONDS", "60"))

BUS_MAX_DELIVERIES = int(os.environ.get("BUS_MAX_DELIVERIES", "5"))
BUS_CLAIM_IDLE_MS = int(os.environ.get("BUS_CLAIM_IDLE_MS", "30000"))
BUS_RETRY_ATTEMPTS = int(os.environ.get("BUS_RETRY_ATTEMPTS", "5"))
BUS_RETRY_BACKOFF = float(os.environ.get("BUS_RETRY_BACKOFF", "0.5"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = LOG_LEVEL) -> None:
    """サービス起動時に一度だけ呼ぶ。"""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
