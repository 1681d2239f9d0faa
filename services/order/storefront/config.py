"""
Order Service — 設定

すべての設定は環境変数から読み込む。
docker-compose / Kubernetes の env でサービスごとに上書きする想定。
"""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./storefront.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

# "sql" = SQLAlchemy ストア / "memory" = プロセス内ストア（ローカル開発用）
STORE_BACKEND = os.environ.get("STORE_BACKEND", "sql")

# 1 トランザクション(注文作成・状態遷移)の上限時間
TRANSACTION_TIMEOUT = float(os.environ.get("TRANSACTION_TIMEOUT_SECONDS", "5"))

PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

ORDER_EVENTS_CHANNEL = "order_events"
