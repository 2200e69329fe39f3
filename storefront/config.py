"""
Storefront — 設定

すべて環境変数から読み込む。起動時に一度だけ評価される。
"""

import os


def _split(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")

# ルート管理者 (スーパーユーザー)。DB が空でも常にアクセスできる。
ROOT_ADMIN_EMAILS = _split(os.environ.get("ROOT_ADMIN_EMAILS", "admin@example.com"))
ROOT_ADMIN_PHONES = _split(os.environ.get("ROOT_ADMIN_PHONES", "9876543210"))

# ID プロバイダ側に登録済みのドメイン
AUTHORIZED_DOMAINS = _split(os.environ.get("AUTHORIZED_DOMAINS", "localhost,127.0.0.1"))
FIREBASE_CREDENTIALS_PATH = os.environ.get("FIREBASE_CREDENTIALS_PATH")

PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "INR")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
