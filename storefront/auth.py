"""
Storefront — ID プロバイダ (Firebase Authentication)

ブラウザが Firebase でサインインし、受け取った ID トークンを送ってくる。
ここではトークンを検証して Identity を取り出すだけで、資格情報は保存しない。
ロールの判定は identity.resolve_user が行う。

Firebase Admin SDK は最初に使うときに初期化する。
"""

import logging
from urllib.parse import urlparse

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin.exceptions import FirebaseError

from . import config
from .errors import AuthenticationFailure, ConfigurationError
from .models import Identity

logger = logging.getLogger(__name__)

_firebase_app = None

# SDK の例外 → 利用者に見せるメッセージ
KNOWN_FAILURES: list[tuple[type[Exception], str]] = [
    (firebase_auth.ExpiredIdTokenError, "Your session has expired. Please sign in again."),
    (firebase_auth.RevokedIdTokenError, "You have been signed out. Please sign in again."),
    (firebase_auth.UserDisabledError, "This account has been disabled."),
    (firebase_auth.UserNotFoundError, "Account not found. Please register first."),
    (firebase_auth.CertificateFetchError, "Network error. Please check your internet connection."),
    (firebase_auth.InvalidIdTokenError, "Invalid sign-in credentials."),
]


def _get_firebase_app():
    """Firebase Admin アプリを取得 (未初期化なら初期化) する。"""
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    try:
        _firebase_app = firebase_admin.get_app()
        return _firebase_app
    except ValueError:
        pass

    # サービスアカウントのファイルがなければ Application Default Credentials
    if config.FIREBASE_CREDENTIALS_PATH:
        cred = credentials.Certificate(config.FIREBASE_CREDENTIALS_PATH)
    else:
        cred = credentials.ApplicationDefault()

    _firebase_app = firebase_admin.initialize_app(cred)
    logger.info("Firebase Admin SDK initialized")
    return _firebase_app


def describe_failure(exc: Exception) -> str:
    for exc_type, message in KNOWN_FAILURES:
        if isinstance(exc, exc_type):
            return message
    return str(exc) or "Authentication failed."


def check_origin(origin: str | None) -> None:
    """
    サインインを要求してきたページのドメインを確認する。
    Firebase 側に登録されていないドメインからのサインインは必ず失敗するので、
    対処方法つきで先に断る。
    """
    if not origin:
        return
    host = urlparse(origin).hostname or origin
    if host not in config.AUTHORIZED_DOMAINS:
        logger.warning("Sign-in attempted from unauthorized domain %s", host)
        raise ConfigurationError(
            f'The domain "{host}" is not authorized for sign-in.',
            domain=host,
            remediation=(
                f'Add "{host}" in the Firebase Console under '
                "Authentication > Settings > Authorized domains, then try again."
            ),
        )


class FirebaseIdentityProvider:
    """Firebase Admin SDK を使った ID トークンの検証とサインアウト"""

    def verify(self, id_token: str) -> Identity:
        if not id_token or not id_token.strip():
            raise AuthenticationFailure("Please sign in to continue.")

        try:
            claims = firebase_auth.verify_id_token(
                id_token, app=_get_firebase_app(), check_revoked=True
            )
        except FirebaseError as e:
            logger.info("ID token rejected: %s", e)
            raise AuthenticationFailure(describe_failure(e)) from e
        except ValueError as e:
            # プロジェクト ID が決まらないなど、SDK 側の設定不備
            logger.error("Firebase is not configured correctly: %s", e)
            raise ConfigurationError(
                "Sign-in is not configured on this server.",
                remediation="Check the Firebase project ID and FIREBASE_CREDENTIALS_PATH.",
            ) from e

        return Identity(
            uid=claims["uid"],
            email=claims.get("email"),
            phone_number=claims.get("phone_number"),
            name=claims.get("name"),
            picture=claims.get("picture"),
        )

    def sign_out(self, uid: str) -> None:
        """プロバイダ側のセッション (リフレッシュトークン) を失効させる。"""
        try:
            firebase_auth.revoke_refresh_tokens(uid, app=_get_firebase_app())
        except FirebaseError as e:
            logger.warning("Failed to revoke tokens for %s: %s", uid, e)
            raise AuthenticationFailure(describe_failure(e)) from e
        logger.info("Signed out user %s", uid)
