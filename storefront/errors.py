"""
Storefront — エラー定義

すべての業務エラーは StorefrontError を継承する。
main.py の例外ハンドラが status_code / code / extra から JSON を組み立てる。
エラーは発生した操作の中で完結し、プロセスを落とさない。
"""


class StorefrontError(Exception):
    status_code = 400
    code = "storefront_error"

    def __init__(self, detail: str, **extra) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra


class AuthenticationFailure(StorefrontError):
    """ID プロバイダが資格情報を拒否した"""
    status_code = 401
    code = "authentication_failure"


class AuthorizationDenial(StorefrontError):
    """認証済みだが、要求された操作の権限がない"""
    status_code = 403
    code = "authorization_denied"


class ConfigurationError(StorefrontError):
    """呼び出し元ドメインが ID プロバイダに未登録など、利用者が対処できる設定不備"""
    status_code = 400
    code = "configuration_error"


class NotFound(StorefrontError):
    status_code = 404
    code = "not_found"


class ValidationFailure(StorefrontError):
    status_code = 422
    code = "invalid_request"


class OrderValidationError(ValidationFailure):
    code = "invalid_order"


class InvalidTransition(StorefrontError):
    """状態遷移表にない遷移が要求された"""
    status_code = 409
    code = "invalid_transition"

    def __init__(self, current: str, target: str, detail: str | None = None) -> None:
        super().__init__(
            detail or f"Cannot move order from '{current}' to '{target}'",
            **{"from": current, "to": target},
        )
        self.current = current
        self.target = target


class ConcurrentUpdate(StorefrontError):
    """別の書き込みが先に同じ注文を更新した (楽観的ロックの競合)"""
    status_code = 409
    code = "concurrent_update"


class PersistenceFailure(StorefrontError):
    status_code = 503
    code = "persistence_failure"

    def __init__(self, operation: str) -> None:
        super().__init__(f"Could not {operation}. Please try again.", operation=operation)
        self.operation = operation
