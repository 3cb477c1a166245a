"""
Shared — エラー分類

各サービスで共通の例外。発生源の近くで送出し、
responses.py の例外ハンドラが統一エンベロープに変換する。
"""


class ServiceError(Exception):
    """全ドメインエラーの基底クラス"""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message: str | None = None, errors: list[str] | None = None):
        self.message = message or self.message
        self.errors = errors or []
        super().__init__(self.message)


class NotFoundError(ServiceError):
    """エンティティが存在しない"""
    status_code = 404
    message = "Not found"


class ValidationError(ServiceError):
    """入力の形が不正（空の明細、0 以下の数量など）"""
    status_code = 400
    message = "Validation failed"


class ConflictError(ServiceError):
    """一意キーの重複や、同時更新による競合"""
    status_code = 400
    message = "Conflict"


class UnavailableError(ServiceError):
    """依存サービスに到達できない"""
    status_code = 503
    message = "Service unavailable"


class AuthenticationError(ServiceError):
    status_code = 401
    message = "Authentication required"


class PermissionDeniedError(ServiceError):
    status_code = 403
    message = "Access denied"


class OrderRejected(ValidationError):
    """注文全体が拒否された。errors に明細ごとの問題を列挙する。"""
    message = "Error processing order items"
