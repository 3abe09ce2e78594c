"""
エラー定義

cloudauth で使用されるエラーコードと例外クラス
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, NoReturn, Optional


class ErrorCode(Enum):
    """エラーコード

    カテゴリ別にエラーコードを定義:
    - CONFIG_xxx: 設定エラー
    - AUTH_xxx: 認可フロー・トークンのエラー
    - STORAGE_xxx: 永続化のエラー
    - LIFECYCLE_xxx: マネージャのライフサイクルエラー
    """
    # 設定エラー
    CONFIG_INVALID_VALUE = "CONFIG_001"

    # 認可フローエラー
    AUTH_STATE_MISMATCH = "AUTH_001"
    AUTH_USER_DENIED = "AUTH_002"
    AUTH_CANCELLED = "AUTH_003"
    AUTH_FAILED = "AUTH_004"
    AUTH_NETWORK_FAILURE = "AUTH_005"
    AUTH_TOKEN_EXCHANGE_FAILED = "AUTH_006"
    AUTH_INSUFFICIENT_SCOPES = "AUTH_007"
    AUTH_EXPIRED_TOKEN = "AUTH_008"
    AUTH_NO_REFRESH_TOKEN = "AUTH_009"

    # 永続化エラー
    STORAGE_CORRUPTION = "STORAGE_001"

    # ライフサイクルエラー
    LIFECYCLE_DISPOSED = "LIFECYCLE_001"


@dataclass
class CloudAuthError:
    """cloudauth エラー情報

    Attributes:
        code: エラーコード文字列
        message: エラーメッセージ
        details: 追加のエラー詳細情報
        recoverable: 復旧可能かどうか
    """
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    recoverable: bool = False
    log_level: int = logging.ERROR


class CloudAuthException(Exception):
    """cloudauth 例外クラス

    CloudAuthErrorをラップする例外クラス
    """

    def __init__(self, error: CloudAuthError):
        """CloudAuthExceptionを初期化

        Args:
            error: CloudAuthErrorインスタンス
        """
        self.error = error
        self.log_level = error.log_level
        super().__init__(f"[{error.code}] {error.message}")

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def recoverable(self) -> bool:
        return self.error.recoverable


class RetryableException(CloudAuthException):
    """一時的なエラーでリトライ可能な例外"""


class StateMismatchError(CloudAuthException):
    """コールバックの state がリクエスト時と一致しない"""


class UserDeniedError(CloudAuthException):
    """ユーザーが同意画面で許可しなかった"""


class AuthorizationCancelledError(CloudAuthException):
    """ユーザーが外部ブラウザを閉じて認可を中断した"""


class AuthenticationFailedError(CloudAuthException):
    """コールバックが同意拒否以外のエラーを返した"""


class NetworkFailureError(RetryableException):
    """リレーやプロバイダへの通信に失敗した"""


class TokenExchangeError(CloudAuthException):
    """リレーがトークンを返さなかった、または不正な応答を返した"""


class InsufficientScopesError(CloudAuthException):
    """付与されたスコープが最低要件を満たさない（劣化状態で利用可能）"""


class ExpiredTokenError(CloudAuthException):
    """アクセストークンの有効期限切れ（リフレッシュで回復可能）"""


class NoRefreshTokenError(CloudAuthException):
    """リフレッシュトークンが無く、再認可が必要"""


class StorageCorruptionError(CloudAuthException):
    """保存済みレコードが解析できない"""


class DisposedError(CloudAuthException):
    """破棄済みマネージャに対する操作"""


ERROR_CODE_LOG_LEVEL: Dict[ErrorCode, int] = {
    ErrorCode.AUTH_NETWORK_FAILURE: logging.WARNING,
    ErrorCode.AUTH_INSUFFICIENT_SCOPES: logging.WARNING,
    ErrorCode.AUTH_EXPIRED_TOKEN: logging.INFO,
    ErrorCode.STORAGE_CORRUPTION: logging.WARNING,
    ErrorCode.AUTH_CANCELLED: logging.INFO,
}

# 復旧可能なエラー（呼び出し側のリトライや自己修復で回復できるもの）
RECOVERABLE_CODES = frozenset(
    {
        ErrorCode.AUTH_NETWORK_FAILURE,
        ErrorCode.AUTH_INSUFFICIENT_SCOPES,
        ErrorCode.AUTH_EXPIRED_TOKEN,
        ErrorCode.STORAGE_CORRUPTION,
    }
)

_EXCEPTION_TYPES: Dict[ErrorCode, type] = {
    ErrorCode.AUTH_STATE_MISMATCH: StateMismatchError,
    ErrorCode.AUTH_USER_DENIED: UserDeniedError,
    ErrorCode.AUTH_CANCELLED: AuthorizationCancelledError,
    ErrorCode.AUTH_FAILED: AuthenticationFailedError,
    ErrorCode.AUTH_NETWORK_FAILURE: NetworkFailureError,
    ErrorCode.AUTH_TOKEN_EXCHANGE_FAILED: TokenExchangeError,
    ErrorCode.AUTH_INSUFFICIENT_SCOPES: InsufficientScopesError,
    ErrorCode.AUTH_EXPIRED_TOKEN: ExpiredTokenError,
    ErrorCode.AUTH_NO_REFRESH_TOKEN: NoRefreshTokenError,
    ErrorCode.STORAGE_CORRUPTION: StorageCorruptionError,
    ErrorCode.LIFECYCLE_DISPOSED: DisposedError,
}


# よく使用されるエラーのファクトリ関数
def create_config_error(message: str, details: Optional[Dict[str, Any]] = None) -> CloudAuthError:
    """設定エラーを作成

    Args:
        message: エラーメッセージ
        details: 追加詳細

    Returns:
        CloudAuthError: 設定エラー
    """
    return CloudAuthError(
        code=ErrorCode.CONFIG_INVALID_VALUE.value,
        message=message,
        details=details,
        recoverable=False,
        log_level=logging.ERROR,
    )


def create_auth_error(
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    log_level: Optional[int] = None,
) -> CloudAuthError:
    """認証関連エラーを作成

    recoverable はエラーコードから決まる。

    Args:
        code: エラーコード
        message: エラーメッセージ
        details: 追加詳細

    Returns:
        CloudAuthError: 認証エラー
    """
    return CloudAuthError(
        code=code.value,
        message=message,
        details=details,
        recoverable=code in RECOVERABLE_CODES,
        log_level=log_level or ERROR_CODE_LOG_LEVEL.get(code, logging.ERROR),
    )


def raise_auth_error(
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    cause: Optional[BaseException] = None,
) -> NoReturn:
    """エラーコードに対応する例外型で送出する"""
    exc_type = _EXCEPTION_TYPES.get(code, CloudAuthException)
    raise exc_type(create_auth_error(code, message, details)) from cause
