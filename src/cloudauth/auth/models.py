"""認証情報のデータモデル。

1つのアイデンティティ（バックエンド×ユーザー）のトークンとフラグを表す
CredentialRecord と、そこから導出される認証状態を定義する。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from cloudauth.errors import ErrorCode, StorageCorruptionError, create_auth_error

# トークン応答から record 本体へ移さないキー
_TOKEN_FIELDS = ("access_token", "refresh_token", "expires_in", "scope", "token_type")


class AuthenticationState(Enum):
    """認証状態。保存はせず、アクティブなレコードと時刻から導出する。"""

    NOT_AUTHENTICATED = "not_authenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    NEEDS_REFRESH = "needs_refresh"
    NEEDS_REAUTH = "needs_reauth"
    AUTHENTICATION_FAILED = "authentication_failed"


class AccountStatus(Enum):
    """アカウント一覧に表示する状態"""

    ACTIVE = "active"
    NEEDS_REAUTH = "needs_reauth"
    ERROR = "error"


@dataclass
class CredentialRecord:
    """1つのアイデンティティの OAuth トークンと状態フラグ。

    success または permission_issue が True のとき access_token は空でない。
    expires_at が None の場合は有効期限不明として扱い、事前リフレッシュの
    対象にしない（401 を契機とした事後リフレッシュは行う）。

    Attributes:
        backend_id: バックエンド識別子。
        user_id: プロバイダ側の安定したユーザーID（解決前は None）。
        access_token: アクセストークン。
        refresh_token: リフレッシュトークン。
        expires_at: 有効期限（UNIX秒）。
        granted_scopes: 付与されたスコープの生文字列。
        permission_issue: スコープ不足などの権限問題があるか。
        needs_reauth: 再認可が必要か。
        user_name: キャッシュしたプロフィール名。
        user_email: キャッシュしたメールアドレス。
        user_picture: キャッシュしたプロフィール画像URL。
        profile_updated_at: プロフィールを更新した時刻（UNIX秒）。
        metadata: 任意のメタデータ。
        success: 取得が完全に成功したか。
        error: 直近のエラーメッセージ。
    """

    backend_id: str
    user_id: str | None = None
    access_token: str = ""
    refresh_token: str | None = None
    expires_at: float | None = None
    granted_scopes: str = ""
    permission_issue: bool = False
    needs_reauth: bool = False
    user_name: str | None = None
    user_email: str | None = None
    user_picture: str | None = None
    profile_updated_at: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    success: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if (self.success or self.permission_issue) and not self.access_token:
            raise ValueError("success/permission_issue のレコードには access_token が必要です")

    @property
    def has_access_token(self) -> bool:
        return bool(self.access_token)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)

    @property
    def is_degraded(self) -> bool:
        """権限問題または再認可フラグが立っているか"""
        return self.permission_issue or self.needs_reauth

    def is_expired(self, now: float) -> bool:
        """有効期限切れかどうか。期限不明は期限切れとみなさない。"""
        if self.expires_at is None:
            return False
        return now >= self.expires_at

    def is_usable(self, now: float) -> bool:
        """空でない未失効のアクセストークンを持つか"""
        return self.has_access_token and not self.is_expired(now)

    def mark_needs_reauth(self, reason: str) -> None:
        """権限問題を記録する。トークンは削除せず保持する。"""
        self.permission_issue = True
        self.needs_reauth = True
        self.success = False
        self.error = reason

    def apply_token_response(self, response: TokenResponse, now: float) -> CredentialRecord:
        """リフレッシュ結果で置き換えた新しいレコードを返す。

        応答に refresh_token が無ければ既存のものを引き継ぐ。権限フラグは
        新しい authenticate() が置き換えるまで維持する。
        """
        return replace(
            self,
            access_token=response.access_token,
            refresh_token=response.refresh_token or self.refresh_token,
            expires_at=response.expires_at(now),
            granted_scopes=response.scope if response.scope is not None else self.granted_scopes,
            success=not self.is_degraded,
            error=self.error if self.is_degraded else None,
            metadata=dict(self.metadata),
        )

    def with_profile(self, profile: dict[str, Any], now: float) -> CredentialRecord:
        """プロフィール情報を反映した新しいレコードを返す"""
        return replace(
            self,
            user_name=_optional_str(profile.get("name")) or self.user_name,
            user_email=_optional_str(profile.get("email")) or self.user_email,
            user_picture=_optional_str(profile.get("picture")) or self.user_picture,
            profile_updated_at=now,
            metadata=dict(self.metadata),
        )

    def profile_differs(self, profile: dict[str, Any]) -> bool:
        for key, current in (
            ("name", self.user_name),
            ("email", self.user_email),
            ("picture", self.user_picture),
        ):
            value = _optional_str(profile.get(key))
            if value and value != current:
                return True
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend_id": self.backend_id,
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "granted_scopes": self.granted_scopes,
            "permission_issue": self.permission_issue,
            "needs_reauth": self.needs_reauth,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "user_picture": self.user_picture,
            "profile_updated_at": self.profile_updated_at,
            "metadata": self.metadata,
            "success": self.success,
            "error": self.error,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Any) -> CredentialRecord:
        """保存形式からレコードを復元する。

        欠けたフィールドは既定値で補い、型が合わないものは破損として扱う。

        Raises:
            StorageCorruptionError: 解析できない場合。
        """
        if not isinstance(data, dict):
            raise _corrupt("レコードが辞書ではありません")

        backend_id = data.get("backend_id")
        if not isinstance(backend_id, str) or not backend_id:
            raise _corrupt("backend_id がありません")

        try:
            return cls(
                backend_id=backend_id,
                user_id=_typed(data, "user_id", str, None),
                access_token=_typed(data, "access_token", str, None) or "",
                refresh_token=_typed(data, "refresh_token", str, None),
                expires_at=_timestamp(data.get("expires_at")),
                granted_scopes=_typed(data, "granted_scopes", str, None) or "",
                permission_issue=_typed(data, "permission_issue", bool, False),
                needs_reauth=_typed(data, "needs_reauth", bool, False),
                user_name=_typed(data, "user_name", str, None),
                user_email=_typed(data, "user_email", str, None),
                user_picture=_typed(data, "user_picture", str, None),
                profile_updated_at=_timestamp(data.get("profile_updated_at")),
                metadata=_typed(data, "metadata", dict, None) or {},
                success=_typed(data, "success", bool, False),
                error=_typed(data, "error", str, None),
            )
        except ValueError as exc:
            raise _corrupt(str(exc)) from exc

    @classmethod
    def from_json(cls, raw: str) -> CredentialRecord:
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise _corrupt("JSON として解析できません") from exc
        return cls.from_dict(payload)


@dataclass(frozen=True)
class TokenResponse:
    """リレーが返すトークン応答 `{access_token, refresh_token?, expires_in?, scope?}`"""

    access_token: str
    refresh_token: str | None = None
    expires_in: float | None = None
    scope: str | None = None
    token_type: str = "Bearer"
    extra: dict[str, Any] = field(default_factory=dict)

    def expires_at(self, now: float) -> float | None:
        if self.expires_in is None:
            return None
        return now + self.expires_in

    @classmethod
    def from_payload(cls, payload: Any) -> TokenResponse:
        """JSON 応答を型付きで解釈する。

        Raises:
            ValueError: access_token が無い、または形式が不正な場合。
        """
        if not isinstance(payload, dict):
            raise ValueError("トークン応答がオブジェクトではありません")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("アクセストークンがレスポンスに含まれていません")

        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        if isinstance(scope, list):
            scope = " ".join(str(item) for item in scope)

        return cls(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
            expires_in=_seconds(payload.get("expires_in")),
            scope=scope if isinstance(scope, str) else None,
            token_type=str(payload.get("token_type") or "Bearer"),
            extra={key: value for key, value in payload.items() if key not in _TOKEN_FIELDS},
        )


@dataclass
class AccountSummary:
    """アカウント一覧表示用の情報"""

    user_id: str
    name: str
    email: str
    picture: str | None = None
    status: AccountStatus = AccountStatus.ACTIVE
    is_active: bool = False


def derive_state(record: CredentialRecord | None, now: float) -> AuthenticationState:
    """アクティブなレコードと現在時刻から認証状態を導出する"""
    if record is None or not record.has_access_token:
        return AuthenticationState.NOT_AUTHENTICATED
    if record.is_degraded:
        return AuthenticationState.NEEDS_REAUTH
    if record.is_expired(now):
        if record.has_refresh_token:
            return AuthenticationState.NEEDS_REFRESH
        return AuthenticationState.NEEDS_REAUTH
    return AuthenticationState.AUTHENTICATED


def _corrupt(message: str) -> StorageCorruptionError:
    return StorageCorruptionError(create_auth_error(ErrorCode.STORAGE_CORRUPTION, message))


def _typed(data: dict[str, Any], key: str, expected: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, expected):
        raise ValueError(f"{key} の型が不正です: {type(value).__name__}")
    return value


def _timestamp(value: Any) -> float | None:
    if value is None:
        return None
    # bool は int のサブクラスなので除外する
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"時刻の型が不正です: {type(value).__name__}")
    return float(value)


def _seconds(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None
