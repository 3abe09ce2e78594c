"""API/HTTP エラーと付与スコープの分類。

全バックエンドアダプタで共通に使う純粋関数のみを提供する。
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable

# 403 応答本文に現れる権限・スコープ不足の目印（小文字で比較）
PERMISSION_MARKERS = (
    "insufficientpermissions",
    "insufficient_scope",
    "insufficient permission",
    "insufficient authentication scopes",
    "access_token_scope_insufficient",
    "missing_scope",
    "permission",
    "scope",
)

# Google Drive はレート制限を 403 で返す
RATE_LIMIT_MARKERS = ("ratelimitexceeded", "userratelimitexceeded", "too_many_requests")

_SCOPE_SEPARATOR = re.compile(r"[\s,]+")


class ApiErrorKind(Enum):
    """APIエラーの分類"""

    AUTHENTICATION = "authentication"
    PERMISSION_OR_SCOPE = "permission_or_scope"
    TRANSIENT = "transient"
    GENERIC = "generic"


class ScopeSatisfaction(Enum):
    """付与スコープの充足度"""

    FULL = "full"
    DEGRADED = "degraded"
    INSUFFICIENT = "insufficient"


class PermissionClassifier:
    """HTTPステータス・応答本文・付与スコープを分類する。"""

    @staticmethod
    def classify(status_code: int, body: str | None = None) -> ApiErrorKind:
        """HTTP エラーを分類する。

        Args:
            status_code: HTTPステータスコード。
            body: 応答本文。

        Returns:
            ApiErrorKind: 分類結果。
        """
        text = (body or "").lower()

        # 401 は本文に関わらず認証エラー
        if status_code == 401:
            return ApiErrorKind.AUTHENTICATION
        if status_code == 403:
            if any(marker in text for marker in RATE_LIMIT_MARKERS):
                return ApiErrorKind.TRANSIENT
            if any(marker in text for marker in PERMISSION_MARKERS):
                return ApiErrorKind.PERMISSION_OR_SCOPE
            return ApiErrorKind.GENERIC
        if status_code == 429 or 500 <= status_code <= 599:
            return ApiErrorKind.TRANSIENT
        return ApiErrorKind.GENERIC

    @staticmethod
    def parse_scopes(raw: str | Iterable[str] | None) -> set[str]:
        """スコープ文字列を正規化した集合にする。

        URL 形式のスコープは末尾のセグメントに縮め、大文字小文字は区別しない。
        """
        if raw is None:
            return set()
        items = _SCOPE_SEPARATOR.split(raw) if isinstance(raw, str) else list(raw)
        return {_normalize_scope(item) for item in items if item and item.strip()}

    @classmethod
    def scopes_satisfy(
        cls,
        granted_raw: str | None,
        required_minimum: str | Iterable[str],
        desired: str | Iterable[str] | None = None,
    ) -> ScopeSatisfaction:
        """付与スコープが要件を満たすか判定する。

        Args:
            granted_raw: トークン応答の scope 文字列。
            required_minimum: 最低限必要なスコープ。
            desired: 全機能に必要なスコープ（任意）。

        Returns:
            ScopeSatisfaction: 最低要件を欠けば INSUFFICIENT、最低要件のみなら
            DEGRADED、すべて揃えば FULL。付与スコープが報告されていない場合は
            判定できないため DEGRADED。
        """
        granted = cls.parse_scopes(granted_raw)
        if not granted:
            return ScopeSatisfaction.DEGRADED

        required = cls.parse_scopes(required_minimum)
        if not all(_is_covered(scope, granted) for scope in required):
            return ScopeSatisfaction.INSUFFICIENT

        wanted = cls.parse_scopes(desired)
        if not all(_is_covered(scope, granted) for scope in wanted):
            return ScopeSatisfaction.DEGRADED
        return ScopeSatisfaction.FULL

    @classmethod
    def missing_scopes(cls, granted_raw: str | None, required_minimum: str | Iterable[str]) -> list[str]:
        granted = cls.parse_scopes(granted_raw)
        return sorted(
            scope for scope in cls.parse_scopes(required_minimum) if not _is_covered(scope, granted)
        )


def _normalize_scope(scope: str) -> str:
    value = scope.strip()
    if "://" in value:
        value = value.rstrip("/").rsplit("/", 1)[-1]
    return value.casefold()


def _is_covered(required: str, granted: set[str]) -> bool:
    if required in granted:
        return True
    # 親スコープは子スコープを包含する（drive ⊇ drive.file）
    return any(required.startswith(f"{scope}.") for scope in granted)
