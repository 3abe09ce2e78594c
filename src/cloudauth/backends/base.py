"""
バックエンドアダプタ

リレー経由のトークン交換・リフレッシュ・失効と、バックエンドごとの
ユーザー情報取得をまとめた能力セット。
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from cloudauth.auth.models import TokenResponse
from cloudauth.config.backends import BackendConfig, mask_secret
from cloudauth.config.scopes import ScopeMapper
from cloudauth.errors import ErrorCode, raise_auth_error

logger = logging.getLogger(__name__)


class BackendAdapter(ABC):
    """ライフサイクル管理がバックエンドに求める能力セット"""

    backend_id: str
    backend_type: str

    @property
    @abstractmethod
    def required_scopes(self) -> List[str]:
        """最低限必要なバックエンド固有スコープ"""

    @property
    @abstractmethod
    def desired_scopes(self) -> List[str]:
        """全機能に必要なバックエンド固有スコープ"""

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """state に対応する認可開始URLを返す"""

    @abstractmethod
    async def exchange_code(self, code: str, state: str) -> TokenResponse:
        """認可コードをトークンに交換する"""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenResponse:
        """リフレッシュトークンで新しいトークンを取得する"""

    @abstractmethod
    async def revoke(self, token: str) -> None:
        """トークンを失効させる"""

    @abstractmethod
    async def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        """ユーザー情報を `{id, name, email, picture}` の形で返す"""

    @property
    def callback_url(self) -> Optional[str]:
        """バックエンド固有のリダイレクト先。None なら共通設定を使う"""
        return None

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        """API呼び出しに共用できる HTTP クライアント"""
        return None

    async def close(self) -> None:
        """保持しているリソースを解放する"""


class RelayBackendAdapter(BackendAdapter):
    """クライアントシークレットを持つ外部リレーを介して OAuth を行うアダプタ

    サブクラスはユーザー情報のエンドポイントとプロフィールの対応付けを
    実装する。
    """

    user_info_url: str = ""
    user_info_method: str = "GET"
    user_info_headers: Dict[str, str] = {}
    user_info_body: Optional[bytes] = None

    def __init__(
        self,
        config: BackendConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.config = config
        self.backend_id = config.backend_id
        self.backend_type = config.backend_type
        self._timeout = timeout
        # リソースリークを防ぐため、所有権を追跡
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def callback_url(self) -> Optional[str]:
        return self.config.callback_url

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def required_scopes(self) -> List[str]:
        override = self.config.options.get("required_scopes")
        if isinstance(override, list) and override:
            return [str(scope) for scope in override]
        return list(self.minimum_scopes())

    @property
    def desired_scopes(self) -> List[str]:
        return ScopeMapper.map_scopes(self.config.scopes, self.backend_type)

    def minimum_scopes(self) -> List[str]:
        """既定の最低限スコープ"""
        return []

    def authorization_url(self, state: str) -> str:
        return self.config.authorization_url(state)

    async def exchange_code(self, code: str, state: str) -> TokenResponse:
        url = self.config.token_exchange_url(state)
        logger.debug("Exchanging authorization code for state %s", mask_secret(state))
        response = await self._send("GET", url, "token exchange", params={"code": code})
        return self._parse_token_response(response, "token exchange")

    async def refresh(self, refresh_token: str) -> TokenResponse:
        response = await self._send(
            "POST",
            self.config.refresh_url,
            "token refresh",
            json={"refresh_token": refresh_token},
        )
        return self._parse_token_response(response, "token refresh")

    async def revoke(self, token: str) -> None:
        response = await self._send("POST", self.config.revoke_url, "token revoke", json={"token": token})
        if not response.is_success:
            raise_auth_error(
                ErrorCode.AUTH_FAILED,
                f"トークンの失効に失敗しました (HTTP {response.status_code})",
                details=self._details(response),
            )

    async def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        response = await self._send(
            self.user_info_method,
            self.user_info_url,
            "user info",
            headers={"Authorization": f"Bearer {access_token}", **self.user_info_headers},
            content=self.user_info_body,
        )
        if not response.is_success:
            raise_auth_error(
                ErrorCode.AUTH_FAILED,
                f"ユーザー情報の取得に失敗しました (HTTP {response.status_code})",
                details=self._details(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise_auth_error(
                ErrorCode.AUTH_FAILED,
                "ユーザー情報のレスポンスが JSON ではありません",
                details=self._details(response),
                cause=exc,
            )
        if not isinstance(payload, dict):
            raise_auth_error(ErrorCode.AUTH_FAILED, "ユーザー情報の形式が不正です", details=self._details(response))
        return self.map_profile(payload)

    @abstractmethod
    def map_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """プロバイダ固有のユーザー情報を `{id, name, email, picture}` に変換する"""

    async def close(self) -> None:
        """生成した httpx クライアントをクリーンアップ"""
        if self._owns_client and self._client is not None:
            await self._client.aclose()

    async def __aenter__(self) -> "RelayBackendAdapter":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    async def _send(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.RequestError as exc:
            raise_auth_error(
                ErrorCode.AUTH_NETWORK_FAILURE,
                f"{operation} の通信に失敗しました",
                details={"backend_id": self.backend_id, "url": url},
                cause=exc,
            )

    def _parse_token_response(self, response: httpx.Response, operation: str) -> TokenResponse:
        if not response.is_success:
            raise_auth_error(
                ErrorCode.AUTH_TOKEN_EXCHANGE_FAILED,
                f"{operation} が失敗しました (HTTP {response.status_code})",
                details=self._details(response),
            )
        try:
            return TokenResponse.from_payload(response.json())
        except ValueError as exc:
            raise_auth_error(
                ErrorCode.AUTH_TOKEN_EXCHANGE_FAILED,
                f"{operation} のレスポンスが不正です: {exc}",
                details=self._details(response),
                cause=exc,
            )

    def _details(self, response: httpx.Response) -> Dict[str, Any]:
        return {
            "backend_id": self.backend_id,
            "status": response.status_code,
            "response": response.text[:200],
        }
