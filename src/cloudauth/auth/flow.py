"""ブラウザリダイレクト型の認可フロー。

クライアントシークレットはリレーだけが保持する。ここでは state の生成、
外部エージェントでの同意、コールバックの検証、リレーでのトークン交換、
ユーザー情報の取得、付与スコープの判定までを行い、結果を
CredentialRecord として返す（保存は呼び出し側の責務）。
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable
from urllib.parse import parse_qs, urlparse

import httpx

from cloudauth.auth.classifier import PermissionClassifier, ScopeSatisfaction
from cloudauth.auth.models import CredentialRecord
from cloudauth.auth.user_agent import UserAgent
from cloudauth.config.backends import mask_secret
from cloudauth.errors import CloudAuthException, ErrorCode, raise_auth_error

if TYPE_CHECKING:
    from cloudauth.backends.base import BackendAdapter

logger = logging.getLogger(__name__)

USER_DENIED_ERRORS = frozenset({"access_denied", "user_denied", "consent_required"})


def generate_state() -> str:
    """推測不能な state を生成する"""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class CallbackParams:
    """リダイレクトのクエリパラメータ"""

    state: str | None = None
    code: str | None = None
    error: str | None = None
    error_description: str | None = None

    @classmethod
    def from_url(cls, url: str) -> CallbackParams:
        query = parse_qs(urlparse(url).query)

        def first(key: str) -> str | None:
            values = query.get(key)
            return values[0] if values else None

        return cls(
            state=first("state"),
            code=first("code"),
            error=first("error"),
            error_description=first("error_description"),
        )


class AuthorizationFlowCoordinator:
    """1回分の認可フローを実行する。"""

    def __init__(
        self,
        adapter: BackendAdapter,
        user_agent: UserAgent,
        *,
        clock: Callable[[], float] = time.time,
        timeout: float | None = None,
        state_factory: Callable[[], str] = generate_state,
    ) -> None:
        """AuthorizationFlowCoordinatorを初期化する。

        Args:
            adapter: バックエンドアダプタ。
            user_agent: 認可URLを開く外部エージェント。
            clock: 現在時刻（UNIX秒）を返す関数。
            timeout: リダイレクト待機の上限秒数。None は無期限。
            state_factory: state の生成関数。
        """

        self._adapter = adapter
        self._user_agent = user_agent
        self._clock = clock
        self._timeout = timeout
        self._state_factory = state_factory
        self._cancel_event: asyncio.Event | None = None

    @property
    def in_progress(self) -> bool:
        return self._cancel_event is not None

    def cancel(self) -> None:
        """待機中のフローを中断する。フローは AuthorizationCancelledError で終わる。"""
        if self._cancel_event is not None:
            self._cancel_event.set()
        self._user_agent.dismiss()

    async def run(self) -> CredentialRecord:
        """認可フローを実行する。

        Returns:
            CredentialRecord: 取得したレコード。スコープ不足の場合は
            permission_issue が立ち success は False になる。

        Raises:
            StateMismatchError: コールバックの state が一致しない場合。
            UserDeniedError: ユーザーが同意しなかった場合。
            AuthorizationCancelledError: 中断またはタイムアウトした場合。
            AuthenticationFailedError: その他のコールバックエラー。
            NetworkFailureError: リレーに到達できない場合。
            TokenExchangeError: トークン交換が失敗した場合。
        """
        state = self._state_factory()
        url = self._adapter.authorization_url(state)
        logger.info("Starting authorization for %s (state %s)", self._adapter.backend_id, mask_secret(state))

        redirect = await self._await_redirect(url)
        params = CallbackParams.from_url(redirect)
        code = self._validate_callback(params, state)

        tokens = await self._adapter.exchange_code(code, state)
        now = self._clock()
        profile = await self._fetch_profile(tokens.access_token)
        user_id = profile.get("id") or f"user_{int(now * 1000)}"

        record = CredentialRecord(
            backend_id=self._adapter.backend_id,
            user_id=str(user_id),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at(now),
            granted_scopes=tokens.scope or "",
            success=True,
            metadata={"token_type": tokens.token_type},
        )
        if profile:
            record = record.with_profile(profile, now)

        satisfaction = PermissionClassifier.scopes_satisfy(
            tokens.scope,
            self._adapter.required_scopes,
            self._adapter.desired_scopes,
        )
        if satisfaction is ScopeSatisfaction.INSUFFICIENT:
            missing = PermissionClassifier.missing_scopes(tokens.scope, self._adapter.required_scopes)
            logger.warning(
                "Authorization for %s:%s is missing required scopes: %s",
                record.backend_id,
                record.user_id,
                ", ".join(missing),
            )
            record.mark_needs_reauth(f"必要なスコープが付与されていません: {', '.join(missing)}")
        elif satisfaction is ScopeSatisfaction.DEGRADED:
            logger.info("Authorization for %s:%s granted a reduced scope set", record.backend_id, record.user_id)

        return record

    async def _await_redirect(self, url: str) -> str:
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        present = asyncio.ensure_future(self._user_agent.present(url))
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _pending = await asyncio.wait(
                {present, cancelled},
                timeout=self._timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if present in done:
                return present.result()
            if cancelled in done:
                raise_auth_error(ErrorCode.AUTH_CANCELLED, "認可が中断されました")
            raise_auth_error(
                ErrorCode.AUTH_CANCELLED,
                "認可のコールバックがタイムアウトしました",
                details={"timeout": self._timeout},
            )
        finally:
            self._cancel_event = None
            for task in (present, cancelled):
                if not task.done():
                    task.cancel()
            if not present.done():
                self._user_agent.dismiss()
            await asyncio.gather(present, cancelled, return_exceptions=True)

    def _validate_callback(self, params: CallbackParams, state: str) -> str:
        # state の検証はエラー応答の解釈より先に行う
        if params.state is None or not secrets.compare_digest(params.state.encode(), state.encode()):
            raise_auth_error(
                ErrorCode.AUTH_STATE_MISMATCH,
                "コールバックの state が一致しません",
                details={"backend_id": self._adapter.backend_id},
            )

        if params.error:
            message = params.error_description or params.error
            if params.error in USER_DENIED_ERRORS:
                raise_auth_error(
                    ErrorCode.AUTH_USER_DENIED,
                    f"ユーザーが認可を拒否しました: {message}",
                    details={"error": params.error},
                )
            raise_auth_error(
                ErrorCode.AUTH_FAILED,
                f"認可エラーが返されました: {message}",
                details={"error": params.error},
            )

        if not params.code:
            raise_auth_error(ErrorCode.AUTH_FAILED, "認可コードが取得できませんでした")
        return params.code

    async def _fetch_profile(self, access_token: str) -> dict:
        try:
            return await self._adapter.fetch_user_info(access_token)
        except (CloudAuthException, httpx.HTTPError) as exc:
            logger.warning("Could not resolve user info for %s: %s", self._adapter.backend_id, exc)
            return {}
