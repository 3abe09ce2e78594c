"""認証情報のライフサイクル管理。

1つのバックエンドについて、認可・復元・リフレッシュ・アカウント切り替え・
権限エラーからの回復をまとめて扱う。インスタンスごとにアクティブな
アイデンティティとリフレッシュタイマーを1つずつ持つ。
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

import httpx

from cloudauth.auth.classifier import ApiErrorKind, PermissionClassifier
from cloudauth.auth.directory import AccountDirectory
from cloudauth.auth.flow import AuthorizationFlowCoordinator, generate_state
from cloudauth.auth.models import AccountSummary, AuthenticationState, CredentialRecord, derive_state
from cloudauth.auth.scheduler import DEFAULT_REFRESH_MARGIN_SECONDS, RefreshScheduler, TimerFactory
from cloudauth.auth.storage import CredentialStore, KeyringCredentialStore
from cloudauth.auth.user_agent import LoopbackBrowserUserAgent, UserAgent
from cloudauth.errors import CloudAuthException, ErrorCode, raise_auth_error

if TYPE_CHECKING:
    from cloudauth.backends.base import BackendAdapter
    from cloudauth.config.settings import CloudAuthSettings

logger = logging.getLogger(__name__)

StateListener = Callable[[AuthenticationState], None]


class CredentialLifecycleManager:
    """1つのバックエンドの認証情報ライフサイクルを管理する。

    リフレッシュはすべて `_refresh_user()` を通る。同じユーザーの
    リフレッシュが進行中であれば、後から来た呼び出しはその結果を待つ。
    """

    def __init__(
        self,
        adapter: BackendAdapter,
        store: CredentialStore,
        *,
        user_agent: Optional[UserAgent] = None,
        clock: Callable[[], float] = time.time,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN_SECONDS,
        timer_factory: Optional[TimerFactory] = None,
        authorization_timeout: Optional[float] = None,
        state_factory: Callable[[], str] = generate_state,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 30.0,
    ) -> None:
        """CredentialLifecycleManagerを初期化する。

        Args:
            adapter: バックエンドアダプタ。
            store: 認証情報の保存先。
            user_agent: 認可URLを開く外部エージェント。
            clock: 現在時刻（UNIX秒）を返す関数。
            refresh_margin_seconds: 有効期限の何秒前にリフレッシュするか。
            timer_factory: リフレッシュタイマーの生成関数。
            authorization_timeout: リダイレクト待機の上限秒数。None は無期限。
            state_factory: 認可フローの state 生成関数。
            http_client: authorized_request() で使う HTTP クライアント。
            http_timeout: authorized_request() の HTTP タイムアウト秒数。
        """

        self._adapter = adapter
        self._user_agent = user_agent or LoopbackBrowserUserAgent()
        self._clock = clock
        self._authorization_timeout = authorization_timeout
        self._state_factory = state_factory
        self._directory = AccountDirectory(
            store,
            adapter.backend_id,
            profile_fetcher=adapter.fetch_user_info,
            clock=clock,
        )
        self._scheduler = RefreshScheduler(
            self._on_scheduled_refresh,
            clock=clock,
            margin_seconds=refresh_margin_seconds,
            timer_factory=timer_factory,
        )
        self._state = AuthenticationState.NOT_AUTHENTICATED
        self._listeners: list[StateListener] = []
        self._refresh_lock = asyncio.Lock()
        self._refresh_tasks: dict[str, asyncio.Task[CredentialRecord]] = {}
        self._flow: Optional[AuthorizationFlowCoordinator] = None
        self._http_client = http_client
        self._http_timeout = http_timeout
        self._owns_http_client = False
        self._disposed = False

    @classmethod
    def from_settings(
        cls,
        settings: CloudAuthSettings,
        adapter: BackendAdapter,
        *,
        store: Optional[CredentialStore] = None,
        user_agent: Optional[UserAgent] = None,
        **kwargs: Any,
    ) -> CredentialLifecycleManager:
        """設定からマネージャを生成する。

        ストア未指定時は keyring（使えなければローカルファイル）、エージェント
        未指定時はシステムブラウザとループバック受信を使う。リダイレクト先は
        バックエンド設定の callback_url を優先する。
        """
        return cls(
            adapter,
            store or KeyringCredentialStore(settings.keyring_service, settings.token_fallback_path),
            user_agent=user_agent or LoopbackBrowserUserAgent(adapter.callback_url or settings.callback_url),
            refresh_margin_seconds=settings.refresh_margin_seconds,
            authorization_timeout=settings.authorization_timeout,
            http_timeout=settings.http_timeout,
            **kwargs,
        )

    @property
    def backend_id(self) -> str:
        return self._adapter.backend_id

    @property
    def state(self) -> AuthenticationState:
        return self._state

    @property
    def active_user_id(self) -> Optional[str]:
        return self._directory.active_user_id

    @property
    def directory(self) -> AccountDirectory:
        return self._directory

    @property
    def scheduler(self) -> RefreshScheduler:
        return self._scheduler

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def has_refresh_token(self) -> bool:
        record = self._directory.active_record()
        return record is not None and record.has_refresh_token

    @property
    def needs_reauth(self) -> bool:
        return self._state is AuthenticationState.NEEDS_REAUTH

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def authenticate(self) -> bool:
        """認可フローを実行し、得たレコードを保存してアクティブにする。

        スコープ不足のレコードも保存・アクティブ化し、状態は NEEDS_REAUTH に
        なる。

        Returns:
            bool: 権限問題なく接続できた場合 True。権限不足で接続した場合 False。

        Raises:
            CloudAuthException: 認可フローが失敗した場合。
        """
        self._ensure_not_disposed()
        if self._flow is not None:
            raise_auth_error(ErrorCode.AUTH_FAILED, "認可フローが既に進行中です")

        flow = AuthorizationFlowCoordinator(
            self._adapter,
            self._user_agent,
            clock=self._clock,
            timeout=self._authorization_timeout,
            state_factory=self._state_factory,
        )
        self._flow = flow
        self._set_state(AuthenticationState.AUTHENTICATING)
        try:
            record = await flow.run()
        except CloudAuthException as exc:
            logger.log(exc.log_level, "Authentication for %s failed: %s", self.backend_id, exc)
            if not self._disposed:
                self._set_state(AuthenticationState.AUTHENTICATION_FAILED)
            raise
        except asyncio.CancelledError:
            if not self._disposed:
                self._set_state(AuthenticationState.AUTHENTICATION_FAILED)
            raise
        except Exception:
            logger.exception("Unexpected error during authentication for %s", self.backend_id)
            if not self._disposed:
                self._set_state(AuthenticationState.AUTHENTICATION_FAILED)
            raise
        finally:
            self._flow = None

        self._ensure_not_disposed()
        self._directory.put(record, make_active=True)
        self._scheduler.schedule(record)
        if record.permission_issue:
            self._set_state(AuthenticationState.NEEDS_REAUTH)
        else:
            self._set_state(AuthenticationState.AUTHENTICATED)
        logger.info(
            "Authenticated %s:%s (permission_issue=%s)",
            record.backend_id,
            record.user_id,
            record.permission_issue,
        )
        return not record.permission_issue

    def cancel_authentication(self) -> None:
        """進行中の認可フローを中断する"""
        if self._flow is not None:
            self._flow.cancel()

    async def initialize_from_storage(self) -> AuthenticationState:
        """保存済みのアクティブユーザーを復元する。

        アクティブユーザーのトークンが空なら、有効期限内のトークンを持つ
        最初のアカウントを昇格させる。該当が無くても空でないトークンを持つ
        アカウントがあれば、NEEDS_REAUTH として昇格させる。

        Returns:
            AuthenticationState: 復元後の状態。
        """
        self._ensure_not_disposed()
        active_id = self._directory.load_active_user()
        if active_id is not None and self._directory.switch_to_user(active_id):
            record = self._directory.active_record()
            if record is not None:
                return self._activate(record)

        now = self._clock()
        candidates = {
            user_id: record
            for user_id, record in self._directory.get_all().items()
            if user_id != active_id and record.has_access_token
        }
        for user_id, record in candidates.items():
            if record.is_usable(now) and self._directory.switch_to_user(user_id):
                logger.info("Promoted stored account %s:%s", self.backend_id, user_id)
                return self._activate(record)

        for user_id, record in candidates.items():
            if self._directory.switch_to_user(user_id):
                logger.info("Promoted expired account %s:%s for re-authorization", self.backend_id, user_id)
                self._scheduler.schedule(record)
                self._set_state(AuthenticationState.NEEDS_REAUTH)
                return self._state

        if active_id is not None:
            self._directory.clear_active()
        self._scheduler.cancel()
        self._set_state(AuthenticationState.NOT_AUTHENTICATED)
        return self._state

    async def get_valid_credential_for_api(self) -> Optional[CredentialRecord]:
        """API 呼び出しに使うアクティブなレコードを返す。

        期限切れでリフレッシュトークンがあれば先にリフレッシュする。

        Returns:
            Optional[CredentialRecord]: アクティブなレコード。アクティブな
            ユーザーがいない、またはリフレッシュに失敗した場合は None。
        """
        self._ensure_not_disposed()
        record = self._directory.active_record()
        if record is None:
            return None
        if not record.is_expired(self._clock()):
            return record

        if not record.has_refresh_token:
            self._set_state(AuthenticationState.NEEDS_REAUTH)
            return record

        try:
            return await self._refresh_user(record.user_id or "")
        except CloudAuthException as exc:
            logger.warning("Refresh for %s:%s failed: %s", self.backend_id, record.user_id, exc)
            return None

    def handle_api_error(self, status_code: int, body: Optional[str], operation_name: str) -> bool:
        """API エラーを分類し、権限・スコープ不足であれば劣化状態に移す。

        Returns:
            bool: 権限・スコープ不足として処理した場合 True。呼び出し側は例外を
            送出せず空の結果などで続行できる。それ以外、またはアクティブな
            ユーザーがいない場合は False。
        """
        self._ensure_not_disposed()
        kind = PermissionClassifier.classify(status_code, body)
        if kind is not ApiErrorKind.PERMISSION_OR_SCOPE:
            logger.debug("%s on %s returned HTTP %s (%s)", operation_name, self.backend_id, status_code, kind.value)
            return False

        record = self._directory.active_record()
        if record is None or not record.has_access_token:
            logger.debug("%s on %s lacks permission but no account is active", operation_name, self.backend_id)
            return False

        record.mark_needs_reauth(f"{operation_name}: HTTP {status_code}")
        self._directory.put(record)
        logger.warning(
            "%s on %s:%s lacks permission (HTTP %s); re-authorization required",
            operation_name,
            self.backend_id,
            self.active_user_id,
            status_code,
        )
        self._set_state(AuthenticationState.NEEDS_REAUTH)
        return True

    async def switch_account(self, user_id: str) -> bool:
        """アクティブユーザーを切り替える。

        Returns:
            bool: 切り替えた場合 True。アクセストークンが空なら False。
        """
        self._ensure_not_disposed()
        if not self._directory.switch_to_user(user_id):
            return False
        record = self._directory.active_record()
        if record is None:
            return False
        self._activate(record)
        return True

    async def delete_account(self, user_id: str) -> None:
        """アカウントを削除し、トークンの失効を試みる"""
        self._ensure_not_disposed()
        record = self._directory.get(user_id)
        if self._directory.delete_user(user_id):
            self._scheduler.cancel()
            self._set_state(AuthenticationState.NOT_AUTHENTICATED)
        if record is not None:
            await self._revoke_quietly(record)

    async def logout(self) -> None:
        """アクティブユーザーをログアウトする。

        トークンの失効を試み、アクティブユーザーのレコードを削除する。
        """
        self._ensure_not_disposed()
        user_id = self._directory.active_user_id
        if user_id is None:
            self._scheduler.cancel()
            self._set_state(AuthenticationState.NOT_AUTHENTICATED)
            return
        await self.delete_account(user_id)

    async def refresh(self) -> CredentialRecord:
        """アクティブユーザーのトークンを強制的にリフレッシュする。

        Raises:
            NoRefreshTokenError: リフレッシュトークンが無い場合。
            CloudAuthException: リフレッシュに失敗した場合。
        """
        self._ensure_not_disposed()
        user_id = self._directory.active_user_id
        if user_id is None:
            raise_auth_error(ErrorCode.AUTH_FAILED, "認証されていません", details={"backend_id": self.backend_id})
        return await self._refresh_user(user_id)

    async def authorized_request(
        self,
        method: str,
        url: str,
        operation_name: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """アクティブユーザーのトークンで HTTP リクエストを送る。

        401 の場合は一度だけリフレッシュして再送する。権限・スコープ不足は
        handle_api_error() で処理し、例外は送出せずレスポンスを返す。

        Raises:
            AuthenticationFailedError: アクティブなユーザーがいない場合。
            NetworkFailureError: 通信に失敗した場合。
        """
        record = await self.get_valid_credential_for_api()
        if record is None:
            raise_auth_error(ErrorCode.AUTH_FAILED, "認証されていません", details={"backend_id": self.backend_id})

        response = await self._send(method, url, record.access_token, **kwargs)
        if response.status_code == 401:
            if not record.has_refresh_token:
                self._set_state(AuthenticationState.NEEDS_REAUTH)
                return response
            try:
                record = await self._refresh_user(record.user_id or "")
            except CloudAuthException as exc:
                logger.warning("Reactive refresh for %s failed: %s", operation_name, exc)
                return response
            response = await self._send(method, url, record.access_token, **kwargs)

        if not response.is_success:
            self.handle_api_error(response.status_code, response.text, operation_name)
        return response

    async def get_all_users(self) -> list[AccountSummary]:
        self._ensure_not_disposed()
        return await self._directory.get_all_users()

    async def get_current_user(self) -> Optional[AccountSummary]:
        """アクティブユーザーの情報をプロフィールを取得し直して返す"""
        self._ensure_not_disposed()
        record = self._directory.active_record()
        if record is None:
            return None
        updated, fetched = await self._directory.refresh_profile(record)
        return self._directory.summarize(updated, fetched=fetched)

    def time_to_expiry(self) -> Optional[float]:
        """アクティブなトークンの残り秒数。期限不明・未認証なら None"""
        record = self._directory.active_record()
        if record is None or record.expires_at is None:
            return None
        return max(0.0, record.expires_at - self._clock())

    async def dispose(self) -> None:
        """タイマーと進行中の処理を取り消す。以後の操作は DisposedError になる"""
        if self._disposed:
            return
        self._disposed = True
        self._scheduler.close()
        if self._flow is not None:
            self._flow.cancel()

        tasks = list(self._refresh_tasks.values())
        self._refresh_tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._scheduler.join()

        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
        self._listeners.clear()
        logger.debug("Credential manager for %s disposed", self.backend_id)

    async def __aenter__(self) -> CredentialLifecycleManager:
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.dispose()

    async def _refresh_user(self, user_id: str) -> CredentialRecord:
        async with self._refresh_lock:
            self._ensure_not_disposed()
            task = self._refresh_tasks.get(user_id)
            if task is None:
                task = asyncio.ensure_future(self._perform_refresh(user_id))
                self._refresh_tasks[user_id] = task
                task.add_done_callback(lambda done, uid=user_id: self._on_refresh_done(uid, done))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled() and self._disposed:
                self._ensure_not_disposed()
            raise

    def _on_refresh_done(self, user_id: str, task: asyncio.Task[CredentialRecord]) -> None:
        if self._refresh_tasks.get(user_id) is task:
            del self._refresh_tasks[user_id]
        if not task.cancelled():
            # 待機者がいない場合の未取得例外警告を避ける
            task.exception()

    async def _perform_refresh(self, user_id: str) -> CredentialRecord:
        record = self._directory.get(user_id)
        is_active = user_id == self._directory.active_user_id
        if record is None or not record.has_refresh_token:
            if is_active:
                self._set_state(AuthenticationState.NEEDS_REAUTH)
            raise_auth_error(
                ErrorCode.AUTH_NO_REFRESH_TOKEN,
                "リフレッシュトークンが無いため再認可が必要です",
                details={"backend_id": self.backend_id, "user_id": user_id},
            )

        try:
            tokens = await self._adapter.refresh(record.refresh_token or "")
        except CloudAuthException:
            if not self._disposed and not record.is_degraded and user_id == self._directory.active_user_id:
                self._set_state(AuthenticationState.NEEDS_REFRESH)
            raise

        self._ensure_not_disposed()
        now = self._clock()
        # リフレッシュ中の書き込み（権限フラグ・再認可）を失わないよう最新のレコードに反映する
        latest = self._directory.get(user_id)
        if latest is None:
            # リフレッシュ中に削除されたアカウントは復活させない
            return record.apply_token_response(tokens, now)
        if latest.access_token != record.access_token:
            logger.info(
                "Discarding refresh result for %s:%s: record was replaced during refresh",
                self.backend_id,
                user_id,
            )
            return latest

        updated = latest.apply_token_response(tokens, now)
        self._directory.put(updated)
        if user_id == self._directory.active_user_id:
            self._scheduler.schedule(updated)
            self._set_state(derive_state(updated, now))
        logger.info("Refreshed token for %s:%s", self.backend_id, user_id)
        return updated

    async def _on_scheduled_refresh(self, record: CredentialRecord) -> None:
        if self._disposed or record.user_id is None or record.user_id != self._directory.active_user_id:
            return
        try:
            await self._refresh_user(record.user_id)
        except CloudAuthException as exc:
            logger.warning("Scheduled refresh for %s:%s failed: %s", self.backend_id, record.user_id, exc)

    def _activate(self, record: CredentialRecord) -> AuthenticationState:
        self._scheduler.schedule(record)
        self._set_state(derive_state(record, self._clock()))
        return self._state

    async def _revoke_quietly(self, record: CredentialRecord) -> None:
        if not record.has_access_token:
            return
        try:
            await self._adapter.revoke(record.access_token)
        except (CloudAuthException, httpx.HTTPError) as exc:
            logger.warning("Token revocation for %s:%s failed: %s", self.backend_id, record.user_id, exc)

    async def _send(self, method: str, url: str, access_token: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {access_token}"
        kwargs.setdefault("timeout", self._http_timeout)
        try:
            return await self._client().request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as exc:
            raise_auth_error(
                ErrorCode.AUTH_NETWORK_FAILURE,
                f"{method} {url} の通信に失敗しました",
                details={"backend_id": self.backend_id},
                cause=exc,
            )

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = self._adapter.http_client
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._http_timeout)
            self._owns_http_client = True
        return self._http_client

    def _set_state(self, state: AuthenticationState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        logger.debug("%s: %s -> %s", self.backend_id, previous.value, state.value)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Authentication state listener failed")

    def _ensure_not_disposed(self) -> None:
        if self._disposed:
            raise_auth_error(
                ErrorCode.LIFECYCLE_DISPOSED,
                "破棄済みのマネージャは使用できません",
                details={"backend_id": self.backend_id},
            )
