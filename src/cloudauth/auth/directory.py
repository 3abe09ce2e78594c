"""バックエンドごとのアカウント一覧とアクティブユーザーの管理。"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

import httpx

from cloudauth.auth.models import AccountStatus, AccountSummary, CredentialRecord
from cloudauth.auth.storage import CredentialStore
from cloudauth.errors import CloudAuthException

logger = logging.getLogger(__name__)

ProfileFetcher = Callable[[str], Awaitable[dict[str, Any]]]


class AccountDirectory:
    """1つのバックエンドに保存された全アイデンティティとアクティブポインタ。

    アクティブポインタはメモリ上に保持し、変更のたびにストアへ反映する。
    """

    def __init__(
        self,
        store: CredentialStore,
        backend_id: str,
        *,
        profile_fetcher: ProfileFetcher | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """AccountDirectoryを初期化する。

        Args:
            store: 永続化先。
            backend_id: 対象バックエンド。
            profile_fetcher: アクセストークンからプロフィールを取得する関数。
            clock: 現在時刻（UNIX秒）を返す関数。
        """

        self._store = store
        self._backend_id = backend_id
        self._profile_fetcher = profile_fetcher
        self._clock = clock
        self._active_user_id: str | None = None

    @property
    def backend_id(self) -> str:
        return self._backend_id

    @property
    def active_user_id(self) -> str | None:
        return self._active_user_id

    def load_active_user(self) -> str | None:
        """保存済みのアクティブユーザーをメモリへ読み込む"""
        self._active_user_id = self._store.get_active_user(self._backend_id)
        return self._active_user_id

    def get(self, user_id: str) -> CredentialRecord | None:
        return self._store.get(self._backend_id, user_id)

    def get_all(self) -> dict[str, CredentialRecord]:
        return self._store.get_all(self._backend_id)

    def active_record(self) -> CredentialRecord | None:
        if self._active_user_id is None:
            return None
        return self.get(self._active_user_id)

    def put(self, record: CredentialRecord, *, make_active: bool = False) -> None:
        """レコードを保存し、必要ならアクティブにする"""
        if not record.user_id:
            raise ValueError("user_id が解決されていないレコードは保存できません")
        self._store.store(self._backend_id, record.user_id, record)
        if make_active:
            self._set_active(record.user_id)

    def switch_to_user(self, user_id: str) -> bool:
        """アクティブユーザーを切り替える。

        権限問題や再認可フラグのあるレコードも受け付ける。アクセストークンが
        空のレコード（または存在しないユーザー）だけを拒否する。

        Returns:
            bool: 切り替えた場合 True。拒否した場合はアクティブポインタを
            変更しない。
        """
        record = self.get(user_id)
        if record is None or not record.has_access_token:
            logger.info("Refusing to switch %s to %s: no usable access token", self._backend_id, user_id)
            return False

        self._set_active(user_id)
        return True

    def delete_user(self, user_id: str) -> bool:
        """レコードを削除する。

        Returns:
            bool: 削除したのがアクティブユーザーだった場合 True。
        """
        self._store.remove(self._backend_id, user_id)
        if self._active_user_id != user_id:
            return False
        self._active_user_id = None
        self._store.clear_active_user(self._backend_id)
        return True

    def clear_active(self) -> None:
        self._active_user_id = None
        self._store.clear_active_user(self._backend_id)

    def clear(self) -> None:
        """バックエンドの全レコードとアクティブポインタを削除する"""
        self._active_user_id = None
        self._store.remove_all(self._backend_id)

    async def get_all_users(self) -> list[AccountSummary]:
        """保存済みの全アカウントを返す。

        有効期限内のトークンを持つアカウントはプロフィールを取得し直し、
        変化があれば保存する。取得に失敗してもキャッシュ済みの値で返す。
        """
        records = self.get_all()
        return list(
            await asyncio.gather(
                *(self._summarize(user_id, record) for user_id, record in records.items())
            )
        )

    async def refresh_profile(self, record: CredentialRecord) -> tuple[CredentialRecord, bool]:
        """プロフィールを取得して反映したレコードを返す。

        Returns:
            tuple[CredentialRecord, bool]: 反映後のレコードと取得に成功したか。
        """
        if self._profile_fetcher is None or not record.is_usable(self._clock()):
            return record, True

        try:
            profile = await self._profile_fetcher(record.access_token)
        except (CloudAuthException, httpx.HTTPError) as exc:
            logger.debug("Profile refresh for %s:%s failed: %s", self._backend_id, record.user_id, exc)
            return record, False

        if not record.profile_differs(profile):
            return record, True

        # 取得中にリフレッシュで置き換わっている場合があるので最新のレコードに反映する
        latest = self.get(record.user_id) if record.user_id else None
        if latest is None:
            return record.with_profile(profile, self._clock()), True
        updated = latest.with_profile(profile, self._clock())
        self._store.store(self._backend_id, record.user_id, updated)
        return updated, True

    def summarize(self, record: CredentialRecord, *, fetched: bool = True) -> AccountSummary:
        """レコードを一覧表示用の状態に要約する。

        権限問題のあるアカウントと、期限切れでリフレッシュトークンも無い
        アカウントは NEEDS_REAUTH、プロフィール取得に失敗したものは ERROR。
        """
        cannot_refresh = record.is_expired(self._clock()) and not record.has_refresh_token
        if record.is_degraded or not record.has_access_token or cannot_refresh:
            status = AccountStatus.NEEDS_REAUTH
        elif not fetched:
            status = AccountStatus.ERROR
        else:
            status = AccountStatus.ACTIVE
        user_id = record.user_id or ""
        return AccountSummary(
            user_id=user_id,
            name=record.user_name or user_id,
            email=record.user_email or "",
            picture=record.user_picture,
            status=status,
            is_active=user_id == self._active_user_id,
        )

    async def _summarize(self, user_id: str, record: CredentialRecord) -> AccountSummary:
        updated, fetched = await self.refresh_profile(record)
        summary = self.summarize(updated, fetched=fetched)
        summary.user_id = user_id
        summary.is_active = user_id == self._active_user_id
        return summary

    def _set_active(self, user_id: str) -> None:
        self._active_user_id = user_id
        self._store.set_active_user(self._backend_id, user_id)
