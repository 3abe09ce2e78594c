"""認証情報の永続化を提供する。"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
import warnings

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from cloudauth.auth.models import CredentialRecord
from cloudauth.errors import StorageCorruptionError

logger = logging.getLogger(__name__)

_INDEX_SUFFIX = "__users__"
_ACTIVE_SUFFIX = "__active__"


class CredentialStore(ABC):
    """バックエンド×ユーザー単位で CredentialRecord を保存する永続化インターフェース。

    破損したレコードは解析エラーとして呼び出し側へ伝播させず、存在しない
    ものとして扱う。
    """

    @abstractmethod
    def store(self, backend_id: str, user_id: str, record: CredentialRecord) -> None:
        """レコードを保存する。"""

    @abstractmethod
    def get(self, backend_id: str, user_id: str) -> CredentialRecord | None:
        """レコードを取得する。存在しない・破損している場合は None。"""

    @abstractmethod
    def get_all(self, backend_id: str) -> dict[str, CredentialRecord]:
        """バックエンドの全レコードを保存順に返す。"""

    @abstractmethod
    def remove(self, backend_id: str, user_id: str) -> None:
        """レコードを削除する。"""

    @abstractmethod
    def remove_all(self, backend_id: str) -> None:
        """バックエンドの全レコードとアクティブユーザーを削除する。"""

    @abstractmethod
    def get_active_user(self, backend_id: str) -> str | None:
        """アクティブユーザーIDを返す。"""

    @abstractmethod
    def set_active_user(self, backend_id: str, user_id: str) -> None:
        """アクティブユーザーIDを保存する。"""

    @abstractmethod
    def clear_active_user(self, backend_id: str) -> None:
        """アクティブユーザーIDを削除する。"""


class SerializedCredentialStore(CredentialStore):
    """文字列キー・バリューの上にJSONでレコードを保存するストア。

    キーの一覧は保存先が列挙できない場合に備えてバックエンドごとの索引
    エントリで管理する。解析できないレコードは削除して None を返す。
    """

    @abstractmethod
    def _read(self, key: str) -> str | None:
        """生の値を読む。"""

    @abstractmethod
    def _write(self, key: str, value: str) -> None:
        """生の値を書く。"""

    @abstractmethod
    def _delete(self, key: str) -> None:
        """生の値を削除する。存在しなくてもエラーにしない。"""

    def store(self, backend_id: str, user_id: str, record: CredentialRecord) -> None:
        self._write(self._record_key(backend_id, user_id), record.to_json())
        user_ids = self._read_index(backend_id)
        if user_id not in user_ids:
            user_ids.append(user_id)
            self._write_index(backend_id, user_ids)

    def get(self, backend_id: str, user_id: str) -> CredentialRecord | None:
        raw = self._read(self._record_key(backend_id, user_id))
        if raw is None:
            return None
        try:
            return CredentialRecord.from_json(raw)
        except StorageCorruptionError as exc:
            logger.warning(
                "Corrupt credential record for %s:%s removed: %s", backend_id, user_id, exc
            )
            self.remove(backend_id, user_id)
            return None

    def get_all(self, backend_id: str) -> dict[str, CredentialRecord]:
        records: dict[str, CredentialRecord] = {}
        for user_id in self._read_index(backend_id):
            record = self.get(backend_id, user_id)
            if record is not None:
                records[user_id] = record
        return records

    def remove(self, backend_id: str, user_id: str) -> None:
        self._delete(self._record_key(backend_id, user_id))
        user_ids = self._read_index(backend_id)
        if user_id in user_ids:
            user_ids.remove(user_id)
            self._write_index(backend_id, user_ids)

    def remove_all(self, backend_id: str) -> None:
        for user_id in self._read_index(backend_id):
            self._delete(self._record_key(backend_id, user_id))
        self._delete(self._index_key(backend_id))
        self.clear_active_user(backend_id)

    def get_active_user(self, backend_id: str) -> str | None:
        value = self._read(self._active_key(backend_id))
        return value or None

    def set_active_user(self, backend_id: str, user_id: str) -> None:
        self._write(self._active_key(backend_id), user_id)

    def clear_active_user(self, backend_id: str) -> None:
        self._delete(self._active_key(backend_id))

    def _read_index(self, backend_id: str) -> list[str]:
        raw = self._read(self._index_key(backend_id))
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Corrupt user index for %s discarded", backend_id)
            self._delete(self._index_key(backend_id))
            return []
        if not isinstance(data, list):
            return []
        return [str(item) for item in data]

    def _write_index(self, backend_id: str, user_ids: list[str]) -> None:
        self._write(self._index_key(backend_id), json.dumps(user_ids, ensure_ascii=False))

    @staticmethod
    def _record_key(backend_id: str, user_id: str) -> str:
        return f"{backend_id}:{user_id}"

    @staticmethod
    def _index_key(backend_id: str) -> str:
        return f"{backend_id}:{_INDEX_SUFFIX}"

    @staticmethod
    def _active_key(backend_id: str) -> str:
        return f"{backend_id}:{_ACTIVE_SUFFIX}"


class MemoryCredentialStore(SerializedCredentialStore):
    """プロセス内の辞書に保存するストア（テストや一時利用向け）。"""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def _read(self, key: str) -> str | None:
        return self._data.get(key)

    def _write(self, key: str, value: str) -> None:
        self._data[key] = value

    def _delete(self, key: str) -> None:
        self._data.pop(key, None)


class KeyringCredentialStore(SerializedCredentialStore):
    """OSのkeyringに保存し、使えない場合はローカルファイルへ切り替えるストア。"""

    def __init__(self, keyring_service: str = "cloudauth", fallback_path: Path | None = None) -> None:
        """KeyringCredentialStoreを初期化する。

        Args:
            keyring_service: keyringに保存する際のサービス名。
            fallback_path: keyringが使えない場合の保存先。
        """

        self._keyring_service = keyring_service
        self._fallback_path = fallback_path or Path.home() / ".cloudauth" / "credentials.json"
        self._use_keyring = True

    @property
    def uses_keyring(self) -> bool:
        return self._use_keyring

    def _read(self, key: str) -> str | None:
        if self._use_keyring:
            try:
                return keyring.get_password(self._keyring_service, key)
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        return self._read_fallback().get(key)

    def _write(self, key: str, value: str) -> None:
        if self._use_keyring:
            try:
                keyring.set_password(self._keyring_service, key, value)
                return
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        entries = self._read_fallback()
        entries[key] = value
        self._write_fallback(entries)

    def _delete(self, key: str) -> None:
        if self._use_keyring:
            try:
                keyring.delete_password(self._keyring_service, key)
                return
            except PasswordDeleteError:
                # 未登録のキー
                return
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        entries = self._read_fallback()
        if key in entries:
            entries.pop(key)
            self._write_fallback(entries)

    def _switch_to_fallback(self, exc: Exception) -> None:
        if self._use_keyring:
            logger.warning("Keyring unavailable, falling back to %s: %s", self._fallback_path, exc)
            warnings.warn(
                "keyringが利用できないため、ローカルファイルに保存します。",
                RuntimeWarning,
                stacklevel=3,
            )
            self._use_keyring = False

    def _read_fallback(self) -> dict[str, str]:
        if not self._fallback_path.exists():
            return {}

        self._ensure_fallback_permissions(self._fallback_path)
        try:
            with self._fallback_path.open("r", encoding="utf-8") as file:
                data = json.load(file)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("Credential fallback file %s is not valid JSON; treating as empty", self._fallback_path)
            return {}

        if not isinstance(data, dict):
            return {}

        return {str(key): str(value) for key, value in data.items()}

    def _write_fallback(self, entries: dict[str, str]) -> None:
        self._fallback_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with self._fallback_path.open("w", encoding="utf-8") as file:
            json.dump(entries, file, ensure_ascii=False, indent=2)
        self._ensure_fallback_permissions(self._fallback_path)

    def _ensure_fallback_permissions(self, path: Path) -> None:
        if path.exists():
            os.chmod(path, 0o600)
