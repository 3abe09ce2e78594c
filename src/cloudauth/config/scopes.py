"""
汎用 OAuth スコープとバックエンド別スコープ文字列の対応
"""

from enum import Enum
from typing import Dict, Iterable, List, Set

from cloudauth.errors import CloudAuthException, create_config_error


class OAuthScope(Enum):
    """バックエンドに依存しない汎用スコープ"""

    READ_FILES = "read_files"
    WRITE_FILES = "write_files"
    CREATE_FOLDERS = "create_folders"
    DELETE_FILES = "delete_files"
    SHARE_FILES = "share_files"
    READ_PROFILE = "read_profile"
    READ_METADATA = "read_metadata"
    MOVE_FILES = "move_files"
    COPY_FILES = "copy_files"
    RENAME_FILES = "rename_files"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @classmethod
    def parse(cls, name: str) -> "OAuthScope":
        """`read_files` / `readFiles` どちらの表記も受け付ける"""
        normalized = "".join(
            f"_{char.lower()}" if char.isupper() else char for char in name.strip()
        ).lstrip("_")
        try:
            return cls(normalized)
        except ValueError:
            raise CloudAuthException(
                create_config_error(
                    f"未知のスコープです: {name}",
                    details={"scope": name, "supported": [scope.value for scope in cls]},
                )
            ) from None


_DESCRIPTIONS: Dict[OAuthScope, str] = {
    OAuthScope.READ_FILES: "Read access to your files",
    OAuthScope.WRITE_FILES: "Create, modify and delete your files",
    OAuthScope.CREATE_FOLDERS: "Create new folders",
    OAuthScope.DELETE_FILES: "Delete files and folders",
    OAuthScope.SHARE_FILES: "Share files and folders with others",
    OAuthScope.READ_PROFILE: "Access to your profile information",
    OAuthScope.READ_METADATA: "Read file information without content",
    OAuthScope.MOVE_FILES: "Move files between folders",
    OAuthScope.COPY_FILES: "Copy files and folders",
    OAuthScope.RENAME_FILES: "Rename files and folders",
}

# 全機能を使うために各バックエンドが要求する汎用スコープ
DEFAULT_SCOPES = (
    OAuthScope.READ_FILES,
    OAuthScope.WRITE_FILES,
    OAuthScope.CREATE_FOLDERS,
    OAuthScope.DELETE_FILES,
    OAuthScope.READ_PROFILE,
    OAuthScope.READ_METADATA,
)

_GOOGLE_DRIVE_FILE = "https://www.googleapis.com/auth/drive.file"

SCOPE_MAPPINGS: Dict[str, Dict[OAuthScope, str]] = {
    "google_drive": {
        OAuthScope.READ_FILES: "https://www.googleapis.com/auth/drive.readonly",
        OAuthScope.WRITE_FILES: _GOOGLE_DRIVE_FILE,
        OAuthScope.CREATE_FOLDERS: _GOOGLE_DRIVE_FILE,
        OAuthScope.DELETE_FILES: _GOOGLE_DRIVE_FILE,
        OAuthScope.SHARE_FILES: _GOOGLE_DRIVE_FILE,
        OAuthScope.READ_PROFILE: "https://www.googleapis.com/auth/userinfo.profile",
        OAuthScope.READ_METADATA: "https://www.googleapis.com/auth/drive.metadata.readonly",
        OAuthScope.MOVE_FILES: _GOOGLE_DRIVE_FILE,
        OAuthScope.COPY_FILES: _GOOGLE_DRIVE_FILE,
        OAuthScope.RENAME_FILES: _GOOGLE_DRIVE_FILE,
    },
    "onedrive": {
        OAuthScope.READ_FILES: "Files.Read",
        OAuthScope.WRITE_FILES: "Files.ReadWrite",
        OAuthScope.CREATE_FOLDERS: "Files.ReadWrite",
        OAuthScope.DELETE_FILES: "Files.ReadWrite",
        OAuthScope.SHARE_FILES: "Files.ReadWrite.All",
        OAuthScope.READ_PROFILE: "User.Read",
        OAuthScope.READ_METADATA: "Files.Read",
        OAuthScope.MOVE_FILES: "Files.ReadWrite",
        OAuthScope.COPY_FILES: "Files.ReadWrite",
        OAuthScope.RENAME_FILES: "Files.ReadWrite",
    },
    "dropbox": {
        OAuthScope.READ_FILES: "files.content.read",
        OAuthScope.WRITE_FILES: "files.content.write",
        OAuthScope.CREATE_FOLDERS: "files.content.write",
        OAuthScope.DELETE_FILES: "files.content.write",
        OAuthScope.SHARE_FILES: "sharing.write",
        OAuthScope.READ_PROFILE: "account_info.read",
        OAuthScope.READ_METADATA: "files.metadata.read",
        OAuthScope.MOVE_FILES: "files.content.write",
        OAuthScope.COPY_FILES: "files.content.write",
        OAuthScope.RENAME_FILES: "files.content.write",
    },
}


class ScopeMapper:
    """汎用スコープをバックエンド固有のスコープ文字列へ変換する"""

    @staticmethod
    def supported_scopes(backend_type: str) -> Set[OAuthScope]:
        return set(SCOPE_MAPPINGS.get(backend_type, {}))

    @staticmethod
    def provider_scope(backend_type: str, scope: OAuthScope) -> str | None:
        return SCOPE_MAPPINGS.get(backend_type, {}).get(scope)

    @classmethod
    def map_scopes(cls, scopes: Iterable[OAuthScope], backend_type: str) -> List[str]:
        """重複を除いたバックエンド固有スコープを指定順で返す"""
        mapping = SCOPE_MAPPINGS.get(backend_type, {})
        mapped: List[str] = []
        for scope in scopes:
            value = mapping.get(scope)
            if value is not None and value not in mapped:
                mapped.append(value)
        return mapped

    @classmethod
    def validate(cls, scopes: Iterable[OAuthScope], backend_type: str) -> None:
        """バックエンドが扱えないスコープがあれば設定エラーを送出する"""
        unsupported = sorted(
            scope.value for scope in scopes if scope not in cls.supported_scopes(backend_type)
        )
        if unsupported:
            raise CloudAuthException(
                create_config_error(
                    f"{backend_type} は次のスコープに対応していません: {', '.join(unsupported)}",
                    details={"backend_type": backend_type, "unsupported": unsupported},
                )
            )
