"""バックエンドアダプタの公開API。"""

from __future__ import annotations

from typing import Optional

import httpx

from cloudauth.backends.base import BackendAdapter, RelayBackendAdapter
from cloudauth.backends.dropbox import DropboxAdapter
from cloudauth.backends.google_drive import GoogleDriveAdapter
from cloudauth.backends.onedrive import OneDriveAdapter
from cloudauth.config.backends import BackendConfig, validate_backend_config

__all__ = [
    "BackendAdapter",
    "DropboxAdapter",
    "GoogleDriveAdapter",
    "OneDriveAdapter",
    "RelayBackendAdapter",
    "get_backend_adapter",
]

_ADAPTER_TYPES: dict[str, type[RelayBackendAdapter]] = {
    "google_drive": GoogleDriveAdapter,
    "dropbox": DropboxAdapter,
    "onedrive": OneDriveAdapter,
}


def get_backend_adapter(
    config: BackendConfig,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> RelayBackendAdapter:
    """バックエンドアダプタを生成する。

    Args:
        config: バックエンド設定。
        http_client: 共有する HTTP クライアント。
        timeout: HTTP タイムアウト秒数。

    Returns:
        バックエンド種別に対応するアダプタ。

    Raises:
        CloudAuthException: 設定が不正、または未対応の種別の場合。
    """

    validate_backend_config(config)
    adapter_type = _ADAPTER_TYPES[config.backend_type]
    return adapter_type(config, http_client=http_client, timeout=timeout)
