"""設定管理 - 設定の読み込みと管理"""

from cloudauth.config.backends import (
    DEFAULT_CALLBACK_URL,
    SUPPORTED_BACKENDS,
    BackendConfig,
    BackendConfigLoader,
    mask_secret,
    validate_backend_config,
)
from cloudauth.config.scopes import DEFAULT_SCOPES, OAuthScope, ScopeMapper
from cloudauth.config.settings import CloudAuthSettings

__all__ = [
    "BackendConfig",
    "BackendConfigLoader",
    "CloudAuthSettings",
    "DEFAULT_CALLBACK_URL",
    "DEFAULT_SCOPES",
    "OAuthScope",
    "ScopeMapper",
    "SUPPORTED_BACKENDS",
    "mask_secret",
    "validate_backend_config",
]
