"""
バックエンド設定の読み込みと管理
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlparse

import yaml

from cloudauth.config.scopes import DEFAULT_SCOPES, OAuthScope, ScopeMapper
from cloudauth.errors import CloudAuthException, create_config_error

SUPPORTED_BACKENDS = ("google_drive", "dropbox", "onedrive")
DEFAULT_CALLBACK_URL = "http://localhost:8765/callback"

logger = logging.getLogger(__name__)


def mask_secret(value: Optional[str]) -> str:
    """トークンや state をマスクしてログ出力を避ける"""
    if not value:
        return "***"
    if len(value) <= 4:
        return "*" * len(value)
    return f"***{value[-4:]}"


def _optional_url(value: Any) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    return text or None


@dataclass
class BackendConfig:
    """バックエンド個別設定

    クライアントID・シークレットはリレー側が保持するため、ここには
    リレーのURLとコールバック先、要求スコープだけを持つ。callback_url が
    None の場合は CloudAuthSettings.callback_url を使う。
    """

    backend_id: str
    backend_type: str
    relay_base_url: str
    callback_url: Optional[str] = None
    scopes: List[OAuthScope] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def base_url(self) -> str:
        return self.relay_base_url.rstrip("/")

    def authorization_url(self, state: str) -> str:
        """リレーの認可開始URL"""
        return f"{self.base_url}/auth/{self.backend_type}?state={quote(state, safe='')}"

    def token_exchange_url(self, state: str) -> str:
        return f"{self.base_url}/auth/tokens/{quote(state, safe='')}"

    @property
    def refresh_url(self) -> str:
        return f"{self.base_url}/auth/refresh"

    @property
    def revoke_url(self) -> str:
        return f"{self.base_url}/auth/revoke"

    def masked_dict(self) -> Dict[str, Any]:
        """オプション値をマスクした安全な辞書"""
        return {
            "backend_id": self.backend_id,
            "backend_type": self.backend_type,
            "relay_base_url": self.relay_base_url,
            "callback_url": self.callback_url,
            "scopes": [scope.value for scope in self.scopes],
            "options": {
                key: mask_secret(value) if isinstance(value, str) else value
                for key, value in self.options.items()
            },
        }


class BackendConfigLoader:
    """バックエンド設定ローダー(yaml/env + キャッシュ + バリデーション)"""

    def __init__(self) -> None:
        self._cache: Optional[Dict[str, BackendConfig]] = None

    def load(
        self,
        config_path: Optional[Path] = None,
        force_reload: bool = False,
    ) -> Dict[str, BackendConfig]:
        """バックエンド設定を読み込む

        Args:
            config_path: 設定ファイルのパス。省略時は既定の場所を探索する。
            force_reload: キャッシュを無視して読み直すか。

        Returns:
            Dict[str, BackendConfig]: backend_id をキーとする設定。

        Raises:
            CloudAuthException: 設定が不正な場合 (CONFIG_001)。
        """
        if self._cache is not None and not force_reload:
            return self._cache

        raw_backends = self._load_from_file(config_path)
        relay_override = os.environ.get("CLOUDAUTH_RELAY_BASE_URL", "").strip()
        callback_override = os.environ.get("CLOUDAUTH_CALLBACK_URL", "").strip()

        configs: Dict[str, BackendConfig] = {}
        for backend_id, cfg in raw_backends.items():
            configs[backend_id] = self._build_backend_config(
                backend_id,
                cfg,
                relay_override=relay_override or None,
                callback_override=callback_override or None,
            )

        self._validate(configs)
        self._cache = configs
        return configs

    def _load_from_file(self, config_path: Optional[Path]) -> Dict[str, Dict[str, Any]]:
        resolved_path = config_path or self._find_default_config()
        if resolved_path is None or not resolved_path.exists():
            return {}

        try:
            with resolved_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.error(
                "Failed to load backend config file: path=%s error=%s",
                resolved_path,
                e,
                exc_info=True,
            )
            raise CloudAuthException(
                create_config_error(
                    f"設定ファイルを読み込めません: {resolved_path}",
                    details={"path": str(resolved_path)},
                )
            ) from e

        if not isinstance(data, dict):
            raise CloudAuthException(
                create_config_error(
                    "設定ファイルの形式が不正です（マッピングが必要です）",
                    details={"path": str(resolved_path), "type": type(data).__name__},
                )
            )

        raw_backends = data.get("backends") or {}
        if not isinstance(raw_backends, dict):
            raise CloudAuthException(
                create_config_error(
                    "backends はマッピングで指定してください",
                    details={"path": str(resolved_path)},
                )
            )

        backends: Dict[str, Dict[str, Any]] = {}
        for backend_id, cfg in raw_backends.items():
            if not isinstance(cfg, dict):
                logger.warning("Ignoring backend %s: expected mapping", backend_id)
                continue
            backends[str(backend_id)] = cfg
        return backends

    def _build_backend_config(
        self,
        backend_id: str,
        cfg: Dict[str, Any],
        *,
        relay_override: Optional[str],
        callback_override: Optional[str],
    ) -> BackendConfig:
        backend_type = str(cfg.get("type") or backend_id).strip().lower()
        raw_scopes = cfg.get("scopes")
        if raw_scopes is None:
            scopes = list(DEFAULT_SCOPES)
        elif isinstance(raw_scopes, list):
            scopes = [OAuthScope.parse(str(item)) for item in raw_scopes]
        else:
            raise CloudAuthException(
                create_config_error(
                    f"バックエンド '{backend_id}' の scopes はリストで指定してください",
                    details={"backend_id": backend_id},
                )
            )

        options = cfg.get("options")
        return BackendConfig(
            backend_id=backend_id,
            backend_type=backend_type,
            relay_base_url=relay_override or str(cfg.get("relay_base_url") or ""),
            callback_url=callback_override or _optional_url(cfg.get("callback_url")),
            scopes=scopes,
            options=options if isinstance(options, dict) else {},
        )

    def _validate(self, configs: Dict[str, BackendConfig]) -> None:
        for cfg in configs.values():
            validate_backend_config(cfg)

    def _find_default_config(self) -> Optional[Path]:
        """デフォルトの設定ファイルパスを探索"""
        paths = [
            Path.cwd() / "cloudauth.yaml",
            Path.cwd() / "cloudauth.yml",
            Path.home() / ".config" / "cloudauth" / "config.yaml",
            Path.home() / ".config" / "cloudauth" / "config.yml",
        ]
        for path in paths:
            if path.exists():
                return path
        return None


def validate_backend_config(cfg: BackendConfig) -> None:
    """バックエンド設定を検証する

    Raises:
        CloudAuthException: 未知のバックエンド種別、リレーURLの欠落・不正、
            空のスコープの場合。
    """
    details = {"backend_id": cfg.backend_id, "backend_type": cfg.backend_type}
    if cfg.backend_type not in SUPPORTED_BACKENDS:
        raise CloudAuthException(
            create_config_error(
                f"未対応のバックエンド種別です: {cfg.backend_type}",
                details={**details, "supported": list(SUPPORTED_BACKENDS)},
            )
        )
    if not cfg.relay_base_url.strip():
        raise CloudAuthException(
            create_config_error(
                f"バックエンド '{cfg.backend_id}' の relay_base_url が未設定です",
                details=details,
            )
        )
    if urlparse(cfg.relay_base_url).scheme not in ("http", "https"):
        raise CloudAuthException(
            create_config_error(
                f"relay_base_url は http(s) のURLで指定してください: {cfg.relay_base_url}",
                details=details,
            )
        )
    if cfg.callback_url is not None and urlparse(cfg.callback_url).scheme not in ("http", "https"):
        raise CloudAuthException(
            create_config_error(
                f"callback_url は http(s) のURLで指定してください: {cfg.callback_url}",
                details=details,
            )
        )
    if not cfg.scopes:
        raise CloudAuthException(
            create_config_error(
                f"バックエンド '{cfg.backend_id}' の scopes が空です",
                details=details,
            )
        )
    ScopeMapper.validate(cfg.scopes, cfg.backend_type)
