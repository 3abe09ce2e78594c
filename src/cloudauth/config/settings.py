"""Pydantic V2 ベースの統合設定モデル"""

import logging
from pathlib import Path
from typing import Any, Optional, Tuple
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cloudauth.config.backends import DEFAULT_CALLBACK_URL, mask_secret

logger = logging.getLogger(__name__)


class CloudAuthSettings(BaseSettings):
    """cloudauth の統合設定"""

    model_config = SettingsConfigDict(
        env_prefix="CLOUDAUTH_",
        env_file=".env",
        extra="forbid",
    )

    # リレー設定
    relay_base_url: str = Field(..., description="OAuth relay base URL")
    callback_url: str = Field(default=DEFAULT_CALLBACK_URL)

    # トークン寿命・通信設定
    refresh_margin_seconds: float = Field(default=300.0, ge=0)
    http_timeout: float = Field(default=30.0, gt=0)
    authorization_timeout: Optional[float] = Field(default=None, gt=0)

    # 永続化設定
    keyring_service: str = Field(default="cloudauth", min_length=1)
    token_fallback_path: Optional[Path] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[Any, ...]:
        """設定ソースの優先順位をカスタマイズ（env > dotenv > init）"""
        return (
            env_settings,
            dotenv_settings,
            init_settings,
            file_secret_settings,
        )

    @field_validator("relay_base_url", "callback_url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        """http(s) の絶対URLのみ受け付ける"""
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"http(s) のURLを指定してください: {value}")
        return value

    def dump_masked(self) -> dict:
        """機微情報をマスクした設定を返却する"""
        data = self.model_dump()
        parsed = urlparse(self.relay_base_url)
        if parsed.password:
            data["relay_base_url"] = self.relay_base_url.replace(parsed.password, mask_secret(parsed.password))
        if data.get("token_fallback_path") is not None:
            data["token_fallback_path"] = str(data["token_fallback_path"])
        return data
