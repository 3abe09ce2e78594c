"""Dropbox 向けアダプタ"""

from typing import Any, Dict, List

from cloudauth.backends.base import RelayBackendAdapter

DROPBOX_USER_INFO_URL = "https://api.dropboxapi.com/2/users/get_current_account"


class DropboxAdapter(RelayBackendAdapter):
    """Dropbox 向けアダプタ

    Dropbox の RPC エンドポイントは POST で、引数なしの場合は本文に
    JSON の null を送る。
    """

    user_info_url = DROPBOX_USER_INFO_URL
    user_info_method = "POST"
    user_info_headers = {"Content-Type": "application/json"}
    user_info_body = b"null"

    def minimum_scopes(self) -> List[str]:
        return ["files.content.read", "files.content.write"]

    def map_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = payload.get("name")
        display_name = name.get("display_name") if isinstance(name, dict) else None
        return {
            "id": payload.get("account_id"),
            "name": display_name or "Dropbox User",
            "email": payload.get("email"),
            "picture": payload.get("profile_photo_url"),
        }
