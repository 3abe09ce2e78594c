"""Google Drive 向けアダプタ"""

from typing import Any, Dict, List

from cloudauth.backends.base import RelayBackendAdapter

GOOGLE_USER_INFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class GoogleDriveAdapter(RelayBackendAdapter):
    """Google Drive 向けアダプタ"""

    user_info_url = GOOGLE_USER_INFO_URL

    def minimum_scopes(self) -> List[str]:
        # drive.file が無いとアップロード・フォルダ作成ができない
        return ["https://www.googleapis.com/auth/drive.file"]

    def map_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": payload.get("id"),
            "name": payload.get("name") or "Google User",
            "email": payload.get("email"),
            "picture": payload.get("picture"),
        }
