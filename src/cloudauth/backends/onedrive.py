"""OneDrive 向けアダプタ"""

from typing import Any, Dict, List

from cloudauth.backends.base import RelayBackendAdapter

ONEDRIVE_USER_INFO_URL = "https://graph.microsoft.com/v1.0/me"


class OneDriveAdapter(RelayBackendAdapter):
    """OneDrive (Microsoft Graph) 向けアダプタ"""

    user_info_url = ONEDRIVE_USER_INFO_URL

    def minimum_scopes(self) -> List[str]:
        return ["Files.ReadWrite"]

    def map_profile(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        # 個人アカウントでは mail が空のことがある
        return {
            "id": payload.get("id"),
            "name": payload.get("displayName") or "OneDrive User",
            "email": payload.get("mail") or payload.get("userPrincipalName"),
            "picture": None,
        }
