"""cloudauth - クラウドストレージ向け OAuth2 マルチアカウント認証管理"""

__version__ = "0.1.0"
