"""認証情報ライフサイクルの公開API。"""

from __future__ import annotations

from cloudauth.auth.classifier import ApiErrorKind, PermissionClassifier, ScopeSatisfaction
from cloudauth.auth.directory import AccountDirectory
from cloudauth.auth.flow import AuthorizationFlowCoordinator, CallbackParams, generate_state
from cloudauth.auth.manager import CredentialLifecycleManager
from cloudauth.auth.models import (
    AccountStatus,
    AccountSummary,
    AuthenticationState,
    CredentialRecord,
    TokenResponse,
    derive_state,
)
from cloudauth.auth.scheduler import RefreshScheduler
from cloudauth.auth.storage import (
    CredentialStore,
    KeyringCredentialStore,
    MemoryCredentialStore,
    SerializedCredentialStore,
)
from cloudauth.auth.user_agent import LoopbackBrowserUserAgent, UserAgent

__all__ = [
    "AccountDirectory",
    "AccountStatus",
    "AccountSummary",
    "ApiErrorKind",
    "AuthenticationState",
    "AuthorizationFlowCoordinator",
    "CallbackParams",
    "CredentialLifecycleManager",
    "CredentialRecord",
    "CredentialStore",
    "KeyringCredentialStore",
    "LoopbackBrowserUserAgent",
    "MemoryCredentialStore",
    "PermissionClassifier",
    "RefreshScheduler",
    "ScopeSatisfaction",
    "SerializedCredentialStore",
    "TokenResponse",
    "UserAgent",
    "derive_state",
    "generate_state",
]
