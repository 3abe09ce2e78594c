"""AccountDirectory のユニットテスト"""

import unittest
from unittest.mock import AsyncMock

import httpx

from cloudauth.auth.directory import AccountDirectory
from cloudauth.auth.models import AccountStatus, CredentialRecord
from cloudauth.auth.storage import MemoryCredentialStore
from cloudauth.errors import AuthenticationFailedError, create_auth_error, ErrorCode

NOW = 1_700_000_000.0


def make_record(user_id="alice", **overrides) -> CredentialRecord:
    values = {
        "backend_id": "google",
        "user_id": user_id,
        "access_token": f"access-{user_id}",
        "refresh_token": f"refresh-{user_id}",
        "expires_at": NOW + 3600,
        "success": True,
    }
    values.update(overrides)
    return CredentialRecord(**values)


class TestAccountDirectory(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = MemoryCredentialStore()
        self.fetcher = AsyncMock()
        self.directory = AccountDirectory(
            self.store, "google", profile_fetcher=self.fetcher, clock=lambda: NOW
        )

    def test_put_requires_user_id(self):
        with self.assertRaises(ValueError):
            self.directory.put(make_record(user_id=None))

    def test_put_make_active_persists_pointer(self):
        self.directory.put(make_record(), make_active=True)

        self.assertEqual(self.directory.active_user_id, "alice")
        self.assertEqual(self.store.get_active_user("google"), "alice")
        self.assertEqual(self.directory.active_record().access_token, "access-alice")

    def test_load_active_user(self):
        self.store.set_active_user("google", "bob")
        self.assertEqual(self.directory.load_active_user(), "bob")
        self.assertEqual(self.directory.active_user_id, "bob")

    def test_switch_to_user_with_empty_token_is_refused(self):
        """空のアクセストークンへの切り替えは拒否され、ポインタは変わらないこと"""
        self.directory.put(make_record(), make_active=True)
        self.directory.put(CredentialRecord(backend_id="google", user_id="bob"))

        self.assertFalse(self.directory.switch_to_user("bob"))
        self.assertFalse(self.directory.switch_to_user("nobody"))
        self.assertEqual(self.directory.active_user_id, "alice")
        self.assertEqual(self.store.get_active_user("google"), "alice")

    def test_switch_to_degraded_user_is_allowed(self):
        record = make_record("bob")
        record.mark_needs_reauth("scope")
        self.directory.put(record)

        self.assertTrue(self.directory.switch_to_user("bob"))
        self.assertEqual(self.store.get_active_user("google"), "bob")

    def test_delete_user(self):
        self.directory.put(make_record(), make_active=True)
        self.directory.put(make_record("bob"))

        self.assertFalse(self.directory.delete_user("bob"))
        self.assertEqual(self.directory.active_user_id, "alice")

        self.assertTrue(self.directory.delete_user("alice"))
        self.assertIsNone(self.directory.active_user_id)
        self.assertIsNone(self.store.get_active_user("google"))
        self.assertEqual(self.directory.get_all(), {})

    def test_clear(self):
        self.directory.put(make_record(), make_active=True)
        self.directory.clear()

        self.assertIsNone(self.directory.active_user_id)
        self.assertEqual(self.store.get_all("google"), {})

    async def test_get_all_users_updates_profiles(self):
        self.directory.put(make_record(), make_active=True)
        self.directory.put(make_record("bob"))
        self.fetcher.side_effect = lambda token: {
            "id": token.removeprefix("access-"),
            "name": token.removeprefix("access-").title(),
            "email": f"{token.removeprefix('access-')}@example.com",
            "picture": None,
        }

        users = await self.directory.get_all_users()

        self.assertEqual([user.user_id for user in users], ["alice", "bob"])
        self.assertEqual([user.is_active for user in users], [True, False])
        self.assertEqual(users[1].name, "Bob")
        self.assertTrue(all(user.status is AccountStatus.ACTIVE for user in users))
        self.assertEqual(self.store.get("google", "bob").user_email, "bob@example.com")

    async def test_get_all_users_marks_fetch_failures(self):
        """プロフィール取得に失敗したアカウントは ERROR として返ること"""
        self.directory.put(make_record(user_name="Alice"))
        self.fetcher.side_effect = AuthenticationFailedError(
            create_auth_error(ErrorCode.AUTH_FAILED, "HTTP 401")
        )

        users = await self.directory.get_all_users()

        self.assertEqual(len(users), 1)
        self.assertEqual(users[0].status, AccountStatus.ERROR)
        self.assertEqual(users[0].name, "Alice")

    async def test_get_all_users_transport_error(self):
        self.directory.put(make_record())
        self.fetcher.side_effect = httpx.ConnectError("offline")

        users = await self.directory.get_all_users()
        self.assertEqual(users[0].status, AccountStatus.ERROR)

    async def test_degraded_account_is_fetched_but_needs_reauth(self):
        """権限問題があっても未失効のトークンならプロフィールを取得すること"""
        degraded = make_record()
        degraded.mark_needs_reauth("scope")
        self.directory.put(degraded)
        self.fetcher.return_value = {"id": "alice", "name": "Alice", "email": "a@example.com", "picture": None}

        users = await self.directory.get_all_users()

        self.fetcher.assert_awaited_once_with("access-alice")
        self.assertEqual(users[0].status, AccountStatus.NEEDS_REAUTH)
        self.assertEqual(users[0].name, "Alice")
        self.assertTrue(self.store.get("google", "alice").needs_reauth)

    async def test_expired_accounts_skip_fetch(self):
        self.directory.put(make_record("bob", expires_at=NOW - 1))
        self.directory.put(make_record("carol", expires_at=NOW - 1, refresh_token=None))

        users = await self.directory.get_all_users()

        self.fetcher.assert_not_awaited()
        by_id = {user.user_id: user for user in users}
        self.assertEqual(by_id["bob"].status, AccountStatus.ACTIVE)
        self.assertEqual(by_id["bob"].name, "bob")
        self.assertEqual(by_id["carol"].status, AccountStatus.NEEDS_REAUTH)

    async def test_refresh_profile_uses_latest_record(self):
        stale = make_record()
        self.directory.put(stale)
        self.directory.put(make_record(access_token="rotated"))
        self.fetcher.return_value = {"id": "alice", "name": "Alice", "email": "a@example.com", "picture": None}

        updated, fetched = await self.directory.refresh_profile(stale)

        self.assertTrue(fetched)
        self.assertEqual(updated.access_token, "rotated")
        self.assertEqual(self.store.get("google", "alice").user_name, "Alice")

    async def test_refresh_profile_does_not_resurrect_deleted_record(self):
        record = make_record()
        self.fetcher.return_value = {"id": "alice", "name": "Alice", "email": "", "picture": None}

        updated, fetched = await self.directory.refresh_profile(record)

        self.assertTrue(fetched)
        self.assertEqual(updated.user_name, "Alice")
        self.assertIsNone(self.store.get("google", "alice"))


if __name__ == "__main__":
    unittest.main()
