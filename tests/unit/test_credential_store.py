"""
CredentialStore 実装のユニットテスト
"""

import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from keyring.errors import KeyringError, PasswordDeleteError

from cloudauth.auth.models import CredentialRecord
from cloudauth.auth.storage import KeyringCredentialStore, MemoryCredentialStore


def make_record(user_id: str = "alice", backend_id: str = "google", **overrides) -> CredentialRecord:
    values = {
        "backend_id": backend_id,
        "user_id": user_id,
        "access_token": f"access-{user_id}",
        "refresh_token": f"refresh-{user_id}",
        "expires_at": 1_700_003_600.0,
        "success": True,
    }
    values.update(overrides)
    return CredentialRecord(**values)


class TestMemoryCredentialStore(unittest.TestCase):
    """MemoryCredentialStore のテスト"""

    def setUp(self):
        self.store = MemoryCredentialStore()

    def test_store_and_get(self):
        record = make_record()
        self.store.store("google", "alice", record)
        self.assertEqual(self.store.get("google", "alice"), record)
        self.assertIsNone(self.store.get("google", "bob"))
        self.assertIsNone(self.store.get("dropbox", "alice"))

    def test_get_all_keeps_insertion_order(self):
        for user_id in ("carol", "alice", "bob"):
            self.store.store("google", user_id, make_record(user_id))
        self.store.store("dropbox", "dave", make_record("dave", backend_id="dropbox"))

        self.assertEqual(list(self.store.get_all("google")), ["carol", "alice", "bob"])
        self.assertEqual(list(self.store.get_all("dropbox")), ["dave"])

    def test_overwrite_does_not_duplicate_index(self):
        self.store.store("google", "alice", make_record())
        self.store.store("google", "alice", make_record(access_token="newer"))

        records = self.store.get_all("google")
        self.assertEqual(len(records), 1)
        self.assertEqual(records["alice"].access_token, "newer")

    def test_remove(self):
        self.store.store("google", "alice", make_record())
        self.store.remove("google", "alice")
        self.store.remove("google", "missing")
        self.assertEqual(self.store.get_all("google"), {})

    def test_active_user(self):
        self.assertIsNone(self.store.get_active_user("google"))
        self.store.set_active_user("google", "alice")
        self.assertEqual(self.store.get_active_user("google"), "alice")
        self.store.clear_active_user("google")
        self.assertIsNone(self.store.get_active_user("google"))

    def test_remove_all_is_scoped_to_backend(self):
        self.store.store("google", "alice", make_record())
        self.store.set_active_user("google", "alice")
        self.store.store("dropbox", "dave", make_record("dave", backend_id="dropbox"))

        self.store.remove_all("google")

        self.assertEqual(self.store.get_all("google"), {})
        self.assertIsNone(self.store.get_active_user("google"))
        self.assertIn("dave", self.store.get_all("dropbox"))

    def test_corrupt_record_is_removed(self):
        """解析できないレコードは None として扱われ、削除されること"""
        self.store.store("google", "alice", make_record())
        self.store.store("google", "bob", make_record("bob"))
        self.store._write("google:alice", "{not json")

        with self.assertLogs("cloudauth.auth.storage", level="WARNING"):
            self.assertIsNone(self.store.get("google", "alice"))

        self.assertIsNone(self.store._read("google:alice"))
        self.assertEqual(list(self.store.get_all("google")), ["bob"])

    def test_corrupt_record_skipped_by_get_all(self):
        self.store.store("google", "alice", make_record())
        self.store._write("google:alice", '{"backend_id": "google", "expires_at": "soon"}')

        with self.assertLogs("cloudauth.auth.storage", level="WARNING"):
            self.assertEqual(self.store.get_all("google"), {})

    def test_corrupt_index_is_discarded(self):
        self.store._write("google:__users__", "oops")
        with self.assertLogs("cloudauth.auth.storage", level="WARNING"):
            self.assertEqual(self.store.get_all("google"), {})


class TestKeyringCredentialStore(unittest.TestCase):
    """KeyringCredentialStore のテスト"""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.fallback_path = Path(self.tmpdir.name) / "nested" / "credentials.json"

    def test_uses_keyring_when_available(self):
        saved = {}

        def set_password(service, key, value):
            saved[(service, key)] = value

        def get_password(service, key):
            return saved.get((service, key))

        def delete_password(service, key):
            if (service, key) not in saved:
                raise PasswordDeleteError("missing")
            del saved[(service, key)]

        with patch("cloudauth.auth.storage.keyring") as mock_keyring:
            mock_keyring.set_password.side_effect = set_password
            mock_keyring.get_password.side_effect = get_password
            mock_keyring.delete_password.side_effect = delete_password

            store = KeyringCredentialStore("cloudauth-test", self.fallback_path)
            record = make_record()
            store.store("google", "alice", record)
            store.set_active_user("google", "alice")

            self.assertEqual(store.get("google", "alice"), record)
            self.assertEqual(store.get_active_user("google"), "alice")
            self.assertIn(("cloudauth-test", "google:alice"), saved)

            store.remove("google", "alice")
            store.remove("google", "alice")
            self.assertIsNone(store.get("google", "alice"))

        self.assertTrue(store.uses_keyring)
        self.assertFalse(self.fallback_path.exists())

    def test_falls_back_to_file_when_keyring_fails(self):
        """keyring が失敗した場合は警告を出してファイルへ保存すること"""
        with patch("cloudauth.auth.storage.keyring") as mock_keyring:
            mock_keyring.set_password.side_effect = KeyringError("no backend")
            mock_keyring.get_password.side_effect = KeyringError("no backend")
            mock_keyring.delete_password.side_effect = KeyringError("no backend")

            store = KeyringCredentialStore("cloudauth-test", self.fallback_path)
            record = make_record()
            with self.assertWarns(RuntimeWarning):
                with self.assertLogs("cloudauth.auth.storage", level="WARNING"):
                    store.store("google", "alice", record)

            self.assertFalse(store.uses_keyring)
            self.assertEqual(store.get("google", "alice"), record)
            self.assertEqual(mock_keyring.set_password.call_count, 1)

        self.assertTrue(self.fallback_path.exists())
        mode = stat.S_IMODE(os.stat(self.fallback_path).st_mode)
        self.assertEqual(mode, 0o600)

    def test_fallback_file_survives_new_instance(self):
        with patch("cloudauth.auth.storage.keyring") as mock_keyring:
            mock_keyring.set_password.side_effect = KeyringError("locked")
            mock_keyring.get_password.side_effect = KeyringError("locked")
            mock_keyring.delete_password.side_effect = KeyringError("locked")

            with self.assertWarns(RuntimeWarning):
                first = KeyringCredentialStore("cloudauth-test", self.fallback_path)
                first.store("google", "alice", make_record())
                first.set_active_user("google", "alice")

            with self.assertWarns(RuntimeWarning):
                second = KeyringCredentialStore("cloudauth-test", self.fallback_path)
                self.assertEqual(second.get_active_user("google"), "alice")
            self.assertEqual(list(second.get_all("google")), ["alice"])

            second.remove("google", "alice")
            self.assertEqual(second.get_all("google"), {})

    def test_invalid_fallback_file_is_treated_as_empty(self):
        self.fallback_path.parent.mkdir(parents=True)

        for content in (b"{broken", b"\xff\xfe{\"cloudauth\": \"\x80\"}"):
            with self.subTest(content=content):
                self.fallback_path.write_bytes(content)
                with patch("cloudauth.auth.storage.keyring") as mock_keyring:
                    mock_keyring.get_password.side_effect = KeyringError("no backend")
                    store = KeyringCredentialStore("cloudauth-test", self.fallback_path)
                    with self.assertWarns(RuntimeWarning), self.assertLogs("cloudauth.auth.storage", level="WARNING"):
                        self.assertIsNone(store.get("google", "alice"))


if __name__ == "__main__":
    unittest.main()
