"""
バックエンドアダプタのユニットテスト（httpx.MockTransport を使用）
"""

import json
import unittest

import httpx

from cloudauth.backends import (
    DropboxAdapter,
    GoogleDriveAdapter,
    OneDriveAdapter,
    get_backend_adapter,
)
from cloudauth.config.backends import BackendConfig
from cloudauth.config.scopes import OAuthScope
from cloudauth.errors import (
    AuthenticationFailedError,
    CloudAuthException,
    ErrorCode,
    NetworkFailureError,
    TokenExchangeError,
)

RELAY = "https://relay.example.com/"


def make_config(backend_type="google_drive", **overrides) -> BackendConfig:
    values = {
        "backend_id": backend_type,
        "backend_type": backend_type,
        "relay_base_url": RELAY,
    }
    values.update(overrides)
    return BackendConfig(**values)


class AdapterTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.requests = []
        self.responses = []

    def handler(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def make_client(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        self.addAsyncCleanup(client.aclose)
        return client


class TestRelayOperations(AdapterTestCase):
    """リレー経由のトークン操作のテスト"""

    async def test_authorization_url(self):
        adapter = GoogleDriveAdapter(make_config(), http_client=self.make_client())
        self.assertEqual(
            adapter.authorization_url("a b"),
            "https://relay.example.com/auth/google_drive?state=a%20b",
        )

    async def test_exchange_code(self):
        adapter = GoogleDriveAdapter(make_config(), http_client=self.make_client())
        self.responses.append(
            httpx.Response(
                200,
                json={
                    "access_token": "access-1",
                    "refresh_token": "refresh-1",
                    "expires_in": 3600,
                    "scope": "https://www.googleapis.com/auth/drive.file",
                },
            )
        )

        tokens = await adapter.exchange_code("code-1", "state-1")

        request = self.requests[0]
        self.assertEqual(request.method, "GET")
        self.assertEqual(request.url.path, "/auth/tokens/state-1")
        self.assertEqual(request.url.params["code"], "code-1")
        self.assertEqual(tokens.access_token, "access-1")
        self.assertEqual(tokens.refresh_token, "refresh-1")
        self.assertEqual(tokens.expires_in, 3600)

    async def test_exchange_code_http_error(self):
        adapter = GoogleDriveAdapter(make_config(), http_client=self.make_client())
        self.responses.append(httpx.Response(400, json={"error": "invalid_grant"}))

        with self.assertRaises(TokenExchangeError) as ctx:
            await adapter.exchange_code("code-1", "state-1")
        self.assertEqual(ctx.exception.error.details["status"], 400)

    async def test_exchange_code_malformed_body(self):
        adapter = GoogleDriveAdapter(make_config(), http_client=self.make_client())
        for response in (httpx.Response(200, text="<html>"), httpx.Response(200, json={"token": "x"})):
            self.responses.append(response)
            with self.subTest(body=response.text):
                with self.assertRaises(TokenExchangeError):
                    await adapter.exchange_code("code-1", "state-1")

    async def test_refresh(self):
        adapter = DropboxAdapter(make_config("dropbox"), http_client=self.make_client())
        self.responses.append(httpx.Response(200, json={"access_token": "access-2", "expires_in": 14400}))

        tokens = await adapter.refresh("refresh-1")

        request = self.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(str(request.url), "https://relay.example.com/auth/refresh")
        self.assertEqual(json.loads(request.content), {"refresh_token": "refresh-1"})
        self.assertIsNone(tokens.refresh_token)

    async def test_transport_error_is_network_failure(self):
        adapter = GoogleDriveAdapter(make_config(), http_client=self.make_client())
        self.responses.append(httpx.ConnectError("connection refused"))

        with self.assertRaises(NetworkFailureError) as ctx:
            await adapter.refresh("refresh-1")
        self.assertTrue(ctx.exception.recoverable)
        self.assertIsInstance(ctx.exception.__cause__, httpx.ConnectError)

    async def test_other_request_errors_are_network_failures(self):
        adapter = GoogleDriveAdapter(make_config(), http_client=self.make_client())
        for error in (httpx.DecodingError("invalid gzip body"), httpx.TooManyRedirects("redirect loop")):
            self.responses.append(error)
            with self.subTest(error=type(error).__name__):
                with self.assertRaises(NetworkFailureError) as ctx:
                    await adapter.fetch_user_info("access-1")
                self.assertIs(ctx.exception.__cause__, error)

    async def test_revoke(self):
        adapter = OneDriveAdapter(make_config("onedrive"), http_client=self.make_client())
        self.responses.extend([httpx.Response(200), httpx.Response(500)])

        await adapter.revoke("access-1")
        self.assertEqual(json.loads(self.requests[0].content), {"token": "access-1"})
        self.assertEqual(self.requests[0].url.path, "/auth/revoke")

        with self.assertRaises(AuthenticationFailedError):
            await adapter.revoke("access-1")


class TestUserInfo(AdapterTestCase):
    """ユーザー情報取得のテスト"""

    async def test_google_drive(self):
        adapter = GoogleDriveAdapter(make_config(), http_client=self.make_client())
        self.responses.append(
            httpx.Response(200, json={"id": "123", "email": "a@example.com", "picture": "https://img"})
        )

        profile = await adapter.fetch_user_info("access-1")

        request = self.requests[0]
        self.assertEqual(str(request.url), "https://www.googleapis.com/oauth2/v2/userinfo")
        self.assertEqual(request.headers["Authorization"], "Bearer access-1")
        self.assertEqual(
            profile, {"id": "123", "name": "Google User", "email": "a@example.com", "picture": "https://img"}
        )

    async def test_dropbox(self):
        adapter = DropboxAdapter(make_config("dropbox"), http_client=self.make_client())
        self.responses.append(
            httpx.Response(
                200,
                json={
                    "account_id": "dbid:1",
                    "name": {"display_name": "Dana"},
                    "email": "dana@example.com",
                },
            )
        )

        profile = await adapter.fetch_user_info("access-1")

        request = self.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(request.content, b"null")
        self.assertEqual(request.headers["Content-Type"], "application/json")
        self.assertEqual(profile["id"], "dbid:1")
        self.assertEqual(profile["name"], "Dana")
        self.assertIsNone(profile["picture"])

    async def test_onedrive_falls_back_to_principal_name(self):
        adapter = OneDriveAdapter(make_config("onedrive"), http_client=self.make_client())
        self.responses.append(
            httpx.Response(200, json={"id": "o1", "displayName": "Olu", "mail": None, "userPrincipalName": "olu@live.com"})
        )

        profile = await adapter.fetch_user_info("access-1")

        self.assertEqual(str(self.requests[0].url), "https://graph.microsoft.com/v1.0/me")
        self.assertEqual(profile, {"id": "o1", "name": "Olu", "email": "olu@live.com", "picture": None})

    async def test_error_responses(self):
        adapter = GoogleDriveAdapter(make_config(), http_client=self.make_client())
        for response in (httpx.Response(401), httpx.Response(200, text="oops"), httpx.Response(200, json=[1])):
            self.responses.append(response)
            with self.subTest(status=response.status_code, body=response.text):
                with self.assertRaises(AuthenticationFailedError):
                    await adapter.fetch_user_info("access-1")


class TestScopesAndFactory(unittest.IsolatedAsyncioTestCase):
    """スコープと生成関数のテスト"""

    async def asyncSetUp(self):
        self.adapters = []

    async def asyncTearDown(self):
        for adapter in self.adapters:
            await adapter.close()

    def create(self, config):
        adapter = get_backend_adapter(config)
        self.adapters.append(adapter)
        return adapter

    async def test_factory_selects_adapter_type(self):
        self.assertIsInstance(self.create(make_config("google_drive")), GoogleDriveAdapter)
        self.assertIsInstance(self.create(make_config("dropbox")), DropboxAdapter)
        self.assertIsInstance(self.create(make_config("onedrive")), OneDriveAdapter)

    async def test_factory_rejects_unknown_type(self):
        with self.assertRaises(CloudAuthException) as ctx:
            get_backend_adapter(make_config("box"))
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIG_INVALID_VALUE.value)

    async def test_required_scopes(self):
        self.assertEqual(
            self.create(make_config()).required_scopes, ["https://www.googleapis.com/auth/drive.file"]
        )
        self.assertEqual(
            self.create(make_config("dropbox")).required_scopes,
            ["files.content.read", "files.content.write"],
        )
        override = make_config("onedrive", options={"required_scopes": ["Files.Read"]})
        self.assertEqual(self.create(override).required_scopes, ["Files.Read"])

    async def test_desired_scopes_are_mapped(self):
        config = make_config(
            "dropbox", scopes=[OAuthScope.READ_FILES, OAuthScope.WRITE_FILES, OAuthScope.DELETE_FILES]
        )
        self.assertEqual(self.create(config).desired_scopes, ["files.content.read", "files.content.write"])

    async def test_owned_client_is_closed(self):
        adapter = GoogleDriveAdapter(make_config())
        async with adapter:
            self.assertFalse(adapter.http_client.is_closed)
        self.assertTrue(adapter.http_client.is_closed)

    async def test_shared_client_is_not_closed(self):
        client = httpx.AsyncClient()
        adapter = GoogleDriveAdapter(make_config(), http_client=client)
        await adapter.close()
        self.assertFalse(client.is_closed)
        await client.aclose()


if __name__ == "__main__":
    unittest.main()
