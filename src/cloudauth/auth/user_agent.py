"""外部ユーザーエージェント（システムブラウザ）とリダイレクト受信。"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from http.server import BaseHTTPRequestHandler, HTTPServer
import logging
import threading
from urllib.parse import urlparse
import webbrowser

from cloudauth.config.backends import DEFAULT_CALLBACK_URL
from cloudauth.errors import AuthorizationCancelledError, ErrorCode, create_auth_error

logger = logging.getLogger(__name__)


class UserAgent(ABC):
    """認可URLを提示し、リダイレクトを受け取る外部ユーザーエージェント。"""

    @abstractmethod
    async def present(self, url: str) -> str:
        """認可URLを開き、コールバックURLを受け取るまで待機する。

        Args:
            url: 認可開始URL。

        Returns:
            str: クエリを含むリダイレクトURL。

        Raises:
            AuthorizationCancelledError: ユーザーがエージェントを閉じた場合。
        """

    @abstractmethod
    def dismiss(self) -> None:
        """待機中の present() を中断する。"""


class _CallbackServer(HTTPServer):
    def __init__(
        self,
        server_address: tuple[str, int],
        callback_path: str,
        loop: asyncio.AbstractEventLoop,
        future: asyncio.Future[str],
    ) -> None:
        super().__init__(server_address, _CallbackHandler)
        self.callback_path = callback_path
        self.loop = loop
        self.future = future


class _CallbackHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        server = self.server
        if not isinstance(server, _CallbackServer):
            return

        parsed = urlparse(self.path)
        if parsed.path != server.callback_path:
            self.send_response(404)
            self.end_headers()
            self.wfile.write(b"Not Found")
            return

        server.loop.call_soon_threadsafe(_resolve, server.future, self.path)

        self.send_response(200)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.end_headers()
        self.wfile.write(b"Authorization complete. You can close this window.")

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        return


def _resolve(future: asyncio.Future[str], path: str) -> None:
    if not future.done():
        future.set_result(path)


class LoopbackBrowserUserAgent(UserAgent):
    """システムブラウザで認可URLを開き、ループバックでリダイレクトを受ける。"""

    def __init__(self, callback_url: str = DEFAULT_CALLBACK_URL, open_browser=webbrowser.open) -> None:
        """LoopbackBrowserUserAgentを初期化する。

        Args:
            callback_url: リレーに登録済みのリダイレクト先。
            open_browser: URLを開く関数。
        """

        parsed = urlparse(callback_url)
        self._scheme = parsed.scheme or "http"
        self._host = parsed.hostname or "127.0.0.1"
        self._port = parsed.port if parsed.port is not None else 0
        self._path = parsed.path or "/callback"
        self._open_browser = open_browser
        self._future: asyncio.Future[str] | None = None
        self._bound_port: int | None = None

    @property
    def redirect_uri(self) -> str:
        port = self._bound_port if self._bound_port is not None else self._port
        return f"{self._scheme}://{self._host}:{port}{self._path}"

    async def present(self, url: str) -> str:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        self._future = future

        server = _CallbackServer((self._host, self._port), self._path, loop, future)
        self._bound_port = server.server_address[1]
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        logger.debug("Waiting for authorization redirect on %s", self.redirect_uri)

        try:
            opened = await asyncio.to_thread(self._open_browser, url)
            if opened is False:
                logger.warning("Could not open a browser; visit the authorization URL manually")
            return await future
        finally:
            self._future = None
            await asyncio.to_thread(server.shutdown)
            server.server_close()
            thread.join(timeout=1)

    def dismiss(self) -> None:
        future = self._future
        if future is not None and not future.done():
            future.set_exception(
                AuthorizationCancelledError(
                    create_auth_error(ErrorCode.AUTH_CANCELLED, "ユーザーが認可を中断しました")
                )
            )
