"""Loopback listener for the OAuth redirect.

States: IDLE -> LISTENING -> SUCCEEDED | FAILED | TIMED_OUT.

The provider issues exactly one redirect, so the listener resolves on the
first request to the callback path carrying ``code`` or ``error``. Anything
else gets a 404 and the listener keeps waiting. Once a terminal state is
reached the server is torn down.
"""

import asyncio
import enum
import html
import logging
from typing import Optional

from aiohttp import web

from agswitch.config import CALLBACK_PATH, CALLBACK_PORT, CALLBACK_TIMEOUT
from agswitch.errors import OAuthCallbackError, OAuthTimeout

logger = logging.getLogger("agswitch.callback")

SUCCESS_HTML = (
    "<html><body><h1>Login successful!</h1>"
    "<p>You can close this window and return to Antigravity Switch.</p>"
    "<script>window.close()</script></body></html>"
)
ERROR_HTML = "<html><body><h1>Login failed</h1><p>{error}</p></body></html>"
NOT_FOUND_HTML = "<html><body><h1>Not found</h1></body></html>"


class ListenerState(str, enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class CallbackListener:
    """Single-use redirect target on ``http://localhost:<port><path>``.

    Usage::

        listener = CallbackListener()
        await listener.start()
        code = await listener.wait()   # raises OAuthCallbackError / OAuthTimeout
    """

    def __init__(
        self,
        port: int = CALLBACK_PORT,
        path: str = CALLBACK_PATH,
        timeout: float = CALLBACK_TIMEOUT,
        host: str = "127.0.0.1",
    ):
        self.port = port
        self.path = path
        self.timeout = timeout
        self.host = host
        self.state = ListenerState.IDLE
        self.code: Optional[str] = None
        self.error: Optional[str] = None
        self._runner: Optional[web.AppRunner] = None
        self._done: Optional[asyncio.Future] = None

    async def start(self) -> None:
        """Bind the port and begin accepting redirects."""
        if self.state is not ListenerState.IDLE:
            raise RuntimeError(f"Listener already used (state={self.state.value})")

        self._done = asyncio.get_running_loop().create_future()
        app = web.Application()
        app.router.add_route("*", self.path, self._handle_callback)
        app.router.add_route("*", "/{tail:.*}", self._not_found)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        self.state = ListenerState.LISTENING
        logger.info("OAuth callback listener on %s:%d%s", self.host, self.port, self.path)

    async def wait(self) -> str:
        """Wait for the redirect and return the authorization code."""
        if self._done is None:
            raise RuntimeError("Listener not started")
        try:
            return await asyncio.wait_for(asyncio.shield(self._done), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.state = ListenerState.TIMED_OUT
            raise OAuthTimeout(
                f"No OAuth callback received within {int(self.timeout)} seconds"
            ) from None
        finally:
            await self.close()

    async def close(self) -> None:
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()

    async def _not_found(self, request: web.Request) -> web.Response:
        return web.Response(status=404, text=NOT_FOUND_HTML, content_type="text/html")

    async def _handle_callback(self, request: web.Request) -> web.Response:
        if request.method != "GET":
            return await self._not_found(request)

        # request.query decodes percent-escapes and '+' as space
        code = request.query.get("code")
        error = request.query.get("error")

        if self.state is not ListenerState.LISTENING:
            return await self._not_found(request)

        if code:
            self.code = code
            self.state = ListenerState.SUCCEEDED
            if not self._done.done():
                self._done.set_result(code)
            logger.info("OAuth callback received authorization code")
            return web.Response(text=SUCCESS_HTML, content_type="text/html")

        if error:
            self.error = error
            self.state = ListenerState.FAILED
            if not self._done.done():
                self._done.set_exception(OAuthCallbackError(f"OAuth error: {error}"))
            logger.warning("OAuth callback returned error: %s", error)
            return web.Response(
                status=400,
                text=ERROR_HTML.format(error=html.escape(error)),
                content_type="text/html",
            )

        return await self._not_found(request)
