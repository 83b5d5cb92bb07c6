"""Single-use loopback server receiving the OAuth authorization redirect."""

import asyncio
import html
import logging
import socket
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse
import uvicorn

from ..services.base import AuthenticationError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/oauth2callback"

SUCCESS_PAGE = (
    "<html><body><h2>Google Calendar connected</h2>"
    "<p>You can close this window and return to shiftcal-sync.</p></body></html>"
)
ERROR_PAGE = (
    "<html><body><h2>Google authorization failed</h2>"
    "<p>{error}</p></body></html>"
)


class LoopbackListener:
    """Waits for one ``/oauth2callback?code=...`` (or ``?error=...``) request.

    Use as an async context manager; the uvicorn server is shut down when the
    block exits, whichever way the wait ended.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0):
        self.host = host
        self.port = port
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._result: Optional[asyncio.Future] = None

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{CALLBACK_PATH}"

    def _build_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(CALLBACK_PATH, response_class=HTMLResponse)
        async def oauth_callback(code: Optional[str] = None, error: Optional[str] = None):
            if error:
                self._resolve(error=error)
                return HTMLResponse(ERROR_PAGE.format(error=html.escape(error)), status_code=400)
            if not code:
                raise HTTPException(status_code=404, detail="No authorization code found.")
            self._resolve(code=code)
            return HTMLResponse(SUCCESS_PAGE)

        return app

    async def start(self) -> None:
        self._result = asyncio.get_event_loop().create_future()

        # Bind first so port 0 resolves to a real port before the redirect URI is built.
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind((self.host, self.port))
        self.port = self._socket.getsockname()[1]

        config = uvicorn.Config(
            self._build_app(),
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.get_event_loop().create_task(self._server.serve(sockets=[self._socket]))

        while not self._server.started:
            if self._serve_task.done():
                await self.close()
                raise AuthenticationError("OAuth callback server failed to start.")
            await asyncio.sleep(0.01)
        logger.debug(f"OAuth callback listening on {self.redirect_uri}")

    async def close(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            try:
                await self._serve_task
            except (OSError, SystemExit) as e:
                logger.debug(f"OAuth callback server stopped with {e!r}")
            self._serve_task = None
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self._result is not None and not self._result.done():
            self._result.cancel()
        logger.debug("OAuth callback listener closed")

    async def __aenter__(self) -> "LoopbackListener":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def wait_for_code(self, timeout: float) -> str:
        """Return the authorization code, or raise on error redirect or timeout."""
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout)
        except asyncio.TimeoutError:
            raise AuthenticationError(
                f"Timed out after {int(timeout)}s waiting for Google authorization."
            )

    def _resolve(self, code: Optional[str] = None, error: Optional[str] = None) -> None:
        # First callback wins; later ones only get a response page.
        if self._result is None or self._result.done():
            return
        if error:
            self._result.set_exception(AuthenticationError(f"Google authorization failed: {error}"))
        else:
            self._result.set_result(code)
