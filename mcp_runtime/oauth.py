"""Short-lived local listener for OAuth authorization callbacks.

Only the callback shape is handled here: a ``GET /callback?code=...`` request
on the configured port completes the flow. Exchanging the code for tokens is
left to the caller. The listener is shut down and its socket closed on every
exit path: success, explicit failure, timeout and cancellation.
"""

from __future__ import annotations

import asyncio
import socket

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from mcp_runtime.config.settings import RuntimeSettings
from mcp_runtime.exceptions import MCPError, OAuthTimeoutError

log = structlog.get_logger(__name__)

CALLBACK_PATH = "/callback"

_SUCCESS_PAGE = "<html><body><h1>Authentication complete</h1><p>You can close this window.</p></body></html>"
_FAILURE_PAGE = "<html><body><h1>Authentication failed</h1><p>{reason}</p></body></html>"


class OAuthFlow:
    """Waits for one authorization callback per ``authenticate`` call.

    Attributes:
        host: Interface the listener binds to.
        timeout: Seconds to wait for the callback.
        last_port: Port actually bound by the most recent run.
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        host: str = "127.0.0.1",
        timeout: float | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.host = host
        self.timeout = self.settings.oauth_timeout if timeout is None else timeout
        self.last_port: int | None = None
        self._codes: dict[str, str] = {}

    def redirect_uri(self, port: int) -> str:
        return f"http://{self.host}:{port}{CALLBACK_PATH}"

    def get_code(self, server_id: str) -> str | None:
        """Authorization code received by the last successful flow."""
        return self._codes.get(server_id)

    def _build_app(self, server_id: str, outcome: asyncio.Future[bool]) -> FastAPI:
        app = FastAPI(title=f"OAuth callback for {server_id}", docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(CALLBACK_PATH, response_class=HTMLResponse)
        async def callback(code: str | None = None, error: str | None = None) -> HTMLResponse:
            if code:
                self._codes[server_id] = code
                if not outcome.done():
                    outcome.set_result(True)
                return HTMLResponse(_SUCCESS_PAGE)

            log.warning("oauth_callback_without_code", server=server_id, error=error)
            if not outcome.done():
                outcome.set_result(False)
            return HTMLResponse(_FAILURE_PAGE.format(reason=error or "No authorization code"), status_code=400)

        return app

    async def authenticate(self, server_id: str, *, port: int | None = None) -> bool:
        """Listen for the callback of one authorization attempt.

        Args:
            server_id: Server being authenticated.
            port: Callback port; defaults to the configured one. 0 picks a
                free port (see ``last_port``).

        Returns:
            True if a code arrived, False if the callback carried none.

        Raises:
            OAuthTimeoutError: If no callback arrived in time.
            MCPError: If the listener could not be started.
        """
        bind_port = self.settings.oauth_callback_port if port is None else port
        outcome: asyncio.Future[bool] = asyncio.get_running_loop().create_future()

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, bind_port))
        except OSError as e:
            sock.close()
            raise MCPError(f"Cannot listen for OAuth callback on port {bind_port}: {e}") from e

        self.last_port = sock.getsockname()[1]
        config = uvicorn.Config(self._build_app(server_id, outcome), log_level="warning", lifespan="off")
        server = uvicorn.Server(config)
        serve_task = asyncio.create_task(server.serve(sockets=[sock]), name=f"oauth-{server_id}")

        log.info("oauth_waiting_for_callback", server=server_id, redirect_uri=self.redirect_uri(self.last_port))

        try:
            done, _ = await asyncio.wait(
                {outcome, serve_task},
                timeout=self.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if outcome in done:
                result = outcome.result()
                log.info("oauth_callback_received", server=server_id, success=result)
                return result
            if serve_task in done:
                raise MCPError(f"OAuth callback listener for '{server_id}' stopped unexpectedly")
            log.warning("oauth_timeout", server=server_id, timeout=self.timeout)
            raise OAuthTimeoutError(server_id, self.timeout)
        finally:
            server.should_exit = True
            await asyncio.gather(serve_task, return_exceptions=True)
            if not outcome.done():
                outcome.cancel()
            sock.close()
            log.debug("oauth_listener_closed", server=server_id, port=self.last_port)
