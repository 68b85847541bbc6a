"""
Local OAuth callback server for the interactive sign-in.

Starts a minimal FastAPI app on a dynamically allocated localhost port,
waits for Google's redirect, and hands the authorization code back to the
caller. The code exchange itself happens outside the server.

Uses dynamic port allocation (9876-9899) to avoid conflicts when several
sign-ins run at once.
"""

import asyncio
import html
import logging
import random
import socket
import threading
import time
from urllib.parse import urlparse

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from core.errors import AuthenticationError

logger = logging.getLogger(__name__)

PORT_RANGE_START = 9876
PORT_RANGE_END = 9899
CALLBACK_PATH = "/oauth2callback"


def find_available_port(start: int = PORT_RANGE_START, end: int = PORT_RANGE_END) -> int | None:
    """Find an available port in the given range using random order to minimize collisions."""
    ports = list(range(start, end + 1))
    random.shuffle(ports)

    for port in ports:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                s.bind(("localhost", port))
                return port
        except OSError:
            continue

    return None


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    body = (
        f"<html><head><title>{html.escape(title)}</title></head>"
        f"<body><h2>{html.escape(title)}</h2><p>{html.escape(message)}</p></body></html>"
    )
    return HTMLResponse(content=body, status_code=status_code)


class MinimalOAuthServer:
    """
    Minimal HTTP server that captures one OAuth authorization code.
    Only runs for the duration of a sign-in.
    """

    def __init__(self, port: int, expected_state: str | None = None, base_uri: str = "http://localhost"):
        self.port = port
        self.base_uri = base_uri
        self.redirect_uri = f"{base_uri}:{port}{CALLBACK_PATH}"
        self.expected_state = expected_state
        self.app = FastAPI()
        self.server = None
        self.server_thread = None
        self.is_running = False

        self._done = threading.Event()
        self._code: str | None = None
        self._error: str | None = None

        self._setup_callback_route()

    def _finish(self, code: str | None = None, error: str | None = None) -> None:
        self._code = code
        self._error = error
        self._done.set()

    def _setup_callback_route(self):
        server_instance = self

        @self.app.get(CALLBACK_PATH)
        async def oauth_callback(request: Request):
            state = request.query_params.get("state")
            code = request.query_params.get("code")
            error = request.query_params.get("error")

            if server_instance._done.is_set():
                return _page("Already signed in", "This sign-in has already completed. You can close this window.")

            if error:
                error_message = f"Google returned an error: {error}"
                logger.error(f"OAuth callback: {error_message}")
                server_instance._finish(error=error_message)
                return _page("Authentication failed", error_message, status_code=400)

            if server_instance.expected_state is not None and state != server_instance.expected_state:
                # Not ours; keep waiting for the real redirect
                logger.warning("OAuth callback: state mismatch, ignoring request")
                return _page("Authentication failed", "State parameter does not match this sign-in.", 400)

            if not code:
                error_message = "No authorization code received from Google."
                logger.error(f"OAuth callback: {error_message}")
                server_instance._finish(error=error_message)
                return _page("Authentication failed", error_message, status_code=400)

            logger.info("OAuth callback: authorization code received")
            server_instance._finish(code=code)
            return _page("Authentication successful", "You can close this window and return to the terminal.")

    def wait_for_code(self, timeout: float | None = None) -> str:
        """
        Block until the callback arrives.

        Raises:
            AuthenticationError: On timeout or an error redirect.
        """
        if not self._done.wait(timeout):
            raise AuthenticationError(f"Timed out after {timeout:.0f}s waiting for the OAuth callback")
        if self._error:
            raise AuthenticationError(f"Authentication failed: {self._error}")
        return self._code

    def start(self) -> tuple[bool, str]:
        """
        Start the callback server.

        Returns:
            Tuple of (success: bool, error_message: str)
        """
        if self.is_running:
            logger.info("OAuth callback server is already running")
            return True, ""

        # Extract hostname from base_uri (e.g., "http://localhost" -> "localhost")
        hostname = urlparse(self.base_uri).hostname or "localhost"

        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind((hostname, self.port))
        except OSError:
            error_msg = f"Port {self.port} is already in use on {hostname}. Cannot start OAuth callback server."
            logger.error(error_msg)
            return False, error_msg

        def run_server():
            """Run the server in a separate thread."""
            try:
                config = uvicorn.Config(
                    self.app,
                    host=hostname,
                    port=self.port,
                    log_level="warning",
                    access_log=False,
                )
                self.server = uvicorn.Server(config)
                asyncio.run(self.server.serve())

            except Exception as e:
                logger.error(f"OAuth callback server error: {e}", exc_info=True)
                self.is_running = False

        self.server_thread = threading.Thread(target=run_server, name="oauth-callback", daemon=True)
        self.server_thread.start()

        # Wait for server to start
        max_wait = 3.0
        start_time = time.time()
        while time.time() - start_time < max_wait:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                if s.connect_ex((hostname, self.port)) == 0:
                    self.is_running = True
                    logger.info(f"OAuth callback server started on {hostname}:{self.port}")
                    return True, ""
            time.sleep(0.1)

        error_msg = f"Failed to start OAuth callback server on {hostname}:{self.port} - server did not respond within {max_wait}s"
        logger.error(error_msg)
        return False, error_msg

    def stop(self):
        """Stop the callback server."""
        if not self.is_running:
            return

        if self.server is not None:
            self.server.should_exit = True
        if self.server_thread is not None and self.server_thread.is_alive():
            self.server_thread.join(timeout=3.0)

        self.is_running = False
        logger.info("OAuth callback server stopped")


def start_oauth_callback_server(
    expected_state: str | None = None,
    base_uri: str = "http://localhost",
) -> MinimalOAuthServer:
    """
    Start a callback server on a dynamically allocated port.

    Raises:
        AuthenticationError: If no port is free or the server does not come up.
    """
    port = find_available_port()
    if port is None:
        raise AuthenticationError(f"No available port in range {PORT_RANGE_START}-{PORT_RANGE_END}")

    logger.info(f"Starting OAuth callback server on {base_uri}:{port}")
    server = MinimalOAuthServer(port, expected_state=expected_state, base_uri=base_uri)
    success, error_msg = server.start()
    if not success:
        raise AuthenticationError(error_msg)
    return server
