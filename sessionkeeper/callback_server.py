"""Ephemeral localhost HTTP listener for the browser login flow.

The browser first hits ``/signin`` (nonce checked), is redirected to the
provider, and returns on the callback path with an authorization code.
Each of those first hits is exposed as a one-shot future; its HTTP
response is held open until the login flow decides where to send the
browser next. ``/`` serves a small status page.

Uses only stdlib (http.server, threading, concurrent.futures).
"""

# pylint: disable=logging-too-many-args

# pylint: disable=C0103,W0212

from __future__ import annotations

import html
import logging
import secrets
import threading

from concurrent.futures import Future
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from .exceptions import ListenerError


logger = logging.getLogger("sessionkeeper.auth")

# Seconds close() waits for a held response to be written.
_FLUSH_TIMEOUT = 2.0

_PAGE_HTML = """<!DOCTYPE html>
<html>
<head><title>{title}</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; }}
  h1.error {{ color: #cc0000; }}
  p {{ color: #666; }}
</style></head>
<body><div class="card">
  <h1 class="{css}">{heading}</h1>
  <p>{message}</p>
</div></body></html>"""


def render_status_page(query: dict[str, str]) -> str:
    """Render the local status page for ``/?service=..&login=..|error=..``.

    Parameters
    ----------
    query : dict[str, str]
        Query parameters of the status request.

    Returns
    -------
    str
        The HTML page. All values are HTML-escaped.
    """
    service = html.escape(query.get("service") or "the service", quote=True)
    if query.get("error"):
        return _PAGE_HTML.format(
            title="Sign-in Failed",
            css="error",
            heading="&#x274C; Sign-in to " + service + " failed",
            message=html.escape(query["error"], quote=True),
        )
    if query.get("login"):
        return _PAGE_HTML.format(
            title="Signed In",
            css="",
            heading="&#x2705; You are signed in to " + service,
            message="Signed in as " + html.escape(query["login"], quote=True)
            + ". You can close this window.",
        )
    return _PAGE_HTML.format(
        title="Waiting for Sign-in",
        css="",
        heading="Waiting for sign-in&hellip;",
        message="Please complete the login in the browser window.",
    )


class ListenerRequest:
    """A captured ``/signin`` or callback request awaiting its response.

    Attributes
    ----------
    path : str
        The request path.
    query : dict[str, str]
        First value of every query parameter.
    host : str
        The ``Host`` header sent by the browser.
    error : str or None
        Error reported by the provider or detected by the listener.
    """

    def __init__(self, path: str, query: dict[str, str], host: str, error: str | None = None) -> None:
        """Initialize the request."""
        self.path = path
        self.query = query
        self.host = host
        self.error = error
        self._location: str | None = None
        self._responded = threading.Event()
        self._sent = threading.Event()
        self._lock = threading.Lock()

    @property
    def code(self) -> str | None:
        """The authorization code, if present."""
        return self.query.get("code")

    @property
    def responded(self) -> bool:
        """Whether a response location has been chosen."""
        return self._responded.is_set()

    def redirect(self, location: str) -> bool:
        """Answer the request with a 302 to ``location``.

        Only the first call has an effect.

        Returns
        -------
        bool
            True if this call completed the response.
        """
        with self._lock:
            if self._responded.is_set():
                return False
            self._location = location
            self._responded.set()
            return True

    def wait(self, timeout: float | None = None) -> str | None:
        """Block until a response location is chosen."""
        self._responded.wait(timeout)
        return self._location

    def mark_sent(self) -> None:
        """Record that the response was written to the browser."""
        self._sent.set()

    def wait_sent(self, timeout: float | None = None) -> bool:
        """Block until the response was written; False on timeout."""
        return self._sent.wait(timeout)


class RedirectListener:
    """Localhost HTTP listener for one login flow.

    Parameters
    ----------
    nonce : str
        Value the ``/signin`` request must carry.
    callback_path : str
        Path (without leading slash) the provider redirects back to.
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    """

    def __init__(
        self,
        nonce: str,
        callback_path: str = "callback",
        host: str = "127.0.0.1",
        port: int = 0,
    ) -> None:
        """Initialize the listener."""
        self.nonce = nonce
        self.callback_path = "/" + callback_path.strip("/")
        self._host = host
        self._port = port
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._pending: list[ListenerRequest] = []
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self.redirect: Future[ListenerRequest] = Future()
        self.callback: Future[ListenerRequest] = Future()

    @property
    def port(self) -> int:
        """The bound port (0 before ``start``)."""
        if self._server is None:
            return 0
        return int(self._server.server_address[1])

    @property
    def closed(self) -> bool:
        """Whether ``close`` has been called."""
        return self._closed.is_set()

    def start(self) -> int:
        """Bind and serve on a daemon thread.

        Returns
        -------
        int
            The bound port.

        Raises
        ------
        ListenerError
            If the address cannot be bound.
        """
        listener = self

        class _RedirectHandler(BaseHTTPRequestHandler):
            """HTTP request handler for the login flow."""

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)
                query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
                host = self.headers.get("Host", "")

                if parsed.path == "/signin":
                    self._capture(listener.redirect, listener._signin_request(parsed.path, query, host))
                elif parsed.path == listener.callback_path:
                    error = query.get("error_description") or query.get("error")
                    self._capture(listener.callback, ListenerRequest(parsed.path, query, host, error))
                elif parsed.path == "/":
                    self._send_html(render_status_page(query))
                else:
                    self.send_error(404)

            def _capture(self, future: Future[ListenerRequest], request: ListenerRequest) -> None:
                """Hand the first hit to the flow and wait for its decision."""
                with listener._lock:
                    first = not future.done() and not listener.closed
                    if first:
                        listener._pending.append(request)
                        future.set_result(request)
                if not first:
                    self._send_redirect("/")
                    return
                location = request.wait()
                try:
                    self._send_redirect(location or "/")
                finally:
                    request.mark_sent()

            def _send_redirect(self, location: str) -> None:
                self.send_response(302)
                self.send_header("Location", location)
                self.send_header("Content-Length", "0")
                self.send_header("Cache-Control", "no-store")
                self.end_headers()

            def _send_html(self, html_content: str) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the sessionkeeper logger."""
                if args:
                    logger.debug("Redirect listener: %s", args[0] % args[1:])

        try:
            self._server = ThreadingHTTPServer((self._host, self._port), _RedirectHandler)
        except OSError as exc:
            msg = "Error listening to server"
            raise ListenerError(msg, host=self._host, port=self._port) from exc
        self._server.daemon_threads = True

        self._thread = threading.Thread(
            target=self._server.serve_forever, name="sessionkeeper-listener", daemon=True
        )
        self._thread.start()

        logger.debug("Redirect listener started on %s:%d", self._host, self.port)
        return self.port

    def _signin_request(self, path: str, query: dict[str, str], host: str) -> ListenerRequest:
        nonce = query.get("nonce", "")
        error = None
        if not secrets.compare_digest(nonce.encode(), self.nonce.encode()):
            error = "Nonce does not match."
        return ListenerRequest(path, query, host, error)

    def close(self) -> None:
        """Stop serving and release every held request. Idempotent."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            pending, self._pending = self._pending, []
            for future in (self.redirect, self.callback):
                if not future.done():
                    future.set_exception(ListenerError("Listener closed"))

        for request in pending:
            request.redirect("/")
        # Let held responses reach the browser before the server goes away.
        for request in pending:
            if not request.wait_sent(_FLUSH_TIMEOUT):
                logger.debug("Response to %s was not sent before close", request.path)

        server, self._server = self._server, None
        if server is not None:
            server.shutdown()
            server.server_close()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None
        logger.debug("Redirect listener closed")
