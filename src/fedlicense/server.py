"""BaseHTTPRequestHandler adapters for Vercel functions and the local dev server.

The Vercel files in api/ subclass these handlers; `serve()` runs all three
endpoints on one local port:

- POST /api/webhook  Lemon Squeezy webhook
- GET  /api/account  purchases for the signed-in Clerk user
- POST /api/admin    privileged license search
"""

from __future__ import annotations

import json
import logging
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qsl, urlparse

from fedlicense.config import MAX_WEBHOOK_BODY
from fedlicense.handlers import Response, handle_account, handle_admin, handle_webhook
from fedlicense.runtime import get_local_runtime, get_runtime

logger = logging.getLogger("fedlicense.server")


class ApiHandler(BaseHTTPRequestHandler):
    """Shared request plumbing. `runtime_factory` is swapped out in tests."""

    runtime_factory = staticmethod(get_runtime)

    def send_json(self, response: Response) -> None:
        body = json.dumps(response.body).encode("utf-8")
        self.send_response(response.status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        for k, v in response.headers.items():
            self.send_header(k, v)
        self.end_headers()
        self.wfile.write(body)

    def read_raw_body(self, max_size: int = MAX_WEBHOOK_BODY) -> bytes | None:
        """Read the exact request bytes, or send 413 and return None."""
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            length = -1
        if length > max_size or length < 0:
            logger.warning(
                "Rejected request from %s: bad length %d", self.client_address[0], length
            )
            self.send_json(Response(413, {"error": "Payload too large"}))
            return None
        return self.rfile.read(length) if length else b""

    def query(self) -> dict[str, str]:
        return dict(parse_qsl(urlparse(self.path).query))

    def run(self, func, *args) -> None:
        """Call a handler function; unexpected errors become a 500."""
        try:
            response = func(*args, self.runtime_factory())
        except Exception:
            logger.exception("Unhandled error in %s", getattr(func, "__name__", func))
            response = Response(500, {"error": "Internal error"})
        self.send_json(response)

    # -- endpoints ---------------------------------------------------------------

    def handle_webhook_request(self) -> None:
        raw = self.read_raw_body()
        if raw is not None:
            self.run(handle_webhook, raw, self.headers)

    def handle_account_request(self) -> None:
        self.run(handle_account, self.headers)

    def handle_admin_request(self) -> None:
        raw = self.read_raw_body(max_size=4096)
        if raw is not None:
            self.run(handle_admin, self.headers, self.query(), raw)

    def log_message(self, fmt, *args):
        logger.info("%s - %s", self.address_string(), fmt % args)


class WebhookHandler(ApiHandler):
    def do_POST(self):
        self.handle_webhook_request()


class AccountHandler(ApiHandler):
    def do_GET(self):
        self.handle_account_request()

    def do_POST(self):
        self.handle_account_request()


class AdminHandler(ApiHandler):
    def do_GET(self):
        self.handle_admin_request()

    def do_POST(self):
        self.handle_admin_request()


class DevServerHandler(ApiHandler):
    """All endpoints on one server, routed by path."""

    runtime_factory = staticmethod(get_local_runtime)

    def _route(self, method: str) -> None:
        path = urlparse(self.path).path.rstrip("/")
        if path == "/api/webhook" and method == "POST":
            self.handle_webhook_request()
        elif path == "/api/account":
            self.handle_account_request()
        elif path == "/api/admin":
            self.handle_admin_request()
        else:
            self.send_json(Response(404, {"error": "Not Found"}))

    def do_GET(self):
        self._route("GET")

    def do_POST(self):
        self._route("POST")


def serve(host: str = "127.0.0.1", port: int = 8042) -> None:
    server = ThreadingHTTPServer((host, port), DevServerHandler)
    print(f"fedlicense dev server on http://{host}:{port}")
    print("Endpoints:  POST /api/webhook  GET /api/account  POST /api/admin")
    print("Press Ctrl+C to stop\n")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nShutting down.", file=sys.stderr)
        server.server_close()
