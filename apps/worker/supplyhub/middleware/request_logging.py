from __future__ import annotations

import logging
import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from supplyhub.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("supplyhub.request")


class RequestLoggingMiddleware:
    """Logs one ``http.request`` line per response and feeds the HTTP metrics.

    The path label is resolved after the app has run so routed requests are
    counted under their route template.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        status_code = 500
        started = time.perf_counter()

        async def send_recording_status(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_recording_status)
        except Exception:
            self._record(scope, 500, started, failed=True)
            raise
        self._record(scope, status_code, started)

    def _record(self, scope: Scope, status_code: int, started: float, *, failed: bool = False) -> None:
        elapsed = time.perf_counter() - started
        method = scope["method"]
        path = resolve_http_path_label(scope)
        observe_http_request(method=method, path=path, status=status_code, duration=elapsed)
        fields = {"method": method, "path": path, "status_code": status_code, "duration_ms": round(elapsed * 1000, 2)}
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        else:
            logger.info("http.request", extra=fields)
