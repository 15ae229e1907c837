"""Correlation ID middleware.

Binds a correlation ID to every HTTP request so log lines emitted while
handling it (including an on-demand escalation tick) can be grouped.
Implemented as pure ASGI middleware; BaseHTTPMiddleware runs the app in a
separate task, which breaks asyncpg connections bound to the request's
event loop task.
"""

import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from pulsar_escalation.logging_config import bind_correlation_id, get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"
_HEADER_KEY = CORRELATION_ID_HEADER.lower().encode()


class CorrelationIdMiddleware:
    """Reuses the caller's X-Correlation-ID or generates one, and echoes it back."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        incoming = dict(scope.get("headers", [])).get(_HEADER_KEY, b"").decode()

        with bind_correlation_id(incoming or None) as correlation_id:
            start_time = time.perf_counter()
            status_code: int | None = None
            method = scope.get("method", "")
            path = scope.get("path", "")

            async def send_wrapper(message: Message) -> None:
                nonlocal status_code
                if message["type"] == "http.response.start":
                    status_code = message.get("status")
                    headers = list(message.get("headers", []))
                    headers.append((_HEADER_KEY, correlation_id.encode()))
                    message = {**message, "headers": headers}
                await send(message)

            try:
                await self.app(scope, receive, send_wrapper)
            except Exception:
                logger.exception(
                    "Request failed",
                    method=method,
                    path=path,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                raise

            logger.info(
                "Request completed",
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
