"""Server-enforced request deadline and per-request logging context."""

import asyncio
import logging
import uuid

from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from tenantauth.api.errors import error_body
from tenantauth.logging_config import request_id_var

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestTimeoutMiddleware:
    """Abort handlers that run past the deadline with a 504.

    Plain ASGI middleware: the downstream application runs inside
    ``asyncio.wait_for``, so on timeout the handler itself is cancelled
    and any open transaction unwinds without committing. The 504 is sent
    only when no response has started; a response already streaming is
    cut off instead.

    Also assigns the request id (``X-Request-ID`` or a fresh one), binds
    it to the logging context and echoes it on the response.
    """

    def __init__(self, app: ASGIApp, timeout_seconds: float) -> None:
        self.app = app
        self._timeout_seconds = timeout_seconds

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request_id_var.set(request_id)
        response_started = False

        async def send_with_request_id(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        try:
            await asyncio.wait_for(
                self.app(scope, receive, send_with_request_id),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Request timed out",
                extra={"path": scope.get("path"), "timeout_seconds": self._timeout_seconds},
            )
            if response_started:
                return
            response = JSONResponse(
                error_body("REQUEST_TIMEOUT", "Request timed out"),
                status_code=504,
                headers={REQUEST_ID_HEADER: request_id},
            )
            await response(scope, receive, send)
