"""
Starlette middleware that resolves the caller's identity for /api routes.

Authentication happens upstream; by the time a request reaches this service
the gateway has put the user id in a header. The middleware rejects requests
that lack it and tags every request with a request id for ledger correlation.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response


logger = logging.getLogger(__name__)


class UserIdentityMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        *,
        path_prefix: str = "/api",
        user_id_header: str = "X-User-Id",
        request_id_header: str = "X-Request-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.path_prefix = path_prefix.rstrip("/")
        self.user_id_header = user_id_header
        self.request_id_header = request_id_header
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        request_id = request.headers.get(self.request_id_header) or uuid4().hex
        request.state.request_id = request_id
        request.state.user_id = request.headers.get(self.user_id_header)

        if self._should_apply(request.url.path) and not request.state.user_id:
            logger.warning(
                "Rejected request without user id",
                extra={"path": request.url.path, "request_id": request_id},
            )
            return JSONResponse(
                status_code=401,
                content={
                    "success": False,
                    "error": "UNAUTHENTICATED",
                    "message": f"Missing user identification ({self.user_id_header} header).",
                },
                headers={self.request_id_header: request_id},
            )

        response = await call_next(request)
        response.headers[self.request_id_header] = request_id
        return response
