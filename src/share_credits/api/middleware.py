"""
Starlette middleware applying the debit-first share protocol to share endpoints.

Flow:
  1. Before the request: check limits and debit one share credit of the
     endpoint's content type. Refused requests never reach the endpoint.
  2. The endpoint performs the share.
  3. After the response: if the endpoint raised or answered with an error
     status, the debit is compensated. Otherwise the debit stands.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..models.credits import CreditType
from ..models.results import LimitReason
from ..services.engine import ShareCreditsEngine

logger = logging.getLogger(__name__)


class ShareCreditMiddleware(BaseHTTPMiddleware):
    """
    `share_routes` maps a path prefix to the content type its requests
    share, e.g. ``{"/api/exams/share": CreditType.EXAM}``. Only requests
    whose method is in `methods` are charged.
    """

    def __init__(
        self,
        app: Any,
        engine: ShareCreditsEngine,
        *,
        share_routes: Mapping[str, CreditType],
        methods: Sequence[str] = ("POST",),
        user_id_header: str = "X-User-Id",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.engine = engine
        self.share_routes = {prefix.rstrip("/"): ct for prefix, ct in share_routes.items()}
        self.methods = {m.upper() for m in methods}
        self.user_id_header = user_id_header
        self.skip_paths = tuple(skip_paths or ())

    def _credit_type_for(self, method: str, path: str) -> Optional[CreditType]:
        if method.upper() not in self.methods:
            return None
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return None
        for prefix, credit_type in self.share_routes.items():
            if path == prefix or path.startswith(prefix + "/"):
                return credit_type
        return None

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        credit_type = self._credit_type_for(request.method, request.url.path)
        if credit_type is None:
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            return JSONResponse(
                status_code=401,
                content={"detail": f"Missing user identification ({self.user_id_header} header)."},
            )

        correlation_id = request.headers.get("X-Request-Id")
        attempt = await self.engine.on_share_attempt(user_id, credit_type, correlation_id)
        if not attempt.permitted:
            if attempt.reason == LimitReason.INSUFFICIENT_CREDIT:
                status_code, code = 402, "INSUFFICIENT_CREDIT"
            else:
                status_code, code = 403, "LIMIT_REACHED"
            return JSONResponse(
                status_code=status_code,
                content={"detail": attempt.message, "code": code},
            )

        request.state.share_attempt = attempt

        try:
            response = await call_next(request)
        except Exception:
            await self.engine.on_share_result(attempt, succeeded=False, correlation_id=correlation_id)
            raise

        if response.status_code >= 400:
            logger.info(
                "Share endpoint answered %s; returning credit",
                response.status_code,
                extra={"path": request.url.path, "user_id": user_id},
            )
            await self.engine.on_share_result(attempt, succeeded=False, correlation_id=correlation_id)
            return response

        if attempt.remaining_credits is not None:
            response.headers["X-Share-Credits-Remaining"] = str(attempt.remaining_credits)
        return response
