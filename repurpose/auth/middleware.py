"""
Authentication Middleware.

Identity comes from the external auth collaborator as an `X-User-Id`
header; browser sessions fall back to the cookie it sets. Provider
webhooks and health probes carry no user and are exempt.
"""
import re
import logging
from typing import Callable, Iterable, Optional, Set

from fastapi import status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_ID_COOKIE = "repurpose_user_id"

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.:@-]{1,128}$")


def _reject(code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": "Authentication required", "code": code, "message": message},
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Puts the caller's user id on request.state.user_id.

    Lookup order: X-User-Id header, then the session cookie. Protected
    paths without an identity get 401 AUTH_REQUIRED when require_auth is
    set; a malformed id always gets 401 INVALID_USER_ID.
    """

    OPEN_PATHS: Set[str] = {
        "/docs",
        "/redoc",
        "/openapi.json",
        "/favicon.ico",
    }

    OPEN_PREFIXES: tuple = (
        "/health",
        "/webhooks/",
    )

    def __init__(
        self,
        app,
        require_auth: bool = True,
        open_paths: Optional[Set[str]] = None,
        open_prefixes: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.require_auth = require_auth
        self.open_paths = open_paths if open_paths is not None else self.OPEN_PATHS
        self.open_prefixes = tuple(open_prefixes) if open_prefixes is not None else self.OPEN_PREFIXES

        logger.info(f"AuthMiddleware initialized: require_auth={require_auth} open_prefixes={self.open_prefixes}")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        request.state.user_id = None

        if self.is_open(path):
            return await call_next(request)

        user_id = self.identify(request)

        if user_id is not None and not _USER_ID_RE.match(user_id):
            logger.warning(f"Rejected malformed user id on {request.method} {path}")
            return _reject("INVALID_USER_ID", f"Malformed {USER_ID_HEADER} value")

        if user_id is None and self.require_auth:
            logger.warning(f"Missing auth: {request.method} {path}")
            return _reject("AUTH_REQUIRED", f"Missing {USER_ID_HEADER} header")

        request.state.user_id = user_id
        return await call_next(request)

    def identify(self, request: Request) -> Optional[str]:
        for raw in (request.headers.get(USER_ID_HEADER), request.cookies.get(USER_ID_COOKIE)):
            if raw and raw.strip():
                return raw.strip()
        return None

    def is_open(self, path: str) -> bool:
        return path in self.open_paths or path.startswith(self.open_prefixes)


__all__ = ["AuthMiddleware", "USER_ID_HEADER", "USER_ID_COOKIE"]
