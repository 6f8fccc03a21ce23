"""Open-origin CORS with per-route method restriction.

Every endpoint accepts any origin. Browser-navigation legs (capture and
success pages) allow GET; everything else allows POST. OPTIONS is always
answered with a bare 200 without reaching the route.
"""
from typing import Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

JSON_METHODS = "POST, OPTIONS"
BROWSER_METHODS = "GET, OPTIONS"


class CheckoutCorsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, browser_paths: Iterable[str] = ()):
        super().__init__(app)
        self.browser_paths = frozenset(browser_paths)

    def allowed_methods(self, path: str) -> str:
        return BROWSER_METHODS if path.rstrip("/") in self.browser_paths else JSON_METHODS

    def _headers(self, path: str) -> dict:
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": self.allowed_methods(path),
            "Access-Control-Allow-Headers": "Authorization, Content-Type",
        }

    async def dispatch(self, request, call_next):
        path = request.url.path
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=self._headers(path))

        response = await call_next(request)
        for key, value in self._headers(path).items():
            response.headers[key] = value
        return response
