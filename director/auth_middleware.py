"""
Shared-secret authentication middleware for the director worker.

All /director/* endpoints require a valid X-Worker-Secret header matching
the WORKER_SHARED_SECRET environment variable. The public API attaches this
header (along with X-User-Id) when forwarding requests to the worker.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIX = "/director"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /director/* endpoints."""

    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: str | None = None, environment: str | None = None):
        super().__init__(app)
        self.secret = os.environ.get("WORKER_SHARED_SECRET", "") if secret is None else secret
        self.environment = environment or os.environ.get("ENVIRONMENT", "development")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or not path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # Local development without the secret set allows all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
