"""
Environment selection middleware.

`?env=NAME` routes the request to the isolated environment database NAME;
no parameter (or `prod`) means production. The resolved StorageContext is
placed in a ContextVar for the duration of the request only.
"""
import re

import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from packages.common.database import StorageContext, current_storage

logger = structlog.get_logger()

_ENV_NAME = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class EnvironmentContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        storage = StorageContext(request.query_params.get("env") or None)

        if not storage.is_prod:
            db = request.app.state.db
            if not _ENV_NAME.match(storage.env) or not db.env_exists(storage.env):
                logger.warning("unknown_environment", env=storage.env, path=request.url.path)
                return JSONResponse(
                    status_code=status.HTTP_410_GONE,
                    content={"detail": f"Environment '{storage.env}' not found"},
                )

        token = current_storage.set(storage)
        try:
            return await call_next(request)
        finally:
            current_storage.reset(token)
