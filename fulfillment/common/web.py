"""
共通 — FastAPI の共通部品

例外 → HTTP ステータスの対応:
  NotFound        → 404
  Conflict        → 409
  TransientError / DB / Redis の障害 → 503（業務上の詳細は返さない）
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .errors import Conflict, NotFound, TransientError

logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    """リクエスト / レスポンスは camelCase で受け渡す"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFound)
    async def not_found(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(Conflict)
    async def conflict(request: Request, exc: Conflict) -> JSONResponse:
        return JSONResponse(status_code=409, content={"success": False, "error": str(exc)})

    async def unavailable(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Infrastructure failure on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": "Service temporarily unavailable"},
        )

    for exc_type in (TransientError, SQLAlchemyError, RedisError):
        app.add_exception_handler(exc_type, unavailable)
