import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from snapshot_server.core.errors import BackupError
from snapshot_server.middleware_logging import REQUEST_ID_HEADER, request_id_of

logger = logging.getLogger("snapshot_server.errors")


def _error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={REQUEST_ID_HEADER: request_id_of(request)},
    )


def register_error_handlers(app: FastAPI):
    @app.exception_handler(BackupError)
    async def backup_exc_handler(request: Request, exc: BackupError):
        logger.warning(
            "request_id=%s %s path=%s status=%s detail=%r",
            request_id_of(request), type(exc).__name__, request.url.path, exc.status_code, exc.detail
        )
        return _error_response(request, exc.status_code, {"error": exc.detail})

    @app.exception_handler(HTTPException)
    async def http_exc_handler(request: Request, exc: HTTPException):
        logger.warning(
            "request_id=%s HTTPException path=%s status=%s detail=%r",
            request_id_of(request), request.url.path, exc.status_code, exc.detail
        )
        return _error_response(
            request, exc.status_code, {"error": str(exc.detail) if exc.detail else "HTTP error"}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exc_handler(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_id=%s ValidationError path=%s errors=%s",
            request_id_of(request), request.url.path, exc.errors()
        )
        return _error_response(
            request, 400, {"error": "Validation error", "details": _jsonable(exc.errors())}
        )

    @app.exception_handler(Exception)
    async def unhandled_exc_handler(request: Request, exc: Exception):
        logger.exception("request_id=%s Unhandled error at path=%s", request_id_of(request), request.url.path)
        return _error_response(request, 500, {"error": "Internal server error"})


def _jsonable(errors: list) -> list:
    # pydantic puts the raw exception into ctx for custom validators
    out = []
    for err in errors:
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        if isinstance(err.get("input"), bytes):
            err["input"] = err["input"].decode("utf-8", errors="replace")
        out.append(err)
    return out
