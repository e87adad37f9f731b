import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from portrait_batch.core.config import settings
from portrait_batch.services.job_store import JobConflictError, JobNotFoundError

BATCH_JOBS_PATH_PREFIX = f"{settings.API_V1_STR}/batch-jobs"
logger = logging.getLogger("portrait_batch.middleware")


def _is_batch_request(request: Request) -> bool:
    return request.url.path.startswith(BATCH_JOBS_PATH_PREFIX)


def _error_body(error: str, detail, request: Request) -> dict:
    return {"error": error, "detail": detail, "path": request.url.path}


class BatchRequestMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if not _is_batch_request(request):
            return await call_next(request)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled batch job exception",
                extra={"path": request.url.path, "method": request.method},
            )
            response = JSONResponse(
                status_code=500,
                content=_error_body("batch_job_error", "Internal server error", request),
            )

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Batch-Request-Duration-ms"] = f"{duration_ms:.2f}"
        logger.info(
            "%s %s -> %d",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                "path": request.url.path,
                "method": request.method,
                "duration_ms": duration_ms,
                "status_code": response.status_code,
            },
        )
        return response


def register_batch_error_handlers(app: FastAPI) -> None:
    app.add_middleware(BatchRequestMiddleware)

    @app.exception_handler(RequestValidationError)
    async def batch_validation_handler(request: Request, exc: RequestValidationError):
        if not _is_batch_request(request):
            return await request_validation_exception_handler(request, exc)

        logger.warning(
            "Rejected batch job request",
            extra={"path": request.url.path, "method": request.method, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=422,
            content=_error_body("batch_job_validation_error", jsonable_encoder(exc.errors()), request),
        )

    @app.exception_handler(HTTPException)
    async def batch_http_exception_handler(request: Request, exc: HTTPException):
        if not _is_batch_request(request):
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body("batch_job_error", exc.detail, request),
        )

    @app.exception_handler(JobNotFoundError)
    async def job_not_found_handler(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=404, content=_error_body("batch_job_error", str(exc), request))

    @app.exception_handler(JobConflictError)
    async def job_conflict_handler(request: Request, exc: JobConflictError):
        return JSONResponse(status_code=409, content=_error_body("batch_job_error", str(exc), request))
