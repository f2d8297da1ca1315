from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.logging import get_logger
from app.services.migrations.errors import JobConflictError, MigrationValidationError

logger = get_logger(__name__)


def _validation_details(exc: RequestValidationError) -> list[dict]:
    # Input values may hold credentials; only report where and why.
    return [{"loc": list(error.get("loc", ())), "msg": error.get("msg")} for error in exc.errors()]


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": _validation_details(exc)},
        )

    @app.exception_handler(MigrationValidationError)
    async def migration_validation_handler(request: Request, exc: MigrationValidationError):
        return JSONResponse(status_code=400, content={"detail": exc.message})

    @app.exception_handler(JobConflictError)
    async def job_conflict_handler(request: Request, exc: JobConflictError):
        logger.info("migration_conflict path=%s detail=%s", request.url.path, exc.message)
        return JSONResponse(status_code=409, content={"detail": exc.message})
