import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..modules.mpesa.errors import AllocationError, MpesaError

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_, exc: RequestValidationError):  # type: ignore[override]
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @app.exception_handler(MpesaError)
    async def mpesa_exception_handler(request: Request, exc: MpesaError):  # type: ignore[override]
        # Full detail for operators, short message for the user
        log = logger.error if int(exc.status_code) >= 500 else logger.info
        log("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.detail)

        content = {"error": exc.code, "detail": exc.public_message}
        if isinstance(exc, AllocationError):
            content["completed_steps"] = exc.completed_steps
        return JSONResponse(status_code=int(exc.status_code), content=content)
