from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from hems.api.routes import auth, coordinator, exam
from hems.core.results import ErrorKind, public_message
from hems.core.services.logging import get_logging_service

app = FastAPI(title="HEMS API")

app.include_router(auth.router)
app.include_router(exam.router)
app.include_router(coordinator.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Malformed input is a business failure (400), not an unprocessable entity
    return JSONResponse(
        status_code=400,
        content={
            "detail": {
                "error_kind": ErrorKind.INVALID_FORMAT.value,
                "message": public_message(ErrorKind.INVALID_FORMAT),
                "errors": jsonable_encoder(exc.errors()),
            }
        },
    )


@app.exception_handler(SQLAlchemyError)
async def storage_exception_handler(request: Request, exc: SQLAlchemyError):
    get_logging_service().log_error(
        "storage", str(exc), path=request.url.path, exc_type=type(exc).__name__
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": {
                "error_kind": ErrorKind.SYSTEM_ERROR.value,
                "message": public_message(ErrorKind.SYSTEM_ERROR),
            }
        },
    )


@app.get("/api/status")
async def get_status():
    return {"status": "online", "version": "1.0.0"}
