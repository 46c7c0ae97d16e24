"""FastAPI app factory for the chainwatch API."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chainwatch.api.check import router as check_router
from chainwatch.api.tracking import router as tracking_router


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed requests as 400 with the offending fields."""

    missing = sorted({".".join(str(part) for part in error.get("loc", ())[1:]) for error in exc.errors()})
    detail = f"Invalid or missing fields: {', '.join(item for item in missing if item)}"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance.
    """

    app = FastAPI(title="chainwatch API", version="0.1")
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(tracking_router)
    app.include_router(check_router)

    @app.get("/health", tags=["health"])
    def health() -> dict:
        return {"status": "ok"}

    return app


# For uvicorn, expose `app` at module level
app = create_app()
