import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.cors import CORSMiddleware

from ..core.errors import CashuPayError, ValidationError
from ..core.logging import configure_logger
from ..core.settings import settings
from .router import router
from .startup import shutdown_gateway, start_gateway


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    await start_gateway()
    try:
        yield
    finally:
        try:
            await shutdown_gateway()
        except asyncio.CancelledError:
            logger.info("Shutdown cancelled, closing forcefully")


async def gateway_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, CashuPayError)
    logger.warning(f"{request.method} {request.url.path}: {exc.detail} ({exc.code})")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": exc.detail, "code": exc.code},
    )


async def request_validation_error_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(part) for part in e['loc'])}: {e['msg']}" for e in errors
    )
    logger.debug(f"{request.method} {request.url.path}: invalid request: {detail}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": detail, "code": ValidationError.code},
    )


def create_app() -> FastAPI:
    configure_logger()

    app = FastAPI(
        title="CashuPay",
        description="Lightning payment gateway backed by Cashu ecash.",
        version=settings.version,
        lifespan=lifespan,
    )
    # checkout pages poll invoices from the merchant's domain
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def catch_exceptions(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(f"{request.method} {request.url.path} failed: {e}")
            detail = str(e) if settings.debug else "Internal error"
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": detail, "code": 0},
            )

    app.add_exception_handler(CashuPayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.include_router(router=router, tags=["Gateway"])
    return app


app = create_app()
