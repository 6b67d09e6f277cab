"""
FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import charging as charging_routes
from api.routes import payouts as payouts_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from infrastructure.container import get_charge_processor_dispatcher, get_event_bus
from infrastructure.database import create_tables


# configure logging at the entry point, not as an import side effect
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info("database_schema_not_managed", message="Tables are not auto-created outside DEBUG")

    dispatcher = get_charge_processor_dispatcher()
    logger.info("charge_processors_registered", processors=dispatcher.registry.ids())

    yield

    for processor in dispatcher.registry:
        close = getattr(processor, "aclose", None)
        if callable(close):
            await close()
    await get_event_bus().aclose()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Multi-processor charging and payout orchestration engine",
)

# middlewares run bottom-up: RequestID first so the logger sees the request id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(charging_routes.router, prefix="/api/v1")
app.include_router(payouts_routes.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    return success_response(
        data={"name": settings.PROJECT_NAME, "version": settings.VERSION, "docs": "/docs"},
        message="Welcome",
    )


@app.get("/health", tags=["Health"])
async def health_check():
    return success_response(data={"status": "healthy"}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
