import logging
from contextlib import asynccontextmanager
import traceback
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings
from app.db.session import create_db_and_tables, engine
from app.core.startup import ensure_free_plan_exists, ensure_users_have_plan
from app.routers.payme_router import router as payme_router

logging.basicConfig(
    filename=settings.LOG_FILE,
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s"
)
logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/", "/health", "/payments/payme/callback"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        logger.info(f"Starting {settings.PROJECT_NAME} (Payme test mode: {settings.PAYME_TEST_MODE})")
        create_db_and_tables()
        await ensure_free_plan_exists()
        await ensure_users_have_plan()
        logger.info("Startup checks completed")
    except Exception as e:
        logger.error(f"Error during application startup: {str(e)}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        raise

    yield
    logger.info("Shutting down")

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.CLIENT_URL] if settings.CLIENT_URL else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {str(exc)}")
    logger.error(f"Traceback: {traceback.format_exc()}")
    return JSONResponse(status_code=503, content={"detail": "Database unavailable"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {str(exc)}")
    logger.error(f"Traceback: {traceback.format_exc()}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error"}
    )

@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors()[0].get("msg", "Validation Error")}
    )

@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "errors": exc.errors()}
    )


def custom_openapi():
    """Bearer auth on every route except the public ones (Payme authenticates its own callback)."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Payme billing API for IELTS writing assessment plans",
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}
    }

    for path, operations in openapi_schema["paths"].items():
        if path in PUBLIC_PATHS:
            continue
        for operation in operations.values():
            operation["security"] = [{"BearerAuth": []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi

app.include_router(payme_router)


@app.get("/", include_in_schema=False)
@app.head("/", include_in_schema=False)
def root():
    return {"message": "Service is up"}


@app.get("/health")
def health():
    database = "ok"
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database error: {str(e)}")
        database = "error"
    return {
        "status": "ok",
        "database": database,
        "payme_configured": bool(settings.PAYME_MERCHANT_ID and settings.PAYME_MERCHANT_KEY),
        "payme_test_mode": settings.PAYME_TEST_MODE,
    }
