import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_audit,  # noqa: F401
    models_payment,  # noqa: F401
)
from .config import ALLOWED_ORIGINS
from .database import Base, engine
from .domain.appointments import router as appointments_router
from .domain.payments import router as payments_router
from .domain.slots import router as slots_router
from .errors import AppError
from .services.audit_sink import audit_sink
from .shared.responses import failure

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

HTTP_ERROR_KINDS = {
    401: "AuthenticationError",
    403: "AuthorizationError",
    404: "NotFoundError",
    405: "MethodNotAllowed",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    audit_sink.start()
    yield
    logger.info("Application shutting down...")
    audit_sink.stop()


app = FastAPI(title="Hospital Booking API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path} failed: {exc.kind}: {exc.message}")
    else:
        logger.info(f"⚠️ {request.method} {request.url.path} rejected: {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request body/query problems use the same envelope as service validation errors"""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    logger.warning(f"Validation error for {request.url.path}: {errors}")
    message = errors[0]["msg"] if errors else "Invalid request"
    return JSONResponse(
        status_code=400, content=failure(message, "ValidationError", details=errors)
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=failure(str(exc.detail), HTTP_ERROR_KINDS.get(exc.status_code, "HTTPError")),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500, content=failure("Internal server error", "InternalError")
    )


@app.middleware("http")
async def log_slow_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started
    if elapsed > 2.0:
        logger.warning(f"🐢 Slow request {request.method} {request.url.path}: {elapsed:.2f}s")
    return response


# Log CORS configuration for debugging
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(slots_router)
app.include_router(appointments_router)
app.include_router(payments_router)


@app.get("/")
def root():
    return {"message": "Hospital Booking API is running"}


@app.get("/health")
def health():
    return {"status": "healthy", "audit_dropped": audit_sink.dropped}
