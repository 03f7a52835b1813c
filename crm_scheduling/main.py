import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import models so they're registered with SQLAlchemy Base
from . import models  # noqa: F401
from .config import ALLOWED_ORIGINS
from .database import Base, engine
from .domain.bookings import router as bookings_router
from .domain.bookings.exceptions import BookingError
from .routes.geocoding import router as geocoding_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


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

    try:
        from .rate_limiter import get_redis_client

        get_redis_client()  # Connection test
        logger.info("Redis connection established")
    except Exception as e:
        logger.warning(
            f"Redis connection failed - geocoding cache disabled, rate limiting per process: {e}"
        )

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="CRM Scheduling API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    """Render expected business outcomes as {"error": ...} bodies"""
    logger.info(
        f"{request.method} {request.url.path} -> {exc.status_code} "
        f"{type(exc).__name__}: {exc.message}"
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def jsonable_errors(errors) -> list:
    # Pydantic puts the raised ValueError in ctx, which JSON cannot carry
    cleaned = []
    for error in errors:
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        cleaned.append(error)
    return cleaned


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed payloads and query strings -> 422 with pydantic's error list"""
    errors = jsonable_errors(exc.errors())
    logger.warning(f"Validation error for {request.method} {request.url.path}: {errors}")
    return JSONResponse(status_code=422, content={"detail": errors})


app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in ALLOWED_ORIGINS if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(bookings_router)
app.include_router(geocoding_router)


@app.get("/")
def root():
    return {"message": "CRM Scheduling API"}


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/health/redis")
def redis_health_check():
    """Check Redis connectivity for monitoring"""
    from .cache import get_cache_stats
    from .rate_limiter import get_redis_client

    try:
        started = time.perf_counter()
        get_redis_client().ping()
        latency_ms = round((time.perf_counter() - started) * 1000, 2)
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "degraded", "redis": {"connected": False, "error": str(e)}}

    return {
        "status": "healthy",
        "redis": {"connected": True, "latency_ms": latency_ms},
        "cache": get_cache_stats(),
    }
