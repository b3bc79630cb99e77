import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from config import CORS_ORIGINS, LOG_LEVEL
from database import init_db
from routers import auth, billing, health, license, update
from routers.auth import limiter
from services.exceptions import LicenseError

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup: create tables and seed plans
    init_db()
    yield


app = FastAPI(
    title="License Integrity API",
    description="Device trials, license status and billing webhooks",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(LicenseError)
async def license_error_handler(request: Request, exc: LicenseError):
    if exc.http_status >= 500:
        logger.error("request failed: %s", exc.message, extra={"code": exc.code})
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(license.router, prefix="/api/v1/license", tags=["license"])
app.include_router(billing.router, prefix="/api/v1/billing", tags=["billing"])
app.include_router(update.router, prefix="/api/v1/update", tags=["update"])


@app.get("/")
async def root():
    return {"message": "License Integrity API"}
