# portal/main.py
import logging
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from portal import admin, auth, files, folders, password_reset, models
from portal.database import engine, SessionLocal
from portal.errors import PortalError, RateLimitedError, Unauthenticated
from portal.rate_limit import store_from_env

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="Customer File Portal")
models.Base.metadata.create_all(bind=engine)
app.state.rate_limiter = store_from_env()

DEV_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",       # vite
]
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()] or DEV_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,        # keeps Authorization header
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(password_reset.router)
app.include_router(folders.router)
app.include_router(files.router)
app.include_router(admin.router)


@app.exception_handler(PortalError)
def portal_error_handler(request: Request, exc: PortalError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %r", request.method, request.url.path, exc)
    body = {"detail": exc.message}
    if exc.errors:
        body["errors"] = exc.errors
    headers = None
    if isinstance(exc, Unauthenticated):
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, RateLimitedError):
        if exc.reset_time is not None:
            # epoch milliseconds
            body["resetTime"] = int(exc.reset_time * 1000)
        if exc.retry_after is not None:
            headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.get("/healthz")
def health_check():
    """
    Health check endpoint that verifies DB and S3 connectivity.
    Returns 200 if healthy, 503 if any dependency is unavailable.
    """
    health_status = {"status": "healthy", "checks": {}}

    # Check database connectivity
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
        health_status["checks"]["database"] = "ok"
    except Exception as exc:
        logger.error("Health check: Database connection failed: %s", exc)
        health_status["checks"]["database"] = "failed"
        health_status["status"] = "unhealthy"

    # Check S3 connectivity
    try:
        from portal.utils import s3_utils
        s3_utils.ping()
        health_status["checks"]["s3"] = "ok"
    except Exception as exc:
        logger.error("Health check: S3 connection failed: %s", exc)
        health_status["checks"]["s3"] = "failed"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status
