from contextlib import asynccontextmanager

from backend.app.core.errors import register_exception_handlers
from backend.app.core.logging import setup_logging
from backend.app.core.config import settings

# Configure logging (JSON structured)
logger = setup_logging(settings.log_level)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from secure import (
    ContentSecurityPolicy,
    ReferrerPolicy,
    Secure,
    StrictTransportSecurity,
    XContentTypeOptions,
    XFrameOptions,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.types import ASGIApp
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from backend.app.api.endpoints import admin, credits, jobs
from backend.app.core.database import Database


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if getattr(app.state, "db", None) is None:
        app.state.db = Database()
    yield
    # Shutdown
    db: Database | None = getattr(app.state, "db", None)
    if db is not None:
        db.dispose()
        app.state.db = None

app = FastAPI(
    title="Video Jobs API",
    description="Credit accounting and job lifecycle for the video generation pipeline",
    version="1.0.0",
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
    openapi_url="/openapi.json" if settings.is_dev else None,
    lifespan=lifespan,
)

# Register Global Exception Handlers
register_exception_handlers(app)

# Configure CORS (secure-by-default in production)
default_origins = (
    [
        "http://localhost:3000",  # Next.js frontend
        "http://127.0.0.1:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]
    if settings.is_dev
    else []
)
origins = settings.allowed_origins or default_origins
if not settings.is_dev and not origins:
    logger.warning("VJ_ALLOWED_ORIGINS is empty; cross-origin requests will be rejected")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id"],
)

# Enable GZip compression for responses > 1000 bytes
app.add_middleware(GZipMiddleware, minimum_size=1000)

default_trusted_hosts = ["localhost", "127.0.0.1", "0.0.0.0", "[::1]", "testserver"]
trusted_hosts = settings.trusted_hosts or default_trusted_hosts
if not settings.is_dev and "*" in trusted_hosts:
    raise RuntimeError("VJ_TRUSTED_HOSTS cannot include '*' in production")
app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

# Harden default security headers; CSP is conservative for API-only responses
SECURE_HEADERS = Secure(
    hsts=StrictTransportSecurity().max_age(63072000).include_subdomains().preload(),
    xfo=XFrameOptions().deny(),
    referrer=ReferrerPolicy().strict_origin_when_cross_origin(),
    csp=ContentSecurityPolicy().default_src("'self'").connect_src("'self'"),
    xcto=XContentTypeOptions().nosniff(),
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, secure_headers: Secure) -> None:
        super().__init__(app)
        self.secure_headers = secure_headers

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        await self.secure_headers.set_headers_async(response)
        # Avoid sending HSTS on cleartext requests to keep local dev/proxy setups flexible.
        if settings.is_dev and request.url.scheme not in ("https", "wss"):
            if "Strict-Transport-Security" in response.headers:
                del response.headers["Strict-Transport-Security"]

        # Balances and job state are per-user; keep them out of shared caches
        if request.url.path.startswith(("/credits", "/jobs", "/admin")):
            response.headers["Cache-Control"] = "no-store"

        return response


app.add_middleware(
    # Use the dedicated `secure` package to apply hardened headers.
    SecurityHeadersMiddleware,
    secure_headers=SECURE_HEADERS,
)

# Honor X-Forwarded-* only from the load balancer / private network
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.proxy_trusted_hosts)

# Include Routers
app.include_router(credits.router, prefix="/credits", tags=["credits"])
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])

@app.get("/health")
async def health_check():
    return {"status": "ok", "service": "video-jobs-api", "app_env": settings.app_env.value}
