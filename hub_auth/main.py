import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from hub_auth.core.config import settings
from hub_auth.core.errors import OtpError, RateLimitError
from hub_auth.core.http_hardening import install_http_hardening
from hub_auth.api.router import router as hub_router
from hub_auth.services.signing import require_secret

logging.basicConfig(
    level=str(settings.LOG_LEVEL or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
_LOG = logging.getLogger("hub_auth")


@asynccontextmanager
async def lifespan(_: FastAPI):
    # Fails startup when the signing secret is missing.
    require_secret()
    _LOG.info("%s started env=%s otp_store=%s", settings.APP_NAME, settings.APP_ENV, settings.OTP_STORE_BACKEND)
    yield


app = FastAPI(title=settings.APP_NAME, version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "X-Request-ID"],
)
install_http_hardening(app)


@app.exception_handler(OtpError)
async def otp_error_handler(request: Request, exc: OtpError):
    if exc.status_code >= 500:
        _LOG.error("%s %s failed kind=%s message=%s", request.method, request.url.path, exc.kind, exc.message)
    headers = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "validation", "message": "Invalid request body", "fields": fields},
    )


app.include_router(hub_router, prefix="/api/hub")

@app.get("/", include_in_schema=False)
def landing():
    return JSONResponse({"service": settings.APP_NAME, "status": "ok"})

@app.get("/health")
def health():
    return {"status": "ok"}
