import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root regardless of where uvicorn is started
_PROJ_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJ_ROOT / ".env")

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.admin import router as admin_router
from app.api.coupons import router as coupons_router
from app.api.orders import router as orders_router
from app.api.payment import router as payment_router
from app.core.config import is_bank_transfer_configured, is_card_configured, settings
from app.core.database import engine, init_db
from app.core.errors import AppError, ErrorCodes
from app.core.rate_limit import client_ip, limiter
from app.logging import setup_logging
from app.models import ErrorLog, SecurityLog  # noqa: F401  (registers every table for init_db)

setup_logging(level=settings.log_level.upper())
log = logging.getLogger("coursepay")

_HTTP_ERROR_CODES = {
    401: ErrorCodes.TOKEN_INVALID,
    403: ErrorCodes.INSUFFICIENT_PERMISSIONS,
    404: ErrorCodes.RESOURCE_NOT_FOUND,
    429: ErrorCodes.RATE_LIMIT_EXCEEDED,
}


def _cors_origins_list() -> list[str]:
    if not settings.cors_origins or settings.cors_origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in settings.cors_origins.split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    log.info(
        "Payment rails: card=%s bank_transfer=%s currency=%s",
        "yes" if is_card_configured() else "NO (STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET)",
        "yes" if is_bank_transfer_configured() else "NO (BANK_TRANSFER_SECRET / BANK_TRANSFER_ACCOUNT_NUMBER)",
        settings.currency,
    )
    yield


app = FastAPI(
    title="CoursePay API",
    description="Course checkout: orders, coupons, card and bank-transfer settlement",
    lifespan=lifespan,
)
app.state.limiter = limiter


def _error_response(request: Request, status_code: int, message: str, error_code: str) -> JSONResponse:
    body = {"error": message, "error_code": error_code, "status_code": status_code}
    rid = getattr(request.state, "request_id", None)
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(AppError)
def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("AppError %s: path=%s %s", exc.error_code, request.url.path, exc.message)
    else:
        log.info("AppError %s: path=%s %s", exc.error_code, request.url.path, exc.message)
    return _error_response(request, exc.status_code, exc.message, exc.error_code)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    try:
        with Session(engine) as db:
            db.add(SecurityLog(event="rate_limit", ip=client_ip(request) or None, endpoint=request.url.path, detail=str(exc.detail)[:500]))
            db.commit()
    except SQLAlchemyError as e:
        log.warning("SecurityLog rate_limit write failed: %s", e)
    return _error_response(request, 429, "Too many requests. Please wait a minute.", ErrorCodes.RATE_LIMIT_EXCEEDED)


app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)


def _validation_error_message(exc: RequestValidationError) -> str:
    errs = exc.errors()
    if not errs:
        return "Invalid request."
    first = errs[0]
    loc = [str(p) for p in (first.get("loc") or []) if p != "body"]
    field = ".".join(loc)
    msg = first.get("msg") or "Invalid value"
    if first.get("type") == "missing":
        return f"Missing field: {field}." if field else "Request body is missing."
    return f"{field}: {msg}" if field else msg


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    log.info("Request validation error (422): path=%s method=%s", request.url.path, request.method)
    return _error_response(request, 422, _validation_error_message(exc), ErrorCodes.INVALID_INPUT_FORMAT)


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    default = ErrorCodes.INTERNAL_SERVER_ERROR if exc.status_code >= 500 else ErrorCodes.INVALID_INPUT_FORMAT
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error_response(request, exc.status_code, detail, _HTTP_ERROR_CODES.get(exc.status_code, default))


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled exception: path=%s %s", request.url.path, exc)
    try:
        with Session(engine) as db:
            db.add(
                ErrorLog(
                    request_id=getattr(request.state, "request_id", None),
                    endpoint=request.url.path,
                    method=request.method,
                    error_message=str(exc)[:2000],
                    stack_trace=traceback.format_exc()[:10000],
                )
            )
            db.commit()
    except SQLAlchemyError as e:
        log.warning("ErrorLog write failed: %s", e)
    return _error_response(request, 500, "Unexpected server error.", ErrorCodes.INTERNAL_SERVER_ERROR)


@app.middleware("http")
async def request_id_and_latency(request: Request, call_next):
    request.state.request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    start = time.perf_counter()
    response = await call_next(request)
    latency_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request.state.request_id
    log.info(
        "request_id=%s method=%s path=%s status=%s latency_ms=%.2f",
        request.state.request_id,
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(orders_router)
app.include_router(coupons_router)
app.include_router(payment_router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {
        "status": "ok",
        "environment": settings.environment,
        "card_configured": is_card_configured(),
        "bank_transfer_configured": is_bank_transfer_configured(),
    }
