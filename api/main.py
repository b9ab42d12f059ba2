"""FastAPI application."""
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from api.routes import auth, balance, payments, stories, webhooks
from api.dependencies import close_clients
from api.context import request_id_var, ip_address_var, user_agent_var, user_id_var
from config.settings import CORS_ORIGINS, ENVIRONMENT

# Configure Structured Logging
class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        request_id = getattr(record, "request_id", None) or request_id_var.get()
        if request_id:
            log_obj["request_id"] = request_id
        for key, var in (("user_id", user_id_var), ("ip", ip_address_var), ("user_agent", user_agent_var)):
            value = var.get()
            if value:
                log_obj[key] = value
        return json.dumps(log_obj)

handler = logging.StreamHandler()
handler.setFormatter(JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[handler])
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    from config.settings import PAYPAL_CLIENT_ID, POLAR_WEBHOOK_SECRET, REPLICATE_API_KEY

    if not PAYPAL_CLIENT_ID:
        logger.warning("PAYPAL_CLIENT_ID not set, PayPal verification disabled")
    if not POLAR_WEBHOOK_SECRET:
        logger.warning("POLAR_WEBHOOK_SECRET not set, Polar webhooks will be rejected")
    if not REPLICATE_API_KEY:
        logger.warning("REPLICATE_API_KEY not set, story generation disabled")

    yield

    logger.info("Application shutting down")
    await close_clients()


app = FastAPI(
    title="StoryTime API",
    description="Bilingual story generation and story credit purchases",
    version="0.1.0",
    lifespan=lifespan,
)


def error_envelope(code: str, message: str, status_code: int) -> Response:
    """Error body shared by every exception handler."""
    body = {"error": {"code": code, "message": message, "request_id": request_id_var.get()}}
    return Response(content=json.dumps(body), status_code=status_code, media_type="application/json")


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    # ValueError(message, code) carries its own error code
    if len(exc.args) > 1:
        return error_envelope(exc.args[1], exc.args[0], 400)
    return error_envelope("VALIDATION_ERROR", str(exc), 400)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    # Internal detail stays in the logs
    return error_envelope("INTERNAL_ERROR", "An unexpected error occurred", 500)


# Request Trace Middleware
class RequestTraceMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        # Tokenize and set context
        token_rid = request_id_var.set(request_id)
        token_ip = ip_address_var.set(request.client.host if request.client else None)
        token_ua = user_agent_var.set(request.headers.get("user-agent"))
        token_uid = user_id_var.set(None)

        logger.info(f"Incoming {request.method} {request.url.path}", extra={"request_id": request_id})

        try:
            response: Response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            # Reset context
            request_id_var.reset(token_rid)
            ip_address_var.reset(token_ip)
            user_agent_var.reset(token_ua)
            user_id_var.reset(token_uid)

app.add_middleware(RequestTraceMiddleware)

# CORS middleware - configure allowed origins from environment
ALLOWED_ORIGINS = CORS_ORIGINS.split(",")
if ENVIRONMENT == "development":
    ALLOWED_ORIGINS = ["*"]  # Allow all in development

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"]
)

app.include_router(auth.router)
app.include_router(payments.router)
app.include_router(balance.router)
app.include_router(stories.router)
app.include_router(webhooks.router)

# Additional webhook mount to support /api/webhooks/polar
app.add_api_route(
    "/api/webhooks/polar",
    webhooks.handle_polar_webhook,
    methods=["POST"],
)
app.add_api_route(
    "/api/webhooks/polar",
    webhooks.polar_webhook_health,
    methods=["GET"],
)

@app.get("/healthz")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
