"""
Main FastAPI application for the shopkit payments API.
Serves health, payment webhooks, verify, checkout, credits and metrics.
"""
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from shopkit.core.config import settings
from shopkit.core.logging import configure_logging, request_id_var
from shopkit.api.routes import credits, health, payments
from shopkit.utils.metrics import router as metrics_router


configure_logging()
logger = logging.getLogger("shopkit.http")

app = FastAPI(
    title="Shopkit Payments API",
    description="Credit packs, payment webhooks and reconciliation",
    version="1.0.0",
)

# CORS
origins = settings.cors_origins_list
if not origins:
    origins = ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Request id for every log line of the request, plus one access line."""
    request_id = request.headers.get(settings.request_id_header) or uuid.uuid4().hex
    token = request_id_var.set(request_id)
    start = time.perf_counter()
    try:
        response = await call_next(request)
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        response.headers[settings.request_id_header] = request_id
        if request.url.path not in ("/health", "/metrics"):
            logger.info(
                "http_request",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "latency_ms": latency_ms,
                },
            )
        return response
    finally:
        request_id_var.reset(token)


# Routers
app.include_router(health.router, tags=["health"])
app.include_router(payments.router)
app.include_router(credits.router)
app.include_router(metrics_router)
