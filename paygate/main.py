"""
Paygate: payment gateway adapters and transaction reconciliation API.

Normalizes Stripe, PayPal, Authorize.Net, M-Pesa, Square and Razorpay behind
one adapter interface and keeps a local transaction ledger reconciled with
what each provider reports, through API calls and inbound webhooks.

Start the server:
    uvicorn paygate.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paygate.api.health import router as health_router
from paygate.api.payment_methods import router as payment_methods_router
from paygate.api.providers import router as providers_router
from paygate.api.recurring import router as recurring_router
from paygate.api.transactions import router as transactions_router
from paygate.api.webhooks import router as webhooks_router
from paygate.config import settings
from paygate.database import init_db
from paygate.errors import GatewayError

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    await init_db()
    yield


app = FastAPI(
    title="Paygate",
    description=(
        "Payment gateway adapter layer and transaction reconciliation engine. "
        "One interface over Stripe, PayPal, Authorize.Net, M-Pesa, Square and Razorpay, "
        "with a local ledger kept consistent through status checks and deduplicated webhooks."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(status_code=exc.http_status, content={"message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(status_code=400, content={"message": "; ".join(problems) or "Invalid request"})


app.include_router(health_router)
app.include_router(providers_router, prefix="/api")
app.include_router(transactions_router, prefix="/api")
app.include_router(payment_methods_router, prefix="/api")
app.include_router(recurring_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
