import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storefront.config import get_settings
from storefront.models.user import SessionLocal
from storefront.routers import orders, returns, admin_returns, refunds
from storefront.services.errors import (
    AlreadyRefunded,
    Conflict,
    GatewayFailure,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    OrderFlowError,
    RateLimited,
    ValidationError,
)
from storefront.services.payment_gateway import build_payment_gateway
from storefront.utils.rate_limit import build_rate_limiter
from storefront.utils.validation import field_errors

settings = get_settings()

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("storefront")

ERROR_STATUS_CODES = {
    ValidationError: 400,
    NotAuthorized: 403,
    NotFound: 404,
    InvalidTransition: 409,
    AlreadyRefunded: 409,
    Conflict: 409,
    RateLimited: 429,
    GatewayFailure: 502,
}

HTTP_ERROR_KINDS = {
    400: "validation_error",
    401: "not_authenticated",
    403: "not_authorized",
    404: "not_found",
    405: "method_not_allowed",
}

app = FastAPI(title="Storefront Orders")
app.state.rate_limiter = build_rate_limiter(settings.RATE_LIMIT_BACKEND, SessionLocal)
app.state.payment_gateway = build_payment_gateway(settings)


def status_code_for(exc: OrderFlowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(OrderFlowError)
async def order_flow_error_handler(request: Request, exc: OrderFlowError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(status_code=status_code_for(exc), content=exc.to_payload(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": ValidationError.kind,
            "message": "Validation failed",
            "details": field_errors(exc.errors()),
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": HTTP_ERROR_KINDS.get(exc.status_code, "http_error"), "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": "Internal server error"})


async def _sweep_rate_limits(interval_seconds: int, max_age_seconds: int):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(app.state.rate_limiter.sweep, max_age_seconds)
            if removed:
                logger.info("Rate limiter sweep removed %s expired entries", removed)
        except Exception as e:
            # keep the loop alive
            logger.error("Rate limiter sweep failed: %s", e)


@app.on_event("startup")
async def on_startup():
    # Ensure all DB tables exist after all models are imported
    from storefront.models.user import Base, engine  # Base/engine single source
    import storefront.models.store  # register Store model
    import storefront.models.order  # register Order model
    import storefront.models.return_request  # register ReturnRequest model
    import storefront.models.refund  # register Refund model
    import storefront.models.rate_limit  # register RateLimitHit model
    Base.metadata.create_all(bind=engine)

    app.state.sweep_task = asyncio.create_task(
        _sweep_rate_limits(settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS, settings.RETURN_RATE_LIMIT_WINDOW_SECONDS)
    )


@app.on_event("shutdown")
async def on_shutdown():
    task = getattr(app.state, "sweep_task", None)
    if task:
        task.cancel()


# CORS configuration for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(orders.router, prefix="/api/orders", tags=["orders"])
app.include_router(orders.store_router, prefix="/api/store/orders", tags=["store-orders"])
app.include_router(orders.admin_router, prefix="/api/admin/orders", tags=["admin-orders"])
app.include_router(returns.router, prefix="/api/returns", tags=["returns"])
app.include_router(admin_returns.router, prefix="/api/admin/returns", tags=["admin-returns"])
app.include_router(refunds.router, prefix="/api/refunds", tags=["refunds"])


@app.get("/health")
def health():
    return {"status": "ok"}


# --- Entry point for local runs ---
if __name__ == "__main__":
    import uvicorn, os
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=port, reload=False)
