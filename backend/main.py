from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from config import settings
from database import init_db, async_session_maker
from tenants import router as tenants_router
from terminal_api import router as terminal_router
from recurring_api import router as recurring_router
from webhooks import router as webhooks_router
from dashboard import router as dashboard_router
from ai_usage import router as ai_usage_router
from realtime import router as realtime_router

app = FastAPI(title=f"{settings.APP_NAME} API", version="1.0.0")

# Setup logging
logger = logging.getLogger(__name__)

# Strip whitespace from each origin to prevent configuration errors
CORS_ORIGINS = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,  # Cache preflight responses for 1 hour
)

# ==================== CUSTOM EXCEPTION HANDLERS ====================

@app.exception_handler(StarletteHTTPException)
async def custom_http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Ensures CORS headers are included in error responses, including
    HTTPExceptions raised from dependencies such as the tier gate.
    """
    response = await http_exception_handler(request, exc)

    origin = request.headers.get('origin')
    if origin and origin in CORS_ORIGINS:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Credentials'] = 'true'
        response.headers['Access-Control-Allow-Methods'] = '*'
        response.headers['Access-Control-Allow-Headers'] = '*'

    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """
    Catch-all exception handler for unexpected errors.
    Ensures CORS headers are present even on 500 errors.
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

    origin = request.headers.get('origin')
    if origin and origin in CORS_ORIGINS:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Credentials'] = 'true'

    return response

# ==================== END EXCEPTION HANDLERS ====================

app.include_router(tenants_router)
app.include_router(terminal_router)
app.include_router(recurring_router)
app.include_router(webhooks_router)
app.include_router(dashboard_router)
app.include_router(ai_usage_router)
app.include_router(realtime_router)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    logger.info("=" * 60)
    logger.info("Starting application initialization...")
    logger.info("=" * 60)

    try:
        await init_db()
        logger.info("Database initialization successful!")
    except ConnectionRefusedError as e:
        logger.error("=" * 60)
        logger.error("CRITICAL: Database connection refused!")
        logger.error(f"Error: {e}")
        logger.error("Possible causes:")
        logger.error("1. Incorrect DATABASE_URL format")
        logger.error("2. Database server not accessible")
        logger.error("=" * 60)
        raise
    except Exception as e:
        logger.error("=" * 60)
        logger.error(f"CRITICAL: Application startup failed: {e}")
        logger.error("=" * 60)
        raise

    # Auto-seed demo tenants if enabled and database is empty
    async with async_session_maker() as db:
        from seed_demo_data import seed_demo_data_on_startup
        await seed_demo_data_on_startup(db)

    # Validate Stripe configuration
    from checkout_service import checkout_service
    config_status = checkout_service.get_configuration_status()

    logger.info("=" * 60)
    logger.info("Stripe Checkout Configuration Status")
    logger.info("=" * 60)

    if config_status['is_configured']:
        logger.info(f"✅ Stripe keys are configured (mode: {config_status['mode']})")
        logger.info(f"   Secret key: {config_status['secret_key_preview']}")
    else:
        logger.warning("⚠️ Stripe is NOT configured - terminal and recurring checkout will be unavailable")
        logger.warning("   To enable payments, set STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET")

    if config_status['has_issues']:
        logger.warning("⚠️ Configuration issues detected:")
        for issue in config_status['issues']:
            logger.warning(f"   - {issue}")
    logger.info("=" * 60)

    # Background sweep for checkouts whose webhook never arrived
    if config_status['is_configured']:
        try:
            from payment_reconciler import start_payment_reconciler
            app.state.payment_reconciler = start_payment_reconciler()
        except Exception as e:
            logger.error(f"⚠️ Failed to start payment reconciler: {e}")
            # Don't fail startup if scheduler fails


@app.on_event("shutdown")
async def shutdown_event():
    scheduler = getattr(app.state, "payment_reconciler", None)
    if scheduler:
        scheduler.shutdown(wait=False)


# ==================== HEALTH CHECK ====================

@app.get("/health")
async def health_check():
    """Health check endpoint for Render/Cloud platforms"""
    return {"status": "healthy", "service": "api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
