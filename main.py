from fastapi import FastAPI, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import logging
import os

from config import settings
from observability import configure_logging, get_log_lines, metrics, request_context_middleware
from database import get_db, init_db, async_session_maker
from models import User, Company
from schemas import LoginRequest, ChangePasswordRequest
from auth import (
    get_password_hash, verify_password, create_access_token,
    get_current_user, get_role_flags, require_admin
)
from errors import ApiError, register_exception_handlers
from plan_access import get_plan_context
from rate_limit import login_rate_limit
from tenants import router as tenants_router, build_auth_user, build_auth_company
from clients import router as clients_router
from catalog import router as catalog_router
from appointments import router as appointments_router
from medical_records import router as medical_records_router
from reminders import router as reminders_router
from finance import router as transactions_router, cashbook_router
from reports import router as reports_router
from attachments import router as attachments_router
from platform_admin import router as platform_admin_router

configure_logging()

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

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
    expose_headers=["x-request-id", "Content-Disposition", "Retry-After"],
    max_age=3600,  # Cache preflight responses for 1 hour
)
app.middleware("http")(request_context_middleware)

register_exception_handlers(app)

app.include_router(tenants_router)
app.include_router(clients_router)
app.include_router(catalog_router)
app.include_router(appointments_router)
app.include_router(medical_records_router)
app.include_router(reminders_router)
app.include_router(transactions_router)
app.include_router(cashbook_router)
app.include_router(reports_router)
app.include_router(attachments_router)

# Include platform super admin routes
app.include_router(platform_admin_router)

# Mount static files for uploads
os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")


@app.on_event("startup")
async def startup_event():
    """Initialize database, seed defaults and start schedulers"""
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
        logger.error("Check DATABASE_URL and that the database server is reachable")
        logger.error("=" * 60)
        raise
    except Exception as e:
        logger.error("=" * 60)
        logger.error(f"CRITICAL: Application startup failed: {e}")
        logger.error("=" * 60)
        raise

    from seed_data import seed_on_startup
    async with async_session_maker() as db:
        await seed_on_startup(db)

    # Start reminder scheduler (polls due reminder jobs)
    if settings.REMINDER_SCHEDULER_ENABLED:
        try:
            from reminder_scheduler import start_reminder_scheduler
            start_reminder_scheduler()
            logger.info("✅ Reminder scheduler started successfully")
        except Exception as e:
            logger.error(f"⚠️ Failed to start reminder scheduler: {e}")

    # Start subscription scheduler for daily trial expiry checks
    if settings.SUBSCRIPTION_SCHEDULER_ENABLED:
        try:
            from subscription_scheduler import start_subscription_scheduler
            start_subscription_scheduler()
            logger.info("✅ Subscription scheduler started successfully")
        except Exception as e:
            logger.error(f"⚠️ Failed to start subscription scheduler: {e}")


# ==================== AUTH ROUTES ====================

@app.post("/auth/login", dependencies=[Depends(login_rate_limit)])
async def login(
    login_data: LoginRequest,
    db: AsyncSession = Depends(get_db)
):
    """Login with e-mail and password; returns a bearer token"""
    result = await db.execute(select(User).where(User.email == login_data.email))
    user = result.scalar_one_or_none()

    if not user or not user.is_active or not verify_password(login_data.password, user.hashed_password):
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "E-mail ou senha incorretos.")

    company = await db.get(Company, user.company_id) if user.company_id else None
    logger.info(f"🔑 Login: {user.email} (company #{user.company_id})")

    return {
        "token": create_access_token(user),
        "user": build_auth_user(user),
        "company": build_auth_company(company),
    }


@app.get("/auth/me")
async def read_users_me(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Current user, company, role flags and plan context"""
    flags = await get_role_flags(db, current_user)
    company = await db.get(Company, current_user.company_id) if current_user.company_id else None

    return {
        "user": build_auth_user(current_user),
        "company": build_auth_company(company),
        "is_admin": flags["is_admin"],
        "is_superadmin": flags["is_superadmin"],
        "role": flags["role"],
        "plan": await get_plan_context(db, company) if company else None,
    }


@app.post("/auth/change-password")
async def change_password(
    payload: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    if not verify_password(payload.current_password, current_user.hashed_password):
        raise ApiError(status.HTTP_401_UNAUTHORIZED, "Senha atual incorreta.")

    current_user.hashed_password = get_password_hash(payload.new_password)
    await db.commit()
    logger.info(f"🔒 Password changed for {current_user.email}")
    return {"ok": True}


# ==================== OPERATIONS ====================

@app.get("/api/logs")
async def read_logs(_: User = Depends(require_admin)):
    """Most recent log lines kept in memory"""
    return {"lines": get_log_lines()}


@app.get("/metrics")
async def read_metrics(_: User = Depends(require_admin)):
    return metrics.snapshot()


# ==================== HEALTH CHECK ====================

@app.get("/health")
async def health_check():
    """Health check endpoint for Render/Cloud platforms"""
    return {"status": "healthy", "service": "api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
