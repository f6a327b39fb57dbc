"""
Dispatch Engine - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "Orders",
        "description": "מחזור חיי הזמנה: הערכת מחיר, יצירה, קבלה, משא ומתן על מחיר, מסירה עם קוד וביטול.",
    },
    {"name": "Riders", "description": "מיקום וזמינות רוכבים, הזמנות פתוחות ודוחות עמלה שבועיים."},
    {"name": "Payouts", "description": "אישור תשלום עמלה משער התשלומים."},
    {"name": "Wallets", "description": "ארנק משתמש: יתרה והיסטוריית תנועות."},
    {"name": "Users", "description": "הרשמה, פרופיל והיסטוריית אירועים."},
    {"name": "Admin", "description": "הגדרות תמחור, ניהול רוכבים חסומים, דוחות והרצת משימות."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="מנוע שיבוץ הזמנות, תמחור, התחשבנות ועמלות שבועיות לרוכבים.",
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (correlation ID, request logging, security headers)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

# Safe dev default to support local frontend development without opening CORS in production.
if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    # סגירת חיבורי מסד הנתונים למניעת connection pool exhaustion
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description="בדיקה קלה שהתהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe"""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description=(
        "בדיקת התלויות: DB, Redis ו-Celery broker. "
        "מחזיר 200 עם status=healthy, או 503 עם status=degraded ופירוט."
    ),
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    """Readiness probe"""
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
